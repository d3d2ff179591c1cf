"""LLM-related data models and types (provider-agnostic)."""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field

from app.models.messages import Message

FinishReason = Literal["stop", "tool_calls", "length"]


# Stream delta variants, decoded once at the provider boundary
class TextToken(BaseModel):
    """Plain answer text."""

    type: Literal["text_token"] = "text_token"
    text: str


class ReasoningToken(BaseModel):
    """Side-channel reasoning text, kept apart from the answer."""

    type: Literal["reasoning_token"] = "reasoning_token"
    text: str


class ToolCallFragment(BaseModel):
    """A piece of a tool call; id and name may arrive before or without arguments."""

    type: Literal["tool_call_fragment"] = "tool_call_fragment"
    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""


class Finish(BaseModel):
    """End of the provider response."""

    type: Literal["finish"] = "finish"
    reason: FinishReason


class ProviderError(BaseModel):
    """Error reported inside the stream by the provider."""

    type: Literal["provider_error"] = "provider_error"
    message: str
    code: str | None = None


StreamDelta = Annotated[
    TextToken | ReasoningToken | ToolCallFragment | Finish | ProviderError,
    Field(discriminator="type"),
]


class ToolSpec(BaseModel):
    """Tool definition offered to the model."""

    name: str
    description: str
    parameters: dict[str, Any]

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }

    def to_anthropic(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.parameters}


class CompletionRequest(BaseModel):
    """Outbound streaming completion request.

    `tools` is None when tools are withheld; the key is then left out of the
    payload entirely rather than sent as an empty list.
    """

    model: str
    messages: list[Message]
    stream: Literal[True] = True
    temperature: float = 0.7
    max_tokens: int = 4000
    top_p: float = 1.0
    tools: list[ToolSpec] | None = None

    @property
    def offers_tools(self) -> bool:
        return self.tools is not None

    def to_payload(self) -> dict[str, Any]:
        """Build the OpenAI-compatible request body."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [message.to_provider() for message in self.messages],
            "stream": True,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "top_p": self.top_p,
        }
        if self.tools is not None:
            payload["tools"] = [tool.to_openai() for tool in self.tools]
        return payload
