"""Anthropic streaming client with rate limiting and error handling."""

import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx
from anthropic import APIError, AsyncAnthropic
from pydantic import BaseModel

from app.clients.rate_limit import ProviderRateLimiter, estimate_request_tokens
from app.models.errors import MalformedArguments, ProviderTransportError
from app.models.llm import (
    CompletionRequest,
    Finish,
    FinishReason,
    ProviderError,
    ReasoningToken,
    StreamDelta,
    TextToken,
    ToolCallFragment,
)
from app.models.messages import Message
from app.tools.arguments import repair_arguments
from app.utils.logging import get_logger

logger = get_logger(__name__)

STOP_REASONS: dict[str, FinishReason] = {
    "tool_use": "tool_calls",
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
}


class CacheControl(BaseModel):
    """Cache control configuration for prompt caching."""

    type: Literal["ephemeral"] = "ephemeral"


class AnthropicTool(BaseModel):
    """Tool definition for Anthropic API."""

    name: str
    description: str
    input_schema: dict[str, Any]
    cache_control: CacheControl | None = None


@dataclass
class AnthropicConfig:
    """Configuration for Anthropic API client."""

    max_retries: int = 2
    timeout: float = 60.0
    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000


@dataclass
class AnthropicStreamDecoder:
    """Turns raw Anthropic stream events into stream deltas.

    Anthropic numbers content blocks across text and tool use, so tool blocks
    are renumbered into a dense tool-call index.
    """

    tool_indexes: dict[int, int] = field(default_factory=dict)
    stop_reason: str | None = None

    def decode(self, event: Any) -> list[StreamDelta]:
        match event.type:
            case "content_block_start":
                block = event.content_block
                if block.type == "tool_use":
                    tool_index = len(self.tool_indexes)
                    self.tool_indexes[event.index] = tool_index
                    return [ToolCallFragment(index=tool_index, id=block.id, name=block.name)]
                if block.type == "text" and getattr(block, "text", ""):
                    return [TextToken(text=block.text)]
                return []

            case "content_block_delta":
                delta = event.delta
                if delta.type == "text_delta":
                    return [TextToken(text=delta.text)] if delta.text else []
                if delta.type == "thinking_delta":
                    return [ReasoningToken(text=delta.thinking)] if delta.thinking else []
                if delta.type == "input_json_delta" and event.index in self.tool_indexes:
                    if not delta.partial_json:
                        return []
                    return [ToolCallFragment(index=self.tool_indexes[event.index], arguments=delta.partial_json)]
                return []

            case "message_delta":
                self.stop_reason = getattr(event.delta, "stop_reason", None) or self.stop_reason
                return []

            case "message_stop":
                reason = STOP_REASONS.get(self.stop_reason or "end_turn", "stop")
                return [Finish(reason=reason)]

            case "error":
                error = getattr(event, "error", None)
                return [
                    ProviderError(
                        message=getattr(error, "message", None) or "Anthropic stream error",
                        code=getattr(error, "type", None),
                    )
                ]

        return []


def to_anthropic_messages(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
    """Convert history into Anthropic's system prompt and message list.

    Consecutive tool messages are grouped into one user turn of `tool_result`
    blocks, which is how Anthropic expects results to follow a tool-use turn.
    """
    system_parts: list[str] = []
    converted: list[dict[str, Any]] = []

    for message in messages:
        if message.role == "system":
            if message.content:
                system_parts.append(message.content)
            continue

        if message.role == "tool":
            block = {"type": "tool_result", "tool_use_id": message.tool_call_id, "content": message.content or ""}
            previous = converted[-1] if converted else None
            if previous and previous["role"] == "user" and isinstance(previous["content"], list):
                previous["content"].append(block)
            else:
                converted.append({"role": "user", "content": [block]})
            continue

        if message.has_tool_calls:
            blocks = []
            for call in message.tool_calls:
                try:
                    arguments = repair_arguments(call.arguments)
                except MalformedArguments:
                    arguments = {}
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": arguments})
            converted.append({"role": "assistant", "content": blocks})
            continue

        converted.append({"role": message.role, "content": message.content or ""})

    return "\n\n".join(system_parts), converted


class AnthropicClient:
    """Streaming Anthropic client implementing the provider protocol."""

    name = "anthropic"
    rate_limiter: ProviderRateLimiter | None = None

    def __init__(self, api_key: str | None = None, config: AnthropicConfig | None = None):
        """Initialize Anthropic client.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY env var)
            config: Client configuration
        """
        anthropic_api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY environment variable is required")

        self.config = config or AnthropicConfig()
        self.client = AsyncAnthropic(
            api_key=anthropic_api_key, max_retries=self.config.max_retries, timeout=self.config.timeout
        )
        if AnthropicClient.rate_limiter is None:
            AnthropicClient.rate_limiter = ProviderRateLimiter(
                self.config.requests_per_minute, self.config.tokens_per_minute
            )

    def build_params(self, request: CompletionRequest) -> dict[str, Any]:
        """Build keyword arguments for `messages.create`."""
        system_prompt, messages = to_anthropic_messages(request.messages)
        params: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "temperature": request.temperature,
            "messages": messages,
            "stream": True,
        }
        if system_prompt:
            params["system"] = system_prompt
        if request.top_p < 1.0:
            params["top_p"] = request.top_p

        if request.tools is not None:
            tools = []
            for position, spec in enumerate(request.tools):
                # Caching the last tool caches every tool definition before it
                cache_control = CacheControl() if position == len(request.tools) - 1 else None
                tools.append(
                    AnthropicTool(
                        name=spec.name,
                        description=spec.description,
                        input_schema=spec.parameters,
                        cache_control=cache_control,
                    ).model_dump(exclude_none=True)
                )
            params["tools"] = tools

        return params

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamDelta]:
        """Stream a completion as tagged deltas.

        Raises:
            ProviderTransportError: If the request fails or the stream breaks
        """
        params = self.build_params(request)
        await self.rate_limiter.check_rate_limit(estimate_request_tokens(request), self.name)

        logger.debug(
            f"Streaming Anthropic completion with {len(params['messages'])} messages, "
            f"{len(params.get('tools', []))} tools, model {request.model}"
        )

        decoder = AnthropicStreamDecoder()
        try:
            response = await self.client.messages.create(**params)
        except (APIError, httpx.TransportError) as e:
            logger.error(f"Anthropic request failed: {e}")
            raise ProviderTransportError(str(e), getattr(e, "status_code", None), self.name) from e

        try:
            async for event in response:
                for delta in decoder.decode(event):
                    yield delta
        except (APIError, httpx.TransportError) as e:
            logger.error(f"Anthropic stream aborted: {e}")
            raise ProviderTransportError(str(e), getattr(e, "status_code", None), self.name) from e
        finally:
            await response.close()
