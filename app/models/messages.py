"""Message and tool-call data models."""

import json
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator

Role = Literal["user", "assistant", "system", "tool"]


class ToolCallRequest(BaseModel):
    """A tool call emitted by the model.

    `arguments` is the raw provider string and is kept untouched for auditing;
    it only becomes structured data after argument repair.
    """

    id: str
    name: str
    arguments: str = ""

    def to_wire(self) -> dict[str, Any]:
        """Serialize in the OpenAI-compatible `tool_calls` shape."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class Message(BaseModel):
    """One element of a conversation."""

    role: Role
    content: str | None = None
    tool_calls: list[ToolCallRequest] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    reasoning: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @model_validator(mode="after")
    def check_shape(self) -> "Message":
        """Enforce the per-role field rules."""
        if self.tool_calls is not None:
            if self.role != "assistant":
                raise ValueError("tool_calls are only allowed on assistant messages")
            if not self.tool_calls:
                raise ValueError("tool_calls must not be empty when present")
            if self.content is not None:
                raise ValueError("content must be null when tool_calls is present")

        if self.role == "tool":
            if not self.tool_call_id or not self.name:
                raise ValueError("tool messages require tool_call_id and name")
        elif self.tool_call_id is not None or self.name is not None:
            raise ValueError("tool_call_id and name are only allowed on tool messages")

        return self

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls(role="user", content=text)

    @classmethod
    def system(cls, text: str) -> "Message":
        return cls(role="system", content=text)

    @classmethod
    def assistant(cls, text: str, reasoning: str | None = None) -> "Message":
        return cls(role="assistant", content=text, reasoning=reasoning or None)

    @classmethod
    def assistant_tool_calls(cls, calls: list[ToolCallRequest], reasoning: str | None = None) -> "Message":
        return cls(role="assistant", content=None, tool_calls=list(calls), reasoning=reasoning or None)

    @classmethod
    def tool(cls, call: ToolCallRequest, content: str) -> "Message":
        return cls(role="tool", content=content, tool_call_id=call.id, name=call.name)

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the message-persistence API.

        `content` is always present as a key, null when the message delegates
        work through `tool_calls`.
        """
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [call.to_wire() for call in self.tool_calls]
        if self.role == "tool":
            data["tool_call_id"] = self.tool_call_id
            data["name"] = self.name
        if self.reasoning:
            data["reasoning"] = self.reasoning
        data["timestamp"] = self.timestamp.isoformat()
        return data

    def to_provider(self) -> dict[str, Any]:
        """Serialize for an OpenAI-compatible completion request."""
        data = self.to_wire()
        data.pop("timestamp", None)
        data.pop("reasoning", None)
        return data

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "Message":
        """Rebuild a message from its persisted form."""
        payload = dict(data)
        if payload.get("tool_calls"):
            payload["tool_calls"] = [
                ToolCallRequest(
                    id=call["id"],
                    name=call["function"]["name"],
                    arguments=call["function"].get("arguments") or "",
                )
                for call in payload["tool_calls"]
            ]
        return cls.model_validate(payload)


class ToolResult(BaseModel):
    """Normalized outcome of executing one tool call."""

    success: bool
    data: Any = None
    error: str | None = None
    error_type: str | None = None
    human_message: str
    truncated: bool = False

    @classmethod
    def ok(cls, data: Any, human_message: str) -> "ToolResult":
        return cls(success=True, data=data, human_message=human_message)

    @classmethod
    def failure(cls, error: str, error_type: str) -> "ToolResult":
        return cls(success=False, error=error, error_type=error_type, human_message=f"FAILED: {error}")

    def to_content(self) -> str:
        """Encode the result for the `content` field of a tool message.

        A handler that already produced a wire string is passed through as-is;
        structured values are encoded exactly once.
        """
        if self.success and isinstance(self.data, str):
            return self.data

        if self.success:
            envelope: dict[str, Any] = {"success": True, "data": self.data, "message": self.human_message}
            if self.truncated:
                envelope["truncated"] = True
        else:
            envelope = {
                "success": False,
                "error": self.error,
                "error_type": self.error_type,
                "message": self.human_message,
            }
        return json.dumps(envelope, ensure_ascii=False, default=str)
