"""Conversation request/response models."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from app.models.messages import Message


class ConversationRequest(BaseModel):
    """Request model for conversation endpoints."""

    message: str = Field(..., min_length=1, max_length=16_000)
    user_id: str = Field(..., min_length=1)
    session_id: str | None = None


class ConversationResponse(BaseModel):
    """Response model for the conversation endpoint."""

    response: str
    session_id: str
    error: bool = False
    error_type: str | None = None
    tool_calls: int = 0


class CancelResponse(BaseModel):
    """Response model for turn cancellation."""

    session_id: str
    cancelled: bool


class MessagesResponse(BaseModel):
    """Persisted messages of a session."""

    session_id: str
    messages: list[dict[str, Any]]


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""

    status: str
    timestamp: datetime
    version: str
    active_sessions: int = 0


@dataclass
class TurnResult:
    """Outcome of one user turn."""

    session_id: str
    content: str
    error: bool = False
    error_type: str | None = None
    tool_calls_executed: int = 0
    messages: list[Message] = field(default_factory=list)

    def to_response(self) -> ConversationResponse:
        return ConversationResponse(
            response=self.content,
            session_id=self.session_id,
            error=self.error,
            error_type=self.error_type,
            tool_calls=self.tool_calls_executed,
        )
