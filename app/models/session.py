"""Session and conversation state."""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.models.agent import AgentConfig
from app.models.messages import Message
from app.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Conversation:
    """Ordered message sequence owned by a session.

    Only `HistoryManager` mutates `messages`. `tool_round_count` is transient
    and reset on every new user message.
    """

    id: str
    history_limit: int = 30
    messages: list[Message] = field(default_factory=list)
    tool_round_count: int = 0

    def __post_init__(self) -> None:
        if self.history_limit < 1:
            raise ValueError("history_limit must be a positive integer")


@dataclass
class Session:
    """Binds a conversation to a user identity and an agent configuration."""

    session_id: str
    user_id: str
    agent: AgentConfig
    conversation: Conversation
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity: datetime = field(default_factory=lambda: datetime.now(UTC))
    turn_count: int = 0

    def as_dict(self) -> dict[str, Any]:
        """Return the session as a dictionary."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "agent": self.agent.name,
            "messages": len(self.conversation.messages),
            "turn_count": self.turn_count,
            "created_at": self.created_at.isoformat(),
            "last_activity": self.last_activity.isoformat(),
        }

    def update_activity(self) -> None:
        """Update the last activity timestamp."""
        self.last_activity = datetime.now(UTC)

    def complete_turn(self) -> None:
        """Record a finished turn."""
        self.turn_count += 1
        self.update_activity()
        logger.debug(f"Session {self.session_id} completed turn {self.turn_count}")
