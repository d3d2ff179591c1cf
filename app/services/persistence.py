"""Message persistence interface and implementations."""

from typing import Any, Protocol

from app.models.errors import InvalidMessageSequence
from app.models.messages import Message
from app.services.history import check_pairing
from app.utils.logging import get_logger

logger = get_logger(__name__)


class MessagePersistence(Protocol):
    """Interface for the durable message store."""

    async def save_messages(self, session_id: str, messages: list[Message]) -> int:
        """Persist one completed turn's batch, returning the number stored.

        Raises:
            InvalidMessageSequence: If the batch breaks call/result pairing
        """
        ...

    async def load_messages(self, session_id: str) -> list[Message]:
        """Return every persisted message of a session, oldest first."""
        ...


class InMemoryMessageStore:
    """In-memory message store used for development and tests.

    Batches are stored in wire form, the same shape the persistence API
    accepts, so serialization problems surface here too.
    """

    def __init__(self):
        self._batches: dict[str, list[dict[str, Any]]] = {}

    async def save_messages(self, session_id: str, messages: list[Message]) -> int:
        if not messages:
            return 0
        try:
            check_pairing(messages)
        except InvalidMessageSequence as e:
            logger.error(f"Rejected batch of {len(messages)} messages for session {session_id}: {e}")
            raise

        self._batches.setdefault(session_id, []).extend(message.to_wire() for message in messages)
        logger.info(f"Persisted {len(messages)} messages for session {session_id}")
        return len(messages)

    async def load_messages(self, session_id: str) -> list[Message]:
        return [Message.from_wire(data) for data in self._batches.get(session_id, [])]

    def wire_messages(self, session_id: str) -> list[dict[str, Any]]:
        """Raw stored payloads of a session."""
        return list(self._batches.get(session_id, []))

