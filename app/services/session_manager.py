"""Session management for in-memory storage."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

from cuid2 import cuid_wrapper

from app.models.agent import AgentConfig
from app.models.errors import SessionBusyError
from app.models.session import Conversation, Session
from app.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


class InMemorySessionManager:
    """In-memory session manager with one turn at a time per session."""

    def __init__(self, session_timeout_minutes: int = 60, history_limit: int = 30):
        """Initialize session manager.

        Args:
            session_timeout_minutes: Minutes before an idle session expires
            history_limit: History limit given to new conversations
        """
        self.sessions: dict[str, Session] = {}
        self.session_timeout = timedelta(minutes=session_timeout_minutes)
        self.history_limit = history_limit
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def create_session(self, user_id: str, agent: AgentConfig | None = None) -> Session:
        """Create a session for a user.

        Args:
            user_id: Identity of the session owner
            agent: Agent configuration, the default agent when omitted

        Returns:
            The new session
        """
        self._cleanup_expired_sessions()

        session_id = self._generate_session_id()
        session = Session(
            session_id=session_id,
            user_id=user_id,
            agent=agent or AgentConfig(),
            conversation=Conversation(id=session_id, history_limit=self.history_limit),
        )
        self.sessions[session_id] = session
        logger.info(f"Created session {session_id} for user {user_id}")
        return session

    def get_session(self, session_id: str) -> Session | None:
        """Get existing session by ID.

        Args:
            session_id: Session identifier

        Returns:
            Session if found and not expired, None otherwise
        """
        self._cleanup_expired_sessions()

        session = self.sessions.get(session_id)
        if session:
            session.update_activity()
        return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a session.

        Args:
            session_id: Session identifier

        Returns:
            True if session was deleted, False if not found
        """
        if session_id in self.sessions:
            del self.sessions[session_id]
            self._locks.pop(session_id, None)
            return True
        return False

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def turn(self, session_id: str) -> AsyncIterator[None]:
        """Hold the session's turn lock for the duration of one turn.

        Raises:
            SessionBusyError: If another turn is already running for the session
        """
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            logger.warning(f"Rejected concurrent turn for session {session_id}")
            raise SessionBusyError(session_id)

        async with lock:
            try:
                yield
            finally:
                self._tasks.pop(session_id, None)

    def register_task(self, session_id: str, task: asyncio.Task) -> None:
        """Remember the task running the session's current turn so it can be cancelled."""
        self._tasks[session_id] = task

    def cancel_turn(self, session_id: str) -> bool:
        """Cancel the running turn of a session.

        Returns:
            True if a running turn was cancelled
        """
        task = self._tasks.get(session_id)
        if task is None or task.done():
            return False
        logger.info(f"Cancelling turn for session {session_id}")
        return task.cancel()

    def cancel_all(self) -> int:
        """Cancel every running turn, returning how many were cancelled."""
        return sum(self.cancel_turn(session_id) for session_id in list(self._tasks))

    def _generate_session_id(self) -> str:
        """Generate a new CUID-based session ID."""
        return cuid()

    def _cleanup_expired_sessions(self) -> None:
        """Remove expired sessions from memory, sparing those with a turn in progress."""
        current_time = datetime.now(UTC)
        expired_sessions = [
            session_id
            for session_id, session in self.sessions.items()
            if current_time - session.last_activity > self.session_timeout and not self.is_busy(session_id)
        ]

        for session_id in expired_sessions:
            logger.debug(f"Expiring idle session {session_id}")
            self.delete_session(session_id)

    def get_session_count(self) -> int:
        """Get current number of active sessions."""
        self._cleanup_expired_sessions()
        return len(self.sessions)
