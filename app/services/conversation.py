"""Conversation service: the public entry point for user turns."""

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from app.graphs.conversation import OrchestrationLoop
from app.models.agent import OrchestratorSettings
from app.models.conversation import TurnResult
from app.models.errors import OrchestrationError
from app.models.messages import Message
from app.models.session import Session
from app.services.broadcaster import RealtimeBroadcaster, create_transport
from app.services.llm import get_llm_provider
from app.services.persistence import InMemoryMessageStore, MessagePersistence
from app.services.session_manager import InMemorySessionManager
from app.services.workspace import InMemoryWorkspaceService, WorkspaceService
from app.tools.registry import get_tools_registry
from app.utils.logging import get_logger

logger = get_logger(__name__)

CANCELLED_TEXT = "The request was cancelled before an answer was produced."
STREAM_DRAIN_TIMEOUT = 0.2


class ConversationService:
    """Runs user turns with session-scoped serialization and cancellation."""

    def __init__(
        self,
        loop: OrchestrationLoop,
        session_manager: InMemorySessionManager,
        persistence: MessagePersistence,
        broadcaster: RealtimeBroadcaster,
    ):
        self.loop = loop
        self.session_manager = session_manager
        self.persistence = persistence
        self.broadcaster = broadcaster

    async def process_message(self, message: str, session: Session) -> TurnResult:
        """Process a user message and return the turn outcome.

        The turn runs in its own task so `cancel_turn` can stop it without
        tearing down the caller.

        Args:
            message: User's message
            session: Current session state

        Returns:
            The turn outcome; a cancelled turn returns an error result

        Raises:
            SessionBusyError: If a turn is already running for the session
        """
        logger.info(f"Processing message for session {session.session_id}: {message[:50]}...")

        task = asyncio.create_task(self._run_locked(message, session))
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            logger.info(f"Turn for session {session.session_id} was cancelled on request")
            return TurnResult(
                session_id=session.session_id, content=CANCELLED_TEXT, error=True, error_type="Cancelled"
            )

    async def stream_message(self, message: str, session: Session) -> AsyncIterator[dict[str, Any]]:
        """Run a turn while yielding the session's realtime events.

        Ends with a `result` event carrying the final response. Closing the
        iterator early cancels the turn.
        """
        ready = asyncio.Event()
        relay: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

        async def pump() -> None:
            async for envelope in self.broadcaster.subscribe(session.session_id, ready):
                await relay.put(envelope)

        pump_task = asyncio.create_task(pump())
        ready_task = asyncio.create_task(ready.wait())
        await asyncio.wait({pump_task, ready_task}, return_when=asyncio.FIRST_COMPLETED)
        ready_task.cancel()
        if pump_task.done() and pump_task.exception() is not None:
            logger.warning(f"Realtime subscription failed, streaming the result only: {pump_task.exception()}")

        turn_task = asyncio.create_task(self.process_message(message, session))
        try:
            while not turn_task.done():
                getter = asyncio.create_task(relay.get())
                done, _ = await asyncio.wait({getter, turn_task}, return_when=asyncio.FIRST_COMPLETED)
                if getter in done:
                    yield getter.result()
                else:
                    getter.cancel()

            # Events published just before the turn ended may still be in flight
            while True:
                try:
                    envelope = await asyncio.wait_for(relay.get(), timeout=STREAM_DRAIN_TIMEOUT)
                except TimeoutError:
                    break
                yield envelope
                if envelope["event"] == "done":
                    break

            try:
                result = turn_task.result()
            except Exception as e:
                if not isinstance(e, OrchestrationError):
                    logger.error(f"Streamed turn failed for session {session.session_id}: {e}", exc_info=True)
                error_type = e.error_type if isinstance(e, OrchestrationError) else "InternalError"
                payload = {"sessionId": session.session_id, "message": str(e), "errorType": error_type}
                yield {"event": "error", "payload": payload}
                return
            yield {"event": "result", "payload": result.to_response().model_dump()}
        finally:
            if not turn_task.done():
                logger.info(f"Stream for session {session.session_id} closed early, cancelling the turn")
                turn_task.cancel()
            pump_task.cancel()

    async def get_messages(self, session_id: str) -> list[Message]:
        """Persisted messages of a session."""
        return await self.persistence.load_messages(session_id)

    async def _run_locked(self, message: str, session: Session) -> TurnResult:
        async with self.session_manager.turn(session.session_id):
            self.session_manager.register_task(session.session_id, asyncio.current_task())
            result = await self.loop.run_turn(session, message)

        logger.info(
            f"Turn completed for session {session.session_id}: {result.tool_calls_executed} tool calls, "
            f"error: {result.error}"
        )
        return result


_settings: OrchestratorSettings | None = None
_session_manager: InMemorySessionManager | None = None
_workspace: WorkspaceService | None = None
_persistence: MessagePersistence | None = None
_conversation_service: ConversationService | None = None


def get_settings() -> OrchestratorSettings:
    """Get or read the process-wide settings."""
    global _settings
    if _settings is None:
        _settings = OrchestratorSettings.from_env()
    return _settings


def get_session_manager() -> InMemorySessionManager:
    """Get or create session manager instance."""
    global _session_manager
    if _session_manager is None:
        _session_manager = InMemorySessionManager(history_limit=get_settings().history_limit)
    return _session_manager


def get_workspace() -> WorkspaceService:
    """Get or create workspace service instance."""
    global _workspace
    if _workspace is None:
        _workspace = InMemoryWorkspaceService()
    return _workspace


def get_persistence() -> MessagePersistence:
    """Get or create message store instance."""
    global _persistence
    if _persistence is None:
        _persistence = InMemoryMessageStore()
    return _persistence


def get_conversation_service() -> ConversationService:
    """Get or create conversation service instance.

    Building it selects the LLM provider, which needs the provider's API key.
    """
    global _conversation_service
    if _conversation_service is None:
        settings = get_settings()
        broadcaster = RealtimeBroadcaster(
            create_transport(settings.redis_url), settings.broadcast_timeout, settings.broadcast_max_pending
        )
        workspace = get_workspace()
        persistence = get_persistence()
        loop = OrchestrationLoop(
            provider=get_llm_provider(settings),
            registry=get_tools_registry(workspace),
            workspace=workspace,
            persistence=persistence,
            broadcaster=broadcaster,
            settings=settings,
        )
        _conversation_service = ConversationService(loop, get_session_manager(), persistence, broadcaster)
        logger.info("ConversationService initialized")
    return _conversation_service


async def shutdown_conversation_service() -> None:
    """Cancel running turns and close the realtime transport."""
    global _conversation_service
    if _conversation_service is None:
        return

    service, _conversation_service = _conversation_service, None
    cancelled = service.session_manager.cancel_all()
    if cancelled:
        logger.info(f"Cancelled {cancelled} running turns on shutdown")
    await service.broadcaster.aclose()
    logger.info("ConversationService shut down")
