"""API endpoints for the orchestration service."""

import contextlib
import json
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from app import __version__
from app.models.conversation import (
    CancelResponse,
    ConversationRequest,
    ConversationResponse,
    HealthResponse,
    MessagesResponse,
)
from app.models.errors import InvalidMessageSequence, SessionBusyError
from app.models.session import Session
from app.services.conversation import (
    ConversationService,
    get_conversation_service,
    get_session_manager,
    get_settings,
)
from app.services.session_manager import InMemorySessionManager
from app.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


def conversation_service_dependency() -> ConversationService:
    """Conversation service, or 503 when the LLM provider cannot be configured."""
    try:
        return get_conversation_service()
    except ValueError as e:
        logger.error(f"Conversation service unavailable: {e}")
        raise HTTPException(status_code=503, detail="The language model provider is not configured") from e


def resolve_session(request: ConversationRequest, session_manager: InMemorySessionManager) -> Session:
    """Fetch the request's session, or create one when no id is given."""
    if not request.session_id:
        logger.info(f"Creating new session for user {request.user_id}")
        return session_manager.create_session(request.user_id, get_settings().default_agent())

    logger.info(f"Validating existing session: {request.session_id}")
    session = session_manager.get_session(request.session_id)
    if not session:
        logger.warning(f"Invalid session ID provided: {request.session_id}")
        raise HTTPException(status_code=400, detail=f"Invalid session ID: {request.session_id}")
    if session.user_id != request.user_id:
        logger.warning(f"User {request.user_id} tried to use session {request.session_id} of another user")
        raise HTTPException(status_code=403, detail="Session belongs to another user")
    return session


def owned_session(session_id: str, user_id: str, session_manager: InMemorySessionManager) -> Session:
    session = session_manager.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail=f"Unknown session ID: {session_id}")
    if session.user_id != user_id:
        raise HTTPException(status_code=403, detail="Session belongs to another user")
    return session


@router.post("/conversation", response_model=ConversationResponse, tags=["Conversation"])
async def handle_conversation(
    request: ConversationRequest,
    service: ConversationService = Depends(conversation_service_dependency),
    session_manager: InMemorySessionManager = Depends(get_session_manager),
) -> ConversationResponse:
    """Run one turn and return the final answer."""
    session = resolve_session(request, session_manager)
    session_id = session.session_id

    try:
        logger.info(f"Processing message for session {session_id}: {request.message[:50]}...")
        result = await service.process_message(request.message, session)
        logger.info(f"Generated response for session {session_id}: {result.content[:50]}...")
        return result.to_response()
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except InvalidMessageSequence as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except Exception as e:
        logger.error(f"Conversation processing error for session {session_id}: {e}", exc_info=True)
        error_msg = "I apologize, but I'm experiencing technical difficulties. Please try again."
        return ConversationResponse(
            response=error_msg, session_id=session_id, error=True, error_type="InternalError"
        )


@router.post("/conversation/stream", tags=["Conversation"])
async def stream_conversation(
    request: ConversationRequest,
    service: ConversationService = Depends(conversation_service_dependency),
    session_manager: InMemorySessionManager = Depends(get_session_manager),
) -> StreamingResponse:
    """Run one turn and stream its events as server-sent events.

    Closing the connection cancels the turn.
    """
    session = resolve_session(request, session_manager)
    if session_manager.is_busy(session.session_id):
        raise HTTPException(status_code=409, detail=str(SessionBusyError(session.session_id)))

    return StreamingResponse(
        _sse(service.stream_message(request.message, session)),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Session-Id": session.session_id},
    )


@router.post("/sessions/{session_id}/cancel", response_model=CancelResponse, tags=["Sessions"])
async def cancel_turn(
    session_id: str,
    user_id: str = Query(..., min_length=1),
    session_manager: InMemorySessionManager = Depends(get_session_manager),
) -> CancelResponse:
    """Cancel the turn currently running for a session."""
    owned_session(session_id, user_id, session_manager)
    cancelled = session_manager.cancel_turn(session_id)
    return CancelResponse(session_id=session_id, cancelled=cancelled)


@router.get("/sessions/{session_id}/messages", response_model=MessagesResponse, tags=["Sessions"])
async def list_messages(
    session_id: str,
    user_id: str = Query(..., min_length=1),
    service: ConversationService = Depends(conversation_service_dependency),
    session_manager: InMemorySessionManager = Depends(get_session_manager),
) -> MessagesResponse:
    """Persisted messages of a session, in wire form."""
    owned_session(session_id, user_id, session_manager)
    messages = await service.get_messages(session_id)
    return MessagesResponse(session_id=session_id, messages=[message.to_wire() for message in messages])


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(
    session_manager: InMemorySessionManager = Depends(get_session_manager),
) -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(UTC),
        version=__version__,
        active_sessions=session_manager.get_session_count(),
    )


async def _sse(events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    async with contextlib.aclosing(events) as stream:
        async for envelope in stream:
            yield f"event: {envelope['event']}\ndata: {json.dumps(envelope['payload'], default=str)}\n\n"
