"""Main FastAPI application."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app import __version__
from app.api.endpoints import router
from app.services.conversation import shutdown_conversation_service
from app.utils.logging import get_logger, setup_logging

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(f"Notes Agent Orchestrator {__version__} starting")
    yield
    await shutdown_conversation_service()


app = FastAPI(
    title="Notes Agent Orchestrator",
    description=(
        "Runs conversational turns against a language model that can read and change "
        "a notes workspace through tools, streaming progress to realtime subscribers."
    ),
    version=__version__,
    lifespan=lifespan,
    openapi_tags=[
        {
            "name": "Conversation",
            "description": "Send a user message and receive the agent's answer, as one response or as an SSE stream.",
        },
        {"name": "Sessions", "description": "Cancel running turns and read the persisted messages of a session."},
        {"name": "Health", "description": "Liveness and active session count."},
    ],
)

# Browser chat clients may be served from any origin
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
    expose_headers=["X-Session-Id"],
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
