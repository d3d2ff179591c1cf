"""State and per-turn context for the orchestration graph."""

from dataclasses import dataclass, field
from typing import Literal

from langchain_core.runnables import RunnableConfig
from pydantic import BaseModel, Field

from app.models.agent import ModelParameters
from app.models.llm import ToolSpec
from app.models.messages import Message, ToolCallRequest
from app.services.broadcaster import RealtimeBroadcaster
from app.services.dispatcher import StreamDispatcher
from app.services.history import HistoryManager
from app.services.loop_guard import AntiLoopGuard
from app.services.persistence import MessagePersistence
from app.services.tool_router import ToolExecutionRouter

Phase = Literal["model_streaming", "tool_executing", "model_streaming_final", "finishing"]


class ToolOutcome(BaseModel):
    """Result of one executed tool call, kept for the deny message and the turn result."""

    tool_call_id: str
    name: str
    success: bool
    human_message: str


class TurnState(BaseModel):
    """State passed between the nodes of one turn.

    The conversation itself is not part of the state; nodes reach it through
    the history manager in the turn context.
    """

    session_id: str
    phase: Phase = "model_streaming"

    # Tool execution tracking
    pending_tool_calls: list[ToolCallRequest] = Field(default_factory=list)
    reasoning: str | None = None
    tool_results: list[ToolOutcome] = Field(default_factory=list)

    # Outcome
    final_text: str | None = None
    error: bool = False
    error_type: str | None = None

    # Control flow
    next_step: Literal["agent", "tools", "final_agent", "finish"] | None = None


@dataclass(frozen=True)
class TurnConfig:
    """Immutable configuration of one turn, built once before the graph runs."""

    session_id: str
    user_id: str
    instructions: str
    parameters: ModelParameters
    tool_specs: tuple[ToolSpec, ...]
    history_limit: int
    max_tool_rounds: int
    retry_delay: float


@dataclass
class TurnContext:
    """Collaborators of one turn, handed to every node through the runnable config."""

    config: TurnConfig
    history: HistoryManager
    guard: AntiLoopGuard
    dispatcher: StreamDispatcher
    router: ToolExecutionRouter
    broadcaster: RealtimeBroadcaster
    persistence: MessagePersistence
    start_mark: int
    persisted: list[Message] = field(default_factory=list)


def get_turn_context(config: RunnableConfig) -> TurnContext:
    """Pull the turn context out of a node's runnable config."""
    try:
        return config["configurable"]["turn"]
    except (KeyError, TypeError) as e:
        raise RuntimeError("Graph invoked without a turn context") from e
