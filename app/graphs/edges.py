"""Edge logic and routing for the orchestration graph."""

from typing import Literal

from app.graphs.state import TurnState
from app.utils.logging import get_logger

logger = get_logger(__name__)


def route_agent_output(state: TurnState) -> Literal["tools", "finish"]:
    """Route from a model node: run tools when calls are pending, otherwise finish."""
    logger.debug(f"Routing from model node for session {state.session_id}. Next step: {state.next_step}")

    if state.next_step == "tools" and state.pending_tool_calls:
        return "tools"
    return "finish"


def route_final_agent_output(state: TurnState) -> Literal["finish"]:
    """The final model call never leads to another tool round."""
    if state.pending_tool_calls:
        logger.error(f"Final model call for session {state.session_id} left tool calls pending; finishing anyway")
    return "finish"


def route_tool_output(state: TurnState) -> Literal["agent", "final_agent"]:
    """Route from tool execution back to a model call.

    The tools node decides, through the anti-loop guard, whether the next call
    may still offer tools.
    """
    if state.next_step == "agent":
        return "agent"
    return "final_agent"
