"""Orchestration graph and the per-turn loop built on it."""

import asyncio

from langgraph.graph import END, StateGraph

from app.clients.base import LLMProvider
from app.graphs.edges import route_agent_output, route_final_agent_output, route_tool_output
from app.graphs.nodes import agent_node, final_agent_node, finish_node, tools_node
from app.graphs.state import ToolOutcome, TurnConfig, TurnContext, TurnState
from app.models.agent import OrchestratorSettings
from app.models.conversation import TurnResult
from app.models.errors import InvalidMessageSequence, OrchestrationError
from app.models.messages import Message
from app.models.session import Session
from app.services.broadcaster import RealtimeBroadcaster
from app.services.dispatcher import StreamDispatcher
from app.services.history import HistoryManager
from app.services.loop_guard import AntiLoopGuard
from app.services.persistence import MessagePersistence
from app.services.tool_router import ToolExecutionRouter
from app.services.workspace import WorkspaceService
from app.tools.registry import ToolsRegistry
from app.utils.logging import get_logger

logger = get_logger(__name__)

INVALID_SEQUENCE_TEXT = "I'm sorry, something went wrong while recording this conversation. Please try again."
TURN_FAILURE_TEXT = "I'm sorry, something went wrong while answering. Please try again."


def create_turn_graph():
    """Create the graph of one turn.

    agent -> (tools -> agent | final_agent) -> finish. Routing out of the
    tools node is decided by the anti-loop guard, so the number of tool rounds
    and therefore the number of steps is bounded.

    Returns:
        Compiled LangGraph workflow
    """
    logger.info("Creating turn graph")

    workflow = StateGraph(TurnState)

    workflow.add_node("agent", agent_node)
    workflow.add_node("tools", tools_node)
    workflow.add_node("final_agent", final_agent_node)
    workflow.add_node("finish", finish_node)

    workflow.set_entry_point("agent")

    workflow.add_conditional_edges(
        "agent",
        route_agent_output,
        {
            "tools": "tools",
            "finish": "finish",
        },
    )

    workflow.add_conditional_edges(
        "tools",
        route_tool_output,
        {
            "agent": "agent",
            "final_agent": "final_agent",
        },
    )

    workflow.add_conditional_edges("final_agent", route_final_agent_output, {"finish": "finish"})
    workflow.add_edge("finish", END)

    return workflow.compile()


class OrchestrationLoop:
    """Runs user turns through the turn graph.

    One instance serves every session; all per-turn state lives in the
    `TurnContext` built by `run_turn`.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolsRegistry,
        workspace: WorkspaceService,
        persistence: MessagePersistence,
        broadcaster: RealtimeBroadcaster,
        settings: OrchestratorSettings | None = None,
    ):
        self.provider = provider
        self.registry = registry
        self.workspace = workspace
        self.persistence = persistence
        self.broadcaster = broadcaster
        self.settings = settings or OrchestratorSettings()
        self.dispatcher = StreamDispatcher(provider, broadcaster)
        self.graph = create_turn_graph()

    def build_turn_config(self, session: Session) -> TurnConfig:
        """Freeze the agent, tool subset and limits used for one turn."""
        tools = self.registry.resolve(session.agent.capabilities)
        return TurnConfig(
            session_id=session.session_id,
            user_id=session.user_id,
            instructions=session.agent.instructions,
            parameters=session.agent.parameters,
            tool_specs=tuple(self.registry.specs(tools)),
            history_limit=session.conversation.history_limit,
            max_tool_rounds=self.settings.max_tool_rounds,
            retry_delay=self.settings.provider_retry_delay,
        )

    async def run_turn(self, session: Session, message: str) -> TurnResult:
        """Run one user turn to completion.

        The caller must hold the session's turn lock. A cancelled or failed turn
        leaves the conversation as it was before the turn and persists nothing;
        a failure is reported as an error result instead of raised.

        Args:
            session: Session the message belongs to
            message: The user's message

        Returns:
            The turn outcome

        Raises:
            asyncio.CancelledError: If the turn is cancelled
        """
        turn_config = self.build_turn_config(session)
        history = HistoryManager(session.conversation, self.settings.history_strategy)
        guard = AntiLoopGuard(history, turn_config.max_tool_rounds)
        router = ToolExecutionRouter(
            self.registry,
            self.workspace,
            self.settings.tool_result_max_bytes,
            allowed_tools={spec.name for spec in turn_config.tool_specs},
        )
        ctx = TurnContext(
            config=turn_config,
            history=history,
            guard=guard,
            dispatcher=self.dispatcher,
            router=router,
            broadcaster=self.broadcaster,
            persistence=self.persistence,
            start_mark=history.mark(),
        )

        logger.info(
            f"Starting turn for session {session.session_id} with {len(turn_config.tool_specs)} tools, "
            f"{len(session.conversation.messages)} messages in history"
        )

        runnable_config = {
            "configurable": {"turn": ctx},
            "recursion_limit": 2 * turn_config.max_tool_rounds + 6,
        }

        drain_wait = self.settings.broadcast_timeout
        try:
            history.append(Message.user(message))
            result = await self.graph.ainvoke(TurnState(session_id=session.session_id).model_dump(), runnable_config)
        except asyncio.CancelledError:
            drain_wait = 0.0
            self._abandon(ctx, session)
            logger.info(f"Turn cancelled for session {session.session_id}")
            raise
        except InvalidMessageSequence as e:
            self._abandon(ctx, session)
            logger.error(f"Turn aborted for session {session.session_id}: {e}")
            await self.broadcaster.publish(session.session_id, "error", {"message": str(e)})
            return TurnResult(
                session_id=session.session_id,
                content=INVALID_SEQUENCE_TEXT,
                error=True,
                error_type=e.error_type,
            )
        except Exception as e:
            self._abandon(ctx, session)
            logger.error(f"Turn failed for session {session.session_id}: {e}", exc_info=True)
            await self.broadcaster.publish(session.session_id, "error", {"message": str(e)})
            error_type = e.error_type if isinstance(e, OrchestrationError) else "InternalError"
            return TurnResult(
                session_id=session.session_id, content=TURN_FAILURE_TEXT, error=True, error_type=error_type
            )
        finally:
            await self.broadcaster.close_channel(session.session_id, wait=drain_wait)

        session.complete_turn()
        outcomes = [ToolOutcome.model_validate(outcome) for outcome in result.get("tool_results", [])]
        return TurnResult(
            session_id=session.session_id,
            content=result.get("final_text") or "",
            error=result.get("error", False),
            error_type=result.get("error_type"),
            tool_calls_executed=len(outcomes),
            messages=list(ctx.persisted),
        )

    def _abandon(self, ctx: TurnContext, session: Session) -> None:
        ctx.history.rollback(ctx.start_mark)
        session.conversation.tool_round_count = 0
        session.update_activity()
