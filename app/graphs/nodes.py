"""Node implementations for the orchestration graph."""

import asyncio
from typing import Any

from langchain_core.runnables import RunnableConfig

from app.graphs.state import ToolOutcome, TurnContext, TurnState, get_turn_context
from app.models.errors import MalformedArguments, ProviderTransportError
from app.models.llm import ToolSpec
from app.models.messages import Message, ToolResult
from app.services.dispatcher import DispatchResult
from app.services.tool_router import summarize
from app.tools.arguments import repair_arguments
from app.utils.logging import get_logger

logger = get_logger(__name__)

PROVIDER_FAILURE_TEXT = (
    "I'm sorry, the language model could not be reached and I couldn't finish your request. Please try again."
)
EMPTY_ANSWER_TEXT = "I don't have anything to add."


async def agent_node(state: TurnState, config: RunnableConfig) -> dict[str, Any]:
    """First model call of a turn; tools are offered if the guard allows it."""
    ctx = get_turn_context(config)
    tools = ctx.guard.offered_tools(list(ctx.config.tool_specs))
    return await _model_step(ctx, state, tools, phase="model_streaming")


async def final_agent_node(state: TurnState, config: RunnableConfig) -> dict[str, Any]:
    """Model call after the last allowed tool round; tools are always withheld."""
    ctx = get_turn_context(config)
    return await _model_step(ctx, state, None, phase="model_streaming_final")


async def tools_node(state: TurnState, config: RunnableConfig) -> dict[str, Any]:
    """Execute every pending tool call in request order and record the results.

    The assistant message carrying all calls is appended before any call runs.
    Tool failures are recorded as results; they never stop the turn.
    """
    ctx = get_turn_context(config)
    calls = state.pending_tool_calls
    session_id = ctx.config.session_id
    logger.info(f"Executing {len(calls)} tool calls for session {session_id}")

    ctx.history.append(Message.assistant_tool_calls(calls, reasoning=state.reasoning))
    ctx.guard.record_tool_round()

    outcomes: list[ToolOutcome] = []
    for call in calls:
        await ctx.broadcaster.tool_status(session_id, "started", call.name, call.id)

        try:
            arguments = repair_arguments(call.arguments)
        except MalformedArguments as e:
            logger.warning(f"Tool call {call.id} ({call.name}) has unrepairable arguments: {e}")
            result = ToolResult.failure(str(e), e.error_type)
        else:
            result = await ctx.router.execute(call, arguments, ctx.config.user_id)

        status = "succeeded" if result.success else "failed"
        await ctx.broadcaster.tool_status(session_id, status, call.name, call.id, summarize(result))

        ctx.history.append(Message.tool(call, result.to_content()))
        outcomes.append(
            ToolOutcome(
                tool_call_id=call.id, name=call.name, success=result.success, human_message=result.human_message
            )
        )

    next_step = "agent" if ctx.guard.tools_allowed() else "final_agent"
    return {
        "phase": "tool_executing",
        "pending_tool_calls": [],
        "reasoning": None,
        "tool_results": [*state.tool_results, *outcomes],
        "next_step": next_step,
    }


async def finish_node(state: TurnState, config: RunnableConfig) -> dict[str, Any]:
    """Append the final answer, persist the turn, then apply history retention."""
    ctx = get_turn_context(config)
    session_id = ctx.config.session_id

    ctx.history.append(Message.assistant(state.final_text or "", reasoning=state.reasoning))
    batch = ctx.history.messages_since(ctx.start_mark)

    # Persist before truncating so a rejected batch can still be rolled back
    await ctx.persistence.save_messages(session_id, batch)
    ctx.persisted = batch
    ctx.history.truncate(ctx.config.history_limit)

    await ctx.broadcaster.publish(
        session_id, "done", {"error": state.error, "toolCalls": len(state.tool_results)}
    )
    logger.info(f"Turn finished for session {session_id} with {len(batch)} new messages, error: {state.error}")
    return {"phase": "finishing", "next_step": None}


async def _model_step(
    ctx: TurnContext, state: TurnState, tools: list[ToolSpec] | None, phase: str
) -> dict[str, Any]:
    result = await _dispatch_with_retry(ctx, tools)
    if result is None:
        return {
            "phase": phase,
            "final_text": PROVIDER_FAILURE_TEXT,
            "error": True,
            "error_type": ProviderTransportError.__name__,
            "next_step": "finish",
        }

    reasoning = result.reasoning or None

    if result.wants_tools:
        if tools is not None:
            if result.text.strip():
                logger.info(f"Dropping {len(result.text)} chars of text sent alongside tool calls")
            return {
                "phase": phase,
                "pending_tool_calls": result.tool_calls,
                "reasoning": reasoning,
                "next_step": "tools",
            }

        logger.warning(
            f"Model requested {len(result.tool_calls)} tool calls in session {ctx.config.session_id} "
            "after tools were withheld"
        )
        return {
            "phase": phase,
            "final_text": deny_message(state.tool_results, result.text),
            "reasoning": reasoning,
            "next_step": "finish",
        }

    text = result.text
    if not text.strip():
        logger.warning(f"Model returned an empty answer for session {ctx.config.session_id}")
        text = EMPTY_ANSWER_TEXT
    return {"phase": phase, "final_text": text, "reasoning": reasoning, "next_step": "finish"}


async def _dispatch_with_retry(ctx: TurnContext, tools: list[ToolSpec] | None) -> DispatchResult | None:
    """Run the dispatcher, retrying a transport failure once after a delay."""
    for attempt in range(2):
        try:
            return await ctx.dispatcher.dispatch(
                ctx.config.session_id,
                ctx.history.snapshot(),
                ctx.config.instructions,
                ctx.config.parameters,
                tools,
            )
        except ProviderTransportError as e:
            if attempt == 0:
                logger.warning(f"Provider failed for session {ctx.config.session_id}, retrying: {e}")
                # Subscribers drop any partial output of the failed attempt on this event
                retry = {"attempt": attempt + 2, "reason": str(e)}
                await ctx.broadcaster.publish(ctx.config.session_id, "retry", retry)
                await asyncio.sleep(ctx.config.retry_delay)
                continue
            logger.error(f"Provider failed twice for session {ctx.config.session_id}: {e}")
            await ctx.broadcaster.publish(ctx.config.session_id, "error", {"message": str(e)})
    return None


def deny_message(outcomes: list[ToolOutcome], preamble: str = "") -> str:
    """Terminal answer used when the model asks for tools it may no longer use."""
    lines = []
    if preamble.strip():
        lines.append(preamble.strip())
        lines.append("")

    if not outcomes:
        lines.append("I can't use any more tools for this request.")
        return "\n".join(lines)

    lines.append("I can't run more tools in this turn. Here is what the earlier tool calls returned:")
    for outcome in outcomes:
        lines.append(f"- {outcome.name}: {outcome.human_message}")
    lines.append("Send another message if you want me to continue.")
    return "\n".join(lines)
