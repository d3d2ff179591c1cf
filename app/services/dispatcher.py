"""Stream dispatcher: one streaming completion call, relayed and accumulated."""

import contextlib
from dataclasses import dataclass, field

from cuid2 import cuid_wrapper

from app.clients.base import LLMProvider
from app.models.agent import ModelParameters
from app.models.errors import ProviderTransportError
from app.models.llm import (
    CompletionRequest,
    Finish,
    FinishReason,
    ProviderError,
    ReasoningToken,
    TextToken,
    ToolCallFragment,
    ToolSpec,
)
from app.models.messages import Message, ToolCallRequest
from app.services.broadcaster import RealtimeBroadcaster
from app.utils.logging import get_logger

logger = get_logger(__name__)

cuid = cuid_wrapper()


@dataclass
class PendingToolCall:
    """Per-index accumulator for a tool call streamed in fragments."""

    index: int
    id: str | None = None
    name: str | None = None
    arguments: str = ""

    def absorb(self, fragment: ToolCallFragment) -> None:
        if fragment.id:
            self.id = fragment.id
        if fragment.name:
            self.name = fragment.name
        self.arguments += fragment.arguments


@dataclass
class DispatchResult:
    """What one model invocation produced."""

    finish_reason: FinishReason
    text: str = ""
    reasoning: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    deltas: int = 0

    @property
    def wants_tools(self) -> bool:
        return self.finish_reason == "tool_calls" and bool(self.tool_calls)


class StreamDispatcher:
    """Runs one streaming completion and routes every delta.

    Text and reasoning are forwarded to the broadcaster as they arrive and
    accumulated; tool-call fragments are accumulated per index until the
    stream finishes. Every delta causes exactly one broadcast event.
    """

    def __init__(self, provider: LLMProvider, broadcaster: RealtimeBroadcaster):
        self.provider = provider
        self.broadcaster = broadcaster

    def build_request(
        self,
        history: list[Message],
        instructions: str | None,
        parameters: ModelParameters,
        tools: list[ToolSpec] | None,
    ) -> CompletionRequest:
        messages = [Message.system(instructions), *history] if instructions else list(history)
        return CompletionRequest(
            model=parameters.model,
            messages=messages,
            temperature=parameters.temperature,
            max_tokens=parameters.max_tokens,
            top_p=parameters.top_p,
            tools=tools,
        )

    async def dispatch(
        self,
        session_id: str,
        history: list[Message],
        instructions: str | None,
        parameters: ModelParameters,
        tools: list[ToolSpec] | None,
    ) -> DispatchResult:
        """Stream one completion for a history snapshot.

        Args:
            session_id: Session whose channel receives the broadcast events
            history: Conversation snapshot, without the system prompt
            instructions: System prompt prepended to the request
            parameters: Model parameters for the request
            tools: Tools to offer, or None to leave them out of the request

        Returns:
            The accumulated text, reasoning and materialized tool calls

        Raises:
            ProviderTransportError: If the provider fails or reports an error
        """
        request = self.build_request(history, instructions, parameters, tools)
        text_parts: list[str] = []
        reasoning_parts: list[str] = []
        pending: dict[int, PendingToolCall] = {}
        finish_reason: FinishReason | None = None
        count = 0

        async with contextlib.aclosing(self.provider.stream(request)) as stream:
            async for delta in stream:
                count += 1
                match delta:
                    case TextToken(text=text):
                        text_parts.append(text)
                        await self.broadcaster.token(session_id, text)
                    case ReasoningToken(text=text):
                        reasoning_parts.append(text)
                        await self.broadcaster.reasoning(session_id, text)
                    case ToolCallFragment():
                        call = pending.setdefault(delta.index, PendingToolCall(index=delta.index))
                        call.absorb(delta)
                        await self.broadcaster.tool_status(session_id, "pending", call.name, call.id)
                    case Finish(reason=reason):
                        finish_reason = reason
                        await self.broadcaster.publish(session_id, "finish", {"reason": reason})
                    case ProviderError(message=message, code=code):
                        await self.broadcaster.publish(session_id, "error", {"message": message, "code": code})
                        raise ProviderTransportError(message, provider=self.provider.name)

        tool_calls = materialize_tool_calls(pending)
        reason = _settle_finish_reason(finish_reason, tool_calls)
        logger.info(
            f"Dispatch for session {session_id} finished with {reason}: {count} deltas, "
            f"{len(tool_calls)} tool calls, tools offered: {tools is not None}"
        )
        return DispatchResult(
            finish_reason=reason,
            text="".join(text_parts),
            reasoning="".join(reasoning_parts),
            tool_calls=tool_calls,
            deltas=count,
        )


def materialize_tool_calls(pending: dict[int, PendingToolCall]) -> list[ToolCallRequest]:
    """Turn accumulated fragments into tool calls, in index order.

    Calls without a name are dropped, missing ids are generated and repeated
    ids keep only their first occurrence.
    """
    calls: list[ToolCallRequest] = []
    seen: set[str] = set()

    for index in sorted(pending):
        accumulated = pending[index]
        name = (accumulated.name or "").strip()
        if not name:
            logger.warning(f"Dropping tool call at index {index} without a name")
            continue

        call_id = accumulated.id or f"call_{cuid()}"
        if call_id in seen:
            logger.warning(f"Dropping duplicate tool call id {call_id} at index {index}")
            continue
        seen.add(call_id)
        calls.append(ToolCallRequest(id=call_id, name=name, arguments=accumulated.arguments))

    return calls


def _settle_finish_reason(reason: FinishReason | None, tool_calls: list[ToolCallRequest]) -> FinishReason:
    if reason is None:
        logger.warning("Provider stream ended without a finish reason")
        return "tool_calls" if tool_calls else "stop"
    if reason == "length":
        logger.warning("Provider stopped at the token limit, treating the answer as complete")
        return "tool_calls" if tool_calls else "stop"
    if reason == "stop" and tool_calls:
        return "tool_calls"
    if reason == "tool_calls" and not tool_calls:
        logger.warning("Provider finished with tool_calls but no usable call was accumulated")
        return "stop"
    return reason
