"""Tests for the stream dispatcher."""

import pytest

from app.models.agent import ModelParameters
from app.models.errors import ProviderTransportError
from app.models.llm import Finish, ProviderError, ReasoningToken, TextToken, ToolCallFragment, ToolSpec
from app.models.messages import Message
from app.services.dispatcher import PendingToolCall, StreamDispatcher, materialize_tool_calls
from tests.fakes import ScriptedProvider, text_reply

PARAMETERS = ModelParameters(model="test-model", temperature=0.2, max_tokens=256)
SPEC = ToolSpec(name="get_note", description="Read a note", parameters={"type": "object", "properties": {}})


async def run(provider, broadcaster, tools=None):
    dispatcher = StreamDispatcher(provider, broadcaster)
    try:
        return await dispatcher.dispatch("session-1", [Message.user("hi")], "Be brief.", PARAMETERS, tools)
    finally:
        await broadcaster.close_channel("session-1", wait=1.0)


class TestTextStreaming:
    """Tests for text and reasoning deltas."""

    @pytest.mark.asyncio
    async def test_text_is_accumulated_and_relayed(self, broadcaster, transport):
        """Test that every text delta is broadcast and joined into the answer."""
        provider = ScriptedProvider(text_reply("Hello there friend"))

        result = await run(provider, broadcaster)

        assert result.text == "Hello there friend"
        assert result.finish_reason == "stop"
        assert [e["payload"]["delta"] for e in transport.events("token")] == ["Hello", " there", " friend"]

    @pytest.mark.asyncio
    async def test_one_broadcast_per_delta(self, broadcaster, transport):
        """Test that the number of broadcast events equals the number of deltas."""
        provider = ScriptedProvider(
            [
                ReasoningToken(text="thinking"),
                TextToken(text="Hi"),
                ToolCallFragment(index=0, id="c1", name="get_note"),
                Finish(reason="tool_calls"),
            ]
        )

        result = await run(provider, broadcaster, [SPEC])

        assert result.deltas == 4
        assert transport.event_names() == ["reasoning", "token", "tool_status", "finish"]

    @pytest.mark.asyncio
    async def test_reasoning_stays_out_of_the_answer(self, broadcaster):
        """Test that reasoning tokens are accumulated separately."""
        provider = ScriptedProvider(
            [ReasoningToken(text="Let me "), ReasoningToken(text="think."), TextToken(text="42"), Finish(reason="stop")]
        )

        result = await run(provider, broadcaster)

        assert result.text == "42"
        assert result.reasoning == "Let me think."

    @pytest.mark.asyncio
    async def test_events_carry_session_id(self, broadcaster, transport):
        """Test that every envelope names the session it belongs to."""
        await run(ScriptedProvider(text_reply("ok")), broadcaster)

        assert {e["payload"]["sessionId"] for e in transport.published} == {"session-1"}


class TestToolCallAccumulation:
    """Tests for tool-call fragments."""

    @pytest.mark.asyncio
    async def test_fragments_are_joined_per_index(self, broadcaster):
        """Test that argument fragments are concatenated for each call."""
        provider = ScriptedProvider(
            [
                ToolCallFragment(index=0, id="c1", name="create_note"),
                ToolCallFragment(index=0, arguments='{"title": '),
                ToolCallFragment(index=1, id="c2", name="get_note", arguments='{"note": "a"}'),
                ToolCallFragment(index=0, arguments='"A"}'),
                Finish(reason="tool_calls"),
            ]
        )

        result = await run(provider, broadcaster, [SPEC])

        assert result.wants_tools is True
        assert [(c.id, c.name, c.arguments) for c in result.tool_calls] == [
            ("c1", "create_note", '{"title": "A"}'),
            ("c2", "get_note", '{"note": "a"}'),
        ]

    @pytest.mark.asyncio
    async def test_calls_are_ordered_by_index(self, broadcaster):
        """Test that calls come out in index order regardless of arrival order."""
        provider = ScriptedProvider(
            [
                ToolCallFragment(index=1, id="second", name="get_note"),
                ToolCallFragment(index=0, id="first", name="get_note"),
                Finish(reason="tool_calls"),
            ]
        )

        result = await run(provider, broadcaster, [SPEC])

        assert [c.id for c in result.tool_calls] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_stop_with_tool_calls_is_treated_as_tool_calls(self, broadcaster):
        """Test that accumulated calls win over a stop finish reason."""
        provider = ScriptedProvider([ToolCallFragment(index=0, id="c1", name="get_note"), Finish(reason="stop")])

        result = await run(provider, broadcaster, [SPEC])

        assert result.finish_reason == "tool_calls"

    @pytest.mark.asyncio
    async def test_missing_finish_reason_is_inferred(self, broadcaster):
        """Test that a stream ending without a finish delta still settles."""
        result = await run(ScriptedProvider([TextToken(text="partial")]), broadcaster)

        assert result.finish_reason == "stop"
        assert result.text == "partial"

    @pytest.mark.asyncio
    async def test_length_finish_is_treated_as_stop(self, broadcaster):
        """Test that hitting the token limit ends the answer normally."""
        provider = ScriptedProvider([TextToken(text="cut off"), Finish(reason="length")])

        result = await run(provider, broadcaster)

        assert result.finish_reason == "stop"


class TestMaterializeToolCalls:
    """Tests for turning accumulators into tool calls."""

    def test_missing_id_is_generated(self):
        """Test that a call without an id gets a generated one."""
        calls = materialize_tool_calls({0: PendingToolCall(index=0, name="get_note")})

        assert calls[0].id.startswith("call_")

    def test_nameless_call_is_dropped(self):
        """Test that a call that never received a name is discarded."""
        calls = materialize_tool_calls(
            {0: PendingToolCall(index=0, id="c1"), 1: PendingToolCall(index=1, id="c2", name="get_note")}
        )

        assert [c.id for c in calls] == ["c2"]

    def test_duplicate_ids_keep_first(self):
        """Test that repeated ids are kept once."""
        calls = materialize_tool_calls(
            {
                0: PendingToolCall(index=0, id="c1", name="get_note"),
                1: PendingToolCall(index=1, id="c1", name="delete_note"),
            }
        )

        assert [(c.id, c.name) for c in calls] == [("c1", "get_note")]


class TestProviderErrors:
    """Tests for provider failures during a stream."""

    @pytest.mark.asyncio
    async def test_in_stream_error_raises_and_broadcasts(self, broadcaster, transport):
        """Test that a provider error delta aborts the dispatch."""
        provider = ScriptedProvider([TextToken(text="Hel"), ProviderError(message="overloaded", code="overloaded")])

        with pytest.raises(ProviderTransportError, match="overloaded"):
            await run(provider, broadcaster)

        assert transport.events("error")[0]["payload"]["code"] == "overloaded"

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self, broadcaster):
        """Test that a failing provider surfaces as ProviderTransportError."""
        provider = ScriptedProvider(ProviderTransportError("connection reset"))

        with pytest.raises(ProviderTransportError):
            await run(provider, broadcaster)


class TestBuildRequest:
    """Tests for request assembly."""

    def test_system_prompt_comes_first(self, broadcaster):
        """Test that instructions are prepended as a system message."""
        dispatcher = StreamDispatcher(ScriptedProvider(), broadcaster)

        request = dispatcher.build_request([Message.user("hi")], "Be brief.", PARAMETERS, None)

        assert [m.role for m in request.messages] == ["system", "user"]
        assert request.model == "test-model"
        assert request.max_tokens == 256

    def test_withheld_tools_leave_no_key(self, broadcaster):
        """Test that a request without tools carries no tools key at all."""
        dispatcher = StreamDispatcher(ScriptedProvider(), broadcaster)

        payload = dispatcher.build_request([Message.user("hi")], "Be brief.", PARAMETERS, None).to_payload()

        assert "tools" not in payload
        assert payload["stream"] is True

    def test_offered_tools_are_listed(self, broadcaster):
        """Test that offered tools appear in the payload in function form."""
        dispatcher = StreamDispatcher(ScriptedProvider(), broadcaster)

        payload = dispatcher.build_request([Message.user("hi")], "Be brief.", PARAMETERS, [SPEC]).to_payload()

        assert payload["tools"][0]["function"]["name"] == "get_note"
