"""Tests for the history manager and truncation strategies."""

import pytest

from app.models.errors import InvalidMessageSequence
from app.models.messages import Message, ToolCallRequest
from app.models.session import Conversation
from app.services.history import HistoryManager, TruncationStrategy, check_pairing, group_blocks


def call(call_id: str, name: str = "get_note") -> ToolCallRequest:
    return ToolCallRequest(id=call_id, name=name, arguments='{"note": "inbox"}')


def tool_round(*call_ids: str) -> list[Message]:
    calls = [call(call_id) for call_id in call_ids]
    return [Message.assistant_tool_calls(calls), *(Message.tool(c, '{"success": true}') for c in calls)]


@pytest.fixture
def history() -> HistoryManager:
    return HistoryManager(Conversation(id="conv-1", history_limit=30))


def fill(history: HistoryManager, messages: list[Message]) -> None:
    for message in messages:
        history.append(message)


class TestAppendPairing:
    """Tests for call/result pairing enforced on append."""

    def test_complete_round_is_accepted(self, history):
        """Test that a tool round followed by an answer appends cleanly."""
        fill(history, [Message.user("hi"), *tool_round("c1", "c2"), Message.assistant("done")])

        assert len(history.messages) == 5
        assert history.outstanding_calls == []
        history.validate()

    def test_outstanding_calls_are_tracked_in_order(self, history):
        """Test that unanswered calls are reported in request order."""
        history.append(Message.user("hi"))
        history.append(Message.assistant_tool_calls([call("c1"), call("c2")]))
        history.append(Message.tool(call("c1"), "ok"))

        assert [c.id for c in history.outstanding_calls] == ["c2"]

    def test_tool_message_for_unknown_call_is_rejected(self, history):
        """Test that a tool result without a matching call fails."""
        history.append(Message.user("hi"))

        with pytest.raises(InvalidMessageSequence, match="unknown"):
            history.append(Message.tool(call("nope"), "ok"))

    def test_tool_message_answering_twice_is_rejected(self, history):
        """Test that a call can only be answered once."""
        fill(history, [Message.user("hi"), *tool_round("c1")])

        with pytest.raises(InvalidMessageSequence, match="already answered"):
            history.append(Message.tool(call("c1"), "again"))

    def test_tool_name_must_match_call(self, history):
        """Test that the tool message names the tool of its call."""
        history.append(Message.assistant_tool_calls([call("c1", "get_note")]))

        with pytest.raises(InvalidMessageSequence, match="names"):
            history.append(Message.tool(call("c1", "delete_note"), "ok"))

    def test_message_while_calls_outstanding_is_rejected(self, history):
        """Test that nothing but tool results may follow unanswered calls."""
        history.append(Message.assistant_tool_calls([call("c1")]))

        with pytest.raises(InvalidMessageSequence, match="unanswered"):
            history.append(Message.assistant("too early"))

    def test_duplicate_call_ids_are_rejected(self, history):
        """Test that a call id cannot be reused within a conversation."""
        fill(history, [Message.user("hi"), *tool_round("c1")])

        with pytest.raises(InvalidMessageSequence, match="Duplicate"):
            history.append(Message.assistant_tool_calls([call("c1")]))

    def test_rejected_message_is_not_stored(self, history):
        """Test that a rejected append leaves the history unchanged."""
        history.append(Message.assistant_tool_calls([call("c1")]))

        with pytest.raises(InvalidMessageSequence):
            history.append(Message.user("interrupting"))

        assert len(history.messages) == 1

    def test_observers_see_each_append(self, history):
        """Test that subscribers are notified of appended messages."""
        seen = []
        history.subscribe(lambda message: seen.append(message.role))

        fill(history, [Message.user("hi"), Message.assistant("hello")])

        assert seen == ["user", "assistant"]

    def test_validate_tolerates_open_tail(self, history):
        """Test that calls still being answered at the tail are not a violation."""
        history.append(Message.user("hi"))
        history.append(Message.assistant_tool_calls([call("c1")]))

        history.validate()


class TestCheckPairing:
    """Tests for standalone batch validation."""

    def test_unanswered_call_at_end_fails(self):
        """Test that a batch cannot end with unanswered calls."""
        with pytest.raises(InvalidMessageSequence, match="no answering"):
            check_pairing([Message.user("hi"), Message.assistant_tool_calls([call("c1")])])

    def test_orphan_tool_message_fails(self):
        """Test that a batch cannot start with a tool message."""
        with pytest.raises(InvalidMessageSequence):
            check_pairing([Message.tool(call("c1"), "ok")])


class TestRollback:
    """Tests for marks and rollback."""

    def test_rollback_restores_previous_state(self, history):
        """Test that rollback drops everything after the mark."""
        history.append(Message.user("first"))
        mark = history.mark()
        history.append(Message.user("second"))
        history.append(Message.assistant_tool_calls([call("c1")]))

        dropped = history.rollback(mark)

        assert [m.role for m in dropped] == ["user", "assistant"]
        assert [m.content for m in history.messages] == ["first"]
        assert history.outstanding_calls == []

    def test_rolled_back_call_ids_can_be_reused(self, history):
        """Test that ids of abandoned calls are forgotten."""
        mark = history.mark()
        history.append(Message.assistant_tool_calls([call("c1")]))
        history.rollback(mark)

        history.append(Message.assistant_tool_calls([call("c1")]))

    def test_messages_since(self, history):
        """Test that messages after a mark are returned in order."""
        history.append(Message.user("old"))
        mark = history.mark()
        history.append(Message.user("new"))

        assert [m.content for m in history.messages_since(mark)] == ["new"]


class TestGroupBlocks:
    """Tests for atomic block grouping."""

    def test_tool_round_is_one_block(self):
        """Test that a tool-calling message and its results stay together."""
        messages = [Message.user("hi"), *tool_round("c1", "c2"), Message.assistant("done")]

        assert [len(block) for block in group_blocks(messages)] == [1, 3, 1]


class TestTruncation:
    """Tests for the truncation strategies."""

    @pytest.fixture
    def messages(self) -> list[Message]:
        # Blocks: [u0] [a0] [u1] [tool round c1] [a1]
        return [
            Message.user("u0"),
            Message.assistant("a0"),
            Message.user("u1"),
            *tool_round("c1"),
            Message.assistant("a1"),
        ]

    def test_under_limit_is_untouched(self, history, messages):
        """Test that a short history is not truncated."""
        fill(history, messages)

        assert history.truncate(10) == 0
        assert len(history.messages) == 6

    def test_keep_latest(self, history, messages):
        """Test that keep_latest keeps the newest whole blocks."""
        fill(history, messages)

        dropped = history.truncate(4)

        assert dropped == 2
        assert [m.role for m in history.messages] == ["user", "assistant", "tool", "assistant"]
        assert history.messages[0].content == "u1"

    def test_keep_latest_never_splits_a_round(self, history, messages):
        """Test that a round that does not fit is dropped as a whole."""
        fill(history, messages)

        history.truncate(2)

        assert [m.content for m in history.messages] == ["a1"]
        history.validate()

    def test_keep_oldest(self, messages):
        """Test that keep_oldest keeps the earliest blocks plus the latest one."""
        history = HistoryManager(Conversation(id="conv-2"), TruncationStrategy.KEEP_OLDEST)
        fill(history, messages)

        history.truncate(4)

        assert [m.content for m in history.messages] == ["u0", "a0", "u1", "a1"]

    def test_keep_middle(self):
        """Test that keep_middle keeps a centred window plus the latest block."""
        history = HistoryManager(Conversation(id="conv-3"), "keep_middle")
        for i in range(9):
            history.append(Message.user(f"m{i}") if i % 2 == 0 else Message.assistant(f"m{i}"))

        history.truncate(5)

        assert [m.content for m in history.messages] == ["m3", "m4", "m5", "m6", "m8"]

    def test_latest_block_is_kept_even_when_too_large(self, history):
        """Test that the most recent block survives even above the limit."""
        fill(history, [Message.user("hi"), *tool_round("c1", "c2")])

        history.truncate(2)

        assert [m.role for m in history.messages] == ["assistant", "tool", "tool"]

    def test_default_limit_comes_from_conversation(self):
        """Test that truncate uses the conversation's history limit by default."""
        history = HistoryManager(Conversation(id="conv-4", history_limit=2))
        fill(history, [Message.user("a"), Message.assistant("b"), Message.user("c")])

        assert history.truncate() == 1
        assert [m.content for m in history.messages] == ["b", "c"]

    def test_truncated_history_accepts_new_rounds(self, history, messages):
        """Test that the pairing index is rebuilt after truncation."""
        fill(history, messages)
        history.truncate(3)

        fill(history, [Message.user("again"), *tool_round("c2"), Message.assistant("ok")])
        history.validate()

    @pytest.mark.parametrize("limit", [0, -3])
    def test_non_positive_limit_is_rejected(self, history, messages, limit):
        """Test that an explicit zero or negative limit is an error, not the default."""
        fill(history, messages)

        with pytest.raises(ValueError, match="positive"):
            history.truncate(limit)
        assert len(history.messages) == 6
