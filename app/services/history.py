"""History manager: the single mutation point of a conversation."""

from collections.abc import Callable
from enum import StrEnum

from app.models.errors import InvalidMessageSequence
from app.models.messages import Message, ToolCallRequest
from app.models.session import Conversation
from app.utils.logging import get_logger

logger = get_logger(__name__)

HistoryObserver = Callable[[Message], None]


class TruncationStrategy(StrEnum):
    """Which part of an over-long history survives truncation."""

    KEEP_LATEST = "keep_latest"
    KEEP_OLDEST = "keep_oldest"
    KEEP_MIDDLE = "keep_middle"


def group_blocks(messages: list[Message]) -> list[list[Message]]:
    """Split messages into atomic blocks.

    An assistant message carrying tool calls forms one block together with the
    tool messages that answer it; every other message is a block on its own.
    """
    blocks: list[list[Message]] = []
    open_block: list[Message] | None = None
    outstanding: set[str] = set()

    for message in messages:
        if message.role == "tool" and open_block is not None and message.tool_call_id in outstanding:
            open_block.append(message)
            outstanding.discard(message.tool_call_id)
            if not outstanding:
                open_block = None
            continue

        block = [message]
        blocks.append(block)
        if message.has_tool_calls:
            open_block = block
            outstanding = {call.id for call in message.tool_calls}
        else:
            open_block = None
            outstanding = set()

    return blocks


def check_pairing(messages: list[Message]) -> None:
    """Raise InvalidMessageSequence unless every call/result pair in `messages` is complete.

    Used for standalone batches (persistence) as well as full histories.
    """
    outstanding: dict[str, ToolCallRequest] = {}
    answered: set[str] = set()

    for position, message in enumerate(messages):
        if message.role == "tool":
            call = outstanding.pop(message.tool_call_id, None)
            if call is None:
                state = "already answered" if message.tool_call_id in answered else "unknown"
                raise InvalidMessageSequence(
                    f"Tool message at position {position} answers {state} call {message.tool_call_id}"
                )
            if call.name != message.name:
                raise InvalidMessageSequence(
                    f"Tool message at position {position} names {message.name} but call "
                    f"{call.id} was for {call.name}"
                )
            answered.add(call.id)
            continue

        if outstanding:
            raise InvalidMessageSequence(
                f"Message at position {position} appended while calls {sorted(outstanding)} are unanswered"
            )
        if message.has_tool_calls:
            for call in message.tool_calls:
                if call.id in answered or call.id in outstanding:
                    raise InvalidMessageSequence(f"Duplicate tool call id {call.id}")
                outstanding[call.id] = call

    if outstanding:
        raise InvalidMessageSequence(f"Tool calls {sorted(outstanding)} have no answering tool message")


class HistoryManager:
    """Owns the ordered message sequence of one conversation.

    Every mutation of `conversation.messages` goes through `append`, `truncate`
    or `rollback`. Observers registered with `subscribe` are notified of each
    appended message.
    """

    def __init__(
        self, conversation: Conversation, strategy: TruncationStrategy | str = TruncationStrategy.KEEP_LATEST
    ):
        self.conversation = conversation
        self.strategy = TruncationStrategy(strategy)
        self._observers: list[HistoryObserver] = []
        self._outstanding: dict[str, ToolCallRequest] = {}
        self._seen_ids: set[str] = set()
        self._rebuild_index()

    @property
    def messages(self) -> list[Message]:
        return self.conversation.messages

    @property
    def outstanding_calls(self) -> list[ToolCallRequest]:
        """Tool calls still waiting for their tool message, in request order."""
        return list(self._outstanding.values())

    def subscribe(self, observer: HistoryObserver) -> None:
        self._observers.append(observer)

    def snapshot(self) -> list[Message]:
        """Copy of the current messages, safe to hand to a provider request."""
        return list(self.conversation.messages)

    def append(self, message: Message) -> None:
        """Append a message after checking the call/result pairing rules.

        Raises:
            InvalidMessageSequence: If the message would break the pairing of
                tool calls and tool results
        """
        if message.role == "tool":
            call = self._outstanding.get(message.tool_call_id)
            if call is None:
                state = "already answered" if message.tool_call_id in self._seen_ids else "unknown"
                logger.error(f"Rejected tool message for {state} call {message.tool_call_id}")
                raise InvalidMessageSequence(f"Tool message answers {state} call {message.tool_call_id}")
            if call.name != message.name:
                raise InvalidMessageSequence(
                    f"Tool message names {message.name} but call {call.id} was for {call.name}"
                )
            del self._outstanding[call.id]
        else:
            if self._outstanding:
                pending = ", ".join(self._outstanding)
                logger.error(f"Rejected {message.role} message while calls are unanswered: {pending}")
                raise InvalidMessageSequence(
                    f"Cannot append a {message.role} message while calls are unanswered: {pending}"
                )
            if message.has_tool_calls:
                ids = [call.id for call in message.tool_calls]
                duplicates = [call_id for call_id in ids if call_id in self._seen_ids or ids.count(call_id) > 1]
                if duplicates:
                    raise InvalidMessageSequence(f"Duplicate tool call ids: {', '.join(sorted(set(duplicates)))}")
                for call in message.tool_calls:
                    self._outstanding[call.id] = call
                    self._seen_ids.add(call.id)

        self.conversation.messages.append(message)
        for observer in self._observers:
            observer(message)

    def validate(self) -> None:
        """Check the whole history, tolerating calls still being answered at the tail."""
        messages = self.conversation.messages
        if self._outstanding:
            # The tail block is still open; check everything before it
            cut = max(i for i, m in enumerate(messages) if m.has_tool_calls)
            check_pairing(messages[:cut])
        else:
            check_pairing(messages)

    def mark(self) -> int:
        """Position to roll back to if the current turn is abandoned."""
        return len(self.conversation.messages)

    def messages_since(self, mark: int) -> list[Message]:
        return list(self.conversation.messages[mark:])

    def rollback(self, mark: int) -> list[Message]:
        """Drop every message appended after `mark` and return them."""
        dropped = self.conversation.messages[mark:]
        del self.conversation.messages[mark:]
        self._rebuild_index()
        if dropped:
            logger.info(f"Rolled back {len(dropped)} messages in conversation {self.conversation.id}")
        return dropped

    def truncate(self, limit: int | None = None) -> int:
        """Bring the history down to `limit` messages without splitting call/result blocks.

        The most recent block is always kept whole, even if it alone exceeds the
        limit. Returns the number of messages dropped.
        """
        if limit is None:
            limit = self.conversation.history_limit
        if limit < 1:
            raise ValueError("limit must be a positive integer")

        messages = self.conversation.messages
        if len(messages) <= limit:
            return 0

        blocks = group_blocks(messages)
        match self.strategy:
            case TruncationStrategy.KEEP_LATEST:
                kept = _take_latest(blocks, limit)
            case TruncationStrategy.KEEP_OLDEST:
                kept = _take_oldest(blocks, limit)
            case TruncationStrategy.KEEP_MIDDLE:
                kept = _take_middle(blocks, limit)

        survivors = [message for block in kept for message in block]
        dropped = len(messages) - len(survivors)
        self.conversation.messages[:] = survivors
        self._rebuild_index()
        logger.info(
            f"Truncated conversation {self.conversation.id} with {self.strategy}: "
            f"dropped {dropped}, kept {len(survivors)}"
        )
        return dropped

    def _rebuild_index(self) -> None:
        self._outstanding = {}
        self._seen_ids = set()
        for message in self.conversation.messages:
            if message.has_tool_calls:
                for call in message.tool_calls:
                    self._outstanding[call.id] = call
                    self._seen_ids.add(call.id)
            elif message.role == "tool":
                self._outstanding.pop(message.tool_call_id, None)


def _size(blocks: list[list[Message]]) -> int:
    return sum(len(block) for block in blocks)


def _take_latest(blocks: list[list[Message]], limit: int) -> list[list[Message]]:
    kept = [blocks[-1]]
    for block in reversed(blocks[:-1]):
        if _size(kept) + len(block) > limit:
            break
        kept.insert(0, block)
    return kept


def _take_oldest(blocks: list[list[Message]], limit: int) -> list[list[Message]]:
    latest = blocks[-1]
    kept: list[list[Message]] = []
    for block in blocks[:-1]:
        if _size(kept) + len(block) + len(latest) > limit:
            break
        kept.append(block)
    return [*kept, latest]


def _take_middle(blocks: list[list[Message]], limit: int) -> list[list[Message]]:
    """Keep a window centred on the middle of the history, plus the latest block."""
    latest = blocks[-1]
    earlier = blocks[:-1]
    budget = limit - len(latest)
    if budget <= 0 or not earlier:
        return [latest]

    centre = len(earlier) // 2
    if len(earlier[centre]) > budget:
        return [latest]

    # Grow outward from the centre, newer side first
    low, high = centre, centre + 1
    while True:
        grew = False
        if high < len(earlier) and _size(earlier[low:high]) + len(earlier[high]) <= budget:
            high += 1
            grew = True
        if low > 0 and _size(earlier[low:high]) + len(earlier[low - 1]) <= budget:
            low -= 1
            grew = True
        if not grew:
            break
    return [*earlier[low:high], latest]
