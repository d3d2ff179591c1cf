"""Anti-loop guard capping tool-call rounds per user turn."""

from app.models.llm import ToolSpec
from app.models.messages import Message
from app.services.history import HistoryManager
from app.utils.logging import get_logger

logger = get_logger(__name__)


class AntiLoopGuard:
    """Decides whether the next model invocation may be offered tools.

    The round counter lives on the conversation and is reset whenever a user
    message is appended to the history.
    """

    def __init__(self, history: HistoryManager, max_tool_rounds: int = 1):
        if max_tool_rounds < 0:
            raise ValueError("max_tool_rounds cannot be negative")
        self.history = history
        self.max_tool_rounds = max_tool_rounds
        history.subscribe(self._on_append)

    @property
    def rounds_used(self) -> int:
        return self.history.conversation.tool_round_count

    def tools_allowed(self) -> bool:
        return self.rounds_used < self.max_tool_rounds

    def record_tool_round(self) -> None:
        """Count one executed tool round for the current turn."""
        self.history.conversation.tool_round_count += 1
        logger.debug(
            f"Conversation {self.history.conversation.id} used tool round "
            f"{self.rounds_used}/{self.max_tool_rounds}"
        )

    def offered_tools(self, specs: list[ToolSpec]) -> list[ToolSpec] | None:
        """Tool list for the next request, or None when tools are withheld.

        An agent with no tools also gets None so the request carries no
        `tools` key at all.
        """
        if not specs or not self.tools_allowed():
            return None
        return list(specs)

    def _on_append(self, message: Message) -> None:
        if message.role == "user" and self.history.conversation.tool_round_count:
            logger.debug(f"Resetting tool rounds for conversation {self.history.conversation.id}")
            self.history.conversation.tool_round_count = 0
