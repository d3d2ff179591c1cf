"""Agent and orchestrator configuration values."""

import os
from dataclasses import dataclass, field

DEFAULT_INSTRUCTIONS = (
    "You are a helpful writing assistant working inside the user's notes workspace. "
    "Notes live in folders, and folders live in containers. "
    "Use the available tools to read or change the workspace when the user asks for it, "
    "then confirm what you did in one or two sentences, quoting identifiers you received. "
    "If a tool result starts with 'FAILED:', explain the failure plainly and do not retry on your own."
)


@dataclass(frozen=True)
class ModelParameters:
    """Sampling parameters sent with every completion request."""

    model: str = "claude-3-5-sonnet-20241022"
    temperature: float = 0.7
    max_tokens: int = 4000
    top_p: float = 1.0


@dataclass(frozen=True)
class AgentConfig:
    """Agent definition bound to a session.

    `capabilities` lists tool groups (`notes`, `folders`, `containers`), exact
    tool names, or `*` for every registered tool.
    """

    name: str = "default"
    instructions: str = DEFAULT_INSTRUCTIONS
    capabilities: tuple[str, ...] = ("notes", "folders", "containers")
    parameters: ModelParameters = field(default_factory=ModelParameters)


@dataclass(frozen=True)
class OrchestratorSettings:
    """Process-wide settings, read once from the environment."""

    provider: str = "anthropic"
    model: str | None = None
    base_url: str | None = None
    history_limit: int = 30
    history_strategy: str = "keep_latest"
    max_tool_rounds: int = 1
    tool_result_max_bytes: int = 16_384
    provider_retry_delay: float = 1.0
    broadcast_timeout: float = 0.5
    broadcast_max_pending: int = 1000
    redis_url: str | None = None

    def __post_init__(self) -> None:
        if self.history_limit < 1:
            raise ValueError("history_limit must be a positive integer")
        if self.max_tool_rounds < 0:
            raise ValueError("max_tool_rounds cannot be negative")
        if self.tool_result_max_bytes < 1:
            raise ValueError("tool_result_max_bytes must be positive")
        if self.broadcast_max_pending < 1:
            raise ValueError("broadcast_max_pending must be positive")

    @classmethod
    def from_env(cls) -> "OrchestratorSettings":
        """Build settings from environment variables, keeping defaults for unset ones."""
        return cls(
            provider=os.getenv("LLM_PROVIDER", "anthropic").lower(),
            model=os.getenv("LLM_MODEL") or None,
            base_url=os.getenv("LLM_BASE_URL") or None,
            history_limit=int(os.getenv("HISTORY_LIMIT", "30")),
            history_strategy=os.getenv("HISTORY_STRATEGY", "keep_latest"),
            max_tool_rounds=int(os.getenv("MAX_TOOL_ROUNDS", "1")),
            tool_result_max_bytes=int(os.getenv("TOOL_RESULT_MAX_BYTES", "16384")),
            provider_retry_delay=float(os.getenv("PROVIDER_RETRY_DELAY", "1.0")),
            broadcast_timeout=float(os.getenv("BROADCAST_TIMEOUT", "0.5")),
            broadcast_max_pending=int(os.getenv("BROADCAST_MAX_PENDING", "1000")),
            redis_url=os.getenv("REDIS_URL") or None,
        )

    def default_agent(self) -> AgentConfig:
        """Agent used when a session is created without an explicit one."""
        if self.model:
            return AgentConfig(parameters=ModelParameters(model=self.model))
        return AgentConfig()
