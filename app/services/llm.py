"""LLM provider selection."""

from app.clients.anthropic import AnthropicClient
from app.clients.base import LLMProvider
from app.clients.openai_compatible import OpenAICompatibleClient, OpenAICompatibleConfig
from app.models.agent import OrchestratorSettings
from app.utils.logging import get_logger

logger = get_logger(__name__)


def create_llm_provider(settings: OrchestratorSettings) -> LLMProvider:
    """Build the provider client named by the settings.

    Raises:
        ValueError: If the provider is unknown or its API key is missing
    """
    match settings.provider:
        case "anthropic":
            provider: LLMProvider = AnthropicClient()
        case "openai" | "groq" | "xai":
            provider = OpenAICompatibleClient(config=OpenAICompatibleConfig(base_url=settings.base_url))
        case _:
            raise ValueError(f"Unknown LLM provider: {settings.provider}")

    logger.info(f"Using {provider.name} provider")
    return provider


_llm_provider: LLMProvider | None = None


def get_llm_provider(settings: OrchestratorSettings | None = None) -> LLMProvider:
    """Get or create the process-wide provider instance."""
    global _llm_provider
    if _llm_provider is None:
        _llm_provider = create_llm_provider(settings or OrchestratorSettings.from_env())
    return _llm_provider
