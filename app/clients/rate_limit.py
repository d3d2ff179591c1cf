"""Request and token rate limiting shared by provider clients."""

import asyncio
import time
from functools import lru_cache

import tiktoken
from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from app.models.llm import CompletionRequest
from app.utils.logging import get_logger

logger = get_logger(__name__)

MIN_WAIT_SECONDS = 0.05


@lru_cache(maxsize=1)
def load_tokenizer() -> tiktoken.Encoding | None:
    """Tokenizer used for estimates; a close approximation for every provider."""
    try:
        return tiktoken.encoding_for_model("gpt-4")
    except Exception as e:
        logger.warning(f"Tokenizer unavailable, falling back to character estimates: {e}")
        return None


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a text, roughly 4 characters per token without a tokenizer."""
    tokenizer = load_tokenizer()
    if tokenizer is None:
        return len(text) // 4
    try:
        return len(tokenizer.encode(text))
    except Exception:
        return len(text) // 4


def estimate_request_tokens(request: CompletionRequest) -> int:
    """Estimate the prompt size of a completion request."""
    parts: list[str] = []
    for message in request.messages:
        if message.content:
            parts.append(message.content)
        for call in message.tool_calls or ():
            parts.append(call.name + call.arguments)
    for tool in request.tools or ():
        parts.append(tool.name + tool.description + str(tool.parameters))
    return estimate_tokens("".join(parts))


class ProviderRateLimiter:
    """Moving-window limiter over requests and estimated tokens per minute."""

    def __init__(self, requests_per_minute: int = 50, tokens_per_minute: int = 40_000):
        """Initialize rate limiter.

        Args:
            requests_per_minute: Maximum requests per minute
            tokens_per_minute: Maximum tokens per minute
        """
        self.storage = MemoryStorage()
        self.limiter = MovingWindowRateLimiter(self.storage)

        self.request_limit = parse(f"{requests_per_minute}/minute")
        self.token_limit = parse(f"{tokens_per_minute}/minute")

    async def check_rate_limit(self, estimated_tokens: int, identifier: str) -> None:
        """Wait until the request fits within both limits, then count it against them.

        A request estimated above the whole token budget is charged the budget,
        so it waits for an empty window instead of never fitting.
        """
        logger.debug(f"Checking rate limit for {estimated_tokens} tokens, identifier: {identifier}")

        while not self.limiter.hit(self.request_limit, identifier):
            await self._wait_for_window(self.request_limit, identifier, "Request")

        token_identifier = f"{identifier}_tokens"
        cost = min(max(1, estimated_tokens), self.token_limit.amount)
        while not self.limiter.hit(self.token_limit, token_identifier, cost=cost):
            await self._wait_for_window(self.token_limit, token_identifier, "Token")

    async def _wait_for_window(self, limit, identifier: str, label: str) -> None:
        window_stats = self.limiter.get_window_stats(limit, identifier)
        # reset_time is an epoch timestamp
        wait_time = max(MIN_WAIT_SECONDS, window_stats.reset_time - time.time())
        logger.warning(f"{label} rate limit exceeded for {identifier}, waiting {wait_time:.2f}s")
        await asyncio.sleep(wait_time)
