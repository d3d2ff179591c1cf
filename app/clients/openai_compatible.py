"""OpenAI-compatible streaming client (OpenAI, Groq, xAI and similar endpoints)."""

import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
from openai import APIError, AsyncOpenAI

from app.clients.rate_limit import ProviderRateLimiter, estimate_request_tokens
from app.models.errors import ProviderTransportError
from app.models.llm import (
    CompletionRequest,
    Finish,
    FinishReason,
    ReasoningToken,
    StreamDelta,
    TextToken,
    ToolCallFragment,
)
from app.utils.logging import get_logger

logger = get_logger(__name__)

FINISH_REASONS: dict[str, FinishReason] = {
    "stop": "stop",
    "tool_calls": "tool_calls",
    "function_call": "tool_calls",
    "length": "length",
}


@dataclass
class OpenAICompatibleConfig:
    """Configuration for an OpenAI-compatible endpoint."""

    base_url: str | None = None
    max_retries: int = 2
    timeout: float = 60.0
    requests_per_minute: int = 50
    tokens_per_minute: int = 40_000


def decode_chunk(chunk: Any) -> list[StreamDelta]:
    """Decode one `chat.completion.chunk` into stream deltas."""
    choices = getattr(chunk, "choices", None)
    if not choices:
        return []

    choice = choices[0]
    deltas: list[StreamDelta] = []
    delta = getattr(choice, "delta", None)

    if delta is not None:
        # Reasoning models expose thoughts under one of these non-standard fields
        reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
        if reasoning:
            deltas.append(ReasoningToken(text=reasoning))

        content = getattr(delta, "content", None)
        if content:
            deltas.append(TextToken(text=content))

        for position, tool_call in enumerate(getattr(delta, "tool_calls", None) or ()):
            function = getattr(tool_call, "function", None)
            index = getattr(tool_call, "index", None)
            deltas.append(
                ToolCallFragment(
                    index=position if index is None else index,
                    id=getattr(tool_call, "id", None) or None,
                    name=getattr(function, "name", None) or None,
                    arguments=getattr(function, "arguments", None) or "",
                )
            )

    finish_reason = getattr(choice, "finish_reason", None)
    if finish_reason:
        deltas.append(Finish(reason=FINISH_REASONS.get(finish_reason, "stop")))

    return deltas


class OpenAICompatibleClient:
    """Streaming client for any endpoint speaking the chat-completions protocol."""

    name = "openai"
    rate_limiter: ProviderRateLimiter | None = None

    def __init__(self, api_key: str | None = None, config: OpenAICompatibleConfig | None = None):
        """Initialize the client.

        Args:
            api_key: API key (defaults to OPENAI_API_KEY env var)
            config: Client configuration
        """
        openai_api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not openai_api_key:
            raise ValueError("OPENAI_API_KEY environment variable is required")

        self.config = config or OpenAICompatibleConfig()
        self.client = AsyncOpenAI(
            api_key=openai_api_key,
            base_url=self.config.base_url,
            max_retries=self.config.max_retries,
            timeout=self.config.timeout,
        )
        if OpenAICompatibleClient.rate_limiter is None:
            OpenAICompatibleClient.rate_limiter = ProviderRateLimiter(
                self.config.requests_per_minute, self.config.tokens_per_minute
            )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamDelta]:
        """Stream a completion as tagged deltas.

        Raises:
            ProviderTransportError: If the request fails or the stream breaks
        """
        payload = request.to_payload()
        await self.rate_limiter.check_rate_limit(estimate_request_tokens(request), self.name)

        logger.debug(
            f"Streaming chat completion with {len(payload['messages'])} messages, "
            f"{len(payload.get('tools', []))} tools, model {request.model}"
        )

        try:
            response = await self.client.chat.completions.create(**payload)
        except (APIError, httpx.TransportError) as e:
            logger.error(f"Chat completion request failed: {e}")
            raise ProviderTransportError(str(e), getattr(e, "status_code", None), self.name) from e

        try:
            async for chunk in response:
                for delta in decode_chunk(chunk):
                    yield delta
        except (APIError, httpx.TransportError) as e:
            logger.error(f"Chat completion stream aborted: {e}")
            raise ProviderTransportError(str(e), getattr(e, "status_code", None), self.name) from e
        finally:
            await response.close()
