"""Provider protocol shared by the streaming LLM clients."""

from collections.abc import AsyncIterator
from typing import Protocol

from app.models.llm import CompletionRequest, StreamDelta


class LLMProvider(Protocol):
    """A streaming chat-completion provider.

    `stream` yields tagged deltas decoded from the provider's wire format. The
    iterator is finite and cannot be restarted; closing it aborts the upstream
    request.
    """

    name: str

    def stream(self, request: CompletionRequest) -> AsyncIterator[StreamDelta]:
        ...
