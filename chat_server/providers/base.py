"""Abstract base class for AI chat providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable

from chat_server.models import Citation, ContextMessage, MessageRole
from chat_server.tokens import count_tokens


@dataclass
class AIResponse:
    """A complete (non-streamed) provider answer."""

    content: str
    token_count: int
    citations: list[Citation] = field(default_factory=list)


@dataclass
class StreamChunk:
    """One live fragment: prose text, or a citation with empty text."""

    text: str
    citation: Citation | None = None


@dataclass
class AIStreamResponse:
    """A live fragment stream plus the hook that releases its HTTP response.

    ``aclose()`` must be safe to call whether or not the stream was iterated,
    and more than once.
    """

    stream: AsyncIterator[StreamChunk]
    total_tokens: int = 0  # known only once the stream has been consumed
    on_close: Callable[[], Awaitable[None]] | None = None

    async def aclose(self) -> None:
        aclose = getattr(self.stream, "aclose", None)
        if aclose is not None:
            await aclose()
        if self.on_close is not None:
            await self.on_close()


class AIProvider(ABC):
    """Provider interface for chat completions.

    ``generate_response`` returns an :class:`AIResponse` when *streaming* is
    false and an :class:`AIStreamResponse` otherwise.  Transport failures
    raise :class:`~chat_server.exceptions.ProviderError` from the call
    itself, before any stream is handed out.
    """

    @abstractmethod
    async def generate_response(
        self, messages: list[ContextMessage], streaming: bool = False,
    ) -> AIResponse | AIStreamResponse:
        ...

    def count_tokens(self, text: str) -> int:
        return count_tokens(text)


def last_user_message(messages: list[ContextMessage]) -> ContextMessage | None:
    """Return the most recent user turn in *messages*, if any."""
    for message in reversed(messages):
        if message.role == MessageRole.USER:
            return message
    return None
