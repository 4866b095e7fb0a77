"""Forward a live provider stream to the caller and persist it once at the end.

The assistant message only exists in storage after the provider stream ends
normally.  If the consumer stops iterating first, the HTTP response is
released and nothing is saved: the partial answer and its token usage are
dropped.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, Callable

import structlog

from chat_server.exceptions import PersistenceError
from chat_server.models import Citation, Message, MessageRole
from chat_server.providers.base import AIStreamResponse, StreamChunk
from chat_server.repositories import CitationRepository, MessageRepository
from chat_server.tokens import count_tokens

if TYPE_CHECKING:
    from chat_server.services.chat_service import ChatService

logger = structlog.get_logger()


class BridgeState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    DONE = "done"


class StreamPersistBridge:
    """Single-use wrapper around one :class:`AIStreamResponse`.

    Iterate :meth:`stream` to receive chunks in provider order.  Once the
    source is exhausted the accumulated text is saved as an assistant
    message (with its citations) and the conversation total is recomputed;
    a failure there is raised from the iterator after the last chunk has
    already been delivered.
    """

    def __init__(
        self,
        response: AIStreamResponse,
        conversation_id: str,
        *,
        messages: MessageRepository,
        citations: CitationRepository,
        chat_service: ChatService,
        token_counter: Callable[[str], int] = count_tokens,
    ) -> None:
        self._response = response
        self._conversation_id = conversation_id
        self._messages = messages
        self._citations = citations
        self._chat_service = chat_service
        self._count_tokens = token_counter
        self.state = BridgeState.PENDING
        self.message: Message | None = None

    async def stream(self) -> AsyncIterator[StreamChunk]:
        if self.state is not BridgeState.PENDING:
            raise RuntimeError("StreamPersistBridge.stream() can only be consumed once")

        self.state = BridgeState.STREAMING
        parts: list[str] = []
        found: list[Citation] = []

        try:
            async for chunk in self._response.stream:
                if chunk.text:
                    parts.append(chunk.text)
                if chunk.citation is not None:
                    found.append(chunk.citation)
                yield chunk
        except GeneratorExit:
            logger.info(
                "stream_abandoned",
                conversation_id=self._conversation_id,
                chars_dropped=sum(len(p) for p in parts),
            )
            raise
        finally:
            await self._response.aclose()

        self.state = BridgeState.FINALIZING
        self.message = await self._finalize("".join(parts), found)
        self.state = BridgeState.DONE

    async def aclose(self) -> None:
        """Release the provider response, including when stream() never started."""
        await self._response.aclose()

    async def _finalize(self, content: str, found: list[Citation]) -> Message:
        token_count = self._count_tokens(content)
        self._response.total_tokens = token_count

        try:
            message = await self._messages.create(
                self._conversation_id, MessageRole.ASSISTANT, content, token_count,
            )
            await self._citations.create_many(message.id, found)
            await self._chat_service.update_conversation_tokens(self._conversation_id)
        except Exception as exc:
            logger.exception("assistant_message_persist_failed", conversation_id=self._conversation_id)
            raise PersistenceError(
                f"Failed to persist assistant message for conversation {self._conversation_id}"
            ) from exc

        message.citations = found
        logger.info(
            "assistant_message_persisted",
            conversation_id=self._conversation_id,
            message_id=message.id,
            token_count=token_count,
            citation_count=len(found),
        )
        return message
