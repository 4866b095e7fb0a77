"""AI4Life legal RAG provider using httpx streaming.

The backend only speaks server-sent events, so both the blocking and the
streaming contracts read the SSE transport; the blocking one simply drains
it.  Citation markers embedded in the text are split out as they arrive.
"""

from __future__ import annotations

from typing import AsyncIterator

import httpx
import structlog

from chat_server.exceptions import ProviderError
from chat_server.models import Citation, ContextMessage

from .base import AIProvider, AIResponse, AIStreamResponse, StreamChunk, last_user_message
from .citations import CitationStream
from .framing import SSEFrameDecoder
from .transport import StreamHandle, open_stream

logger = structlog.get_logger()


class AI4LifeProvider(AIProvider):
    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        *,
        timeout: float = 90.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def generate_response(
        self, messages: list[ContextMessage], streaming: bool = False,
    ) -> AIResponse | AIStreamResponse:
        question = last_user_message(messages)
        if question is None:
            raise ProviderError("No user message found")

        handle = await open_stream(
            f"{self.base_url}/rag/chat-stream",
            {"question": question.content},
            provider="ai4life",
            timeout=self.timeout,
            transport=self._transport,
        )
        logger.info("ai4life_stream_opened", question_chars=len(question.content), streaming=streaming)

        if streaming:
            return AIStreamResponse(stream=self._iter_chunks(handle), on_close=handle.aclose)

        content: list[str] = []
        citations: list[Citation] = []
        async for chunk in self._iter_chunks(handle):
            if chunk.citation is not None:
                citations.append(chunk.citation)
            content.append(chunk.text)

        full_content = "".join(content)
        return AIResponse(
            content=full_content,
            token_count=self.count_tokens(full_content),
            citations=citations,
        )

    async def _iter_chunks(self, handle: StreamHandle) -> AsyncIterator[StreamChunk]:
        decoder = SSEFrameDecoder()
        extractor = CitationStream()
        try:
            async for delta in decoder.decode(handle.response.aiter_bytes()):
                for chunk in _to_chunks(*extractor.feed(delta)):
                    yield chunk
            for chunk in _to_chunks(*extractor.flush()):
                yield chunk
        except httpx.HTTPError as exc:
            logger.error("ai4life_stream_read_failed", error=str(exc))
            raise ProviderError(f"ai4life stream read failed: {exc}") from exc
        finally:
            await handle.aclose()


def _to_chunks(text: str, citations: list[Citation]) -> list[StreamChunk]:
    chunks = [StreamChunk(text=text)] if text else []
    chunks.extend(StreamChunk(text="", citation=c) for c in citations)
    return chunks
