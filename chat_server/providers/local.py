"""Local model-server provider (Ollama-style ``/chat`` endpoint)."""

from __future__ import annotations

import json
from typing import AsyncIterator

import httpx
import structlog

from chat_server.exceptions import ProviderError
from chat_server.models import ContextMessage

from .base import AIProvider, AIResponse, AIStreamResponse, StreamChunk
from .framing import NDJSONDecoder
from .transport import StreamHandle, open_stream

logger = structlog.get_logger()

SYSTEM_PROMPT = """\
You are a legal information assistant for Vietnamese law.

IMPORTANT DISCLAIMERS:
1. You are NOT a replacement for advice from a qualified lawyer.
2. Encourage users to consult a legal professional for decisions with legal consequences.
3. Do not present general information as a definitive legal opinion.

GUIDELINES:
1. Ask clarifying questions when the facts of the situation are unclear.
2. Refer to the relevant chapter, article and clause when you know them.
3. Say so plainly when you are unsure or when the law may have changed.
4. Keep answers concise and neutral."""


class LocalProvider(AIProvider):
    def __init__(
        self,
        base_url: str = "http://localhost:11434/api",
        model: str = "llama2",
        *,
        timeout: float = 90.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._transport = transport

    async def generate_response(
        self, messages: list[ContextMessage], streaming: bool = False,
    ) -> AIResponse | AIStreamResponse:
        payload = {
            "model": self.model,
            "messages": [{"role": "system", "content": SYSTEM_PROMPT}]
            + [{"role": m.role.value, "content": m.content} for m in messages],
            "stream": streaming,
        }
        handle = await open_stream(
            f"{self.base_url}/chat",
            payload,
            provider="local_ai",
            timeout=self.timeout,
            transport=self._transport,
        )
        logger.info("local_ai_request_sent", model=self.model, message_count=len(messages), streaming=streaming)

        if streaming:
            return AIStreamResponse(stream=self._iter_chunks(handle), on_close=handle.aclose)

        try:
            body = await handle.response.aread()
        except httpx.HTTPError as exc:
            raise ProviderError(f"local_ai response read failed: {exc}") from exc
        finally:
            await handle.aclose()

        try:
            data = json.loads(body)
        except json.JSONDecodeError as exc:
            logger.error("local_ai_invalid_body", body=body.decode(errors="replace")[:500])
            raise ProviderError("local_ai returned a non-JSON body") from exc

        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        content = content if isinstance(content, str) else ""
        return AIResponse(content=content, token_count=self.count_tokens(content))

    async def _iter_chunks(self, handle: StreamHandle) -> AsyncIterator[StreamChunk]:
        decoder = NDJSONDecoder()
        try:
            async for delta in decoder.decode(handle.response.aiter_bytes()):
                yield StreamChunk(text=delta)
        except httpx.HTTPError as exc:
            logger.error("local_ai_stream_read_failed", error=str(exc))
            raise ProviderError(f"local_ai stream read failed: {exc}") from exc
        finally:
            await handle.aclose()
