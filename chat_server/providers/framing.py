"""Line framing for provider response bodies.

Both backends deliver newline-terminated records over a chunked HTTP body:
the remote RAG service uses server-sent-event ``data:`` lines, the local
model server uses newline-delimited JSON.  Network buffers do not respect
line (or even UTF-8 character) boundaries, so each decoder keeps a
carry-over buffer and only ever acts on complete lines.
"""

from __future__ import annotations

import codecs
import json
from typing import Any, AsyncIterable, AsyncIterator

import structlog

logger = structlog.get_logger()

SSE_DATA_PREFIX = "data: "
SSE_DONE_SENTINEL = "data: [DONE]"


class LineBuffer:
    """Incrementally split a byte stream into complete text lines.

    The trailing partial line is retained until its newline arrives and is
    dropped if the stream ends first.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._carry = ""

    def feed(self, data: bytes) -> list[str]:
        self._carry += self._decoder.decode(data)
        *lines, self._carry = self._carry.split("\n")
        return lines

    def clear(self) -> None:
        self._carry = ""
        self._decoder.reset()


class _FrameDecoder:
    """Shared single-use plumbing for the line-oriented decoders."""

    def __init__(self) -> None:
        self._lines = LineBuffer()
        self._used = False
        self.done = False

    def feed(self, data: bytes) -> list[str]:
        """Consume one network buffer and return the text deltas it completes."""
        if self.done:
            return []

        deltas: list[str] = []
        for raw_line in self._lines.feed(data):
            line = raw_line.strip()
            if not line:
                continue
            if self._is_terminator(line):
                self.done = True
                self._lines.clear()
                break
            delta = self._parse_line(line)
            if delta:
                deltas.append(delta)
            if self.done:
                self._lines.clear()
                break
        return deltas

    async def decode(self, chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
        """Yield text deltas from *chunks* until the body or sentinel ends it."""
        if self._used:
            raise RuntimeError(f"{type(self).__name__} instances are single-use")
        self._used = True

        async for data in chunks:
            for delta in self.feed(data):
                yield delta
            if self.done:
                return

    def _is_terminator(self, line: str) -> bool:
        return False

    def _parse_line(self, line: str) -> str | None:
        raise NotImplementedError


class SSEFrameDecoder(_FrameDecoder):
    """Decode ``data: {"text": ...}`` events terminated by ``data: [DONE]``."""

    def _is_terminator(self, line: str) -> bool:
        return line == SSE_DONE_SENTINEL

    def _parse_line(self, line: str) -> str | None:
        if not line.startswith(SSE_DATA_PREFIX):
            return None

        payload = _loads_object(line[len(SSE_DATA_PREFIX):], line)
        if payload is None:
            return None

        text = payload.get("text")
        return text if isinstance(text, str) else None


class NDJSONDecoder(_FrameDecoder):
    """Decode ``{"message": {"content": ...}}`` lines from the local model server."""

    def _parse_line(self, line: str) -> str | None:
        payload = _loads_object(line, line)
        if payload is None:
            return None

        message = payload.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if payload.get("done") is True:
            self.done = True
        return content if isinstance(content, str) else None


def _loads_object(data: str, line: str) -> dict[str, Any] | None:
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.warning("stream_line_parse_failed", line=line[:200])
        return None

    if not isinstance(payload, dict):
        logger.warning("stream_line_not_object", line=line[:200])
        return None
    return payload
