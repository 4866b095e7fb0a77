"""Inline citation extraction for remote provider output.

The RAG backend interleaves flat JSON citation objects with prose in the
same text channel, e.g.::

    Theo quy định {"dieu": 5, "start_char": 120, "end_char": 180} thì ...

Accepted objects are removed outright so the narrative reads naturally.
"""

from __future__ import annotations

import json
import re

import structlog
from pydantic import ValidationError

from chat_server.models import Citation

logger = structlog.get_logger()

# Flat objects only: no braces allowed inside the match.
_CITATION_RE = re.compile(r'\{[^{}]*"start_char"[^{}]*\}')

# Longest unclosed "{...": held back waiting for its closing brace.
MAX_MARKER_LENGTH = 2048


def parse_citation(candidate: str) -> Citation | None:
    """Parse one candidate marker, or return None if it is not a valid citation."""
    try:
        return Citation.model_validate(json.loads(candidate))
    except (json.JSONDecodeError, ValidationError, TypeError):
        logger.debug("citation_candidate_rejected", candidate=candidate[:200])
        return None


def extract_citations(text: str) -> tuple[str, list[Citation]]:
    """Split *text* into cleaned prose and the citations embedded in it.

    Citations are returned in the order their markers appear.  Candidates
    that fail to parse are left in the text untouched.
    """
    citations: list[Citation] = []
    parts: list[str] = []
    pos = 0

    for match in _CITATION_RE.finditer(text):
        citation = parse_citation(match.group(0))
        if citation is None:
            continue
        citations.append(citation)
        parts.append(text[pos:match.start()])
        pos = match.end()

    if not citations:
        return text, citations

    parts.append(text[pos:])
    return "".join(parts), citations


class CitationStream:
    """Run :func:`extract_citations` over a stream of text deltas.

    A marker may arrive split across deltas, so text from the last unclosed
    ``{`` onward is retained until the brace closes, the held text grows past
    *max_marker_length*, or :meth:`flush` is called.

    A marker longer than *max_marker_length* that arrives split across deltas
    is released before its closing brace and reaches the caller as raw JSON.
    """

    def __init__(self, max_marker_length: int = MAX_MARKER_LENGTH) -> None:
        self._pending = ""
        self._max_marker_length = max_marker_length

    def feed(self, delta: str) -> tuple[str, list[Citation]]:
        self._pending += delta
        cut = self._release_index()
        ready, self._pending = self._pending[:cut], self._pending[cut:]
        return extract_citations(ready)

    def flush(self) -> tuple[str, list[Citation]]:
        ready, self._pending = self._pending, ""
        return extract_citations(ready)

    def _release_index(self) -> int:
        opening = self._pending.rfind("{")
        if opening == -1 or "}" in self._pending[opening:]:
            return len(self._pending)
        if len(self._pending) - opening > self._max_marker_length:
            return len(self._pending)
        return opening
