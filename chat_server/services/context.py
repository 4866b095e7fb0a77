"""Token-bounded conversation context for provider calls."""

from __future__ import annotations

from typing import Protocol, Sequence

from chat_server.models import ContextMessage, MessageRole

# Share of a conversation's max_tokens spent on history; the rest is left
# for the model's reply.
CONTEXT_BUDGET_PERCENT = 70


class HistoryEntry(Protocol):
    role: MessageRole
    content: str
    token_count: int


def effective_budget(max_tokens: int) -> int:
    """floor(max_tokens * 0.7), in integer arithmetic."""
    return max_tokens * CONTEXT_BUDGET_PERCENT // 100


def build_context_window(history: Sequence[HistoryEntry], budget: int) -> list[ContextMessage]:
    """Select the longest recent run of *history* whose token counts fit *budget*.

    *history* must be in chronological order.  Messages are taken newest
    first and accumulation stops at the first one that would overflow, so
    the result is always a contiguous suffix (possibly empty), returned in
    chronological order.
    """
    selected: list[ContextMessage] = []
    used = 0

    for entry in reversed(history):
        if used + entry.token_count > budget:
            break
        selected.append(ContextMessage(role=entry.role, content=entry.content))
        used += entry.token_count

    selected.reverse()
    return selected
