"""Exceptions raised by the chat pipeline."""

from __future__ import annotations


class ChatError(Exception):
    """Base class for chat pipeline errors."""


class ProviderError(ChatError):
    """An AI backend call failed at the transport level.

    Raised for non-success statuses, connection failures and unusable
    response bodies.  Never retried.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConversationNotFoundError(ChatError):
    """The conversation does not exist, is deleted, or belongs to someone else."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class PersistenceError(ChatError):
    """Saving a streamed assistant message or its token total failed."""
