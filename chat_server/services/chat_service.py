"""Conversation management: ownership checks, listing, token totals."""

from __future__ import annotations

import math
from typing import Any, Sequence

import structlog

from chat_server.exceptions import ConversationNotFoundError
from chat_server.models import Conversation, ContextMessage, Message
from chat_server.repositories import CitationRepository, ConversationRepository, MessageRepository
from chat_server.services.context import HistoryEntry, build_context_window, effective_budget

logger = structlog.get_logger()

DEFAULT_TITLE = "New Conversation"


def paginate(items: list[Any], total: int, page: int, limit: int) -> dict[str, Any]:
    """Wrap one page of results in the standard pagination envelope."""
    return {
        "items": items,
        "pagination": {
            "page": page,
            "page_size": limit,
            "total_items": total,
            "total_pages": math.ceil(total / limit) if limit else 0,
        },
    }


class ChatService:
    def __init__(
        self,
        conversations: ConversationRepository,
        messages: MessageRepository,
        citations: CitationRepository,
        *,
        default_max_tokens: int = 4000,
    ) -> None:
        self._conversations = conversations
        self._messages = messages
        self._citations = citations
        self._default_max_tokens = default_max_tokens

    @property
    def default_max_tokens(self) -> int:
        return self._default_max_tokens

    async def create_conversation(self, user_id: str, title: str | None = None) -> Conversation:
        conversation = await self._conversations.create(
            user_id,
            title or DEFAULT_TITLE,
            max_tokens=self._default_max_tokens,
        )
        logger.info("conversation_created", conversation_id=conversation.id, user_id=user_id)
        return conversation

    async def get_conversations(
        self, user_id: str, page: int, limit: int, search: str | None = None,
    ) -> dict[str, Any]:
        items, total = await self._conversations.find_by_user(user_id, page, limit, search)
        return paginate(items, total, page, limit)

    async def get_conversation_by_id(self, conversation_id: str, user_id: str) -> Conversation:
        """Return the conversation, or raise ConversationNotFoundError.

        Deleted conversations and conversations owned by another user are
        reported as not found.
        """
        conversation = await self._conversations.find_by_id_and_user(conversation_id, user_id)
        if conversation is None:
            logger.info("conversation_not_found", conversation_id=conversation_id, user_id=user_id)
            raise ConversationNotFoundError(conversation_id)
        return conversation

    async def delete_conversation(self, conversation_id: str, user_id: str) -> None:
        await self.get_conversation_by_id(conversation_id, user_id)
        await self._conversations.soft_delete(conversation_id, user_id)

    async def get_conversation_messages(
        self, conversation_id: str, user_id: str,
    ) -> tuple[Conversation, list[Message]]:
        conversation = await self.get_conversation_by_id(conversation_id, user_id)
        history = await self._messages.find_by_conversation(conversation_id)

        found = await self._citations.find_by_message_ids([m.id for m in history])
        for message in history:
            message.citations = found.get(message.id, [])
        return conversation, history

    async def update_conversation_tokens(self, conversation_id: str) -> int:
        """Recompute the token total from stored messages and set it.

        Never an increment: concurrent turns in one conversation converge on
        the sum of the rows that exist when the last writer runs.
        """
        total = await self._messages.total_tokens(conversation_id)
        await self._conversations.update_total_tokens(conversation_id, total)
        logger.debug("conversation_tokens_updated", conversation_id=conversation_id, total_tokens=total)
        return total

    async def get_recent_messages_for_context(
        self,
        conversation_id: str | None,
        max_tokens: int,
        pending: Sequence[HistoryEntry] = (),
    ) -> list[ContextMessage]:
        """Context window fitting the history budget derived from *max_tokens*.

        *pending* entries (not yet stored) follow the stored history; a
        ``None`` conversation contributes no stored history.
        """
        history: list[HistoryEntry] = []
        if conversation_id is not None:
            history.extend(await self._messages.find_by_conversation(conversation_id))
        history.extend(pending)
        return build_context_window(history, effective_budget(max_tokens))
