"""Turn orchestration: user message in, assistant message (or stream) out.

Every turn follows the same order: check the conversation, assemble the
context window from stored history plus the pending user message, call the
provider, and only then write.  A missing conversation or a provider
transport error therefore leaves storage untouched.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator

import structlog

from chat_server.models import Conversation, Message, MessageRole
from chat_server.providers.base import AIProvider, AIResponse, AIStreamResponse, StreamChunk
from chat_server.repositories import CitationRepository, MessageRepository, MessageSearchFilters
from chat_server.services.chat_service import ChatService, paginate
from chat_server.services.stream_bridge import StreamPersistBridge

logger = structlog.get_logger()

TITLE_MAX_LENGTH = 100


@dataclass
class TurnResult:
    user_message: Message
    assistant_message: Message
    conversation: Conversation | None = None


@dataclass
class StreamingTurn:
    user_message: Message
    bridge: StreamPersistBridge
    conversation: Conversation | None = None

    def chunks(self) -> AsyncIterator[StreamChunk]:
        return self.bridge.stream()

    async def aclose(self) -> None:
        await self.bridge.aclose()


@dataclass
class _PendingUserMessage:
    role: MessageRole
    content: str
    token_count: int


def title_from_content(content: str) -> str:
    """Use the first message as the title, cut to 97 chars + '...' past 100."""
    if len(content) > TITLE_MAX_LENGTH:
        return content[:TITLE_MAX_LENGTH - 3] + "..."
    return content


class MessageService:
    def __init__(
        self,
        messages: MessageRepository,
        citations: CitationRepository,
        chat_service: ChatService,
        provider: AIProvider,
    ) -> None:
        self._messages = messages
        self._citations = citations
        self._chat_service = chat_service
        self._provider = provider

    # ------------------------------------------------------------------
    # Turns in an existing conversation
    # ------------------------------------------------------------------

    async def send_message(self, conversation_id: str, user_id: str, content: str) -> TurnResult:
        conversation = await self._chat_service.get_conversation_by_id(conversation_id, user_id)
        response = await self._ask(conversation, content, streaming=False)
        return await self._save_turn(conversation, content, response)

    async def send_message_streaming(
        self, conversation_id: str, user_id: str, content: str,
    ) -> StreamingTurn:
        conversation = await self._chat_service.get_conversation_by_id(conversation_id, user_id)
        response = await self._ask(conversation, content, streaming=True)
        return await self._start_stream(conversation, content, response)

    # ------------------------------------------------------------------
    # First message of a new conversation
    # ------------------------------------------------------------------

    async def send_first_message(self, user_id: str, content: str) -> TurnResult:
        """Create a conversation titled after *content* and answer it."""
        response = await self._ask(None, content, streaming=False)
        conversation = await self._chat_service.create_conversation(user_id, title_from_content(content))
        turn = await self._save_turn(conversation, content, response)
        turn.conversation = conversation
        return turn

    async def send_first_message_streaming(self, user_id: str, content: str) -> StreamingTurn:
        response = await self._ask(None, content, streaming=True)
        try:
            conversation = await self._chat_service.create_conversation(user_id, title_from_content(content))
        except Exception:
            await response.aclose()
            raise
        turn = await self._start_stream(conversation, content, response)
        turn.conversation = conversation
        return turn

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search_messages(
        self,
        user_id: str,
        keyword: str,
        filters: MessageSearchFilters,
        page: int,
        limit: int,
    ) -> dict[str, Any]:
        items, total = await self._messages.search(user_id, keyword, filters, page, limit)
        return paginate(items, total, page, limit)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _ask(
        self, conversation: Conversation | None, content: str, *, streaming: bool,
    ) -> AIResponse | AIStreamResponse:
        """Build the context window and call the provider.

        For a new conversation (``None``) the history is just the pending
        user message under the default token budget.
        """
        pending = _PendingUserMessage(MessageRole.USER, content, self._provider.count_tokens(content))
        if conversation is None:
            conversation_id = None
            max_tokens = self._chat_service.default_max_tokens
        else:
            conversation_id = conversation.id
            max_tokens = conversation.max_tokens

        context = await self._chat_service.get_recent_messages_for_context(
            conversation_id, max_tokens, pending=[pending],
        )
        logger.info(
            "turn_started",
            conversation_id=conversation_id,
            context_size=len(context),
            streaming=streaming,
        )
        return await self._provider.generate_response(context, streaming=streaming)

    async def _save_turn(
        self, conversation: Conversation, content: str, response: AIResponse,
    ) -> TurnResult:
        user_message = await self._save_user_message(conversation.id, content)
        assistant_message = await self._messages.create(
            conversation.id, MessageRole.ASSISTANT, response.content, response.token_count,
        )
        await self._citations.create_many(assistant_message.id, response.citations)
        assistant_message.citations = list(response.citations)
        await self._chat_service.update_conversation_tokens(conversation.id)

        logger.info(
            "turn_completed",
            conversation_id=conversation.id,
            assistant_message_id=assistant_message.id,
            token_count=response.token_count,
            citation_count=len(response.citations),
        )
        return TurnResult(user_message=user_message, assistant_message=assistant_message)

    async def _start_stream(
        self, conversation: Conversation, content: str, response: AIStreamResponse,
    ) -> StreamingTurn:
        try:
            user_message = await self._save_user_message(conversation.id, content)
        except Exception:
            await response.aclose()
            raise

        bridge = StreamPersistBridge(
            response,
            conversation.id,
            messages=self._messages,
            citations=self._citations,
            chat_service=self._chat_service,
            token_counter=self._provider.count_tokens,
        )
        return StreamingTurn(user_message=user_message, bridge=bridge)

    async def _save_user_message(self, conversation_id: str, content: str) -> Message:
        return await self._messages.create(
            conversation_id, MessageRole.USER, content, self._provider.count_tokens(content),
        )
