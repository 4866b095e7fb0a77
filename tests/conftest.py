"""
Shared test fixtures for the chat pipeline test suite.

Provides in-memory stand-ins for the storage collaborator and a scripted
AI provider so service-level tests run without PostgreSQL or a network:
- In-memory conversation / message / citation repositories
- A provider that replays canned stream chunks or a canned response
- Services wired on top of them
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone

import pytest

from chat_server.exceptions import ProviderError
from chat_server.models import Citation, Conversation, Message
from chat_server.providers.base import AIProvider, AIResponse, AIStreamResponse, StreamChunk
from chat_server.services.chat_service import ChatService
from chat_server.services.message_service import MessageService

_EPOCH = datetime(2025, 1, 1, tzinfo=timezone.utc)


class InMemoryConversationRepository:
    def __init__(self):
        self.rows: dict[str, Conversation] = {}
        self.total_updates: list[tuple[str, int]] = []

    async def create(self, user_id, title, max_tokens=4000):
        now = _EPOCH + timedelta(seconds=len(self.rows))
        conversation = Conversation(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title,
            max_tokens=max_tokens,
            created_at=now,
            updated_at=now,
        )
        self.rows[conversation.id] = conversation
        return conversation

    async def find_by_id_and_user(self, conversation_id, user_id):
        conversation = self.rows.get(conversation_id)
        if conversation is None or conversation.user_id != user_id or conversation.deleted_at is not None:
            return None
        return conversation

    async def find_by_user(self, user_id, page, limit, search=None):
        found = [
            c for c in self.rows.values()
            if c.user_id == user_id and c.deleted_at is None
            and (not search or search.lower() in (c.title or "").lower())
        ]
        found.sort(key=lambda c: c.updated_at, reverse=True)
        start = (page - 1) * limit
        return found[start:start + limit], len(found)

    async def soft_delete(self, conversation_id, user_id):
        self.rows[conversation_id].deleted_at = datetime.now(timezone.utc)

    async def update_total_tokens(self, conversation_id, total_tokens):
        self.rows[conversation_id].total_tokens = total_tokens
        self.total_updates.append((conversation_id, total_tokens))


class InMemoryMessageRepository:
    def __init__(self):
        self.rows: list[Message] = []
        self.fail_on_create = False

    async def create(self, conversation_id, role, content, token_count):
        if self.fail_on_create:
            raise RuntimeError("database unavailable")
        message = Message(
            id=len(self.rows) + 1,
            conversation_id=conversation_id,
            role=role,
            content=content,
            token_count=token_count,
            created_at=_EPOCH + timedelta(seconds=len(self.rows)),
        )
        self.rows.append(message)
        return message.model_copy(deep=True)

    async def find_by_conversation(self, conversation_id, limit=None):
        found = [m for m in self.rows if m.conversation_id == conversation_id]
        found = found[-limit:] if limit else found
        return [m.model_copy(deep=True) for m in found]

    async def total_tokens(self, conversation_id):
        return sum(m.token_count for m in self.rows if m.conversation_id == conversation_id)

    async def search(self, user_id, keyword, filters, page, limit):
        found = [m for m in self.rows if keyword.lower() in m.content.lower()]
        if filters.conversation_id:
            found = [m for m in found if m.conversation_id == filters.conversation_id]
        found.sort(key=lambda m: m.created_at, reverse=True)
        start = (page - 1) * limit
        return [m.model_copy(deep=True) for m in found[start:start + limit]], len(found)


class InMemoryCitationRepository:
    def __init__(self):
        self.rows: dict[int, list[Citation]] = {}

    async def create_many(self, message_id, items):
        if items:
            self.rows.setdefault(message_id, []).extend(items)

    async def find_by_message_ids(self, message_ids):
        return {mid: self.rows[mid] for mid in message_ids if mid in self.rows}


class ScriptedProvider(AIProvider):
    """Replays canned chunks; records every context it was asked with."""

    def __init__(self, chunks=None, error=None):
        self.chunks = list(chunks or [])
        self.error = error
        self.calls: list[tuple[list, bool]] = []
        self.closed = 0
        self.consumed = 0

    async def generate_response(self, messages, streaming=False):
        self.calls.append((list(messages), streaming))
        if self.error is not None:
            raise self.error

        if not streaming:
            content = "".join(c.text for c in self.chunks)
            citations = [c.citation for c in self.chunks if c.citation is not None]
            return AIResponse(content=content, token_count=self.count_tokens(content), citations=citations)

        async def _stream():
            for chunk in self.chunks:
                self.consumed += 1
                yield chunk

        async def _on_close():
            self.closed += 1

        return AIStreamResponse(stream=_stream(), on_close=_on_close)


@pytest.fixture
def conversation_repo():
    return InMemoryConversationRepository()


@pytest.fixture
def message_repo():
    return InMemoryMessageRepository()


@pytest.fixture
def citation_repo():
    return InMemoryCitationRepository()


@pytest.fixture
def chat_service(conversation_repo, message_repo, citation_repo):
    return ChatService(conversation_repo, message_repo, citation_repo, default_max_tokens=4000)


@pytest.fixture
def provider():
    return ScriptedProvider([StreamChunk("Hello"), StreamChunk("World")])


@pytest.fixture
def message_service(message_repo, citation_repo, chat_service, provider):
    return MessageService(message_repo, citation_repo, chat_service, provider)


@pytest.fixture
def failing_provider():
    return ScriptedProvider(error=ProviderError("ai4life API error: 503 Service Unavailable", status_code=503))


@pytest.fixture
def sample_citation():
    return Citation(chuong=2, dieu=15, khoan=1, start_char=120, end_char=180)

