"""Repositories over the conversation, message and citation tables.

Each repository wraps the async engine and returns pydantic models; callers
never see rows or connections.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from chat_server.db import citations, conversations, messages
from chat_server.models import Citation, Conversation, Message, MessageRole

logger = structlog.get_logger()

_CITATION_FIELDS = (
    "chuong",
    "dieu",
    "khoan",
    "phu_luc",
    "noi_dung_da_su_dung",
    "start_char",
    "end_char",
    "resource_type",
    "resource_content",
)


@dataclass
class MessageSearchFilters:
    conversation_id: str | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None


def _offset(page: int, limit: int) -> int:
    return (max(page, 1) - 1) * limit


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class ConversationRepository:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create(self, user_id: str, title: str | None, max_tokens: int = 4000) -> Conversation:
        now = datetime.now(timezone.utc)
        row: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "title": title,
            "total_tokens": 0,
            "max_tokens": max_tokens,
            "created_at": now,
            "updated_at": now,
        }
        async with self._engine.begin() as conn:
            await conn.execute(conversations.insert().values(**row))
        logger.debug("conversation_created", conversation_id=row["id"], user_id=user_id)
        return Conversation(**row)

    async def find_by_id_and_user(self, conversation_id: str, user_id: str) -> Conversation | None:
        """Return the live (not soft-deleted) conversation owned by *user_id*."""
        stmt = conversations.select().where(
            conversations.c.id == conversation_id,
            conversations.c.user_id == user_id,
            conversations.c.deleted_at.is_(None),
        )
        async with self._engine.connect() as conn:
            result = await conn.execute(stmt)
            row = result.mappings().first()
        return Conversation.model_validate(dict(row)) if row is not None else None

    async def find_by_user(
        self, user_id: str, page: int, limit: int, search: str | None = None,
    ) -> tuple[list[Conversation], int]:
        """Return one page of the user's conversations, most recently updated first."""
        where = [
            conversations.c.user_id == user_id,
            conversations.c.deleted_at.is_(None),
        ]
        if search:
            where.append(conversations.c.title.ilike(f"%{search}%"))

        page_stmt = (
            conversations.select()
            .where(*where)
            .order_by(conversations.c.updated_at.desc())
            .offset(_offset(page, limit))
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(conversations).where(*where)

        async with self._engine.connect() as conn:
            rows = (await conn.execute(page_stmt)).mappings().all()
            total = (await conn.execute(count_stmt)).scalar_one()
        return [Conversation.model_validate(dict(row)) for row in rows], int(total)

    async def soft_delete(self, conversation_id: str, user_id: str) -> None:
        now = datetime.now(timezone.utc)
        stmt = (
            conversations.update()
            .where(
                conversations.c.id == conversation_id,
                conversations.c.user_id == user_id,
            )
            .values(deleted_at=now, updated_at=now)
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)
        logger.info("conversation_soft_deleted", conversation_id=conversation_id)

    async def update_total_tokens(self, conversation_id: str, total_tokens: int) -> None:
        """Set (never increment) the conversation's token total."""
        stmt = (
            conversations.update()
            .where(conversations.c.id == conversation_id)
            .values(total_tokens=total_tokens, updated_at=datetime.now(timezone.utc))
        )
        async with self._engine.begin() as conn:
            await conn.execute(stmt)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class MessageRepository:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create(
        self, conversation_id: str, role: MessageRole, content: str, token_count: int,
    ) -> Message:
        now = datetime.now(timezone.utc)
        stmt = (
            messages.insert()
            .values(
                conversation_id=conversation_id,
                role=role.value,
                content=content,
                token_count=token_count,
                created_at=now,
            )
            .returning(messages.c.id)
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(stmt)
            message_id = result.scalar_one()
        return Message(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            token_count=token_count,
            created_at=now,
        )

    async def find_by_conversation(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """Return the conversation's messages oldest first (the newest *limit* if given)."""
        stmt = (
            messages.select()
            .where(messages.c.conversation_id == conversation_id)
            .order_by(messages.c.created_at.desc(), messages.c.id.desc())
        )
        if limit:
            stmt = stmt.limit(limit)

        async with self._engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()
        return [Message.model_validate(dict(row)) for row in reversed(rows)]

    async def total_tokens(self, conversation_id: str) -> int:
        stmt = (
            select(func.coalesce(func.sum(messages.c.token_count), 0))
            .where(messages.c.conversation_id == conversation_id)
        )
        async with self._engine.connect() as conn:
            total = (await conn.execute(stmt)).scalar_one()
        return int(total or 0)

    async def search(
        self,
        user_id: str,
        keyword: str,
        filters: MessageSearchFilters,
        page: int,
        limit: int,
    ) -> tuple[list[Message], int]:
        """Keyword search across the user's live conversations, newest first."""
        joined = messages.join(conversations, messages.c.conversation_id == conversations.c.id)
        where = [
            conversations.c.user_id == user_id,
            conversations.c.deleted_at.is_(None),
            messages.c.content.ilike(f"%{keyword}%"),
        ]
        if filters.conversation_id:
            where.append(messages.c.conversation_id == filters.conversation_id)
        if filters.start_date is not None:
            where.append(messages.c.created_at >= filters.start_date)
        if filters.end_date is not None:
            where.append(messages.c.created_at <= filters.end_date)

        page_stmt = (
            select(messages)
            .select_from(joined)
            .where(*where)
            .order_by(messages.c.created_at.desc())
            .offset(_offset(page, limit))
            .limit(limit)
        )
        count_stmt = select(func.count()).select_from(joined).where(*where)

        async with self._engine.connect() as conn:
            rows = (await conn.execute(page_stmt)).mappings().all()
            total = (await conn.execute(count_stmt)).scalar_one()
        return [Message.model_validate(dict(row)) for row in rows], int(total)


# ---------------------------------------------------------------------------
# Citations
# ---------------------------------------------------------------------------


class CitationRepository:
    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create_many(self, message_id: int, items: list[Citation]) -> None:
        if not items:
            return
        now = datetime.now(timezone.utc)
        rows = [
            {"message_id": message_id, "created_at": now, **item.model_dump(include=set(_CITATION_FIELDS))}
            for item in items
        ]
        async with self._engine.begin() as conn:
            await conn.execute(citations.insert(), rows)
        logger.debug("citations_saved", message_id=message_id, count=len(rows))

    async def find_by_message_ids(self, message_ids: list[int]) -> dict[int, list[Citation]]:
        if not message_ids:
            return {}
        stmt = (
            citations.select()
            .where(citations.c.message_id.in_(message_ids))
            .order_by(citations.c.id)
        )
        async with self._engine.connect() as conn:
            rows = (await conn.execute(stmt)).mappings().all()

        found: dict[int, list[Citation]] = {}
        for row in rows:
            found.setdefault(row["message_id"], []).append(
                Citation(**{name: row[name] for name in _CITATION_FIELDS})
            )
        return found
