"""Database layer -- async PostgreSQL via SQLAlchemy + asyncpg.

Provides table definitions for conversations, messages and citations, plus
connection management for the engine singleton.
"""

from __future__ import annotations

import os
from typing import Any

import structlog
from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    text,
)
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = structlog.get_logger()

metadata = MetaData()

# ---------------------------------------------------------------------------
# Table definitions
# ---------------------------------------------------------------------------

conversations = Table(
    "conversations",
    metadata,
    Column("id", String(36), primary_key=True),  # UUID string
    Column("user_id", String, nullable=False),
    Column("title", String(255), nullable=True),
    Column("total_tokens", Integer, nullable=False, server_default=text("0")),
    Column("max_tokens", Integer, nullable=False, server_default=text("4000")),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("deleted_at", DateTime(timezone=True), nullable=True),
    Index("ix_conversations_user_created", "user_id", "created_at"),
    Index("ix_conversations_user_deleted", "user_id", "deleted_at"),
)

messages = Table(
    "messages",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "conversation_id",
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("role", String(16), nullable=False),  # "user" | "assistant" | "system"
    Column("content", Text, nullable=False),
    Column("token_count", Integer, nullable=False, server_default=text("0")),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_messages_conversation_created", "conversation_id", "created_at"),
    Index("ix_messages_role_created", "role", "created_at"),
)

citations = Table(
    "citations",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "message_id",
        Integer,
        ForeignKey("messages.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("chuong", Integer, nullable=True),
    Column("dieu", Integer, nullable=True),
    Column("khoan", Integer, nullable=True),
    Column("phu_luc", Integer, nullable=True),
    Column("noi_dung_da_su_dung", Text, nullable=True),
    Column("start_char", Integer, nullable=False),
    Column("end_char", Integer, nullable=False),
    Column("resource_type", String(50), nullable=True),
    Column("resource_content", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Index("ix_citations_message_created", "message_id", "created_at"),
)

# ---------------------------------------------------------------------------
# Engine singleton
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None


def _make_async_url(postgres_url: str) -> str:
    """Ensure the URL uses the asyncpg driver prefix."""
    url = postgres_url
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def get_engine(postgres_url: str | None = None) -> AsyncEngine:
    """Create or return the async engine singleton.

    On first call the engine is created with connection pooling.
    Subsequent calls return the cached engine (the *postgres_url* argument
    is ignored after the first call).

    Raises:
        RuntimeError: If the engine does not exist yet and no URL is available
    """
    global _engine
    if _engine is not None:
        return _engine

    if postgres_url is None:
        postgres_url = os.getenv("POSTGRES_URL", "")

    if not postgres_url:
        raise RuntimeError(
            "Database engine not initialised and no POSTGRES_URL provided. "
            "Call init_db() first or set POSTGRES_URL env var."
        )

    kwargs: dict[str, Any] = dict(
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    if os.environ.get("DB_SSL", "").lower() in ("1", "true", "yes"):
        kwargs["connect_args"] = {"ssl": "require"}

    _engine = create_async_engine(_make_async_url(postgres_url), **kwargs)
    logger.info("database_engine_created")
    return _engine


async def init_db(postgres_url: str) -> None:
    """Create tables if they do not already exist."""
    engine = get_engine(postgres_url)
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("database_initialised")


async def close_db() -> None:
    """Dispose of the connection pool."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("database_closed")
