"""Pydantic models for conversations, messages and citations."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    Field,
    StrictInt,
    ValidationError,
    ValidatorFunctionWrapHandler,
    field_validator,
)


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class Citation(BaseModel):
    """A legal-document reference embedded inline in remote provider output.

    Coordinates (chapter / article / clause / appendix) are optional and a
    malformed one is dropped to ``None``; the character span
    ``[start_char, end_char)`` into the source document is mandatory and
    must be a plain integer.
    """

    chuong: int | None = None  # chapter
    dieu: int | None = None  # article
    khoan: int | None = None  # clause
    phu_luc: int | None = None  # appendix
    noi_dung_da_su_dung: str | None = None  # excerpt actually used
    start_char: StrictInt
    end_char: StrictInt
    resource_type: str | None = None
    resource_content: str | None = None

    @field_validator(
        "chuong", "dieu", "khoan", "phu_luc",
        "noi_dung_da_su_dung", "resource_type", "resource_content",
        mode="wrap",
    )
    @classmethod
    def _drop_malformed(cls, value: Any, handler: ValidatorFunctionWrapHandler) -> Any:
        try:
            return handler(value)
        except ValidationError:
            return None


class ContextMessage(BaseModel):
    """A (role, content) pair sent to a provider for a single call."""

    role: MessageRole
    content: str


class Message(BaseModel):
    """A persisted conversation turn."""

    id: int
    conversation_id: str
    role: MessageRole
    content: str
    token_count: int = Field(default=0, ge=0)
    created_at: datetime
    citations: list[Citation] = Field(default_factory=list)


class Conversation(BaseModel):
    id: str
    user_id: str
    title: str | None = None
    total_tokens: int = 0
    max_tokens: int = 4000
    created_at: datetime
    updated_at: datetime
    deleted_at: datetime | None = None
