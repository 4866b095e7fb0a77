"""Conversation and message endpoints.

Turn endpoints come in blocking and streaming flavours.  Streaming responses
are Server-Sent Events (SSE): ``conversation`` (new conversations only), then
``delta`` / ``citation`` events in provider order, then ``done`` once the
assistant message has been saved, or ``error``.
"""

from __future__ import annotations

import json
import time
from datetime import datetime
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from chat_server.config import get_settings
from chat_server.db import get_engine
from chat_server.exceptions import ConversationNotFoundError, ProviderError
from chat_server.providers.factory import get_provider
from chat_server.repositories import (
    CitationRepository,
    ConversationRepository,
    MessageRepository,
    MessageSearchFilters,
)
from chat_server.services.chat_service import ChatService
from chat_server.services.message_service import MessageService, StreamingTurn

logger = structlog.get_logger()

router = APIRouter(prefix="/chat", tags=["chat"])

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "X-Accel-Buffering": "no",
}

# ---------------------------------------------------------------------------
# Pydantic request bodies
# ---------------------------------------------------------------------------


class CreateConversationRequest(BaseModel):
    """Body for POST /chat/conversations."""

    title: Optional[str] = Field(default=None, max_length=255)


class SendMessageRequest(BaseModel):
    """Body for the message / start endpoints."""

    content: str = Field(min_length=1, max_length=5000)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_chat_service() -> ChatService:
    engine = get_engine()
    return ChatService(
        ConversationRepository(engine),
        MessageRepository(engine),
        CitationRepository(engine),
        default_max_tokens=get_settings().DEFAULT_MAX_TOKENS,
    )


def get_message_service(chat_service: ChatService = Depends(get_chat_service)) -> MessageService:
    engine = get_engine()
    return MessageService(
        MessageRepository(engine),
        CitationRepository(engine),
        chat_service,
        get_provider(get_settings()),
    )


def install_error_handlers(app: FastAPI) -> None:
    """Map pipeline errors raised before a response starts onto HTTP statuses."""

    @app.exception_handler(ConversationNotFoundError)
    async def _not_found(request: Request, exc: ConversationNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": "Conversation not found"})

    @app.exception_handler(ProviderError)
    async def _provider_failed(request: Request, exc: ProviderError) -> JSONResponse:
        logger.warning("provider_error_response", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=502, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# SSE helpers
# ---------------------------------------------------------------------------


def _sse_event(event: str, data: dict) -> str:
    """Format a single SSE event."""
    return f"event: {event}\ndata: {json.dumps(data, ensure_ascii=False)}\n\n"


async def _stream_turn(turn: StreamingTurn) -> AsyncGenerator[str, None]:
    t0 = time.time()
    chunks = turn.chunks()
    try:
        if turn.conversation is not None:
            yield _sse_event("conversation", {
                "conversation_id": turn.conversation.id,
                "title": turn.conversation.title,
            })

        async for chunk in chunks:
            if chunk.citation is not None:
                yield _sse_event("citation", chunk.citation.model_dump(exclude_none=True))
            elif chunk.text:
                yield _sse_event("delta", {"text": chunk.text})

        message = turn.bridge.message
        yield _sse_event("done", {
            "message_id": message.id if message else None,
            "token_count": message.token_count if message else 0,
            "latency_ms": int((time.time() - t0) * 1000),
        })

    except Exception as exc:
        logger.exception("chat_stream_error", conversation_id=turn.user_message.conversation_id)
        yield _sse_event("error", {"message": str(exc)})
    finally:
        await chunks.aclose()
        await turn.aclose()


def _sse_response(turn: StreamingTurn) -> StreamingResponse:
    return StreamingResponse(
        _stream_turn(turn),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


@router.post("/conversations", status_code=201)
async def create_conversation(
    body: CreateConversationRequest,
    x_user_id: str = Header(...),
    chat_service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    conversation = await chat_service.create_conversation(x_user_id, body.title)
    return conversation.model_dump(mode="json")


@router.get("/conversations")
async def list_conversations(
    x_user_id: str = Header(...),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    search: Optional[str] = Query(default=None, description="Substring match on title"),
    chat_service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    result = await chat_service.get_conversations(x_user_id, page, limit, search)
    result["items"] = [c.model_dump(mode="json") for c in result["items"]]
    return result


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    x_user_id: str = Header(...),
    chat_service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    conversation = await chat_service.get_conversation_by_id(conversation_id, x_user_id)
    return conversation.model_dump(mode="json")


@router.delete("/conversations/{conversation_id}", status_code=204)
async def delete_conversation(
    conversation_id: str,
    x_user_id: str = Header(...),
    chat_service: ChatService = Depends(get_chat_service),
) -> Response:
    await chat_service.delete_conversation(conversation_id, x_user_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Start a conversation with its first message
# ---------------------------------------------------------------------------


@router.post("/conversations/start", status_code=201)
async def start_conversation(
    body: SendMessageRequest,
    x_user_id: str = Header(...),
    message_service: MessageService = Depends(get_message_service),
) -> dict[str, Any]:
    turn = await message_service.send_first_message(x_user_id, body.content)
    return {
        "conversation": turn.conversation.model_dump(mode="json") if turn.conversation else None,
        "user_message": turn.user_message.model_dump(mode="json"),
        "assistant_message": turn.assistant_message.model_dump(mode="json"),
    }


@router.post("/conversations/start/stream")
async def start_conversation_stream(
    body: SendMessageRequest,
    x_user_id: str = Header(...),
    message_service: MessageService = Depends(get_message_service),
) -> StreamingResponse:
    turn = await message_service.send_first_message_streaming(x_user_id, body.content)
    return _sse_response(turn)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    x_user_id: str = Header(...),
    chat_service: ChatService = Depends(get_chat_service),
) -> dict[str, Any]:
    conversation, history = await chat_service.get_conversation_messages(conversation_id, x_user_id)
    return {
        "conversation": conversation.model_dump(mode="json"),
        "messages": [m.model_dump(mode="json") for m in history],
    }


@router.post("/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    body: SendMessageRequest,
    x_user_id: str = Header(...),
    message_service: MessageService = Depends(get_message_service),
) -> dict[str, Any]:
    turn = await message_service.send_message(conversation_id, x_user_id, body.content)
    return {
        "user_message": turn.user_message.model_dump(mode="json"),
        "assistant_message": turn.assistant_message.model_dump(mode="json"),
    }


@router.post("/conversations/{conversation_id}/messages/stream")
async def send_message_stream(
    conversation_id: str,
    body: SendMessageRequest,
    x_user_id: str = Header(...),
    message_service: MessageService = Depends(get_message_service),
) -> StreamingResponse:
    turn = await message_service.send_message_streaming(conversation_id, x_user_id, body.content)
    return _sse_response(turn)


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


@router.get("/search/messages")
async def search_messages(
    keyword: str = Query(..., min_length=1),
    conversation_id: Optional[str] = Query(default=None),
    start_date: Optional[datetime] = Query(default=None, description="ISO 8601"),
    end_date: Optional[datetime] = Query(default=None, description="ISO 8601"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    x_user_id: str = Header(...),
    message_service: MessageService = Depends(get_message_service),
) -> dict[str, Any]:
    filters = MessageSearchFilters(
        conversation_id=conversation_id,
        start_date=start_date,
        end_date=end_date,
    )
    result = await message_service.search_messages(x_user_id, keyword, filters, page, limit)
    result["items"] = [m.model_dump(mode="json") for m in result["items"]]
    return result
