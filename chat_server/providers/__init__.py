"""AI provider implementations and their stream framing."""

from chat_server.providers.base import AIProvider, AIResponse, AIStreamResponse, StreamChunk
from chat_server.providers.factory import get_provider

__all__ = [
    "AIProvider",
    "AIResponse",
    "AIStreamResponse",
    "StreamChunk",
    "get_provider",
]
