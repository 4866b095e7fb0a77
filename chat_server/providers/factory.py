"""Provider selection from configuration."""

from __future__ import annotations

import structlog

from chat_server.config import Settings

from .ai4life import AI4LifeProvider
from .base import AIProvider
from .local import LocalProvider

logger = structlog.get_logger()

PROVIDERS = ("ai4life", "local")


def get_provider(settings: Settings) -> AIProvider:
    """Build the provider named by ``settings.AI_PROVIDER``."""
    name = settings.AI_PROVIDER.strip().lower()
    if name == "ai4life":
        provider: AIProvider = AI4LifeProvider(
            base_url=settings.AI4LIFE_API_URL,
            timeout=settings.AI_TIMEOUT_SECONDS,
        )
    elif name == "local":
        provider = LocalProvider(
            base_url=settings.AI_API_URL,
            model=settings.AI_MODEL,
            timeout=settings.AI_TIMEOUT_SECONDS,
        )
    else:
        raise ValueError(f"Unknown AI_PROVIDER: {settings.AI_PROVIDER!r}. Must be one of {PROVIDERS}")

    logger.info("ai_provider_selected", provider=name)
    return provider
