"""FastAPI application for the legal chat server.

Exposes the conversation/message REST and SSE endpoints and manages the
database engine over the application lifespan.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from chat_server.config import get_settings
from chat_server.db import close_db, init_db
from chat_server.routers import chat

logger = structlog.get_logger()


def _configure_structlog(level: str = "INFO") -> None:
    """Set up structlog with human-readable console output."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage startup / shutdown resources."""
    settings = get_settings()
    _configure_structlog(settings.LOG_LEVEL)

    # Startup ---------------------------------------------------------------
    await init_db(settings.POSTGRES_URL)
    logger.info("chat_server_started", ai_provider=settings.AI_PROVIDER)

    yield

    # Shutdown --------------------------------------------------------------
    await close_db()
    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

app = FastAPI(title="Legal Chat API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(chat.router)
chat.install_error_handlers(app)


@app.get("/health")
async def health() -> dict[str, str]:
    """Liveness / readiness probe."""
    return {"status": "ok"}


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("chat_server.main:app", host=settings.API_HOST, port=settings.API_PORT)


if __name__ == "__main__":
    run()
