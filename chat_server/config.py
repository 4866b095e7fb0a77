"""Configuration for the chat server loaded from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Chat server configuration.

    All fields are loaded from environment variables.  POSTGRES_URL must be
    supplied explicitly; the remaining fields have sensible defaults for
    local development.
    """

    POSTGRES_URL: str
    DB_SSL: str = ""
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    AI_PROVIDER: str = "ai4life"  # "ai4life" (remote RAG) or "local"
    AI4LIFE_API_URL: str = "http://localhost:8000"
    AI_API_URL: str = "http://localhost:11434/api"
    AI_MODEL: str = "llama2"
    AI_TIMEOUT_SECONDS: float = 90.0
    DEFAULT_MAX_TOKENS: int = 4000

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


def get_settings() -> Settings:
    """Return a Settings instance built from the current environment."""
    return Settings()  # type: ignore[call-arg]
