"""Application settings loaded from environment variables."""

import logging
import os

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env_file():
    if os.getenv("PYTEST_CURRENT_TEST"):
        return None
    return ".env"


class Settings(BaseSettings):
    """Chat pipeline configuration. All values come from environment variables."""

    # Model provider
    gemini_api_key: str = Field(default="")
    llm_model: str = Field(default="gemini-1.5-flash")
    llm_temperature: float = Field(default=0.5)
    llm_max_output_tokens: int = Field(default=800)
    llm_max_attempts: int = Field(default=3, ge=1)
    llm_retry_base_delay: float = Field(default=1.0, ge=0)

    # Proxy endpoint
    proxy_history_limit: int = Field(default=15, ge=1)
    proxy_timeout: float = Field(default=50.0, gt=0)

    # Orchestrator
    client_history_limit: int = Field(default=20, ge=0)
    client_timeout: float = Field(default=60.0, gt=0)
    client_max_attempts: int = Field(default=3, ge=1)
    client_retry_base_delay: float = Field(default=1.0, ge=0)
    chat_api_url: str = Field(default="http://localhost:8000")

    # Message store
    history_load_limit: int = Field(default=50, ge=1)
    clear_history_limit: int = Field(default=1000, ge=1)
    storage_backend: str = Field(default="memory", pattern="^(memory|firestore)$")
    firestore_project: str = Field(default="")

    # Logging
    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(env_file=_env_file(), env_file_encoding="utf-8", extra="ignore")

    @model_validator(mode="after")
    def _check_timeouts(self) -> "Settings":
        # The client must not abandon a call the proxy is still allowed to finish.
        if self.client_timeout <= self.proxy_timeout:
            raise ValueError(
                f"client_timeout ({self.client_timeout}s) must be greater than "
                f"proxy_timeout ({self.proxy_timeout}s)"
            )
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.gemini_api_key.strip())


settings = Settings()


def configure_logging(level: str = None) -> None:
    """Route structlog output through a console renderer at the given level."""
    level_name = (level or settings.log_level).upper()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level_name, logging.INFO)
        ),
    )
