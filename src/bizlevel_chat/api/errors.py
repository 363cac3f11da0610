"""Mapping from chat pipeline failures to HTTP statuses and user-facing text."""

import asyncio
from dataclasses import dataclass

from ..domain.errors import (
    CompletionTimeoutError,
    ConfigurationError,
    InvalidCredentialsError,
    QuotaExhaustedError,
    RateLimitError,
)
from ..services.llm import classify_error

FALLBACK_REPLY = (
    "Извините, произошла ошибка при обработке вашего запроса. "
    "Пожалуйста, попробуйте еще раз позже."
)
TIMEOUT_TEXT = (
    "Запрос к AI-сервису занял слишком много времени (timeout). "
    "Пожалуйста, попробуйте еще раз."
)
RATE_LIMIT_TEXT = (
    "Превышен лимит запросов к AI-сервису. "
    "Пожалуйста, подождите немного и попробуйте снова."
)
INVALID_CREDENTIALS_TEXT = (
    "Ошибка аутентификации с сервисом AI. Пожалуйста, обратитесь к администратору."
)
QUOTA_TEXT = "Исчерпан лимит запросов к сервису AI. Пожалуйста, обратитесь к администратору."
MISSING_CREDENTIALS_TEXT = "Gemini API key is not configured"


@dataclass(frozen=True)
class FailureDescription:
    category: str
    status_code: int
    error: str


def describe_failure(exc: BaseException) -> FailureDescription:
    """Pick the category, HTTP status and ``error`` text for a failed chat request."""
    if isinstance(exc, ConfigurationError):
        return FailureDescription("configuration", 500, MISSING_CREDENTIALS_TEXT)
    if isinstance(exc, asyncio.TimeoutError):
        return FailureDescription("timeout", 408, TIMEOUT_TEXT)

    error = classify_error(exc)
    if isinstance(error, CompletionTimeoutError):
        return FailureDescription("timeout", 408, TIMEOUT_TEXT)
    if isinstance(error, RateLimitError):
        return FailureDescription("rate_limit", 429, RATE_LIMIT_TEXT)
    if isinstance(error, InvalidCredentialsError):
        return FailureDescription("invalid_credentials", 401, INVALID_CREDENTIALS_TEXT)
    if isinstance(error, QuotaExhaustedError):
        return FailureDescription("quota_exhausted", 402, QUOTA_TEXT)
    return FailureDescription("unclassified", 500, str(exc) or "Unknown error")
