"""Remote completion client for Google's Gemini models."""

import asyncio
from typing import Awaitable, Callable, List, Optional

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ..config import Settings, settings as default_settings
from ..domain.errors import (
    CompletionError,
    CompletionTimeoutError,
    ConfigurationError,
    InvalidCredentialsError,
    QuotaExhaustedError,
    RateLimitError,
)
from ..domain.models import Role, UpstreamMessage

logger = structlog.get_logger()

_INVALID_KEY_MARKERS = ("invalid_api_key", "api key not valid", "api_key_invalid")
_QUOTA_MARKERS = ("insufficient_quota", "billing", "exceeded your current quota")
_RATE_LIMIT_MARKERS = ("rate limit", "rate_limit", "too many requests")
_TIMEOUT_MARKERS = ("timeout", "timed out", "aborted", "deadline")


def classify_error(exc: BaseException) -> CompletionError:
    """Map a provider or transport failure onto the completion error taxonomy."""
    if isinstance(exc, CompletionError) and type(exc) is not CompletionError:
        return exc

    text = str(exc).lower()
    if isinstance(exc, (exceptions.Unauthenticated, exceptions.PermissionDenied)) or any(
        marker in text for marker in _INVALID_KEY_MARKERS
    ):
        return InvalidCredentialsError(str(exc))
    if any(marker in text for marker in _QUOTA_MARKERS):
        return QuotaExhaustedError(str(exc))
    if isinstance(exc, (exceptions.ResourceExhausted, exceptions.TooManyRequests)) or any(
        marker in text for marker in _RATE_LIMIT_MARKERS
    ):
        return RateLimitError(str(exc))
    if isinstance(exc, (exceptions.DeadlineExceeded, asyncio.TimeoutError)) or any(
        marker in text for marker in _TIMEOUT_MARKERS
    ):
        return CompletionTimeoutError(str(exc) or "request timed out")
    return CompletionError(str(exc) or exc.__class__.__name__)


class LLMService:
    """Completion client with bounded retry and exponential backoff.

    Generation parameters come from settings and cannot be overridden per
    call. Credential and quota failures are raised on the first attempt;
    everything else is retried up to ``llm_max_attempts`` times with delays
    of ``base_delay * 2 ** n``.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config or default_settings
        self.model_name = self.config.llm_model
        self.temperature = self.config.llm_temperature
        self.max_output_tokens = self.config.llm_max_output_tokens
        self.max_attempts = self.config.llm_max_attempts
        self.base_delay = self.config.llm_retry_base_delay
        self._sleep = sleep
        if self.config.has_credentials:
            genai.configure(api_key=self.config.gemini_api_key)
        logger.info("llm_service_init", model=self.model_name, configured=self.config.has_credentials)

    async def complete(self, messages: List[UpstreamMessage]) -> str:
        """Return the provider's completion text for ``messages``."""
        if not self.config.has_credentials:
            raise ConfigurationError("Gemini API key is not configured")

        last_error: Optional[CompletionError] = None
        last_cause: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._generate(messages)
            except Exception as exc:
                error = classify_error(exc)
                if not error.retryable:
                    logger.warning(
                        "completion_not_retryable",
                        attempt=attempt,
                        category=type(error).__name__,
                        error=str(exc),
                    )
                    if error is exc:
                        raise
                    raise error from exc

                last_error, last_cause = error, exc
                logger.warning(
                    "completion_attempt_failed",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    category=type(error).__name__,
                    error=str(exc),
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.base_delay * 2 ** (attempt - 1))

        logger.error("completion_retries_exhausted", attempts=self.max_attempts, error=str(last_error))
        if last_error is last_cause:
            raise last_error
        raise last_error from last_cause

    async def _generate(self, messages: List[UpstreamMessage]) -> str:
        system = "\n\n".join(m.content for m in messages if m.role == Role.SYSTEM)
        contents = [
            {"role": "model" if m.role == Role.ASSISTANT else "user", "parts": [m.content]}
            for m in messages
            if m.role != Role.SYSTEM
        ]
        model = genai.GenerativeModel(
            self.model_name,
            system_instruction=system or None,
            generation_config=genai.GenerationConfig(
                temperature=self.temperature,
                max_output_tokens=self.max_output_tokens,
            ),
        )
        response = await model.generate_content_async(contents)
        return self._extract_text(response)

    def _extract_text(self, response) -> str:
        """Pull the completion text, treating blocked or empty candidates as ''."""
        try:
            return response.text or ""
        except ValueError:
            logger.warning("completion_empty_response")
            return ""
