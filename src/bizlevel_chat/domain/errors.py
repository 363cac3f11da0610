"""Exception taxonomy for the chat pipeline."""

from typing import Optional


class ChatError(Exception):
    """Base class for chat pipeline failures."""


class ConfigurationError(ChatError):
    """Required configuration (the provider credential) is missing."""


class CompletionError(ChatError):
    """The model provider call failed."""

    retryable = True


class InvalidCredentialsError(CompletionError):
    """The provider rejected the configured credential."""

    retryable = False


class QuotaExhaustedError(CompletionError):
    """The provider account has no quota left."""

    retryable = False


class RateLimitError(CompletionError):
    """The provider is throttling requests."""


class CompletionTimeoutError(CompletionError):
    """The provider call took too long or was aborted."""


class PersistenceError(ChatError):
    """The message store could not complete an operation."""


class ProxyRequestError(ChatError):
    """``POST /api/chat`` answered with a non-success status."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error: Optional[str] = None,
        fallback: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error = error
        self.fallback = fallback


class ProxyTimeoutError(ProxyRequestError):
    """The round trip to the proxy timed out, on either side."""
