"""Client for the ``POST /api/chat`` proxy endpoint."""

import asyncio
from typing import List, Optional

import httpx
import structlog
from pydantic import ValidationError

from ..domain.errors import ProxyRequestError, ProxyTimeoutError
from ..domain.models import ChatRequest, ChatResponse, ChatTurn

logger = structlog.get_logger()

CHAT_ENDPOINT = "/api/chat"


class ChatProxyClient:
    """Posts conversation turns to the proxy and returns the assistant turn.

    The whole round trip runs under ``timeout`` seconds; when it expires the
    request is cancelled and ProxyTimeoutError is raised.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "ChatProxyClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def send(self, turns: List[ChatTurn]) -> ChatTurn:
        payload = ChatRequest(messages=turns).model_dump()
        try:
            response = await asyncio.wait_for(
                self._client.post(CHAT_ENDPOINT, json=payload), timeout=self.timeout
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("chat_request_aborted", timeout=self.timeout)
            raise ProxyTimeoutError(
                f"Chat request aborted after {self.timeout:g}s timeout", error="timeout"
            ) from exc
        except httpx.HTTPError as exc:
            logger.error("chat_request_transport_error", error=str(exc))
            raise ProxyRequestError(f"Chat request failed: {exc}") from exc

        if not response.is_success:
            raise self._error_from(response)

        try:
            data = ChatResponse.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise ProxyRequestError("Failed to parse API response", status_code=response.status_code) from exc
        return data.message

    @staticmethod
    def _error_from(response: httpx.Response) -> ProxyRequestError:
        error = None
        fallback = None
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            error = body.get("error")
            message = body.get("message")
            if isinstance(message, dict):
                fallback = message.get("content")
        detail = error or response.text
        error_class = ProxyTimeoutError if response.status_code == 408 else ProxyRequestError
        logger.warning("chat_request_rejected", status_code=response.status_code, error=error)
        return error_class(
            f"API request failed with status {response.status_code}" + (f": {detail}" if detail else ""),
            status_code=response.status_code,
            error=error,
            fallback=fallback,
        )
