"""Shared test fixtures."""

import asyncio
from typing import List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from bizlevel_chat.api.app import app, get_completion_client, get_settings
from bizlevel_chat.config import Settings
from bizlevel_chat.domain.models import UpstreamMessage
from bizlevel_chat.repositories.memory import InMemoryDocumentStore
from bizlevel_chat.services.message_store import MessageStore


class FakeCompletionClient:
    """Stands in for LLMService and records every upstream payload."""

    def __init__(self, reply: str = "Hi there", error: Optional[Exception] = None, delay: float = 0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: List[List[UpstreamMessage]] = []
        self.cancelled = False

    async def complete(self, messages: List[UpstreamMessage]) -> str:
        self.calls.append(list(messages))
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        return self.reply


class FlakyDocumentStore(InMemoryDocumentStore):
    """Fails deletion of the documents listed in ``fail_ids``."""

    def __init__(self):
        super().__init__()
        self.fail_ids = set()

    async def delete_document(self, path, document_id):
        if document_id in self.fail_ids:
            raise RuntimeError(f"cannot delete {document_id}")
        await super().delete_document(path, document_id)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        gemini_api_key="test-key",
        llm_retry_base_delay=0,
        client_retry_base_delay=0,
        proxy_timeout=50.0,
        client_timeout=60.0,
    )


@pytest.fixture
def completion_client() -> FakeCompletionClient:
    return FakeCompletionClient()


@pytest.fixture
def document_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def message_store(document_store) -> MessageStore:
    return MessageStore(document_store)


@pytest.fixture
def flaky_store() -> FlakyDocumentStore:
    return FlakyDocumentStore()


@pytest.fixture
def override_app(test_settings, completion_client):
    """Point the app's dependencies at the test settings and fake provider."""
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_completion_client] = lambda: completion_client
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(override_app):
    async with AsyncClient(transport=ASGITransport(app=override_app), base_url="http://test") as client:
        yield client
