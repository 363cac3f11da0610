"""Tests for the conversation orchestrator."""

import asyncio

import pytest
from httpx import ASGITransport

from bizlevel_chat.api.errors import FALLBACK_REPLY
from bizlevel_chat.config import Settings
from bizlevel_chat.domain.errors import ChatError, PersistenceError, ProxyRequestError, ProxyTimeoutError
from bizlevel_chat.domain.models import PLACEHOLDER_REPLY, ChatTurn, Message, Role
from bizlevel_chat.services.conversation import ConversationOrchestrator
from bizlevel_chat.services.message_store import MessageStore, messages_path
from bizlevel_chat.services.proxy_client import ChatProxyClient

USER_ID = "user-1"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class ScriptedProxy:
    """Proxy double returning queued replies or raising queued errors."""

    def __init__(self, *outcomes, gate: asyncio.Event = None):
        self.outcomes = list(outcomes)
        self.gate = gate
        self.calls = []

    async def send(self, turns):
        self.calls.append(list(turns))
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else "Hi there"
        if isinstance(outcome, BaseException):
            raise outcome
        return ChatTurn(role="assistant", content=outcome)

    async def aclose(self):
        pass


def make_orchestrator(message_store, proxy, user_id=USER_ID):
    return ConversationOrchestrator(user_id, message_store, proxy, sleep=RecordingSleep())


@pytest.mark.asyncio
async def test_send_end_to_end_through_proxy(override_app, document_store, message_store):
    """Test the full round trip: orchestrator, HTTP proxy, fake provider and store."""
    proxy = ChatProxyClient("http://test", transport=ASGITransport(app=override_app))
    orchestrator = make_orchestrator(message_store, proxy)
    try:
        reply = await orchestrator.send("Hello")
    finally:
        await orchestrator.aclose()

    assert reply.role == Role.ASSISTANT
    assert reply.content == "Hi there"
    loaded = await message_store.load(USER_ID)
    assert [(m.role, m.content) for m in loaded] == [
        (Role.USER, "Hello"),
        (Role.ASSISTANT, "Hi there"),
    ]
    assert await document_store.count(messages_path(USER_ID)) == 2


@pytest.mark.asyncio
async def test_user_message_is_stored_while_reply_is_in_flight(message_store):
    saved_before_reply = []

    class InspectingProxy(ScriptedProxy):
        async def send(self, turns):
            reply = await super().send(turns)
            await asyncio.sleep(0)
            saved_before_reply.extend(m.content for m in await message_store.load(USER_ID))
            return reply

    orchestrator = make_orchestrator(message_store, InspectingProxy())
    await orchestrator.send("Hello")

    assert saved_before_reply == ["Hello"]


@pytest.mark.asyncio
async def test_upstream_failure_still_persists_user_message(override_app, completion_client, message_store):
    completion_client.error = RuntimeError("upstream exploded")
    proxy = ChatProxyClient("http://test", transport=ASGITransport(app=override_app))
    orchestrator = make_orchestrator(message_store, proxy)

    with pytest.raises(ProxyRequestError) as excinfo:
        await orchestrator.send("Hello")
    await orchestrator.aclose()

    assert excinfo.value.status_code == 500
    assert excinfo.value.fallback == FALLBACK_REPLY
    assert excinfo.value.error
    assert orchestrator.send_error is excinfo.value
    assert [m.content for m in await message_store.load(USER_ID)] == ["Hello"]
    assert [m.content for m in orchestrator.messages] == ["Hello"]


@pytest.mark.asyncio
async def test_empty_input_has_no_side_effects(document_store, message_store):
    proxy = ScriptedProxy()
    orchestrator = make_orchestrator(message_store, proxy)

    assert await orchestrator.send("") is None
    assert await orchestrator.send("   \n\t") is None

    assert proxy.calls == []
    assert await document_store.count(messages_path(USER_ID)) == 0


@pytest.mark.asyncio
async def test_repeated_text_makes_one_upstream_call(message_store):
    proxy = ScriptedProxy("Hi there", "Something new")
    orchestrator = make_orchestrator(message_store, proxy)

    first = await orchestrator.send("Hello")
    second = await orchestrator.send("Hello")

    assert len(proxy.calls) == 1
    assert second.content == first.content == "Hi there"
    assert len(await message_store.load(USER_ID)) == 2


@pytest.mark.asyncio
async def test_concurrent_identical_sends_are_idempotent(message_store):
    gate = asyncio.Event()
    proxy = ScriptedProxy("Hi there", gate=gate)
    orchestrator = make_orchestrator(message_store, proxy)

    first = asyncio.create_task(orchestrator.send("Hello"))
    await asyncio.sleep(0)
    second = await orchestrator.send("Hello")
    gate.set()
    reply = await first

    assert second is None
    assert reply.content == "Hi there"
    assert len(proxy.calls) == 1


@pytest.mark.asyncio
async def test_payload_is_bounded_to_recent_history(message_store):
    for i in range(25):
        role_message = Message.user(f"Question {i}") if i % 2 == 0 else Message.assistant(f"Answer {i}")
        await message_store.save(USER_ID, role_message)
    proxy = ScriptedProxy()
    orchestrator = make_orchestrator(message_store, proxy)
    await orchestrator.load_history()

    await orchestrator.send("New question")

    turns = proxy.calls[0]
    assert len(turns) == 21
    assert turns[0].content == "Answer 5"
    assert turns[-1] == ChatTurn(role="user", content="New question")


@pytest.mark.asyncio
async def test_identical_reply_is_not_saved_twice(document_store, message_store):
    proxy = ScriptedProxy("Same answer", "Same answer")
    orchestrator = make_orchestrator(message_store, proxy)

    await orchestrator.send("First question")
    reply = await orchestrator.send("Second question")

    assert reply.content == "Same answer"
    assert reply.id is None
    contents = [m.content for m in await message_store.load(USER_ID)]
    assert contents == ["First question", "Same answer", "Second question"]
    assert await document_store.count(messages_path(USER_ID)) == 3


@pytest.mark.asyncio
async def test_timeouts_are_retried_with_backoff(document_store, message_store):
    proxy = ScriptedProxy(
        ProxyTimeoutError("aborted", status_code=408),
        ProxyTimeoutError("aborted"),
        "Finally",
    )
    orchestrator = make_orchestrator(message_store, proxy)

    reply = await orchestrator.send("Hello")

    assert reply.content == "Finally"
    assert len(proxy.calls) == 3
    assert orchestrator._sleep.delays == [2.0, 4.0]
    assert await document_store.count(messages_path(USER_ID)) == 2


@pytest.mark.asyncio
async def test_exhausted_timeouts_propagate(message_store):
    proxy = ScriptedProxy(*(ProxyTimeoutError("aborted") for _ in range(3)))
    orchestrator = make_orchestrator(message_store, proxy)

    with pytest.raises(ProxyTimeoutError):
        await orchestrator.send("Hello")

    assert len(proxy.calls) == 3
    assert [m.content for m in await message_store.load(USER_ID)] == ["Hello"]


@pytest.mark.asyncio
async def test_other_failures_are_not_retried(message_store):
    proxy = ScriptedProxy(ProxyRequestError("rate limited", status_code=429))
    orchestrator = make_orchestrator(message_store, proxy)

    with pytest.raises(ProxyRequestError):
        await orchestrator.send("Hello")

    assert len(proxy.calls) == 1
    assert orchestrator.is_sending is False


@pytest.mark.asyncio
async def test_persistence_failure_is_propagated():
    class BrokenStore(MessageStore):
        async def save(self, user_id, message):
            raise PersistenceError("store unavailable")

    proxy = ScriptedProxy()
    orchestrator = make_orchestrator(BrokenStore(None), proxy)

    with pytest.raises(PersistenceError):
        await orchestrator.send("Hello")
    assert len(proxy.calls) == 1


@pytest.mark.asyncio
async def test_optimistic_messages_while_sending(message_store):
    gate = asyncio.Event()
    orchestrator = make_orchestrator(message_store, ScriptedProxy("Hi there", gate=gate))

    task = asyncio.create_task(orchestrator.send("Hello"))
    await asyncio.sleep(0)

    assert orchestrator.is_sending
    assert [(m.role, m.content) for m in orchestrator.messages] == [
        (Role.USER, "Hello"),
        (Role.ASSISTANT, PLACEHOLDER_REPLY),
    ]
    assert orchestrator.messages[0].is_transient

    gate.set()
    await task

    assert not orchestrator.is_sending
    assert [m.content for m in orchestrator.messages] == ["Hello", "Hi there"]
    assert all(not m.is_transient for m in orchestrator.messages)


@pytest.mark.asyncio
async def test_load_history_exposes_state(message_store):
    await message_store.save(USER_ID, Message.user("Hello"))
    await message_store.save(USER_ID, Message.assistant("Hi there"))
    orchestrator = make_orchestrator(message_store, ScriptedProxy())

    messages = await orchestrator.load_history()

    assert [m.content for m in messages] == ["Hello", "Hi there"]
    assert orchestrator.is_loading is False
    assert orchestrator.load_error is None


@pytest.mark.asyncio
async def test_load_failure_is_recorded():
    class BrokenStore(MessageStore):
        async def load(self, user_id, limit=None):
            raise PersistenceError("store unavailable")

    orchestrator = make_orchestrator(BrokenStore(None), ScriptedProxy())

    with pytest.raises(PersistenceError):
        await orchestrator.load_history()
    assert isinstance(orchestrator.load_error, PersistenceError)
    assert orchestrator.is_loading is False


@pytest.mark.asyncio
async def test_clear_history_deletes_everything(document_store, message_store):
    orchestrator = make_orchestrator(message_store, ScriptedProxy("One", "Two", "Three"))
    for text in ["a", "b", "c"]:
        await orchestrator.send(text)
    assert await document_store.count(messages_path(USER_ID)) == 6

    await orchestrator.clear_history()

    assert await document_store.count(messages_path(USER_ID)) == 0
    assert orchestrator.messages == []
    assert orchestrator.is_clearing is False


@pytest.mark.asyncio
async def test_clear_history_partial_failure_completes(flaky_store):
    store = flaky_store
    message_store = MessageStore(store)
    ids = [await message_store.save(USER_ID, Message.user(f"Message {i}")) for i in range(5)]
    store.fail_ids = {ids[2]}
    orchestrator = make_orchestrator(message_store, ScriptedProxy())

    with pytest.raises(PersistenceError):
        await asyncio.wait_for(orchestrator.clear_history(), timeout=5)

    assert isinstance(orchestrator.clear_error, PersistenceError)
    assert orchestrator.is_clearing is False
    assert [m.id for m in await message_store.load(USER_ID)] == [ids[2]]


@pytest.mark.asyncio
async def test_failed_clear_resyncs_history(flaky_store):
    store = flaky_store
    message_store = MessageStore(store)
    proxy = ScriptedProxy("A", "B", "B again")
    orchestrator = make_orchestrator(message_store, proxy)
    await orchestrator.send("one")
    await orchestrator.send("two")
    store.fail_ids = {orchestrator.history[0].id}

    with pytest.raises(PersistenceError):
        await orchestrator.clear_history()

    assert [m.content for m in orchestrator.messages] == ["one"]

    reply = await orchestrator.send("two")

    assert reply.content == "B again"
    assert len(proxy.calls) == 3
    stored = await message_store.load(USER_ID)
    assert [m.content for m in stored] == ["one", "two", "B again"]


@pytest.mark.asyncio
async def test_operations_require_a_user(message_store):
    orchestrator = make_orchestrator(message_store, ScriptedProxy(), user_id=None)

    with pytest.raises(ChatError, match="not authenticated"):
        await orchestrator.send("Hello")
    with pytest.raises(ChatError):
        await orchestrator.clear_history()


@pytest.mark.asyncio
async def test_outer_timeout_aborts_proxy_call(override_app, completion_client):
    completion_client.delay = 5
    async with ChatProxyClient(
        "http://test", timeout=0.05, transport=ASGITransport(app=override_app)
    ) as proxy:
        with pytest.raises(ProxyTimeoutError):
            await proxy.send([ChatTurn(role="user", content="Hello")])


@pytest.mark.asyncio
async def test_proxy_408_is_a_timeout(override_app, completion_client):
    completion_client.error = asyncio.TimeoutError()
    async with ChatProxyClient("http://test", transport=ASGITransport(app=override_app)) as proxy:
        with pytest.raises(ProxyTimeoutError) as excinfo:
            await proxy.send([ChatTurn(role="user", content="Hello")])

    assert excinfo.value.status_code == 408
    assert excinfo.value.fallback == FALLBACK_REPLY


def test_outer_timeout_must_exceed_inner():
    with pytest.raises(ValueError):
        Settings(proxy_timeout=60.0, client_timeout=60.0)


@pytest.mark.asyncio
async def test_from_settings_wires_limits(document_store, test_settings):
    orchestrator = ConversationOrchestrator.from_settings(USER_ID, document_store, test_settings)
    await orchestrator.aclose()

    assert orchestrator.history_limit == 20
    assert orchestrator.proxy.timeout == 60.0
    assert orchestrator.store.load_limit == 50
    assert orchestrator.store.clear_limit == 1000
