"""Conversation orchestration: send, load and clear a user's chat."""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, List, Optional

import structlog

from ..config import Settings, settings as default_settings
from ..domain.errors import ChatError, PersistenceError, ProxyTimeoutError
from ..domain.models import PLACEHOLDER_REPLY, ChatTurn, Message, Role
from ..repositories.base import DocumentStore
from .message_store import MessageStore, merge_messages
from .proxy_client import ChatProxyClient

logger = structlog.get_logger()


class ConversationOrchestrator:
    """Coordinates one user's conversation between the message store and the proxy.

    ``history`` holds messages known to be persisted; in-flight user
    messages and the assistant placeholder live in a separate optimistic
    list until their send settles. ``messages`` merges both for display.
    """

    def __init__(
        self,
        user_id: Optional[str],
        store: MessageStore,
        proxy: ChatProxyClient,
        history_limit: int = 20,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.user_id = user_id
        self.store = store
        self.proxy = proxy
        self.history_limit = history_limit
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self._sleep = sleep

        self.history: List[Message] = []
        self._pending: List[Message] = []
        self._placeholder: Optional[Message] = None

        self.is_loading = False
        self.is_sending = False
        self.is_clearing = False
        self.load_error: Optional[BaseException] = None
        self.send_error: Optional[BaseException] = None
        self.clear_error: Optional[BaseException] = None

    @classmethod
    def from_settings(
        cls,
        user_id: Optional[str],
        document_store: DocumentStore,
        config: Optional[Settings] = None,
        **proxy_kwargs,
    ) -> "ConversationOrchestrator":
        config = config or default_settings
        store = MessageStore(
            document_store,
            load_limit=config.history_load_limit,
            clear_limit=config.clear_history_limit,
        )
        proxy = ChatProxyClient(config.chat_api_url, timeout=config.client_timeout, **proxy_kwargs)
        return cls(
            user_id,
            store,
            proxy,
            history_limit=config.client_history_limit,
            max_attempts=config.client_max_attempts,
            retry_base_delay=config.client_retry_base_delay,
        )

    @property
    def messages(self) -> List[Message]:
        """Persisted and optimistic messages, deduplicated and in display order."""
        merged = merge_messages(self.history, self._pending)
        if self._placeholder is not None:
            merged.append(self._placeholder)
        return merged

    def _require_user(self) -> str:
        if not self.user_id:
            raise ChatError("user is not authenticated")
        return self.user_id

    async def load_history(self) -> List[Message]:
        user_id = self._require_user()
        self.is_loading = True
        self.load_error = None
        try:
            self.history = await self.store.load(user_id)
        except Exception as exc:
            self.load_error = exc
            logger.error("chat_history_load_failed", user_id=user_id, error=str(exc))
            raise
        finally:
            self.is_loading = False
        if not self.is_sending:
            self._pending = []
        return self.messages

    async def refresh(self) -> List[Message]:
        return await self.load_history()

    def _duplicate_reply(self, text: str, known: List[Message]):
        """Return ``(is_duplicate, reply)`` for ``text`` against the known history."""
        for index in range(len(known) - 1, -1, -1):
            if known[index].role != Role.USER:
                continue
            if known[index].content != text:
                return False, None
            reply = next((m for m in known[index + 1:] if m.role == Role.ASSISTANT), None)
            return True, reply
        return False, None

    async def send(self, text: str) -> Optional[Message]:
        """Send ``text`` and return the assistant's reply.

        Whitespace-only input is ignored. Repeating the latest user message
        makes no upstream call and returns the reply that followed it, if
        any. The user message is always durably saved before this returns
        or raises.
        """
        if not text or not text.strip():
            return None
        user_id = self._require_user()

        known = merge_messages(self.history, self._pending)
        is_duplicate, reply = self._duplicate_reply(text, known)
        if is_duplicate:
            logger.info("duplicate_send_skipped", user_id=user_id, has_reply=reply is not None)
            return reply

        user_message = Message.user(text)
        placeholder = Message(
            role=Role.ASSISTANT, content=PLACEHOLDER_REPLY, timestamp=datetime.now(timezone.utc)
        )
        turns = [m.to_turn() for m in known if m.role != Role.SYSTEM]
        turns = (turns[-self.history_limit:] if self.history_limit else []) + [user_message.to_turn()]

        self.is_sending = True
        self.send_error = None
        self._pending.append(user_message)
        self._placeholder = placeholder
        save_task = asyncio.create_task(self.store.save(user_id, user_message))
        try:
            try:
                turn = await self._request_reply(turns)
            except BaseException:
                await self._settle_user_message(save_task, user_message)
                raise
            await self._settle_user_message(save_task, user_message)
            return await self._store_reply(user_id, turn)
        except Exception as exc:
            self.send_error = exc
            logger.error("chat_send_failed", user_id=user_id, error=str(exc))
            raise
        finally:
            self.is_sending = False
            self._pending = [m for m in self._pending if m is not user_message]
            if self._placeholder is placeholder:
                self._placeholder = None

    async def _request_reply(self, turns: List[ChatTurn]) -> ChatTurn:
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self.proxy.send(turns)
            except ProxyTimeoutError as exc:
                if attempt >= self.max_attempts:
                    raise
                delay = self.retry_base_delay * 2 ** attempt
                logger.warning(
                    "chat_request_retry",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(exc),
                )
                await self._sleep(delay)
        raise ChatError("failed to send message after several attempts")

    async def _settle_user_message(self, save_task: "asyncio.Task[str]", user_message: Message) -> None:
        message_id = await save_task
        self.history.append(user_message.model_copy(update={"id": message_id}))

    async def _store_reply(self, user_id: str, turn: ChatTurn) -> Message:
        reply = Message.assistant(turn.content)
        last_reply = next((m for m in reversed(self.history) if m.role == Role.ASSISTANT), None)
        if last_reply is not None and last_reply.content == reply.content:
            logger.info("duplicate_reply_not_saved", user_id=user_id)
            return reply
        reply.id = await self.store.save(user_id, reply)
        self.history.append(reply)
        return reply

    async def clear_history(self) -> None:
        """Delete the whole conversation. Irreversible and not transactional."""
        user_id = self._require_user()
        self.is_clearing = True
        self.clear_error = None
        self._pending = []
        self._placeholder = None
        try:
            await self.store.delete_all(user_id)
        except Exception as exc:
            self.clear_error = exc
            logger.error("chat_history_clear_failed", user_id=user_id, error=str(exc))
            # Some records may be gone; resync with whatever survived.
            try:
                self.history = await self.store.load(user_id)
            except PersistenceError as reload_exc:
                logger.error("chat_history_resync_failed", user_id=user_id, error=str(reload_exc))
                self.history = []
            raise
        finally:
            self.is_clearing = False
        self.history = []

    async def aclose(self) -> None:
        await self.proxy.aclose()
