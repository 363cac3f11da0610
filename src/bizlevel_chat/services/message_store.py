"""Per-user message persistence on top of a document store."""

import asyncio
from datetime import datetime
from typing import Iterable, List, Optional

import structlog

from ..domain.errors import PersistenceError
from ..domain.models import Message, Role
from ..repositories.base import SERVER_TIMESTAMP, DocumentRecord, DocumentStore

logger = structlog.get_logger()

CHATS_COLLECTION = "chats"
MESSAGES_SUBCOLLECTION = "messages"
TIMESTAMP_FIELD = "timestamp"


def messages_path(user_id: str) -> str:
    return f"{CHATS_COLLECTION}/{user_id}/{MESSAGES_SUBCOLLECTION}"


def deduplicate_messages(messages: Iterable[Message]) -> List[Message]:
    """Collapse messages sharing ``(role, content)``.

    The list is scanned newest to oldest and the first occurrence wins, so
    the most recent copy survives. Two genuinely distinct messages with the
    same text are collapsed as well; callers rely on that to tolerate
    double submission without idempotency keys.
    """
    seen = set()
    kept: List[Message] = []
    for message in reversed(list(messages)):
        key = (message.role, message.content)
        if key in seen:
            continue
        seen.add(key)
        kept.append(message)
    kept.reverse()
    return kept


def order_messages(messages: Iterable[Message]) -> List[Message]:
    """Sort ascending by effective time, keeping fetch order for ties.

    A message without any timestamp keeps its position relative to the
    message fetched before it.
    """
    keyed = []
    carry = float("-inf")
    for index, message in enumerate(messages):
        moment = message.effective_time()
        if moment is None:
            moment = carry
        else:
            carry = moment
        keyed.append((moment, index, message))
    keyed.sort(key=lambda item: (item[0], item[1]))
    return [message for _, _, message in keyed]


def merge_messages(persisted: Iterable[Message], pending: Iterable[Message]) -> List[Message]:
    """Combine stored and optimistic messages into one display list."""
    return order_messages(deduplicate_messages([*persisted, *pending]))


class MessageStore:
    """Save, load and bulk-delete a user's chat messages."""

    def __init__(self, store: DocumentStore, load_limit: int = 50, clear_limit: int = 1000):
        self.store = store
        self.load_limit = load_limit
        self.clear_limit = clear_limit

    async def save(self, user_id: str, message: Message) -> str:
        """Persist ``message`` with a server timestamp and return its id."""
        if message.role == Role.SYSTEM:
            raise ValueError("system messages are never persisted")

        data = {
            "role": message.role.value,
            "content": message.content,
            TIMESTAMP_FIELD: SERVER_TIMESTAMP,
        }
        try:
            message_id = await self.store.create_document(messages_path(user_id), data)
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error("message_save_failed", user_id=user_id, role=message.role.value, error=str(exc))
            raise PersistenceError(f"Failed to save chat message: {exc}") from exc

        logger.info("message_saved", user_id=user_id, role=message.role.value, message_id=message_id)
        return message_id

    async def load(self, user_id: str, limit: Optional[int] = None) -> List[Message]:
        """Return up to ``limit`` unique messages, oldest first."""
        try:
            records = await self.store.get_subcollection_documents(
                messages_path(user_id),
                order_by=TIMESTAMP_FIELD,
                limit=limit or self.load_limit,
            )
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error("message_load_failed", user_id=user_id, error=str(exc))
            raise PersistenceError(f"Failed to retrieve chat messages: {exc}") from exc

        messages = [m for m in (self._to_message(r) for r in records) if m is not None]
        unique = deduplicate_messages(messages)
        if len(unique) != len(messages):
            logger.info("duplicate_messages_dropped", user_id=user_id, dropped=len(messages) - len(unique))
        return order_messages(unique)

    async def delete_all(self, user_id: str) -> None:
        """Delete every stored message concurrently.

        All deletions are awaited. Failed ones are not rolled back; if any
        failed a PersistenceError is raised once the rest have settled.
        """
        path = messages_path(user_id)
        # Raw listing: duplicates and untimed records must go too.
        try:
            targets = await self.store.get_subcollection_documents(path, limit=self.clear_limit)
        except PersistenceError:
            raise
        except Exception as exc:
            logger.error("message_load_failed", user_id=user_id, error=str(exc))
            raise PersistenceError(f"Failed to retrieve chat messages: {exc}") from exc

        results = await asyncio.gather(
            *(self.store.delete_document(path, record.id) for record in targets),
            return_exceptions=True,
        )
        failures = [
            (record.id, result)
            for record, result in zip(targets, results)
            if isinstance(result, BaseException)
        ]
        for message_id, error in failures:
            logger.error("message_delete_failed", user_id=user_id, message_id=message_id, error=str(error))
        logger.info(
            "chat_history_cleared",
            user_id=user_id,
            deleted=len(targets) - len(failures),
            failed=len(failures),
        )
        if failures:
            raise PersistenceError(
                f"Failed to clear chat history: {len(failures)} of {len(targets)} deletions failed"
            )

    @staticmethod
    def _to_message(record: DocumentRecord) -> Optional[Message]:
        data = record.data
        try:
            role = Role(data.get("role"))
        except ValueError:
            logger.warning("message_record_skipped", message_id=record.id, role=data.get("role"))
            return None
        timestamp = data.get(TIMESTAMP_FIELD)
        if isinstance(timestamp, bool) or not isinstance(timestamp, (datetime, int, float)):
            timestamp = None
        elif not isinstance(timestamp, datetime):
            timestamp = float(timestamp)
        return Message(role=role, content=data.get("content") or "", timestamp=timestamp, id=record.id)
