"""In-memory document store implementation."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import structlog

from .base import SERVER_TIMESTAMP, DocumentRecord, DocumentStore

logger = structlog.get_logger()


class InMemoryDocumentStore(DocumentStore):
    """Document store held in process memory.

    Server timestamps are taken from the local clock and kept strictly
    increasing so that write order and timestamp order agree.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()
        self._last_stamp: Optional[datetime] = None
        logger.info("document_store_initialized", backend="memory")

    def _server_now(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now

    async def create_document(self, path: str, data: Dict[str, Any]) -> str:
        async with self._lock:
            stored = {
                key: self._server_now() if value is SERVER_TIMESTAMP else value
                for key, value in data.items()
            }
            document_id = uuid4().hex
            self._collections.setdefault(path, {})[document_id] = stored
            logger.debug("document_created", path=path, document_id=document_id)
            return document_id

    async def get_subcollection_documents(
        self, path: str, order_by: Optional[str] = None, limit: Optional[int] = None
    ) -> List[DocumentRecord]:
        async with self._lock:
            documents = [
                DocumentRecord(id=doc_id, data=dict(data))
                for doc_id, data in self._collections.get(path, {}).items()
            ]
        if order_by is not None:
            # Like Firestore, ordering on a field drops documents without it.
            documents = [d for d in documents if d.data.get(order_by) is not None]
            documents.sort(key=lambda d: d.data[order_by])
        if limit is not None:
            documents = documents[:limit]
        return documents

    async def delete_document(self, path: str, document_id: str) -> None:
        async with self._lock:
            collection = self._collections.get(path, {})
            if collection.pop(document_id, None) is None:
                logger.warning("document_not_found", path=path, document_id=document_id)
                return
            logger.debug("document_deleted", path=path, document_id=document_id)

    async def count(self, path: str) -> int:
        """Number of documents stored at ``path``."""
        async with self._lock:
            return len(self._collections.get(path, {}))
