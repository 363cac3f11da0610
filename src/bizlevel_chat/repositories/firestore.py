"""Cloud Firestore document store implementation."""

from typing import Any, Dict, List, Optional

import firebase_admin
import structlog
from firebase_admin import firestore_async
from google.api_core import exceptions as google_exceptions
from google.cloud import firestore

from ..domain.errors import PersistenceError
from .base import SERVER_TIMESTAMP, DocumentRecord, DocumentStore

logger = structlog.get_logger()


def get_firestore_client(project: Optional[str] = None):
    """Return an async Firestore client, initializing the default Firebase app once."""
    try:
        app = firebase_admin.get_app()
    except ValueError:
        options = {"projectId": project} if project else None
        app = firebase_admin.initialize_app(options=options)
        logger.info("firebase_app_initialized", project=project or None)
    return firestore_async.client(app)


class FirestoreDocumentStore(DocumentStore):
    """Document store backed by an ``AsyncClient``; API errors become PersistenceError."""

    def __init__(self, client=None, project: Optional[str] = None) -> None:
        self._client = client if client is not None else get_firestore_client(project)
        logger.info("document_store_initialized", backend="firestore")

    @staticmethod
    def _to_firestore(data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            key: firestore.SERVER_TIMESTAMP if value is SERVER_TIMESTAMP else value
            for key, value in data.items()
        }

    async def create_document(self, path: str, data: Dict[str, Any]) -> str:
        try:
            _, reference = await self._client.collection(path).add(self._to_firestore(data))
        except google_exceptions.GoogleAPICallError as exc:
            logger.error("firestore_create_failed", path=path, error=str(exc))
            raise PersistenceError(f"Failed to create document in {path}: {exc}") from exc
        return reference.id

    async def get_subcollection_documents(
        self, path: str, order_by: Optional[str] = None, limit: Optional[int] = None
    ) -> List[DocumentRecord]:
        query = self._client.collection(path)
        if order_by is not None:
            query = query.order_by(order_by, direction=firestore.Query.ASCENDING)
        if limit is not None:
            query = query.limit(limit)
        try:
            return [
                DocumentRecord(id=snapshot.id, data=snapshot.to_dict() or {})
                async for snapshot in query.stream()
            ]
        except google_exceptions.GoogleAPICallError as exc:
            logger.error("firestore_query_failed", path=path, error=str(exc))
            raise PersistenceError(f"Failed to read documents from {path}: {exc}") from exc

    async def delete_document(self, path: str, document_id: str) -> None:
        try:
            await self._client.collection(path).document(document_id).delete()
        except google_exceptions.GoogleAPICallError as exc:
            logger.error("firestore_delete_failed", path=path, document_id=document_id, error=str(exc))
            raise PersistenceError(f"Failed to delete {path}/{document_id}: {exc}") from exc
