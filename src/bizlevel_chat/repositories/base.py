"""Base document store interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


class _ServerTimestamp:
    """Field value replaced by the store's own clock at write time."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass
class DocumentRecord:
    """A stored document and its store-assigned id."""

    id: str
    data: Dict[str, Any] = field(default_factory=dict)


class DocumentStore(ABC):
    """Abstract base class for document stores.

    Paths are slash-separated collection paths such as
    ``chats/<user_id>/messages``.
    """

    @abstractmethod
    async def create_document(self, path: str, data: Dict[str, Any]) -> str:
        """Create a document in the collection at ``path`` and return its id."""
        pass

    @abstractmethod
    async def get_subcollection_documents(
        self, path: str, order_by: Optional[str] = None, limit: Optional[int] = None
    ) -> List[DocumentRecord]:
        """List documents at ``path``, ascending by ``order_by`` when given."""
        pass

    @abstractmethod
    async def delete_document(self, path: str, document_id: str) -> None:
        """Delete a single document."""
        pass
