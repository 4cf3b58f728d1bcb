from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any

from badminton_signup.core.config import get_settings

Document = dict[str, Any]


class StoreError(Exception):
    """Transient backend failure; safe to retry."""


class StoreTimeout(Exception):
    """A call did not finish in time. The write may or may not have landed."""


class DuplicateKeyError(Exception):
    """Insert of an id that already exists."""


class DocumentStore(ABC):
    """
    Durable key-value documents with per-document atomic writes.

    Documents are plain dicts keyed by a string ``id`` and carrying an integer
    ``version``. ``compare_and_set`` is the only conditional write; there are no
    multi-document transactions.
    """

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Return a copy of the document, or None."""
        ...

    @abstractmethod
    async def find(self, collection: str, **equals: Any) -> list[Document]:
        """Return every document whose fields equal ``equals``."""
        ...

    @abstractmethod
    async def insert(self, collection: str, doc: Document) -> None:
        """Create a document; raise DuplicateKeyError if the id exists."""
        ...

    @abstractmethod
    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        doc: Document,
    ) -> bool:
        """
        Replace the document only if its stored version equals ``expected_version``.

        The stored version becomes ``expected_version + 1``. Returns False on a
        version mismatch or a missing document.
        """
        ...

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> bool:
        """Delete a document; return whether it existed."""
        ...

    async def close(self) -> None:
        return None


@lru_cache
def get_store() -> DocumentStore:
    settings = get_settings()
    if settings.store_backend == "mongo":
        from badminton_signup.storage.mongo import MongoDocumentStore
        backend: DocumentStore = MongoDocumentStore.from_settings(settings)
    else:
        from badminton_signup.storage.memory import MemoryDocumentStore
        backend = MemoryDocumentStore()
    from badminton_signup.storage.resilient import ResilientStore
    return ResilientStore(
        backend,
        timeout=settings.store_timeout_seconds,
        attempts=settings.store_retry_attempts,
        backoff_base=settings.store_retry_backoff,
    )
