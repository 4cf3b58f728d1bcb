from typing import Any

from badminton_signup.core.retry import run_with_retry, with_timeout
from badminton_signup.storage.base import Document, DocumentStore


class ResilientStore(DocumentStore):
    """
    Wraps a backend with a per-call timeout and bounded retry of transient errors.

    Timeouts are never retried here: the caller has to decide how to re-check
    an operation whose outcome is unknown.
    """

    def __init__(
        self,
        backend: DocumentStore,
        *,
        timeout: float = 5.0,
        attempts: int = 3,
        backoff_base: float = 0.05,
    ) -> None:
        self.backend = backend
        self._timeout = timeout
        self._attempts = attempts
        self._backoff_base = backoff_base

    async def _call(self, name: str, *args: Any, **kwargs: Any) -> Any:
        method = getattr(self.backend, name)
        return await run_with_retry(
            lambda: with_timeout(method(*args, **kwargs), self._timeout),
            attempts=self._attempts,
            backoff_base=self._backoff_base,
            operation=name,
        )

    async def get(self, collection: str, doc_id: str) -> Document | None:
        return await self._call("get", collection, doc_id)

    async def find(self, collection: str, **equals: Any) -> list[Document]:
        return await self._call("find", collection, **equals)

    async def insert(self, collection: str, doc: Document) -> None:
        await self._call("insert", collection, doc)

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        doc: Document,
    ) -> bool:
        return await self._call("compare_and_set", collection, doc_id, expected_version, doc)

    async def delete(self, collection: str, doc_id: str) -> bool:
        return await self._call("delete", collection, doc_id)

    async def close(self) -> None:
        await self.backend.close()
