import asyncio
import copy
from collections import defaultdict
from typing import Any

from badminton_signup.storage.base import Document, DocumentStore, DuplicateKeyError


class MemoryDocumentStore(DocumentStore):
    """
    In-process document store for tests and single-process development.

    Every method yields to the event loop once before touching data, so
    concurrent callers interleave the way they would against a remote store.
    The body after that point has no await, which makes each call atomic.
    """

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, Document]] = defaultdict(dict)

    async def get(self, collection: str, doc_id: str) -> Document | None:
        await asyncio.sleep(0)
        doc = self._collections[collection].get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def find(self, collection: str, **equals: Any) -> list[Document]:
        await asyncio.sleep(0)
        return [
            copy.deepcopy(doc)
            for doc in self._collections[collection].values()
            if all(doc.get(key) == value for key, value in equals.items())
        ]

    async def insert(self, collection: str, doc: Document) -> None:
        await asyncio.sleep(0)
        docs = self._collections[collection]
        if doc["id"] in docs:
            raise DuplicateKeyError(f"{collection}/{doc['id']}")
        stored = copy.deepcopy(doc)
        stored.setdefault("version", 0)
        docs[doc["id"]] = stored

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        doc: Document,
    ) -> bool:
        await asyncio.sleep(0)
        docs = self._collections[collection]
        current = docs.get(doc_id)
        if current is None or current.get("version", 0) != expected_version:
            return False
        stored = copy.deepcopy(doc)
        stored["id"] = doc_id
        stored["version"] = expected_version + 1
        docs[doc_id] = stored
        return True

    async def delete(self, collection: str, doc_id: str) -> bool:
        await asyncio.sleep(0)
        return self._collections[collection].pop(doc_id, None) is not None
