from typing import Any

import certifi
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import ConnectionFailure, DuplicateKeyError as MongoDuplicateKeyError, OperationFailure

from badminton_signup.core.config import Settings
from badminton_signup.storage.base import Document, DocumentStore, DuplicateKeyError, StoreError


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


def _from_mongo(raw: dict[str, Any] | None) -> Document | None:
    if raw is None:
        return None
    doc = dict(raw)
    doc["id"] = doc.pop("_id")
    return doc


def _to_mongo(doc: Document) -> dict[str, Any]:
    body = {k: v for k, v in doc.items() if k != "id"}
    body["_id"] = doc["id"]
    return body


class MongoDocumentStore(DocumentStore):
    """MongoDB backend. Single-document writes are atomic; CAS filters on ``version``."""

    def __init__(self, database: AsyncIOMotorDatabase, client: AsyncIOMotorClient | None = None) -> None:
        self._db = database
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "MongoDocumentStore":
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs: dict[str, Any] = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
        return cls(client[settings.mongodb_db_name], client)

    async def get(self, collection: str, doc_id: str) -> Document | None:
        try:
            raw = await self._db[collection].find_one({"_id": doc_id})
        except ConnectionFailure as exc:
            raise StoreError(str(exc)) from exc
        return _from_mongo(raw)

    async def find(self, collection: str, **equals: Any) -> list[Document]:
        query = {("_id" if k == "id" else k): v for k, v in equals.items()}
        try:
            raws = await self._db[collection].find(query).to_list(length=None)
        except ConnectionFailure as exc:
            raise StoreError(str(exc)) from exc
        return [_from_mongo(raw) for raw in raws]

    async def insert(self, collection: str, doc: Document) -> None:
        body = _to_mongo(doc)
        body.setdefault("version", 0)
        try:
            await self._db[collection].insert_one(body)
        except MongoDuplicateKeyError as exc:
            raise DuplicateKeyError(f"{collection}/{doc['id']}") from exc
        except ConnectionFailure as exc:
            raise StoreError(str(exc)) from exc

    async def compare_and_set(
        self,
        collection: str,
        doc_id: str,
        expected_version: int,
        doc: Document,
    ) -> bool:
        body = {k: v for k, v in doc.items() if k != "id"}
        body["version"] = expected_version + 1
        try:
            result = await self._db[collection].update_one(
                {"_id": doc_id, "version": expected_version},
                {"$set": body},
            )
        except (ConnectionFailure, OperationFailure) as exc:
            raise StoreError(str(exc)) from exc
        return result.matched_count == 1

    async def delete(self, collection: str, doc_id: str) -> bool:
        try:
            result = await self._db[collection].delete_one({"_id": doc_id})
        except ConnectionFailure as exc:
            raise StoreError(str(exc)) from exc
        return result.deleted_count == 1

    async def ensure_indexes(self) -> None:
        await self._db["transactions"].create_index([("user_id", 1), ("created_at", -1)])
        await self._db["archives"].create_index([("session_date", 1)])
        await self._db["users"].create_index([("display_name", 1)], unique=True)
        await self._db["audit_logs"].create_index([("entity_type", 1), ("entity_id", 1)])

    async def close(self) -> None:
        if self._client is not None:
            self._client.close()
