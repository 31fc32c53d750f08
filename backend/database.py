import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import IndexModel, UpdateOne, ASCENDING, DESCENDING
from config import settings

logger = logging.getLogger(__name__)

client: AsyncIOMotorClient = None
_db_instance = None
_store = None


class DocumentNotFound(LookupError):
    """Raised when an update targets a document that does not exist."""


class WriteConflict(RuntimeError):
    """Raised when a conditional update finds the document changed underneath it."""


@dataclass(frozen=True)
class Increment:
    """Field value that is applied with `$inc` instead of `$set`."""
    amount: float = 1


_OPERATORS = {
    "==":     "$eq",
    "!=":     "$ne",
    "<":      "$lt",
    "<=":     "$lte",
    ">":      "$gt",
    ">=":     "$gte",
    "in":     "$in",
    "not-in": "$nin",
}


def _key(field: str) -> str:
    return "_id" if field == "id" else field


def _to_filter(where) -> dict:
    flt: dict = {}
    for field, op, value in where:
        if op not in _OPERATORS:
            raise ValueError(f"Unsupported query operator: {op}")
        flt.setdefault(_key(field), {})[_OPERATORS[op]] = value
    return flt


def _to_update(fields: dict) -> dict:
    to_set = {k: v for k, v in fields.items() if not isinstance(v, Increment)}
    to_inc = {k: v.amount for k, v in fields.items() if isinstance(v, Increment)}
    update = {}
    if to_set:
        update["$set"] = to_set
    if to_inc:
        update["$inc"] = to_inc
    return update


def _from_mongo(doc: Optional[dict]) -> Optional[dict]:
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = doc.pop("_id")
    return doc


class WriteBatch:
    """
    Groups document writes so they are committed together.
    Inside a multi-document transaction when MONGO_TRANSACTIONS is on (the
    default). With it off, one ordered bulk_write per collection: a failure
    in a later collection leaves the earlier ones written.
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._ops: list[tuple[str, Any, dict, bool]] = []

    def update(self, collection: str, doc_id: Any, fields: dict) -> "WriteBatch":
        self._ops.append((collection, doc_id, _to_update(fields), False))
        return self

    def set(self, collection: str, doc_id: Any, fields: dict) -> "WriteBatch":
        self._ops.append((collection, doc_id, _to_update(fields), True))
        return self

    def __len__(self) -> int:
        return len(self._ops)

    async def commit(self) -> None:
        if not self._ops:
            return
        database = self._store.database
        mongo_client = self._store.client

        if settings.MONGO_TRANSACTIONS and mongo_client is not None:
            async with await mongo_client.start_session() as session:
                async with session.start_transaction():
                    for collection, doc_id, update, upsert in self._ops:
                        await database[collection].update_one(
                            {"_id": doc_id}, update, upsert=upsert, session=session,
                        )
            return

        grouped: dict[str, list] = {}
        for collection, doc_id, update, upsert in self._ops:
            grouped.setdefault(collection, []).append(
                UpdateOne({"_id": doc_id}, update, upsert=upsert)
            )
        for collection, requests in grouped.items():
            await database[collection].bulk_write(requests, ordered=True)


class DocumentStore:
    """
    Thin document-store facade over a Motor database.
    Documents are exposed with their key under "id".
    """

    def __init__(self, database, mongo_client: Optional[AsyncIOMotorClient] = None):
        self.database = database
        self.client = mongo_client

    async def get(self, collection: str, doc_id: Any) -> Optional[dict]:
        return _from_mongo(await self.database[collection].find_one({"_id": doc_id}))

    async def query(
        self,
        collection: str,
        *where: tuple,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict]:
        cursor = self.database[collection].find(_to_filter(where))
        if order_by:
            cursor = cursor.sort(_key(order_by), DESCENDING if descending else ASCENDING)
        if limit:
            cursor = cursor.limit(limit)
        return [_from_mongo(doc) async for doc in cursor]

    async def add(self, collection: str, data: dict, doc_id: Optional[str] = None) -> str:
        doc_id = doc_id or uuid.uuid4().hex
        doc = {k: v for k, v in data.items() if k != "id"}
        await self.database[collection].insert_one({"_id": doc_id, **doc})
        return doc_id

    async def update(
        self,
        collection: str,
        doc_id: Any,
        fields: dict,
        expect: Optional[dict] = None,
    ) -> None:
        """
        Atomic single-document update. `expect` holds field values the
        document must still have for the write to apply.
        """
        flt = {"_id": doc_id, **{_key(k): v for k, v in (expect or {}).items()}}
        result = await self.database[collection].update_one(flt, _to_update(fields))
        if result.matched_count:
            return
        if expect and await self.database[collection].count_documents({"_id": doc_id}, limit=1):
            raise WriteConflict(f"{collection}/{doc_id} changed concurrently")
        raise DocumentNotFound(f"{collection}/{doc_id}")

    async def set(self, collection: str, doc_id: Any, fields: dict) -> None:
        """Merge `fields` into the document, creating it when missing."""
        await self.database[collection].update_one({"_id": doc_id}, _to_update(fields), upsert=True)

    def batch(self) -> WriteBatch:
        return WriteBatch(self)


def get_store() -> DocumentStore:
    if _store is None:
        raise RuntimeError("Database not connected. Call connect_db() first.")
    return _store


async def ensure_transaction_support(mongo_client) -> None:
    """Multi-document transactions need a replica set or a sharded cluster."""
    hello = await mongo_client.admin.command("hello")
    if hello.get("setName") or hello.get("msg") == "isdbgrid":
        return
    raise RuntimeError(
        "MongoDB is a standalone server and cannot run transactions. "
        "Start it as a replica set, or set MONGO_TRANSACTIONS=false for local development only."
    )


async def connect_db():
    global client, _db_instance, _store
    client = AsyncIOMotorClient(
        settings.MONGO_URL,
        serverSelectionTimeoutMS=5000,
        connectTimeoutMS=10000,
        tz_aware=True,
    )
    _db_instance = client[settings.DB_NAME]
    _store = DocumentStore(_db_instance, client)
    logger.info(f"Connected to MongoDB: {settings.DB_NAME}")
    if settings.MONGO_TRANSACTIONS:
        await ensure_transaction_support(client)
    else:
        logger.error(
            "MONGO_TRANSACTIONS is off: payment batches are not atomic. "
            "Never run production this way."
        )
    try:
        await create_indexes()
    except Exception as e:
        logger.warning(f"Could not create indexes (non-blocking): {e}")


async def close_db():
    global client
    if client:
        client.close()
        logger.info("MongoDB connection closed")


async def create_indexes():
    collections_to_index = {
        "deliveries": [
            IndexModel([("client_id", 1)]),
            IndexModel([("driver_id", 1)]),
            IndexModel([("truck_id", 1)]),
            IndexModel([("status", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "delivery_events": [
            IndexModel([("delivery_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
        "payments": [
            IndexModel([("delivery_id", 1)]),
            IndexModel([("client_id", 1), ("status", 1), ("due_date", 1)]),
            IndexModel([("payment_intent_id", 1)], sparse=True),
            IndexModel([("source_id", 1)], sparse=True),
        ],
        "drivers": [
            IndexModel([("status", 1)]),
        ],
        "allocations": [
            IndexModel([("truck_id", 1), ("status", 1)]),
        ],
        "notifications": [
            IndexModel([("recipient_id", 1)]),
            IndexModel([("created_at", 1)]),
        ],
    }

    for collection_name, index_models in collections_to_index.items():
        try:
            await _db_instance[collection_name].create_indexes(index_models)
            logger.info(f"Indexes created for collection: {collection_name}")
        except Exception as e:
            logger.error(f"Failed to create indexes for collection {collection_name}: {e}")

    logger.info("All MongoDB indexes creation attempts completed.")
