"""MongoDB document store (pymongo)."""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, MongoClient
from pymongo.errors import (
    AutoReconnect,
    ConnectionFailure,
    NetworkTimeout,
    OperationFailure,
    ServerSelectionTimeoutError,
)

from ..errors import CutoverError, TransientStoreError
from .base import DocumentStore
from .retry import retried

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (AutoReconnect, ConnectionFailure, NetworkTimeout, ServerSelectionTimeoutError)


@contextmanager
def translate_errors(operation: str):
    """Map driver connectivity errors onto TransientStoreError."""
    try:
        yield
    except TRANSIENT_ERRORS as e:
        raise TransientStoreError(f"MongoDB {operation} failed: {e}") from e


def _object_id(doc_id: Any) -> Any:
    if isinstance(doc_id, ObjectId):
        return doc_id
    try:
        return ObjectId(str(doc_id))
    except (InvalidId, TypeError):
        return doc_id


def _export(doc: Dict[str, Any]) -> Dict[str, Any]:
    if "_id" in doc:
        doc["_id"] = str(doc["_id"])
    return doc


class MongoDocumentStore(DocumentStore):
    """
    Source document store backed by MongoDB.

    Document ids are exposed as strings; lookups accept either an
    ObjectId hex string or the raw id for collections keyed otherwise.
    """

    def __init__(
        self,
        url: str,
        database: str,
        batch_size: int = 500,
        timeout_ms: int = 10000,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.client = MongoClient(
            url,
            serverSelectionTimeoutMS=timeout_ms,
            connectTimeoutMS=timeout_ms,
            socketTimeoutMS=timeout_ms * 3,
        )
        self.db = self.client[database]
        self.batch_size = batch_size

    def id_values(self, doc_id: str) -> List[Any]:
        oid = _object_id(doc_id)
        if oid is doc_id:
            return [doc_id]
        return [oid, doc_id]

    def _id_filter(self, doc_id: str) -> Dict[str, Any]:
        return {"_id": {"$in": self.id_values(doc_id)}}

    @retried
    def ping(self) -> bool:
        with translate_errors("ping"):
            self.client.admin.command("ping")
        return True

    @retried
    def list_collections(self) -> List[str]:
        with translate_errors("list_collections"):
            return self.db.list_collection_names()

    def find(self, collection, filter=None, projection=None) -> Iterator[Dict[str, Any]]:
        # Cursor iteration is not retried; a dropped connection mid-scan surfaces
        # as TransientStoreError and the stage is re-run.
        with translate_errors(f"find on {collection}"):
            cursor = self.db[collection].find(filter or {}, projection, batch_size=self.batch_size)
            for doc in cursor:
                yield _export(doc)

    @retried
    def find_one(self, collection, filter=None) -> Optional[Dict[str, Any]]:
        with translate_errors(f"find_one on {collection}"):
            doc = self.db[collection].find_one(filter or {})
        return _export(doc) if doc else None

    @retried
    def count(self, collection, filter=None) -> int:
        with translate_errors(f"count on {collection}"):
            return self.db[collection].count_documents(filter or {})

    @retried
    def update_one(self, collection, doc_id, set_fields=None, unset_fields=None) -> bool:
        update: Dict[str, Any] = {}
        if set_fields:
            update["$set"] = set_fields
        if unset_fields:
            update["$unset"] = {name: "" for name in unset_fields}
        if not update:
            return False

        with translate_errors(f"update_one on {collection}"):
            result = self.db[collection].update_one(self._id_filter(doc_id), update)
        return result.modified_count > 0

    @retried
    def update_many(self, collection, filter, set_fields) -> int:
        with translate_errors(f"update_many on {collection}"):
            result = self.db[collection].update_many(filter, {"$set": set_fields})
        return result.modified_count

    @retried
    def insert_one(self, collection, document) -> str:
        with translate_errors(f"insert_one on {collection}"):
            result = self.db[collection].insert_one(dict(document))
        return str(result.inserted_id)

    @retried
    def rename_collection(self, old, new) -> None:
        with translate_errors(f"rename {old}"):
            try:
                self.db[old].rename(new)
            except OperationFailure as e:
                raise CutoverError(f"Failed to rename {old} to {new}: {e}") from e
        logger.info(f"Renamed collection {old} -> {new}")

    @retried
    def create_index(self, collection, keys) -> str:
        with translate_errors(f"create_index on {collection}"):
            return self.db[collection].create_index([(k, ASCENDING) for k in keys])

    def close(self) -> None:
        self.client.close()
