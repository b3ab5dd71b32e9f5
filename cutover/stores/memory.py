"""In-memory store implementations.

Used for dry-run previews against exported snapshots and by the test
suite. They honour the same contracts as the networked adapters,
including atomic renames and transactional supersede-then-insert.
"""

import copy
import hashlib
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from ..errors import CutoverError
from .base import DocumentStore, ObjectInfo, ObjectStore, RelationalStore


class CollectionNotFound(CutoverError):
    pass


def matches_filter(doc: Dict[str, Any], filter: Optional[Dict[str, Any]]) -> bool:
    """Evaluate the supported Mongo query subset against a document."""
    if not filter:
        return True

    for key, condition in filter.items():
        if key == "$or":
            if not any(matches_filter(doc, sub) for sub in condition):
                return False
            continue

        present = key in doc
        value = doc.get(key)

        if isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                if op == "$exists":
                    if bool(operand) != present:
                        return False
                elif op == "$in":
                    if value not in operand:
                        return False
                elif op == "$ne":
                    if value == operand:
                        return False
                else:
                    raise ValueError(f"Unsupported filter operator: {op}")
        elif value != condition:
            return False

    return True


class MemoryDocumentStore(DocumentStore):
    """Dict-backed document store."""

    def __init__(self, collections: Optional[Dict[str, List[Dict[str, Any]]]] = None, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.RLock()
        self.collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.indexes: Dict[str, List[List[str]]] = {}
        for name, docs in (collections or {}).items():
            self.collections[name] = {}
            for doc in docs:
                self.insert_one(name, doc)

    def list_collections(self) -> List[str]:
        return list(self.collections.keys())

    def find(self, collection, filter=None, projection=None) -> Iterator[Dict[str, Any]]:
        with self._lock:
            docs = [
                copy.deepcopy(doc)
                for doc in self.collections.get(collection, {}).values()
                if matches_filter(doc, filter)
            ]
        for doc in docs:
            if projection:
                doc = {k: v for k, v in doc.items() if k == "_id" or k in projection}
            yield doc

    def count(self, collection, filter=None) -> int:
        with self._lock:
            return sum(1 for doc in self.collections.get(collection, {}).values() if matches_filter(doc, filter))

    def update_one(self, collection, doc_id, set_fields=None, unset_fields=None) -> bool:
        with self._lock:
            doc = self.collections.get(collection, {}).get(str(doc_id))
            if doc is None:
                return False
            before = copy.deepcopy(doc)
            for key, value in (set_fields or {}).items():
                doc[key] = copy.deepcopy(value)
            for key in unset_fields or []:
                doc.pop(key, None)
            return doc != before

    def update_many(self, collection, filter, set_fields) -> int:
        modified = 0
        with self._lock:
            for doc_id, doc in self.collections.get(collection, {}).items():
                if matches_filter(doc, filter):
                    if self.update_one(collection, doc_id, set_fields):
                        modified += 1
        return modified

    def insert_one(self, collection, document) -> str:
        with self._lock:
            doc = copy.deepcopy(document)
            doc_id = str(doc.get("_id") or uuid.uuid4().hex[:24])
            doc["_id"] = doc_id
            self.collections.setdefault(collection, {})[doc_id] = doc
            return doc_id

    def rename_collection(self, old, new) -> None:
        with self._lock:
            if old not in self.collections:
                raise CollectionNotFound(f"Collection not found: {old}")
            if new in self.collections:
                raise CutoverError(f"Target collection already exists: {new}")
            self.collections[new] = self.collections.pop(old)

    def create_index(self, collection, keys) -> str:
        with self._lock:
            specs = self.indexes.setdefault(collection, [])
            if list(keys) not in specs:
                specs.append(list(keys))
        return "_".join(f"{k}_1" for k in keys)


class MemoryRelationalStore(RelationalStore):
    """Dict-backed relational store with all-or-nothing transactions."""

    def __init__(self, tables: Optional[Dict[str, List[Dict[str, Any]]]] = None, **kwargs):
        super().__init__(**kwargs)
        self._lock = threading.RLock()
        self.tables: Dict[str, List[Dict[str, Any]]] = {
            name: [copy.deepcopy(r) for r in rows] for name, rows in (tables or {}).items()
        }
        self.fail_next_insert: Optional[Exception] = None

    def list_rows(self, table, where=None) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                copy.deepcopy(row)
                for row in self.tables.get(table, [])
                if all(row.get(k) == v for k, v in (where or {}).items())
            ]

    def count(self, table) -> int:
        with self._lock:
            return len(self.tables.get(table, []))

    def insert_row(self, table, row) -> str:
        with self._lock:
            if self.fail_next_insert is not None:
                error, self.fail_next_insert = self.fail_next_insert, None
                raise error
            new_row = copy.deepcopy(row)
            new_row.setdefault("id", str(uuid.uuid4()))
            self.tables.setdefault(table, []).append(new_row)
            return new_row["id"]

    def update_row(self, table, row_id, fields, id_column="id") -> bool:
        with self._lock:
            for row in self.tables.get(table, []):
                if row.get(id_column) == row_id:
                    row.update(copy.deepcopy(fields))
                    return True
        return False

    def upsert_by_natural_key(self, table, key_column, row) -> str:
        with self._lock:
            for existing in self.tables.get(table, []):
                if row.get(key_column) is not None and existing.get(key_column) == row.get(key_column):
                    existing.update({k: v for k, v in row.items() if k != "id"})
                    return existing["id"]
            return self.insert_row(table, row)

    def supersede_and_insert(
        self,
        table,
        subject_column,
        subject_id,
        new_row,
        reason,
        at: datetime,
        active_column="isActive",
        deactivated_at_column="deactivatedAt",
        reason_column="deactivationReason",
    ) -> int:
        with self._lock:
            snapshot = copy.deepcopy(self.tables.get(table, []))
            try:
                deactivated = 0
                for row in self.tables.setdefault(table, []):
                    if row.get(subject_column) == subject_id and row.get(active_column) is True:
                        row[active_column] = False
                        row[deactivated_at_column] = at
                        row[reason_column] = reason
                        deactivated += 1
                self.insert_row(table, dict(new_row, **{active_column: True}))
                return deactivated
            except Exception:
                self.tables[table] = snapshot
                raise


class MemoryObjectStore(ObjectStore):
    """Dict-backed object store; etags are MD5 hex digests like S3 single-part uploads."""

    def __init__(self, bucket: str = "cms-uploads", objects: Optional[Dict[str, bytes]] = None, **kwargs):
        super().__init__(bucket, **kwargs)
        self._lock = threading.RLock()
        self.bucket_exists = False
        self.objects: Dict[str, bytes] = dict(objects or {})
        self.content_types: Dict[str, str] = {}
        self.put_count = 0

    def ensure_bucket(self) -> bool:
        with self._lock:
            created = not self.bucket_exists
            self.bucket_exists = True
            return created

    def put(self, key, data, content_type="application/octet-stream") -> ObjectInfo:
        with self._lock:
            self.objects[key] = bytes(data)
            self.content_types[key] = content_type
            self.put_count += 1
            return ObjectInfo(key=key, size=len(data), etag=hashlib.md5(data).hexdigest())

    def get(self, key) -> bytes:
        with self._lock:
            if key not in self.objects:
                raise KeyError(key)
            return self.objects[key]

    def head(self, key) -> Optional[ObjectInfo]:
        with self._lock:
            data = self.objects.get(key)
        if data is None:
            return None
        return ObjectInfo(key=key, size=len(data), etag=hashlib.md5(data).hexdigest())

    def list(self, prefix="") -> Iterator[ObjectInfo]:
        with self._lock:
            keys = sorted(k for k in self.objects if k.startswith(prefix))
        for key in keys:
            info = self.head(key)
            if info:
                yield info
