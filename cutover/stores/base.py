"""Store ports the pipeline depends on."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from .retry import RetryPolicy


@dataclass
class ObjectInfo:
    """Metadata of a stored object."""
    key: str
    size: int
    etag: Optional[str] = None


class DocumentStore(ABC):
    """
    Source document store.

    Records are plain dicts whose `_id` is exposed as a string. Filters
    use the Mongo query subset: equality, $exists, $in, $ne, $or.
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        self.retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    def list_collections(self) -> List[str]:
        pass

    @abstractmethod
    def find(
        self,
        collection: str,
        filter: Optional[Dict[str, Any]] = None,
        projection: Optional[List[str]] = None
    ) -> Iterator[Dict[str, Any]]:
        pass

    def find_one(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        for doc in self.find(collection, filter):
            return doc
        return None

    @abstractmethod
    def count(self, collection: str, filter: Optional[Dict[str, Any]] = None) -> int:
        pass

    @abstractmethod
    def update_one(
        self,
        collection: str,
        doc_id: str,
        set_fields: Optional[Dict[str, Any]] = None,
        unset_fields: Optional[List[str]] = None
    ) -> bool:
        """
        Atomically update a single document.

        Args:
            collection: Collection name
            doc_id: Document identifier
            set_fields: Fields to set
            unset_fields: Fields to remove

        Returns:
            True if the document was modified
        """
        pass

    @abstractmethod
    def update_many(self, collection: str, filter: Dict[str, Any], set_fields: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    def insert_one(self, collection: str, document: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def rename_collection(self, old: str, new: str) -> None:
        """Atomically rename a collection (never copy+delete)."""
        pass

    @abstractmethod
    def create_index(self, collection: str, keys: List[str]) -> str:
        pass

    def id_values(self, doc_id: str) -> List[Any]:
        """Representations a stored reference to doc_id may take."""
        return [doc_id]

    def ping(self) -> bool:
        """Check the store is reachable."""
        return True


class RelationalStore(ABC):
    """
    Target relational store.

    Subjects and relationship rows are exchanged as dicts keyed by
    column name. Raw SQL through execute/query is optional: stores that
    cannot interpret SQL, such as the in-memory store, leave the defaults
    in place and the pipeline only uses the structured methods.
    """

    def __init__(self, retry_policy: Optional[RetryPolicy] = None):
        self.retry_policy = retry_policy or RetryPolicy()

    def execute(self, sql: str, params: Optional[Any] = None) -> int:
        raise NotImplementedError(f"{type(self).__name__} does not interpret SQL")

    def query(self, sql: str, params: Optional[Any] = None) -> List[Dict[str, Any]]:
        raise NotImplementedError(f"{type(self).__name__} does not interpret SQL")

    @abstractmethod
    def list_rows(self, table: str, where: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def insert_row(self, table: str, row: Dict[str, Any]) -> str:
        pass

    @abstractmethod
    def update_row(self, table: str, row_id: str, fields: Dict[str, Any], id_column: str = "id") -> bool:
        pass

    @abstractmethod
    def upsert_by_natural_key(self, table: str, key_column: str, row: Dict[str, Any]) -> str:
        """Insert a row, or update the existing row holding the same natural key."""
        pass

    @abstractmethod
    def supersede_and_insert(
        self,
        table: str,
        subject_column: str,
        subject_id: str,
        new_row: Dict[str, Any],
        reason: str,
        at: datetime,
        active_column: str = "isActive",
        deactivated_at_column: str = "deactivatedAt",
        reason_column: str = "deactivationReason"
    ) -> int:
        """
        Deactivate every active row for the subject and insert the new row, in one transaction.

        Returns:
            Number of rows deactivated
        """
        pass

    def active_relationships(
        self,
        table: str,
        subject_column: str,
        subject_id: str,
        active_column: str = "isActive"
    ) -> List[Dict[str, Any]]:
        return self.list_rows(table, {subject_column: subject_id, active_column: True})

    def ping(self) -> bool:
        return True


class ObjectStore(ABC):
    """Key-addressed object storage (S3 / MinIO)."""

    def __init__(self, bucket: str, retry_policy: Optional[RetryPolicy] = None):
        self.bucket = bucket
        self.retry_policy = retry_policy or RetryPolicy()

    @abstractmethod
    def ensure_bucket(self) -> bool:
        """Create the bucket on first use. Returns True if it was created."""
        pass

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> ObjectInfo:
        pass

    @abstractmethod
    def get(self, key: str) -> bytes:
        pass

    @abstractmethod
    def head(self, key: str) -> Optional[ObjectInfo]:
        pass

    def exists(self, key: str) -> bool:
        return self.head(key) is not None

    @abstractmethod
    def list(self, prefix: str = "") -> Iterator[ObjectInfo]:
        pass

    def url_for(self, key: str) -> str:
        return f"{self.bucket}/{key}"

    def ping(self) -> bool:
        return True
