"""Store ports and adapters.

The networked adapters (mongo_store, postgres_store, s3_store) are
imported lazily by `cutover.config` so the in-memory stores stay usable
without database drivers configured.
"""

from .base import DocumentStore, RelationalStore, ObjectStore, ObjectInfo
from .retry import RetryPolicy, retry_on_failure, retried
from .memory import MemoryDocumentStore, MemoryRelationalStore, MemoryObjectStore, matches_filter

__all__ = [
    "DocumentStore",
    "RelationalStore",
    "ObjectStore",
    "ObjectInfo",
    "RetryPolicy",
    "retry_on_failure",
    "retried",
    "MemoryDocumentStore",
    "MemoryRelationalStore",
    "MemoryObjectStore",
    "matches_filter",
]
