"""Pipeline components."""

from .matcher import Matcher, MatchRule, SubjectIndex
from .transformer import SchemaTransformer, RecordView
from .synchronizer import EntitySynchronizer, SyncOutcome, SyncResult
from .reconciler import RelationshipReconciler, Assignment, ReconcileOutcome
from .analyzer import DiscrepancyAnalyzer
from .keys import canonical_key, content_type_for
from .relocator import AttachmentRelocator, LocalDirectorySource, BucketPrefixSource, LegacyFile

__all__ = [
    "Matcher",
    "MatchRule",
    "SubjectIndex",
    "SchemaTransformer",
    "RecordView",
    "EntitySynchronizer",
    "SyncOutcome",
    "SyncResult",
    "RelationshipReconciler",
    "Assignment",
    "ReconcileOutcome",
    "DiscrepancyAnalyzer",
    "canonical_key",
    "content_type_for",
    "AttachmentRelocator",
    "LocalDirectorySource",
    "BucketPrefixSource",
    "LegacyFile",
]
