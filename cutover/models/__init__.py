"""Data models for the migration pipeline."""

from .subject import (
    Subject,
    SubjectLayout,
    SOURCE_LAYOUT,
    TARGET_LAYOUT,
)
from .specs import (
    FieldSpec,
    MutationKind,
    AppliesIf,
    ArchiveSpec,
    IndexSpec,
    RelationshipKind,
    EntityPair,
    EntityCategory,
    FilenamePattern,
    ReferenceTarget,
    KeyType,
)
from .migration import (
    MigrationRun,
    MigrationStatus,
    RunContext,
    Stage,
    StageReport,
)
from .report import (
    MatchResult,
    MatchStatus,
    DiscrepancyCause,
    DiscrepancyRecord,
    DiscrepancyReport,
    FileOutcome,
    FileStatus,
)

__all__ = [
    "Subject",
    "SubjectLayout",
    "SOURCE_LAYOUT",
    "TARGET_LAYOUT",
    "FieldSpec",
    "MutationKind",
    "AppliesIf",
    "ArchiveSpec",
    "IndexSpec",
    "RelationshipKind",
    "EntityPair",
    "EntityCategory",
    "FilenamePattern",
    "ReferenceTarget",
    "KeyType",
    "MigrationRun",
    "MigrationStatus",
    "RunContext",
    "Stage",
    "StageReport",
    "MatchResult",
    "MatchStatus",
    "DiscrepancyCause",
    "DiscrepancyRecord",
    "DiscrepancyReport",
    "FileOutcome",
    "FileStatus",
]
