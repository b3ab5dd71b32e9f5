"""Result and report models produced by the pipeline components."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime

from .subject import Subject
from .migration import utcnow


class MatchStatus(str, Enum):
    """Outcome of a natural-key lookup."""
    MATCHED = "matched"
    NO_MATCH = "no_match"
    AMBIGUOUS = "ambiguous"


@dataclass
class MatchResult:
    """Result of resolving one source subject against the target index."""
    status: MatchStatus
    target: Optional[Subject] = None
    rule: Optional[str] = None  # rule that decided the outcome
    candidates: List[Subject] = field(default_factory=list)
    reason: str = ""

    @property
    def matched(self) -> bool:
        return self.status == MatchStatus.MATCHED

    @property
    def ambiguous(self) -> bool:
        return self.status == MatchStatus.AMBIGUOUS

    @property
    def target_id(self) -> Optional[str]:
        return self.target.target_id if self.target else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "target_id": self.target_id,
            "rule": self.rule,
            "candidates": [c.target_id or c.source_id for c in self.candidates],
            "reason": self.reason,
        }


class DiscrepancyCause(str, Enum):
    """Known causes of a count delta between the stores."""
    NONE = "none"
    DUPLICATE_NATURAL_KEY = "duplicate_natural_key"
    UNMATCHED_SUBJECT = "unmatched_subject"
    ORPHANED_REFERENCE = "orphaned_reference"
    CREATED_AFTER_CUTOVER = "created_after_cutover"
    TARGET_AHEAD = "target_ahead"
    UNEXPLAINED = "unexplained"


REMEDIATION = {
    DiscrepancyCause.NONE: "",
    DiscrepancyCause.DUPLICATE_NATURAL_KEY: "resolve duplicate natural keys in the source",
    DiscrepancyCause.UNMATCHED_SUBJECT: "investigate synchronization failure",
    DiscrepancyCause.ORPHANED_REFERENCE: "synchronize referenced subjects, then re-run",
    DiscrepancyCause.CREATED_AFTER_CUTOVER: "run an incremental sync",
    DiscrepancyCause.TARGET_AHEAD: "records created directly in the target; verify",
    DiscrepancyCause.UNEXPLAINED: "investigate",
}


@dataclass
class DiscrepancyRecord:
    """Count and identity delta for one entity type. Derived, never persisted."""
    entity: str
    source_count: int
    target_count: int
    cause: DiscrepancyCause = DiscrepancyCause.NONE
    details: Dict[str, Any] = field(default_factory=dict)
    samples: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def delta(self) -> int:
        return self.source_count - self.target_count

    @property
    def remediation(self) -> str:
        return REMEDIATION[self.cause]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity": self.entity,
            "source_count": self.source_count,
            "target_count": self.target_count,
            "delta": self.delta,
            "cause": self.cause.value,
            "remediation": self.remediation,
            "details": self.details,
            "samples": self.samples,
        }


@dataclass
class DiscrepancyReport:
    """Classified delta report across all configured entity pairs."""
    records: List[DiscrepancyRecord] = field(default_factory=list)
    findings: List[Dict[str, Any]] = field(default_factory=list)
    generated_at: datetime = field(default_factory=utcnow)

    def get(self, entity: str) -> Optional[DiscrepancyRecord]:
        for record in self.records:
            if record.entity == entity:
                return record
        return None

    @property
    def discrepancies(self) -> List[DiscrepancyRecord]:
        return [r for r in self.records if r.delta != 0]

    @property
    def clean(self) -> bool:
        return not self.discrepancies and not self.findings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "records": [r.to_dict() for r in self.records],
            "findings": self.findings,
            "discrepancy_count": len(self.discrepancies),
        }


class FileStatus(str, Enum):
    """Outcome of relocating one legacy file."""
    UPLOADED = "uploaded"
    UNCHANGED = "unchanged"
    UNRESOLVED = "unresolved"
    ERROR = "error"
    ORPHANED_UPLOAD = "orphaned_upload"
    PLANNED = "planned"  # dry run


class UnresolvedReason(str, Enum):
    NO_PATTERN = "no_pattern"
    SUBJECT_NOT_FOUND = "subject_not_found"
    AMBIGUOUS_SUBJECT = "ambiguous_subject"


@dataclass
class FileOutcome:
    """Per-file audit entry of an attachment relocation."""
    path: str
    status: FileStatus
    kind: Optional[str] = None
    natural_key: Optional[str] = None
    subject_id: Optional[str] = None
    canonical_key: Optional[str] = None
    references_updated: int = 0
    reason: Optional[str] = None
    error: Optional[str] = None
    superseded_by: Optional[str] = None  # file whose key won the same reference field

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "status": self.status.value,
            "kind": self.kind,
            "natural_key": self.natural_key,
            "subject_id": self.subject_id,
            "canonical_key": self.canonical_key,
            "references_updated": self.references_updated,
            "reason": self.reason,
            "error": self.error,
            "superseded_by": self.superseded_by,
        }
