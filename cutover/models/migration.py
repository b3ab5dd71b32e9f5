"""Run and stage models for pipeline execution."""

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime, timezone
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MigrationStatus(str, Enum):
    """Status of a run or a stage."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


class Stage(str, Enum):
    """Pipeline stages, in execution order."""
    TRANSFORM = "transform"
    SYNC = "sync"
    RECONCILE = "reconcile"
    RELOCATE = "relocate"
    ANALYZE = "analyze"


@dataclass
class StageReport:
    """Counters and findings for one stage (or one collection within a stage)."""
    name: str = ""
    stage: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: MigrationStatus = MigrationStatus.PENDING
    dry_run: bool = False
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    total: int = 0
    migrated: int = 0
    skipped: int = 0
    errors: int = 0
    counters: Dict[str, int] = field(default_factory=dict)
    error_details: List[Dict[str, Any]] = field(default_factory=list)
    findings: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    children: List["StageReport"] = field(default_factory=list)

    def start(self) -> "StageReport":
        self.status = MigrationStatus.RUNNING
        self.started_at = utcnow()
        return self

    def finish(self, status: MigrationStatus = MigrationStatus.COMPLETED) -> "StageReport":
        self.status = status
        self.completed_at = utcnow()
        return self

    def bump(self, counter: str, amount: int = 1) -> None:
        """Increment a stage-specific counter (e.g. 'uploaded', 'not_found')."""
        self.counters[counter] = self.counters.get(counter, 0) + amount

    def record_error(self, record_id: Optional[str], error: Any, **details) -> None:
        """Count a per-record error and keep its details."""
        self.errors += 1
        entry = {"record_id": record_id, "error": str(error)}
        entry.update(details)
        self.error_details.append(entry)

    def add_finding(self, kind: str, message: str, **details) -> None:
        """Record something that needs human attention (never auto-resolved)."""
        entry = {"kind": kind, "message": message}
        entry.update(details)
        self.findings.append(entry)

    def add_child(self, name: str) -> "StageReport":
        child = StageReport(name=name, stage=self.stage, dry_run=self.dry_run)
        self.children.append(child)
        return child

    def roll_up(self) -> None:
        """Sum child counters into this report."""
        for attr in ("total", "migrated", "skipped", "errors"):
            setattr(self, attr, sum(getattr(c, attr) for c in self.children))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "stage": self.stage,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total": self.total,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "errors": self.errors,
            "counters": self.counters,
            "error_details": self.error_details,
            "findings": self.findings,
            "warnings": self.warnings,
            "children": [c.to_dict() for c in self.children],
        }

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


@dataclass
class RunContext:
    """Explicit run state threaded through every stage call."""
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    dry_run: bool = False
    max_errors: int = 100
    max_workers: int = 4
    cancel_event: threading.Event = field(default_factory=threading.Event)
    started_at: datetime = field(default_factory=utcnow)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self) -> None:
        """Stop scanning; in-flight record mutations are not rolled back."""
        self.cancel_event.set()

    def for_stage(self, dry_run: bool) -> "RunContext":
        """A view of this context with a stage-level dry-run override."""
        return RunContext(
            run_id=self.run_id,
            dry_run=self.dry_run or dry_run,
            max_errors=self.max_errors,
            max_workers=self.max_workers,
            cancel_event=self.cancel_event,
            started_at=self.started_at,
        )


@dataclass
class MigrationRun:
    """A complete pipeline run."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    status: MigrationStatus = MigrationStatus.PENDING
    dry_run: bool = False
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    stages: List[StageReport] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def add_stage(self, stage: Stage, dry_run: bool = False) -> StageReport:
        report = StageReport(name=stage.value, stage=stage.value, dry_run=dry_run)
        self.stages.append(report)
        return report

    def get_stage(self, stage: Stage) -> Optional[StageReport]:
        for report in self.stages:
            if report.stage == stage.value:
                return report
        return None

    @property
    def total_errors(self) -> int:
        return sum(s.errors for s in self.stages)

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "dry_run": self.dry_run,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "stages": [s.to_dict() for s in self.stages],
            "errors": self.errors,
            "metadata": self.metadata,
        }
