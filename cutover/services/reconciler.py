"""Relationship reconciler enforcing one active relationship per subject in both stores."""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import ReconciliationError, StageAbortedError
from ..models.migration import MigrationStatus, RunContext, Stage, StageReport, utcnow
from ..models.specs import RelationshipKind
from ..models.subject import TARGET_LAYOUT, SubjectLayout
from ..stores.base import DocumentStore, RelationalStore

logger = logging.getLogger(__name__)

SUPERSEDED = "superseded"


@dataclass
class Assignment:
    """A new relationship for one subject, e.g. mentor-of.

    Identifiers are source-store ids. Target ids are taken from the
    explicit fields, then the run's id map, then the source ids as-is.
    """
    subject_id: str
    counterpart_id: str
    assigned_at: Optional[datetime] = None
    target_subject_id: Optional[str] = None
    target_counterpart_id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconcileOutcome:
    """What happened in each store for one assignment."""
    kind: str
    subject_id: str
    source_deactivated: int = 0
    source_inserted: bool = False
    target_deactivated: int = 0
    target_inserted: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "subject_id": self.subject_id,
            "source_deactivated": self.source_deactivated,
            "source_inserted": self.source_inserted,
            "target_deactivated": self.target_deactivated,
            "target_inserted": self.target_inserted,
            "errors": self.errors,
        }


class RelationshipReconciler:
    """
    Supersede-then-insert in the source and the target store.

    There is no cross-store transaction. The source side runs as
    sequential single-document updates; the target side runs in one
    transaction. A failure between the two leaves the stores disagreeing
    until the next run or until the analyzer reports it.
    """

    def __init__(
        self,
        source: Optional[DocumentStore],
        target: Optional[RelationalStore],
        target_layout: SubjectLayout = TARGET_LAYOUT,
        reason: str = SUPERSEDED,
    ):
        self.source = source
        self.target = target
        self.target_layout = target_layout
        self.reason = reason

    def load_id_map(self) -> Dict[str, str]:
        """source_id -> target_id for every target subject carrying a legacy id."""
        if not self.target or not self.target_layout.legacy_id_field:
            return {}
        id_map = {}
        for row in self.target.list_rows(self.target_layout.collection):
            legacy = row.get(self.target_layout.legacy_id_field)
            if legacy:
                id_map[str(legacy)] = str(row[self.target_layout.id_field])
        return id_map

    # --- Per-store supersede-then-insert -------------------------------------

    def supersede_in_source(self, kind: RelationshipKind, assignment: Assignment, at: datetime) -> int:
        """Deactivate active source records for the subject, then insert the new one."""
        subject_ref = {"$in": self.source.id_values(assignment.subject_id)}
        active = list(self.source.find(
            kind.source_collection,
            {kind.subject_field: subject_ref, kind.active_field: True},
        ))

        deactivated = 0
        for record in active:
            self.source.update_one(
                kind.source_collection,
                record["_id"],
                {
                    kind.active_field: False,
                    kind.deactivated_at_field: at,
                    kind.reason_field: self.reason,
                },
            )
            deactivated += 1

        document = dict(assignment.extra)
        document.update({
            kind.subject_field: assignment.subject_id,
            kind.counterpart_field: assignment.counterpart_id,
            kind.active_field: True,
            kind.assigned_at_field: assignment.assigned_at or at,
        })
        try:
            self.source.insert_one(kind.source_collection, document)
        except Exception as e:
            raise ReconciliationError("source", f"insert failed after deactivating {deactivated}: {e}", deactivated) from e
        return deactivated

    def supersede_in_target(
        self,
        kind: RelationshipKind,
        subject_id: str,
        counterpart_id: str,
        assigned_at: datetime,
        at: datetime,
        extra: Optional[Dict[str, Any]] = None
    ) -> int:
        """Deactivate and insert in one target transaction."""
        row = dict(extra or {})
        row.update({
            kind.subject_field: subject_id,
            kind.counterpart_field: counterpart_id,
            kind.assigned_at_field: assigned_at,
        })
        try:
            return self.target.supersede_and_insert(
                kind.target_table,
                kind.subject_field,
                subject_id,
                row,
                self.reason,
                at,
                active_column=kind.active_field,
                deactivated_at_column=kind.deactivated_at_field,
                reason_column=kind.reason_field,
            )
        except Exception as e:
            raise ReconciliationError("target", str(e)) from e

    def assign(
        self,
        kind: RelationshipKind,
        assignment: Assignment,
        id_map: Optional[Dict[str, str]] = None
    ) -> ReconcileOutcome:
        """
        Make the assignment the single active relationship for its subject in both stores.

        Args:
            kind: Relationship type
            assignment: New relationship, in source-store ids
            id_map: source_id -> target_id mapping for the target side

        Returns:
            ReconcileOutcome; partial failures are reported, never rolled back
        """
        at = utcnow()
        id_map = id_map or {}
        outcome = ReconcileOutcome(kind=kind.name, subject_id=assignment.subject_id)

        if self.source is not None:
            try:
                outcome.source_deactivated = self.supersede_in_source(kind, assignment, at)
                outcome.source_inserted = True
            except ReconciliationError as e:
                outcome.source_deactivated = e.deactivated
                outcome.errors.append(str(e))
                logger.error(f"{kind.name} {assignment.subject_id}: {e}")

        if self.target is not None:
            target_subject = (
                assignment.target_subject_id
                or id_map.get(assignment.subject_id, assignment.subject_id)
            )
            target_counterpart = (
                assignment.target_counterpart_id
                or id_map.get(assignment.counterpart_id, assignment.counterpart_id)
            )
            try:
                outcome.target_deactivated = self.supersede_in_target(
                    kind, target_subject, target_counterpart, assignment.assigned_at or at, at, assignment.extra
                )
                outcome.target_inserted = True
            except ReconciliationError as e:
                outcome.errors.append(str(e))
                logger.error(f"{kind.name} {assignment.subject_id}: {e}")

        if outcome.ok:
            logger.info(
                f"{kind.name}: {assignment.subject_id} -> {assignment.counterpart_id} "
                f"(superseded source={outcome.source_deactivated}, target={outcome.target_deactivated})"
            )
        else:
            logger.warning(f"{kind.name}: stores may disagree for {assignment.subject_id} until the next run")
        return outcome

    # --- Pipeline stage ------------------------------------------------------

    def replicate(
        self,
        kind: RelationshipKind,
        ctx: RunContext,
        id_map: Optional[Dict[str, str]] = None,
        report: Optional[StageReport] = None
    ) -> StageReport:
        """
        Mirror each source subject's active relationship into the target.

        Source subjects with more than one active record are reported as
        invariant violations and skipped.
        """
        report = report or StageReport(name=kind.name, stage=Stage.RECONCILE.value)
        report.dry_run = ctx.dry_run
        report.start()

        mapping = self.load_id_map()
        mapping.update(id_map or {})

        active_by_subject: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for record in self.source.find(kind.source_collection, {kind.active_field: True}):
            subject_ref = record.get(kind.subject_field)
            if subject_ref is not None:
                active_by_subject[str(subject_ref)].append(record)

        report.total = len(active_by_subject)
        logger.info(f"{kind.name}: {report.total} source subjects with an active record")

        for subject_id, records in active_by_subject.items():
            if ctx.cancelled:
                logger.warning(f"{kind.name}: cancelled, stopping scan")
                report.finish(MigrationStatus.CANCELLED)
                return report

            if len(records) > 1:
                report.skipped += 1
                report.add_finding(
                    "invariant_violation",
                    f"{len(records)} active {kind.name} records in source",
                    store="source",
                    subject_id=subject_id,
                    record_ids=[r["_id"] for r in records],
                )
                continue

            record = records[0]
            counterpart_id = str(record.get(kind.counterpart_field))
            target_subject = mapping.get(subject_id)
            target_counterpart = mapping.get(counterpart_id)
            if not target_subject or not target_counterpart:
                missing = subject_id if not target_subject else counterpart_id
                logger.warning(f"{kind.name}: {missing} not found in target, skipping {record['_id']}")
                report.skipped += 1
                report.bump("not_found")
                report.warnings.append(f"{kind.name} {record['_id']}: subject {missing} not found in target")
                continue

            try:
                active = self.target.active_relationships(
                    kind.target_table, kind.subject_field, target_subject, kind.active_field
                )
                if len(active) > 1:
                    report.skipped += 1
                    report.add_finding(
                        "invariant_violation",
                        f"{len(active)} active {kind.name} records in target",
                        store="target",
                        subject_id=target_subject,
                        record_ids=[r.get(kind.target_id_field) for r in active],
                    )
                    continue
                if active and str(active[0].get(kind.counterpart_field)) == target_counterpart:
                    report.skipped += 1
                    report.bump("in_sync")
                    continue

                if not ctx.dry_run:
                    self.supersede_in_target(
                        kind,
                        target_subject,
                        target_counterpart,
                        record.get(kind.assigned_at_field) or utcnow(),
                        utcnow(),
                    )
                report.migrated += 1
                report.bump("superseded" if active else "inserted")

            except Exception as e:
                logger.error(f"{kind.name}: failed to replicate {record['_id']}: {e}")
                report.record_error(record["_id"], e, subject_id=subject_id)
                if report.errors >= ctx.max_errors:
                    report.finish(MigrationStatus.FAILED)
                    raise StageAbortedError(Stage.RECONCILE.value, f"error ceiling reached ({report.errors} errors)")

        report.finish(MigrationStatus.COMPLETED)
        logger.info(
            f"{kind.name}: replicated {report.migrated}, skipped {report.skipped}, errors {report.errors}"
        )
        return report
