"""Discrepancy analyzer: classify count deltas between the two stores.

Read-only. Nothing here writes to either store.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from dateutil import parser as date_parser
from dateutil import tz

from ..models.migration import MigrationStatus, RunContext, Stage, StageReport
from ..models.report import DiscrepancyCause, DiscrepancyRecord, DiscrepancyReport, MatchResult
from ..models.specs import EntityCategory, EntityPair, RelationshipKind
from ..models.subject import SOURCE_LAYOUT, TARGET_LAYOUT, Subject, SubjectLayout
from ..stores.base import DocumentStore, RelationalStore
from .matcher import MatchRule, Matcher, SubjectIndex

logger = logging.getLogger(__name__)

INVARIANT_VIOLATION = "invariant_violation"


def _as_datetime(value: Any) -> Optional[datetime]:
    """Coerce to an aware UTC datetime; naive values are taken as UTC, unparseable ones as None."""
    if isinstance(value, str) and value:
        try:
            value = date_parser.parse(value)
        except (ValueError, OverflowError):
            logger.debug(f"Unparseable timestamp: {value!r}")
            return None
    if not isinstance(value, datetime):
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=tz.UTC)
    return value.astimezone(tz.UTC)


class _SubjectResolution:
    """Match results for one source subject collection against one target table."""

    def __init__(self, subjects: List[Subject], results: Dict[str, MatchResult], legacy_ids: Set[str]):
        self.subjects = subjects
        self.results = results
        self.legacy_ids = legacy_ids

    def resolved(self, source_id: str) -> bool:
        result = self.results.get(source_id)
        return source_id in self.legacy_ids or bool(result and result.matched)

    def ambiguous(self, source_id: str) -> bool:
        result = self.results.get(source_id)
        return bool(result and result.ambiguous)


class DiscrepancyAnalyzer:
    """
    Computes per-entity count deltas and classifies each nonzero delta.

    Subjects are deep-analyzed for unmatched natural keys; relationship
    entities for records referencing subjects absent from the target,
    with source natural-key duplicates counted independently.
    """

    def __init__(
        self,
        source: DocumentStore,
        target: RelationalStore,
        source_layout: SubjectLayout = SOURCE_LAYOUT,
        target_layout: SubjectLayout = TARGET_LAYOUT,
        rules: Optional[List[MatchRule]] = None,
        cutover_at: Optional[datetime] = None,
        created_at_field: str = "createdAt",
        sample_size: int = 10,
    ):
        self.source = source
        self.target = target
        self.source_layout = source_layout
        self.target_layout = target_layout
        self.rules = rules
        self.cutover_at = cutover_at
        self.created_at_field = created_at_field
        self.sample_size = sample_size
        self._resolutions: Dict[str, _SubjectResolution] = {}

    # --- Subject resolution --------------------------------------------------

    def _resolve_subjects(self, source_collection: str, target_table: str) -> _SubjectResolution:
        cache_key = f"{source_collection}->{target_table}"
        if cache_key in self._resolutions:
            return self._resolutions[cache_key]

        source_subjects = [
            self.source_layout.to_subject(r, from_source=True)
            for r in self.source.find(source_collection)
        ]
        target_subjects = [
            self.target_layout.to_subject(r, from_source=False)
            for r in self.target.list_rows(target_table)
        ]
        matcher = Matcher(SubjectIndex.build(target_subjects), rules=self.rules, source_subjects=source_subjects)
        results = {s.source_id: matcher.match(s) for s in source_subjects}
        legacy_ids = {t.source_id for t in target_subjects if t.source_id}

        resolution = _SubjectResolution(source_subjects, results, legacy_ids)
        self._resolutions[cache_key] = resolution
        return resolution

    def _created_after_cutover(self, record: Dict[str, Any]) -> bool:
        if self.cutover_at is None:
            return False
        created = _as_datetime(record.get(self.created_at_field))
        if created is None:
            return False
        return created > _as_datetime(self.cutover_at)

    # --- Per-category deep analysis ------------------------------------------

    def _analyze_subjects(self, pair: EntityPair, record: DiscrepancyRecord) -> None:
        resolution = self._resolve_subjects(pair.source_collection, pair.target_table)
        raw = {str(r.get(self.source_layout.id_field)): r for r in self.source.find(pair.source_collection)}

        unmatched, late, duplicates = [], [], []
        for subject in resolution.subjects:
            if resolution.resolved(subject.source_id):
                continue
            if resolution.ambiguous(subject.source_id):
                duplicates.append(subject)
            elif self._created_after_cutover(raw.get(subject.source_id, {})):
                late.append(subject)
            else:
                unmatched.append(subject)

        record.details = {
            "unmatched": len(unmatched),
            "ambiguous": len(duplicates),
            "created_after_cutover": len(late),
        }
        record.samples = [s.to_dict() for s in (unmatched + duplicates + late)[:self.sample_size]]

        if unmatched and pair.created_after_cutover and self.cutover_at is None:
            late, unmatched = late + unmatched, []
            record.details["created_after_cutover"] = len(late)
            record.details["unmatched"] = 0

        if unmatched:
            record.cause = DiscrepancyCause.UNMATCHED_SUBJECT
        elif late:
            record.cause = DiscrepancyCause.CREATED_AFTER_CUTOVER
        elif duplicates:
            record.cause = DiscrepancyCause.DUPLICATE_NATURAL_KEY
        else:
            record.cause = DiscrepancyCause.UNEXPLAINED

    def _analyze_relationships(self, pair: EntityPair, record: DiscrepancyRecord) -> None:
        resolution = self._resolve_subjects(self.source_layout.collection, self.target_layout.collection)
        subject_field = pair.subject_field or "studentId"

        orphaned, orphaned_by_duplicates, late = [], [], []
        for doc in self.source.find(pair.source_collection):
            subject_ref = doc.get(subject_field)
            if subject_ref is None:
                continue
            subject_id = str(subject_ref)
            if resolution.resolved(subject_id):
                if self._created_after_cutover(doc):
                    late.append(doc)
                continue
            if resolution.ambiguous(subject_id):
                orphaned_by_duplicates.append(doc)
            else:
                orphaned.append(doc)

        source_duplicates = {
            rule.value: len(SubjectIndex.build(resolution.subjects).duplicates(rule))
            for rule in (MatchRule.EMAIL, MatchRule.ROLL_NUMBER)
        }

        record.details = {
            "orphaned": len(orphaned),
            "orphaned_by_duplicate_subjects": len(orphaned_by_duplicates),
            "created_after_cutover": len(late),
            "source_duplicate_keys": source_duplicates,
        }
        record.samples = [
            {"_id": d.get("_id"), subject_field: d.get(subject_field)}
            for d in (orphaned + orphaned_by_duplicates)[:self.sample_size]
        ]

        if orphaned:
            record.cause = DiscrepancyCause.ORPHANED_REFERENCE
        elif orphaned_by_duplicates:
            record.cause = DiscrepancyCause.DUPLICATE_NATURAL_KEY
        elif late or pair.created_after_cutover:
            record.cause = DiscrepancyCause.CREATED_AFTER_CUTOVER
        elif any(source_duplicates.values()):
            record.cause = DiscrepancyCause.DUPLICATE_NATURAL_KEY
        else:
            record.cause = DiscrepancyCause.UNEXPLAINED

    # --- Public API ----------------------------------------------------------

    def compare(self, pair: EntityPair) -> DiscrepancyRecord:
        """Count both sides of one entity pair and classify the delta."""
        record = DiscrepancyRecord(
            entity=pair.label,
            source_count=self.source.count(pair.source_collection),
            target_count=self.target.count(pair.target_table),
        )

        if record.delta == 0:
            record.cause = DiscrepancyCause.NONE
        elif record.delta < 0:
            record.cause = DiscrepancyCause.TARGET_AHEAD
        elif pair.category == EntityCategory.SUBJECT:
            self._analyze_subjects(pair, record)
        elif pair.category == EntityCategory.RELATIONSHIP:
            self._analyze_relationships(pair, record)
        elif pair.created_after_cutover:
            record.cause = DiscrepancyCause.CREATED_AFTER_CUTOVER
        else:
            record.cause = DiscrepancyCause.UNEXPLAINED

        return record

    def check_invariants(self, kinds: List[RelationshipKind]) -> List[Dict[str, Any]]:
        """Find subjects with more than one active relationship in either store."""
        findings = []
        for kind in kinds:
            per_store = {
                "source": (
                    self.source.find(kind.source_collection, {kind.active_field: True}),
                    kind.source_id_field,
                ),
                "target": (
                    self.target.list_rows(kind.target_table, {kind.active_field: True}),
                    kind.target_id_field,
                ),
            }
            for store, (rows, id_field) in per_store.items():
                active = defaultdict(list)
                for row in rows:
                    if row.get(kind.subject_field) is not None:
                        active[str(row[kind.subject_field])].append(row.get(id_field))
                for subject_id, record_ids in active.items():
                    if len(record_ids) > 1:
                        findings.append({
                            "kind": INVARIANT_VIOLATION,
                            "message": f"{len(record_ids)} active {kind.name} records in {store}",
                            "relationship": kind.name,
                            "store": store,
                            "subject_id": subject_id,
                            "record_ids": [str(r) for r in record_ids],
                        })
        return findings

    def analyze(self, pairs: List[EntityPair], kinds: Optional[List[RelationshipKind]] = None) -> DiscrepancyReport:
        """Build the classified delta report for every configured entity pair."""
        self._resolutions = {}
        report = DiscrepancyReport()

        for pair in pairs:
            record = self.compare(pair)
            report.records.append(record)
            if record.delta:
                logger.warning(
                    f"{pair.label}: source={record.source_count} target={record.target_count} "
                    f"delta={record.delta} cause={record.cause.value}"
                )
            else:
                logger.info(f"{pair.label}: {record.source_count} records, in sync")

        report.findings.extend(self.check_invariants(kinds or []))
        for finding in report.findings:
            logger.warning(f"{finding['kind']}: {finding['message']} (subject {finding['subject_id']})")
        return report

    def run(
        self,
        pairs: List[EntityPair],
        ctx: RunContext,
        kinds: Optional[List[RelationshipKind]] = None,
        report: Optional[StageReport] = None
    ) -> DiscrepancyReport:
        """Pipeline stage wrapper; fills the stage report and returns the full delta report."""
        report = report or StageReport(name=Stage.ANALYZE.value, stage=Stage.ANALYZE.value)
        if report.started_at is None:
            report.start()

        result = self.analyze(pairs, kinds)
        report.total = len(result.records)
        report.skipped = len(result.records) - len(result.discrepancies)
        report.bump("discrepancies", len(result.discrepancies))
        for record in result.discrepancies:
            report.add_finding(
                "discrepancy",
                f"{record.entity}: delta {record.delta} ({record.cause.value})",
                entity=record.entity,
                delta=record.delta,
                cause=record.cause.value,
                remediation=record.remediation,
            )
        for finding in result.findings:
            report.findings.append(finding)

        report.finish(MigrationStatus.COMPLETED)
        return result
