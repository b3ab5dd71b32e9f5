"""Schema transformer applying declarative field specs to source collections."""

import copy
import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from dateutil import parser as date_parser

from ..errors import StageAbortedError
from ..models.migration import MigrationStatus, RunContext, Stage, StageReport
from ..models.specs import AppliesIf, ArchiveSpec, FieldSpec, IndexSpec, MutationKind
from ..stores.base import DocumentStore

logger = logging.getLogger(__name__)


class RecordView(Mapping):
    """Read-only projection of a source record that predicates and derivations see."""

    def __init__(self, data: Dict[str, Any]):
        self._data = data

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def has(self, field: str) -> bool:
        return field in self._data

    @property
    def id(self) -> Optional[str]:
        return self._data.get("_id")


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return date_parser.parse(str(value))


class SchemaTransformer:
    """
    Applies field specs to every record whose predicate holds.

    Supports:
    - Add-default, rename and derive mutations
    - Built-in and custom derivations
    - Archival of superseded collections by atomic rename
    - Secondary index creation

    All specs for one collection are folded into a single update per
    record, so a record is either fully migrated or untouched.
    """

    def __init__(self, store: DocumentStore):
        """Initialize the transformer."""
        self.store = store
        self._custom_derivations: Dict[str, Callable] = {}
        self._builtin_derivations = self._register_builtin_derivations()

    def _register_builtin_derivations(self) -> Dict[str, Callable]:
        """Register all built-in derivation functions."""
        return {
            "status_from_date": self._derive_status_from_date,
            "month_of_date": self._derive_month_of_date,
            "year_of_date": self._derive_year_of_date,
            "level_from_count": self._derive_level_from_count,
            "copy_field": self._derive_copy_field,
        }

    def register_derivation(self, name: str, func: Callable[[RecordView, Dict], Any]) -> None:
        """Register a custom derivation function."""
        self._custom_derivations[name] = func

    # --- Predicates and mutations --------------------------------------------

    def applies(self, spec: FieldSpec, view: RecordView) -> bool:
        """Evaluate a spec's predicate against a record view."""
        predicate = spec.predicate
        field = spec.predicate_field

        if predicate == AppliesIf.MISSING:
            return not view.has(field)
        if predicate == AppliesIf.PRESENT:
            return view.has(field)
        if predicate == AppliesIf.NULL_OR_MISSING:
            return view.get(field) is None
        if predicate == AppliesIf.EQUALS:
            return view.has(field) and view.get(field) == spec.equals
        return False

    def candidate_filter(self, specs: List[FieldSpec]) -> Dict[str, Any]:
        """Store-side filter selecting records any spec could apply to."""
        clauses = []
        for spec in specs:
            field = spec.predicate_field
            if spec.predicate == AppliesIf.MISSING:
                clauses.append({field: {"$exists": False}})
            elif spec.predicate == AppliesIf.PRESENT:
                clauses.append({field: {"$exists": True}})
            elif spec.predicate == AppliesIf.NULL_OR_MISSING:
                clauses.append({field: None})
            else:
                clauses.append({field: spec.equals})
        return {"$or": clauses} if clauses else {}

    def _derive(self, spec: FieldSpec, view: RecordView) -> Any:
        func = self._custom_derivations.get(spec.derive) or self._builtin_derivations.get(spec.derive)
        if not func:
            raise ValueError(f"Unknown derivation: {spec.derive}")
        return func(view, spec.config)

    def plan_record(self, record: Dict[str, Any], specs: List[FieldSpec]) -> Tuple[Dict[str, Any], List[str]]:
        """
        Fold all applicable specs into one ($set, $unset) pair.

        Specs are evaluated in order against the record as already
        modified by earlier specs.

        Returns:
            Tuple of (fields to set, fields to unset)
        """
        working = dict(record)
        set_fields: Dict[str, Any] = {}
        unset_fields: List[str] = []

        for spec in specs:
            view = RecordView(working)
            if not self.applies(spec, view):
                continue

            if spec.kind == MutationKind.ADD_DEFAULT:
                value = copy.deepcopy(spec.default)
            elif spec.kind == MutationKind.RENAME:
                old = spec.source_field
                if working.get(spec.field) is None:
                    value = working.get(old)
                else:
                    value = working[spec.field]
                    logger.debug(f"{spec.collection}.{old}: {spec.field} already set, dropping old field")
                if old not in unset_fields:
                    unset_fields.append(old)
                working.pop(old, None)
                set_fields.pop(old, None)
            else:
                value = self._derive(spec, view)
                if value is None:
                    continue

            working[spec.field] = value
            set_fields[spec.field] = value
            if spec.field in unset_fields:
                unset_fields.remove(spec.field)

        return set_fields, unset_fields

    # --- Collection passes ---------------------------------------------------

    def transform_collection(
        self,
        collection: str,
        specs: List[FieldSpec],
        ctx: RunContext,
        report: Optional[StageReport] = None
    ) -> StageReport:
        """
        Apply specs to one collection.

        Args:
            collection: Source collection name
            specs: Ordered field specs for this collection
            ctx: Run context (dry run, cancellation, error ceiling)
            report: Parent report to attach the collection report to

        Returns:
            Per-collection report with {total, migrated, skipped, errors}
        """
        child = report.add_child(collection) if report else StageReport(name=collection, stage=Stage.TRANSFORM.value)
        child.dry_run = ctx.dry_run
        child.start()

        child.total = self.store.count(collection)
        logger.info(f"{collection}: {child.total} records, {len(specs)} field specs")

        for record in self.store.find(collection, self.candidate_filter(specs)):
            if ctx.cancelled:
                logger.warning(f"{collection}: cancelled, stopping scan")
                child.finish(MigrationStatus.CANCELLED)
                break

            record_id = record.get("_id")
            try:
                set_fields, unset_fields = self.plan_record(record, specs)
                if not set_fields and not unset_fields:
                    continue

                if ctx.dry_run:
                    child.migrated += 1
                    continue

                if self.store.update_one(collection, record_id, set_fields, unset_fields):
                    child.migrated += 1

            except Exception as e:
                logger.error(f"{collection}: failed to migrate {record_id}: {e}")
                child.record_error(record_id, e, collection=collection)
                if child.errors >= ctx.max_errors:
                    child.finish(MigrationStatus.FAILED)
                    raise StageAbortedError(
                        Stage.TRANSFORM.value,
                        f"{collection}: error ceiling reached ({child.errors} errors)"
                    )

        child.skipped = max(child.total - child.migrated - child.errors, 0)
        if child.status == MigrationStatus.RUNNING:
            child.finish(MigrationStatus.COMPLETED)

        verb = "would migrate" if ctx.dry_run else "migrated"
        logger.info(
            f"{collection}: {verb} {child.migrated}, skipped {child.skipped}, errors {child.errors}"
        )
        return child

    def archive(self, specs: List[ArchiveSpec], ctx: RunContext, report: StageReport) -> None:
        """Rename non-empty legacy collections to timestamped archive names."""
        existing = set(self.store.list_collections())
        epoch_ms = int(ctx.started_at.timestamp() * 1000)

        for spec in specs:
            if spec.collection not in existing:
                logger.info(f"Archive: {spec.collection} does not exist, skipping")
                report.bump("archive_skipped")
                continue

            count = self.store.count(spec.collection)
            if count == 0:
                logger.info(f"Archive: {spec.collection} is empty, skipping")
                report.bump("archive_skipped")
                continue

            archive_name = spec.archive_name(epoch_ms)
            if ctx.dry_run:
                logger.info(f"Archive: would rename {spec.collection} ({count} records) to {archive_name}")
                report.bump("archived")
                continue

            try:
                self.store.rename_collection(spec.collection, archive_name)
                report.bump("archived")
                logger.info(f"Archive: {spec.collection} ({count} records) -> {archive_name}")
            except Exception as e:
                logger.error(f"Archive: failed to rename {spec.collection}: {e}")
                report.record_error(spec.collection, e, operation="archive")

    def ensure_indexes(self, specs: List[IndexSpec], ctx: RunContext, report: StageReport) -> None:
        """Create secondary indexes; failures are logged and counted, never fatal."""
        for spec in specs:
            if ctx.dry_run:
                report.bump("indexes_planned")
                continue
            try:
                name = self.store.create_index(spec.collection, spec.keys)
                report.bump("indexes_created")
                logger.debug(f"Index {name} on {spec.collection}")
            except Exception as e:
                logger.warning(f"Index on {spec.collection}{spec.keys} failed: {e}")
                report.bump("index_errors")
                report.warnings.append(f"index {spec.collection}{spec.keys}: {e}")

    def run(
        self,
        field_specs: List[FieldSpec],
        ctx: RunContext,
        archive_specs: Optional[List[ArchiveSpec]] = None,
        index_specs: Optional[List[IndexSpec]] = None,
        report: Optional[StageReport] = None
    ) -> StageReport:
        """Apply every field spec grouped by collection, then archive and index."""
        report = report or StageReport(name=Stage.TRANSFORM.value, stage=Stage.TRANSFORM.value)
        report.dry_run = ctx.dry_run
        if report.started_at is None:
            report.start()

        by_collection: Dict[str, List[FieldSpec]] = {}
        for spec in field_specs:
            by_collection.setdefault(spec.collection, []).append(spec)

        for collection, specs in by_collection.items():
            if ctx.cancelled:
                break
            self.transform_collection(collection, specs, ctx, report)

        if not ctx.cancelled:
            self.archive(archive_specs or [], ctx, report)
            self.ensure_indexes(index_specs or [], ctx, report)

        # archive failures are recorded on the stage report itself
        report.roll_up()
        report.errors += len(report.error_details)
        report.finish(MigrationStatus.CANCELLED if ctx.cancelled else MigrationStatus.COMPLETED)
        return report

    # --- Built-in derivations ------------------------------------------------

    def _derive_status_from_date(self, view: RecordView, config: Dict) -> Any:
        """COMPLETED when the date field is set, else SCHEDULED."""
        field = config.get("field", "visitDate")
        if view.get(field):
            return config.get("present", "COMPLETED")
        return config.get("absent", "SCHEDULED")

    def _derive_month_of_date(self, view: RecordView, config: Dict) -> Any:
        """Calendar month (1-12) of a date field."""
        dt = _as_datetime(view.get(config.get("field", "visitDate")))
        return dt.month if dt else None

    def _derive_year_of_date(self, view: RecordView, config: Dict) -> Any:
        dt = _as_datetime(view.get(config.get("field", "visitDate")))
        return dt.year if dt else None

    def _derive_level_from_count(self, view: RecordView, config: Dict) -> Any:
        """Map a count onto the first level whose threshold it reaches."""
        count = view.get(config.get("field", "escalationCount")) or 0
        levels = sorted(config.get("levels", []), key=lambda level: level[0], reverse=True)
        for threshold, level in levels:
            if count >= threshold:
                return level
        return config.get("default")

    def _derive_copy_field(self, view: RecordView, config: Dict) -> Any:
        return copy.deepcopy(view.get(config["field"]))
