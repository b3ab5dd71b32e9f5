"""Migration orchestrator - sequences the cutover stages and persists the run report."""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .config import MigrationConfig
from .errors import StageAbortedError, TransientStoreError
from .models.migration import MigrationRun, MigrationStatus, RunContext, Stage, StageReport, utcnow
from .models.report import DiscrepancyReport, FileOutcome
from .services.analyzer import DiscrepancyAnalyzer
from .services.matcher import MatchRule
from .services.reconciler import RelationshipReconciler
from .services.relocator import AttachmentRelocator, BucketPrefixSource, LegacySource, LocalDirectorySource
from .services.synchronizer import EntitySynchronizer
from .services.transformer import SchemaTransformer
from .stores.base import DocumentStore, ObjectStore, RelationalStore

logger = logging.getLogger(__name__)

STAGE_ORDER = [Stage.TRANSFORM, Stage.SYNC, Stage.RECONCILE, Stage.RELOCATE, Stage.ANALYZE]

# a stage is skipped when a stage it depends on failed in the same run
DEPENDS_ON = {
    Stage.TRANSFORM: [],
    Stage.SYNC: [Stage.TRANSFORM],
    Stage.RECONCILE: [Stage.SYNC],
    Stage.RELOCATE: [],
    Stage.ANALYZE: [],
}


class MigrationOrchestrator:
    """
    Orchestrates a cutover run.

    Handles:
    - Schema transformation of the source
    - Subject synchronization into the target
    - Relationship reconciliation
    - Attachment relocation
    - Discrepancy analysis
    - Cancellation, stage aborts and report persistence
    """

    def __init__(
        self,
        config: MigrationConfig,
        source: DocumentStore,
        target: RelationalStore,
        objects: Optional[ObjectStore] = None
    ):
        """
        Initialize the orchestrator.

        Args:
            config: Run configuration
            source: Source document store
            target: Target relational store
            objects: Object store for attachment relocation
        """
        self.config = config
        self.source = source
        self.target = target
        self.objects = objects

        self.ctx = RunContext(
            dry_run=config.dry_run,
            max_errors=config.max_errors,
            max_workers=config.max_workers,
        )

        # Runtime state
        self.run: Optional[MigrationRun] = None
        self.id_map: Dict[str, str] = {}
        self.discrepancies: Optional[DiscrepancyReport] = None
        self.file_outcomes: List[FileOutcome] = []
        self.report_path: Optional[Path] = None

        self._setup_directories()

    def _setup_directories(self):
        """Create output directories."""
        self.logs_dir = Path(self.config.output_dir) / "logs"
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def cancel(self) -> None:
        """Stop after the record currently being processed."""
        logger.warning("Cancellation requested")
        self.ctx.cancel()

    # --- Components ----------------------------------------------------------

    def _match_rules(self) -> List[MatchRule]:
        return [MatchRule(r) for r in self.config.match_rules]

    def synchronizer(self) -> EntitySynchronizer:
        return EntitySynchronizer(
            self.source,
            self.target,
            source_layout=self.config.source_layout,
            target_layout=self.config.target_layout,
            rules=self._match_rules(),
            source_filter=self.config.source_filter or None,
            default_role=self.config.default_role,
            default_institution_id=self.config.default_institution_id,
        )

    def reconciler(self) -> RelationshipReconciler:
        return RelationshipReconciler(self.source, self.target, target_layout=self.config.target_layout)

    def relocator(self) -> AttachmentRelocator:
        return AttachmentRelocator(
            self.source,
            self.objects,
            subject_layout=self.config.relocation_layout,
            patterns=self.config.filename_patterns,
            store_urls=self.config.store_urls,
        )

    def analyzer(self) -> DiscrepancyAnalyzer:
        return DiscrepancyAnalyzer(
            self.source,
            self.target,
            source_layout=self.config.source_layout,
            target_layout=self.config.target_layout,
            rules=self._match_rules(),
            cutover_at=self.config.cutover_at,
        )

    def legacy_source(self) -> Optional[LegacySource]:
        if self.config.legacy_root:
            return LocalDirectorySource(self.config.legacy_root)
        if self.config.legacy_prefix is not None and self.objects is not None:
            return BucketPrefixSource(self.objects, self.config.legacy_prefix)
        return None

    # --- Run -----------------------------------------------------------------

    def run_migration(self, stages: Optional[List[Stage]] = None) -> MigrationRun:
        """
        Run the configured stages in pipeline order.

        Args:
            stages: Subset of stages to run; all stages when omitted

        Returns:
            MigrationRun with one StageReport per stage
        """
        selected = [s for s in STAGE_ORDER if stages is None or s in stages]
        self.run = MigrationRun(id=self.ctx.run_id, name=self.config.name, dry_run=self.config.dry_run)
        self.run.metadata["config"] = self.config.to_dict()
        self.run.started_at = utcnow()
        self.run.status = MigrationStatus.RUNNING
        failed: List[Stage] = []

        try:
            for number, stage in enumerate(selected, 1):
                report = self.run.add_stage(stage, dry_run=self.config.stage_dry_run(stage))

                if self.ctx.cancelled:
                    report.finish(MigrationStatus.CANCELLED)
                    continue
                if self.config.is_skipped(stage):
                    logger.info(f"=== STAGE {number}: {stage.value.upper()} (skipped) ===")
                    report.finish(MigrationStatus.SKIPPED)
                    continue
                blocked = [d for d in DEPENDS_ON[stage] if d in failed]
                if blocked:
                    logger.warning(
                        f"=== STAGE {number}: {stage.value.upper()} (skipped, {blocked[0].value} failed) ==="
                    )
                    report.warnings.append(f"skipped because {blocked[0].value} failed")
                    report.finish(MigrationStatus.SKIPPED)
                    failed.append(stage)
                    continue

                logger.info(f"=== STAGE {number}: {stage.value.upper()} ===")
                if not self.run_stage(stage, report):
                    failed.append(stage)

            if self.ctx.cancelled:
                self.run.status = MigrationStatus.CANCELLED
                logger.warning("=== CUTOVER CANCELLED ===")
            elif failed:
                self.run.status = MigrationStatus.FAILED
                logger.error(f"=== CUTOVER FINISHED WITH FAILED STAGES: {', '.join(s.value for s in failed)} ===")
            else:
                self.run.status = MigrationStatus.COMPLETED
                logger.info("=== CUTOVER COMPLETED ===")

        except Exception as e:
            logger.error(f"Cutover failed: {e}")
            self.run.status = MigrationStatus.FAILED
            self.run.errors.append({
                "error": str(e),
                "timestamp": utcnow().isoformat(),
            })

        finally:
            self.run.completed_at = utcnow()
            self._save_report()

        return self.run

    def run_stage(self, stage: Stage, report: Optional[StageReport] = None) -> bool:
        """
        Run one stage, converting a stage abort into a failed report.

        Returns:
            False if the stage was aborted
        """
        report = report or StageReport(name=stage.value, stage=stage.value)
        ctx = self.ctx.for_stage(self.config.toggle(stage).dry_run)
        report.dry_run = ctx.dry_run
        report.start()

        handlers = {
            Stage.TRANSFORM: self._run_transform,
            Stage.SYNC: self._run_sync,
            Stage.RECONCILE: self._run_reconcile,
            Stage.RELOCATE: self._run_relocate,
            Stage.ANALYZE: self._run_analyze,
        }

        try:
            handlers[stage](ctx, report)
            return True
        except (StageAbortedError, TransientStoreError) as e:
            logger.error(f"Stage aborted: {e}")
            report.finish(MigrationStatus.FAILED)
            self._record_run_error(stage, e)
            return False

    def _record_run_error(self, stage: Stage, error: Exception) -> None:
        if self.run is not None:
            self.run.errors.append({
                "stage": stage.value,
                "error": str(error),
                "timestamp": utcnow().isoformat(),
            })

    def _require(self, stage: Stage, **stores) -> None:
        """Abort the stage up front when a store it needs is unreachable."""
        for name, store in stores.items():
            if store is None:
                raise StageAbortedError(stage.value, f"no {name} store configured")
            try:
                store.ping()
            except Exception as e:
                raise StageAbortedError(stage.value, f"{name} store unreachable: {e}") from e

    def _run_transform(self, ctx: RunContext, report: StageReport) -> None:
        """Run the schema transformation stage."""
        self._require(Stage.TRANSFORM, source=self.source)
        SchemaTransformer(self.source).run(
            self.config.field_specs,
            ctx,
            archive_specs=self.config.archive_specs,
            index_specs=self.config.index_specs,
            report=report,
        )

    def _run_sync(self, ctx: RunContext, report: StageReport) -> None:
        """Run the subject synchronization stage."""
        self._require(Stage.SYNC, source=self.source, target=self.target)
        _, id_map = self.synchronizer().sync_all(ctx, force=self.config.force_sync, report=report)
        self.id_map.update(id_map)

    def _run_reconcile(self, ctx: RunContext, report: StageReport) -> None:
        """Run the relationship reconciliation stage."""
        self._require(Stage.RECONCILE, source=self.source, target=self.target)
        reconciler = self.reconciler()
        for kind in self.config.relationship_kinds:
            if ctx.cancelled:
                break
            child = report.add_child(kind.name)
            reconciler.replicate(kind, ctx, self.id_map, child)
            report.findings.extend(child.findings)
        report.roll_up()
        report.finish(MigrationStatus.CANCELLED if ctx.cancelled else MigrationStatus.COMPLETED)

    def _run_relocate(self, ctx: RunContext, report: StageReport) -> None:
        """Run the attachment relocation stage."""
        legacy = self.legacy_source()
        if legacy is None:
            logger.warning("No legacy_root or legacy_prefix configured, nothing to relocate")
            report.warnings.append("no legacy source configured")
            report.finish(MigrationStatus.SKIPPED)
            return

        self._require(Stage.RELOCATE, source=self.source, objects=self.objects)
        _, self.file_outcomes = self.relocator().run(legacy, ctx, report)
        self._save_audit("relocation_audit", [o.to_dict() for o in self.file_outcomes])

    def _run_analyze(self, ctx: RunContext, report: StageReport) -> None:
        """Run the discrepancy analysis stage."""
        self._require(Stage.ANALYZE, source=self.source, target=self.target)
        kinds = self.config.relationship_kinds
        pairs = self.config.entity_pairs
        if not pairs:
            logger.warning("No entity pairs configured, checking relationship invariants only")
        self.discrepancies = self.analyzer().run(pairs, ctx, kinds=kinds, report=report)
        if self.run is not None:
            self.run.metadata["discrepancies"] = self.discrepancies.to_dict()

        logger.info(
            f"Analyzed {len(pairs)} entity pairs, "
            f"{len(self.discrepancies.discrepancies)} with a delta, {len(self.discrepancies.findings)} findings"
        )

    # --- Output --------------------------------------------------------------

    def _timestamp(self) -> str:
        return utcnow().strftime('%Y%m%d_%H%M%S')

    def _save_audit(self, name: str, data) -> Path:
        filepath = self.logs_dir / f"{name}_{self._timestamp()}.json"
        with open(filepath, 'w') as f:
            json.dump(data, f, indent=2, default=str)
        logger.info(f"Saved {name} to {filepath}")
        return filepath

    def _save_report(self) -> Path:
        """Save the run report."""
        filepath = self.logs_dir / f"migration_report_{self._timestamp()}.json"
        with open(filepath, 'w') as f:
            json.dump(self.run.to_dict(), f, indent=2, default=str)
        logger.info(f"Saved migration report to {filepath}")
        self.report_path = filepath
        return filepath
