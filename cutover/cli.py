"""Command line interface for the cutover pipeline."""

import argparse
import json
import logging
import signal
import sys
from typing import List, Optional, Tuple

from .config import MigrationConfig
from .errors import CutoverError
from .models.migration import MigrationRun, MigrationStatus, RunContext, Stage, StageReport
from .models.report import DiscrepancyReport
from .orchestrator import MigrationOrchestrator
from .services.reconciler import Assignment

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure root logging; optionally mirror to a file."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", "-c", required=True, help="Path to JSON run configuration")
    common.add_argument("--dry-run", action="store_true", help="Evaluate without writing to any store")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    common.add_argument("--output-dir", help="Override the report output directory")
    common.add_argument(
        "--skip", action="append", default=[], choices=[s.value for s in Stage],
        help="Skip a stage (repeatable)",
    )

    parser = argparse.ArgumentParser(
        prog="cutover",
        description="Cross-store migration and reconciliation pipeline",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("run", parents=[common], help="Run every stage in order")

    subparsers.add_parser("transform", parents=[common], help="Apply field specs to the source")
    sync_parser = subparsers.add_parser("sync", parents=[common], help="Synchronize subjects into the target")
    sync_parser.add_argument("--force", action="store_true", help="Update already-matched targets")
    subparsers.add_parser("reconcile", parents=[common], help="Replicate active relationships into the target")

    assign_parser = subparsers.add_parser("assign", parents=[common], help="Assign a new relationship in both stores")
    assign_parser.add_argument("--kind", default="mentor_assignment", help="Relationship kind name")
    assign_parser.add_argument("--subject", required=True, help="Source id of the subject (e.g. student)")
    assign_parser.add_argument("--counterpart", required=True, help="Source id of the counterpart (e.g. mentor)")
    assign_parser.add_argument("--target-subject", help="Target id of the subject, if already known")
    assign_parser.add_argument("--target-counterpart", help="Target id of the counterpart, if already known")

    relocate_parser = subparsers.add_parser("relocate", parents=[common], help="Relocate legacy attachments")
    relocate_parser.add_argument("--root", help="Legacy upload directory")
    relocate_parser.add_argument("--prefix", help="Legacy bucket prefix")

    rewrite_parser = subparsers.add_parser(
        "rewrite-urls", parents=[common], help="Rewrite stored references carrying an old host prefix"
    )
    rewrite_parser.add_argument("--old-prefix", required=True)
    rewrite_parser.add_argument("--new-prefix", default="")
    rewrite_parser.add_argument(
        "--field", action="append", required=True, dest="fields", metavar="COLLECTION.FIELD",
        help="Reference field to rewrite (repeatable)",
    )

    analyze_parser = subparsers.add_parser("analyze", parents=[common], help="Report count deltas between stores")
    analyze_parser.add_argument("--json", action="store_true", help="Print the report as JSON")

    return parser


def load_config(args) -> MigrationConfig:
    config = MigrationConfig.from_json_file(args.config)
    if args.dry_run:
        config.dry_run = True
    if args.output_dir:
        config.output_dir = args.output_dir
    for stage in args.skip:
        config.skip(stage)
    return config


def create_orchestrator(config: MigrationConfig) -> MigrationOrchestrator:
    source, target, objects = config.create_stores()
    orchestrator = MigrationOrchestrator(config, source, target, objects)

    def handle_interrupt(signum, frame):
        orchestrator.cancel()
        signal.signal(signal.SIGINT, signal.SIG_DFL)

    signal.signal(signal.SIGINT, handle_interrupt)
    return orchestrator


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    try:
        config = load_config(args)
    except CutoverError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    setup_logging(args.verbose, config.log_file)

    commands = {
        "run": run_all,
        "transform": run_single_stage,
        "sync": run_single_stage,
        "reconcile": run_single_stage,
        "relocate": run_single_stage,
        "analyze": run_analysis,
        "assign": run_assignment,
        "rewrite-urls": run_url_rewrite,
    }
    try:
        return commands[args.command](args, config)
    except CutoverError as e:
        logger.error(f"{args.command} failed: {e}")
        return 1


def run_all(args, config: MigrationConfig) -> int:
    """Run every configured stage."""
    orchestrator = create_orchestrator(config)
    result = orchestrator.run_migration()
    print_summary(result)
    return 0 if result.status == MigrationStatus.COMPLETED else 1


def run_single_stage(args, config: MigrationConfig) -> int:
    """Run one pipeline stage through the orchestrator."""
    stage = Stage(args.command)
    if stage == Stage.SYNC and args.force:
        config.force_sync = True
    if stage == Stage.RELOCATE:
        if args.root:
            config.legacy_root = args.root
        if args.prefix is not None:
            config.legacy_prefix = args.prefix

    orchestrator = create_orchestrator(config)
    result = orchestrator.run_migration(stages=[stage])
    print_summary(result)
    return 0 if result.status == MigrationStatus.COMPLETED else 1


def run_analysis(args, config: MigrationConfig) -> int:
    """Run the discrepancy analyzer and print the classified report."""
    orchestrator = create_orchestrator(config)
    result = orchestrator.run_migration(stages=[Stage.ANALYZE])
    report = orchestrator.discrepancies

    if report is None:
        print_summary(result)
        return 1
    if args.json:
        print(json.dumps(report.to_dict(), indent=2, default=str))
    else:
        print_discrepancies(report)
    return 0 if report.clean else 1


def run_assignment(args, config: MigrationConfig) -> int:
    """Assign a relationship in both stores."""
    kinds = {k.name: k for k in config.relationship_kinds}
    if args.kind not in kinds:
        print(f"Unknown relationship kind: {args.kind} (known: {', '.join(kinds)})", file=sys.stderr)
        return 2

    orchestrator = create_orchestrator(config)
    reconciler = orchestrator.reconciler()
    assignment = Assignment(
        subject_id=args.subject,
        counterpart_id=args.counterpart,
        target_subject_id=args.target_subject,
        target_counterpart_id=args.target_counterpart,
    )
    if config.dry_run:
        print(f"Dry run: would assign {args.counterpart} to {args.subject} ({args.kind})")
        return 0

    outcome = reconciler.assign(kinds[args.kind], assignment, reconciler.load_id_map())
    print(json.dumps(outcome.to_dict(), indent=2))
    return 0 if outcome.ok else 1


def parse_field_targets(fields: List[str]) -> List[Tuple[str, str]]:
    targets = []
    for item in fields:
        collection, _, field = item.partition(".")
        if not collection or not field:
            raise CutoverError(f"Expected COLLECTION.FIELD, got {item!r}")
        targets.append((collection, field))
    return targets


def run_url_rewrite(args, config: MigrationConfig) -> int:
    """Rewrite old host prefixes in stored references."""
    targets = parse_field_targets(args.fields)
    orchestrator = create_orchestrator(config)
    ctx = RunContext(dry_run=config.dry_run, cancel_event=orchestrator.ctx.cancel_event)
    report = orchestrator.relocator().rewrite_url_prefix(args.old_prefix, args.new_prefix, targets, ctx)
    print_stage(report)
    return 0 if report.errors == 0 else 1


def print_stage(report: StageReport, indent: str = "") -> None:
    dry = " (dry run)" if report.dry_run else ""
    print(
        f"{indent}{report.name:<24} {report.status.value:<10} total={report.total} "
        f"migrated={report.migrated} skipped={report.skipped} errors={report.errors}{dry}"
    )
    for name, value in sorted(report.counters.items()):
        print(f"{indent}    {name}: {value}")
    for child in report.children:
        print_stage(child, indent + "  ")


def print_summary(result: MigrationRun) -> None:
    print("\n" + "=" * 60)
    print("CUTOVER COMPLETE" if result.status == MigrationStatus.COMPLETED else f"CUTOVER {result.status.value.upper()}")
    print("=" * 60)
    print(f"Status: {result.status.value}")
    for report in result.stages:
        print_stage(report)
    findings = sum(len(s.findings) for s in result.stages)
    print(f"Errors: {result.total_errors}")
    print(f"Findings needing review: {findings}")
    if result.duration_seconds:
        print(f"Duration: {result.duration_seconds:.2f} seconds")


def print_discrepancies(report: DiscrepancyReport) -> None:
    print("\n=== Discrepancy Report ===")
    print(f"{'Entity':<28} {'Source':>8} {'Target':>8} {'Delta':>7}  Cause")
    print("-" * 78)
    for record in report.records:
        print(
            f"{record.entity:<28} {record.source_count:>8} {record.target_count:>8} "
            f"{record.delta:>7}  {record.cause.value}"
        )
        if record.remediation:
            print(f"{'':<28} -> {record.remediation}")
    if report.findings:
        print(f"\nFindings ({len(report.findings)}):")
        for finding in report.findings:
            print(f"  - {finding['kind']}: {finding['message']} (subject {finding.get('subject_id')})")


if __name__ == "__main__":
    sys.exit(main())
