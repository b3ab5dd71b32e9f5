#!/usr/bin/env python3
"""
Example: Internship CMS cutover (MongoDB -> PostgreSQL + object storage)

This script demonstrates how to drive the cutover pipeline from Python
instead of the `cutover` command.

Usage:
    # Demo against in-memory stores (no databases needed)
    python run_cutover.py --demo

    # Dry run against the stores named in the config / environment
    python run_cutover.py --dry-run

    # Full run with a custom config
    python run_cutover.py --config my_config.json
"""

import argparse
import logging
import os
import sys
import tempfile
from pathlib import Path

from cutover.config import MigrationConfig
from cutover.models.migration import MigrationRun
from cutover.models.specs import EntityCategory, EntityPair
from cutover.orchestrator import MigrationOrchestrator
from cutover.services.reconciler import Assignment
from cutover.stores.memory import MemoryDocumentStore, MemoryObjectStore, MemoryRelationalStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('cutover.log')
    ]
)
logger = logging.getLogger(__name__)

CONFIG_PATH = Path(__file__).parent / "cutover_config.json"


def create_config(config_path: str, dry_run: bool = True) -> MigrationConfig:
    """Load the run configuration; connection settings come from the environment."""
    config = MigrationConfig.from_json_file(config_path)
    config.dry_run = dry_run
    return config


def run_cutover(orchestrator: MigrationOrchestrator) -> MigrationRun:
    """Run every stage and log the summary."""
    config = orchestrator.config
    logger.info("=" * 60)
    logger.info("STARTING CUTOVER")
    logger.info("=" * 60)
    logger.info(f"Name: {config.name}")
    logger.info(f"Dry Run: {config.dry_run}")

    result = orchestrator.run_migration()

    logger.info("=" * 60)
    logger.info("CUTOVER COMPLETE")
    logger.info("=" * 60)
    logger.info(f"Status: {result.status.value}")
    for stage in result.stages:
        logger.info(
            f"{stage.name}: {stage.status.value} - total {stage.total}, migrated {stage.migrated}, "
            f"skipped {stage.skipped}, errors {stage.errors}"
        )

    if result.duration_seconds:
        logger.info(f"Duration: {result.duration_seconds:.2f} seconds")

    findings = [f for stage in result.stages for f in stage.findings]
    if findings:
        logger.warning(f"\nFindings ({len(findings)}):")
        for finding in findings[:10]:  # Show first 10
            logger.warning(f"  - {finding['kind']}: {finding['message']}")

    if orchestrator.report_path:
        logger.info(f"Report: {orchestrator.report_path}")
    return result


def demo_with_sample_data():
    """
    Demo cutover with sample data (no databases needed).

    Two students share an email, so synchronization reports both as
    ambiguous and the analyzer attributes the user delta to the duplicate.
    """
    logger.info("Running demo with sample data...")

    source = MemoryDocumentStore({
        "User": [
            {"_id": "u1", "email": "asha@college.edu", "rollNumber": "231535182938", "name": "Asha", "role": "STUDENT"},
            {"_id": "u2", "email": "shared@college.edu", "rollNumber": "231535182939", "name": "Ravi", "role": "STUDENT"},
            {"_id": "u3", "email": "shared@college.edu", "rollNumber": "231535182940", "name": "Kiran", "role": "STUDENT"},
            {"_id": "m1", "email": "meera@college.edu", "name": "Meera", "role": "MENTOR"},
            {"_id": "m2", "email": "arjun@college.edu", "name": "Arjun", "role": "MENTOR"},
        ],
        "Student": [
            {"_id": "u1", "rollNumber": "231535182938", "institutionId": "I9", "feeStuctureId": "F1"},
        ],
        "mentor_assignments": [
            {"_id": "a1", "studentId": "u1", "mentorId": "m1", "isActive": True},
        ],
        "fcm_tokens": [{"_id": "f1", "token": "stale"}],
    })
    target = MemoryRelationalStore({"User": [], "mentor_assignments": []})
    objects = MemoryObjectStore()

    with tempfile.TemporaryDirectory() as tmp:
        profile_dir = Path(tmp) / "uploads" / "I9" / "profile"
        profile_dir.mkdir(parents=True)
        (profile_dir / "231535182938_profile.webp").write_bytes(b"RIFF....WEBP")

        config = MigrationConfig.from_json_file(str(CONFIG_PATH), environ={})
        config.name = "Demo cutover"
        config.legacy_root = str(Path(tmp) / "uploads")
        config.output_dir = str(Path(__file__).parent / "demo_output")
        config.entity_pairs = [
            EntityPair("users", "User", "User", category=EntityCategory.SUBJECT),
            EntityPair("mentor_assignments", "mentor_assignments", "mentor_assignments",
                       category=EntityCategory.RELATIONSHIP, subject_field="studentId"),
        ]

        orchestrator = MigrationOrchestrator(config, source, target, objects)
        run_cutover(orchestrator)

    # Reassign Asha to a new mentor; the old assignment is superseded in both stores
    reconciler = orchestrator.reconciler()
    outcome = reconciler.assign(
        config.relationship_kinds[0],
        Assignment(subject_id="u1", counterpart_id="m2"),
        orchestrator.id_map,
    )
    logger.info(f"Reassignment: {outcome.to_dict()}")

    report = orchestrator.analyzer().analyze(config.entity_pairs, config.relationship_kinds)
    for record in report.records:
        logger.info(f"{record.entity}: delta {record.delta} ({record.cause.value}) {record.remediation}")

    logger.info(f"\nDemo complete! Check {config.output_dir}/logs for saved reports.")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Internship CMS cutover"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Simulate the cutover without making changes"
    )
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Run demo with sample data (no databases needed)"
    )
    parser.add_argument(
        "--config",
        default=str(CONFIG_PATH),
        help="Path to JSON config file"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose output"
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.demo:
        demo_with_sample_data()
        return

    # Check for required environment variables
    required_env = ["SOURCE_MONGO_URL", "TARGET_DATABASE_URL"]
    missing = [var for var in required_env if not os.environ.get(var)]

    if missing:
        logger.error(f"Missing required environment variables: {', '.join(missing)}")
        logger.info("Set these or use --demo for a local walkthrough")
        sys.exit(1)

    config = create_config(args.config, dry_run=args.dry_run)
    source, target, objects = config.create_stores()
    run_cutover(MigrationOrchestrator(config, source, target, objects))


if __name__ == "__main__":
    main()
