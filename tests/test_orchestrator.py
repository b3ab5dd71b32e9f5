import json

import pytest

from cutover.config import MigrationConfig
from cutover.models.migration import MigrationStatus, Stage
from cutover.models.specs import EntityCategory, EntityPair, FieldSpec
from cutover.orchestrator import MigrationOrchestrator
from cutover.stores.memory import MemoryDocumentStore, MemoryObjectStore, MemoryRelationalStore


@pytest.fixture
def source():
    return MemoryDocumentStore({
        "User": [
            {"_id": "u1", "email": "asha@example.com", "rollNumber": "231535182938", "role": "STUDENT"},
            {"_id": "m1", "email": "meera@example.com", "role": "MENTOR"},
        ],
        "mentor_assignments": [{"_id": "a1", "studentId": "u1", "mentorId": "m1", "isActive": True}],
        "Student": [{"_id": "S123", "rollNumber": "231535182938", "institutionId": "I9"}],
    })


@pytest.fixture
def config(tmp_path):
    legacy = tmp_path / "uploads" / "I9" / "profile"
    legacy.mkdir(parents=True)
    (legacy / "231535182938_profile.webp").write_bytes(b"img")
    return MigrationConfig(
        output_dir=str(tmp_path / "out"),
        field_specs=[FieldSpec(collection="User", field="isActive", default=True)],
        entity_pairs=[EntityPair("users", "User", "User", category=EntityCategory.SUBJECT)],
        legacy_root=str(tmp_path / "uploads"),
    )


def _orchestrator(config, source):
    target = MemoryRelationalStore({"User": [], "mentor_assignments": []})
    return MigrationOrchestrator(config, source, target, MemoryObjectStore()), target


def test_full_run(config, source):
    orchestrator, target = _orchestrator(config, source)

    run = orchestrator.run_migration()

    assert run.status == MigrationStatus.COMPLETED
    assert [s.stage for s in run.stages] == [s.value for s in Stage]
    assert all(s.status == MigrationStatus.COMPLETED for s in run.stages)
    assert source.find_one("User", {"_id": "u1"})["isActive"] is True
    assert set(orchestrator.id_map) == {"u1", "m1"}

    active = [r for r in target.list_rows("mentor_assignments") if r["isActive"] is True]
    assert len(active) == 1
    assert active[0]["studentId"] == orchestrator.id_map["u1"]

    assert orchestrator.objects.exists("institutions/I9/subjects/S123/profile/S123_profile.webp")
    assert orchestrator.discrepancies.clean


def test_report_is_saved(config, source):
    orchestrator, _ = _orchestrator(config, source)

    orchestrator.run_migration()

    saved = json.loads(orchestrator.report_path.read_text())
    assert orchestrator.report_path.parent.name == "logs"
    assert orchestrator.report_path.name.startswith("migration_report_")
    assert saved["status"] == "completed"
    assert len(saved["stages"]) == 5
    assert "discrepancies" in saved["metadata"]
    assert list(orchestrator.logs_dir.glob("relocation_audit_*.json"))


def test_second_run_changes_nothing(config, source):
    orchestrator, target = _orchestrator(config, source)
    orchestrator.run_migration()
    rows_after_first = target.list_rows("User")

    again = MigrationOrchestrator(config, source, target, orchestrator.objects)
    run = again.run_migration()

    assert run.status == MigrationStatus.COMPLETED
    assert run.get_stage(Stage.TRANSFORM).migrated == 0
    assert run.get_stage(Stage.SYNC).counters == {"matched": 2}
    assert run.get_stage(Stage.RECONCILE).children[0].counters == {"in_sync": 1}
    assert run.get_stage(Stage.RELOCATE).counters == {"unchanged": 1}
    assert target.list_rows("User") == rows_after_first


def test_selected_stages_only(config, source):
    orchestrator, target = _orchestrator(config, source)

    run = orchestrator.run_migration(stages=[Stage.SYNC])

    assert [s.stage for s in run.stages] == ["sync"]
    assert target.count("User") == 2
    assert "isActive" not in source.find_one("User", {"_id": "u1"})


def test_skipped_stage(config, source):
    config.skip("transform")
    orchestrator, _ = _orchestrator(config, source)

    run = orchestrator.run_migration()

    assert run.get_stage(Stage.TRANSFORM).status == MigrationStatus.SKIPPED
    assert run.get_stage(Stage.SYNC).status == MigrationStatus.COMPLETED
    assert "isActive" not in source.find_one("User", {"_id": "u1"})


def test_failed_stage_skips_dependents(config, source):
    config.field_specs = [FieldSpec(collection="User", field="x", kind="derive", derive="no_such_derivation")]
    config.max_errors = 1
    orchestrator, target = _orchestrator(config, source)

    run = orchestrator.run_migration()

    assert run.status == MigrationStatus.FAILED
    assert run.get_stage(Stage.TRANSFORM).status == MigrationStatus.FAILED
    assert run.get_stage(Stage.SYNC).status == MigrationStatus.SKIPPED
    assert run.get_stage(Stage.RECONCILE).status == MigrationStatus.SKIPPED
    assert run.get_stage(Stage.RELOCATE).status == MigrationStatus.COMPLETED
    assert target.count("User") == 0
    assert run.errors[0]["stage"] == "transform"


def test_dry_run_writes_nothing(config, source):
    config.dry_run = True
    orchestrator, target = _orchestrator(config, source)

    run = orchestrator.run_migration()

    assert all(s.dry_run for s in run.stages)
    assert target.count("User") == 0
    assert orchestrator.objects.objects == {}
    assert "isActive" not in source.find_one("User", {"_id": "u1"})


def test_cancelled_before_start(config, source):
    orchestrator, target = _orchestrator(config, source)
    orchestrator.cancel()

    run = orchestrator.run_migration()

    assert run.status == MigrationStatus.CANCELLED
    assert all(s.status == MigrationStatus.CANCELLED for s in run.stages)
    assert target.count("User") == 0


def test_missing_object_store_fails_relocate_only(config, source):
    orchestrator = MigrationOrchestrator(config, source, MemoryRelationalStore())

    run = orchestrator.run_migration()

    assert run.get_stage(Stage.RELOCATE).status == MigrationStatus.FAILED
    assert run.get_stage(Stage.ANALYZE).status == MigrationStatus.COMPLETED
