import pytest

from cutover.models.migration import RunContext
from cutover.models.specs import MENTOR_ASSIGNMENT
from cutover.services.reconciler import SUPERSEDED, Assignment, RelationshipReconciler
from cutover.stores.memory import MemoryDocumentStore, MemoryRelationalStore


class FailingInsertDocumentStore(MemoryDocumentStore):
    def insert_one(self, collection, document):
        if collection == MENTOR_ASSIGNMENT.source_collection and self.collections.get(collection):
            raise RuntimeError("write concern timeout")
        return super().insert_one(collection, document)


@pytest.fixture
def stores():
    return MemoryDocumentStore({"mentor_assignments": []}), MemoryRelationalStore({"mentor_assignments": []})


def _active(rows):
    return [r for r in rows if r.get("isActive") is True]


def test_reassignment_supersedes_previous_mentor(stores):
    source, target = stores
    reconciler = RelationshipReconciler(source, target)

    first = reconciler.assign(MENTOR_ASSIGNMENT, Assignment(subject_id="S", counterpart_id="M1"))
    second = reconciler.assign(MENTOR_ASSIGNMENT, Assignment(subject_id="S", counterpart_id="M2"))

    assert first.ok and second.ok
    assert second.source_deactivated == 1
    assert second.target_deactivated == 1

    for rows in (list(source.find("mentor_assignments")), target.list_rows("mentor_assignments")):
        active = _active(rows)
        assert len(active) == 1
        assert active[0]["mentorId"] == "M2"
        old = [r for r in rows if r["mentorId"] == "M1"][0]
        assert old["isActive"] is False
        assert old["deactivationReason"] == SUPERSEDED
        assert old["deactivatedAt"] is not None


def test_other_subjects_are_untouched(stores):
    source, target = stores
    reconciler = RelationshipReconciler(source, target)
    reconciler.assign(MENTOR_ASSIGNMENT, Assignment(subject_id="S1", counterpart_id="M1"))
    reconciler.assign(MENTOR_ASSIGNMENT, Assignment(subject_id="S2", counterpart_id="M1"))

    assert len(_active(target.list_rows("mentor_assignments"))) == 2


def test_target_ids_come_from_id_map(stores):
    source, target = stores
    reconciler = RelationshipReconciler(source, target)

    reconciler.assign(MENTOR_ASSIGNMENT, Assignment(subject_id="S", counterpart_id="M"), {"S": "T-S", "M": "T-M"})

    row = target.list_rows("mentor_assignments")[0]
    assert (row["studentId"], row["mentorId"]) == ("T-S", "T-M")
    assert list(source.find("mentor_assignments"))[0]["studentId"] == "S"


def test_target_failure_rolls_back_target_only(stores):
    source, target = stores
    reconciler = RelationshipReconciler(source, target)
    reconciler.assign(MENTOR_ASSIGNMENT, Assignment(subject_id="S", counterpart_id="M1"))

    target.fail_next_insert = RuntimeError("serialization failure")
    outcome = reconciler.assign(MENTOR_ASSIGNMENT, Assignment(subject_id="S", counterpart_id="M2"))

    assert not outcome.ok
    assert outcome.source_inserted
    assert not outcome.target_inserted
    assert outcome.errors[0].startswith("target:")
    target_active = _active(target.list_rows("mentor_assignments"))
    assert [r["mentorId"] for r in target_active] == ["M1"]
    source_active = _active(list(source.find("mentor_assignments")))
    assert [r["mentorId"] for r in source_active] == ["M2"]


def test_source_insert_failure_reports_deactivated_count():
    source = FailingInsertDocumentStore({"mentor_assignments": []})
    target = MemoryRelationalStore()
    reconciler = RelationshipReconciler(source, target)
    reconciler.assign(MENTOR_ASSIGNMENT, Assignment(subject_id="S", counterpart_id="M1"))

    outcome = reconciler.assign(MENTOR_ASSIGNMENT, Assignment(subject_id="S", counterpart_id="M2"))

    assert outcome.errors[0].startswith("source:")
    assert outcome.source_deactivated == 1
    assert not outcome.source_inserted
    assert outcome.target_inserted


class TestReplicate:
    @pytest.fixture
    def target(self):
        return MemoryRelationalStore({
            "User": [
                {"id": "T-S1", "legacyId": "S1"},
                {"id": "T-S2", "legacyId": "S2"},
                {"id": "T-M1", "legacyId": "M1"},
                {"id": "T-M2", "legacyId": "M2"},
            ],
            "mentor_assignments": [],
        })

    @pytest.fixture
    def source(self):
        return MemoryDocumentStore({"mentor_assignments": [
            {"_id": "a1", "studentId": "S1", "mentorId": "M1", "isActive": True},
            {"_id": "a2", "studentId": "S2", "mentorId": "M1", "isActive": False},
            {"_id": "a3", "studentId": "S3", "mentorId": "M1", "isActive": True},
        ]})

    def test_inserts_then_stays_in_sync(self, source, target):
        reconciler = RelationshipReconciler(source, target)

        report = reconciler.replicate(MENTOR_ASSIGNMENT, RunContext())
        assert report.migrated == 1
        assert report.counters == {"inserted": 1, "not_found": 1}
        row = _active(target.list_rows("mentor_assignments"))[0]
        assert (row["studentId"], row["mentorId"]) == ("T-S1", "T-M1")

        again = reconciler.replicate(MENTOR_ASSIGNMENT, RunContext())
        assert again.migrated == 0
        assert again.counters["in_sync"] == 1
        assert len(target.list_rows("mentor_assignments")) == 1

    def test_supersedes_changed_counterpart(self, source, target):
        reconciler = RelationshipReconciler(source, target)
        reconciler.replicate(MENTOR_ASSIGNMENT, RunContext())
        source.update_one("mentor_assignments", "a1", {"mentorId": "M2"})

        report = reconciler.replicate(MENTOR_ASSIGNMENT, RunContext())

        assert report.counters["superseded"] == 1
        active = _active(target.list_rows("mentor_assignments"))
        assert [r["mentorId"] for r in active] == ["T-M2"]

    def test_source_violation_is_reported_not_fixed(self, source, target):
        source.insert_one("mentor_assignments", {"_id": "a4", "studentId": "S1", "mentorId": "M2", "isActive": True})

        report = RelationshipReconciler(source, target).replicate(MENTOR_ASSIGNMENT, RunContext())

        assert report.findings[0]["kind"] == "invariant_violation"
        assert report.findings[0]["subject_id"] == "S1"
        assert target.list_rows("mentor_assignments") == []
        assert len(_active(list(source.find("mentor_assignments")))) == 3

    def test_dry_run_writes_nothing(self, source, target):
        report = RelationshipReconciler(source, target).replicate(MENTOR_ASSIGNMENT, RunContext(dry_run=True))

        assert report.migrated == 1
        assert target.list_rows("mentor_assignments") == []
