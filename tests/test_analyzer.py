import copy
from datetime import datetime, timezone

import pytest

from cutover.models.migration import MigrationStatus, RunContext, StageReport
from cutover.models.report import DiscrepancyCause
from cutover.models.specs import MENTOR_ASSIGNMENT, EntityCategory, EntityPair
from cutover.services.analyzer import DiscrepancyAnalyzer
from cutover.stores.memory import MemoryDocumentStore, MemoryRelationalStore

CUTOVER = datetime(2025, 1, 1, tzinfo=timezone.utc)

USERS = EntityPair("users", "User", "User", category=EntityCategory.SUBJECT)
ASSIGNMENTS = EntityPair(
    "mentor_assignments", "mentor_assignments", "mentor_assignments",
    category=EntityCategory.RELATIONSHIP, subject_field="studentId",
)


def _analyzer(source_docs, target_rows):
    source = MemoryDocumentStore(source_docs)
    target = MemoryRelationalStore(target_rows)
    return DiscrepancyAnalyzer(source, target, cutover_at=CUTOVER), source, target


def test_equal_counts_have_no_cause():
    analyzer, _, _ = _analyzer({"User": [{"_id": "s1", "email": "a@x.com"}]}, {"User": [{"id": "t1", "email": "a@x.com"}]})

    record = analyzer.compare(USERS)

    assert record.delta == 0
    assert record.cause == DiscrepancyCause.NONE


def test_target_ahead():
    analyzer, _, _ = _analyzer({"User": []}, {"User": [{"id": "t1", "email": "a@x.com"}]})

    record = analyzer.compare(USERS)

    assert record.delta == -1
    assert record.cause == DiscrepancyCause.TARGET_AHEAD


def test_duplicate_email_explains_delta():
    analyzer, _, _ = _analyzer(
        {"User": [
            {"_id": "s1", "email": "a@x.com"},
            {"_id": "s2", "email": "a@x.com"},
        ]},
        {"User": [{"id": "t1", "email": "a@x.com"}]},
    )

    record = analyzer.compare(USERS)

    assert record.delta == 1
    assert record.cause == DiscrepancyCause.DUPLICATE_NATURAL_KEY
    assert record.details["ambiguous"] == 2
    assert record.remediation == "resolve duplicate natural keys in the source"


def test_unmatched_subject():
    analyzer, _, _ = _analyzer(
        {"User": [
            {"_id": "s1", "email": "a@x.com"},
            {"_id": "s2", "email": "b@x.com", "createdAt": "2024-06-01T00:00:00"},
        ]},
        {"User": [{"id": "t1", "email": "a@x.com"}]},
    )

    record = analyzer.compare(USERS)

    assert record.cause == DiscrepancyCause.UNMATCHED_SUBJECT
    assert record.details["unmatched"] == 1
    assert record.samples[0]["source_id"] == "s2"


def test_created_after_cutover():
    analyzer, _, _ = _analyzer(
        {"User": [
            {"_id": "s1", "email": "a@x.com"},
            {"_id": "s2", "email": "b@x.com", "createdAt": "2025-02-01T00:00:00"},
        ]},
        {"User": [{"id": "t1", "email": "a@x.com"}]},
    )

    assert analyzer.compare(USERS).cause == DiscrepancyCause.CREATED_AFTER_CUTOVER


@pytest.mark.parametrize("cutover_at,created_at", [
    (datetime(2025, 1, 1), "2025-02-01T10:00:00Z"),
    (CUTOVER, "2025-02-01T10:00:00"),
    (datetime(2025, 1, 1), datetime(2025, 2, 1, tzinfo=timezone.utc)),
])
def test_cutover_comparison_mixes_naive_and_aware(cutover_at, created_at):
    source = MemoryDocumentStore({"User": [
        {"_id": "s1", "email": "a@x.com"},
        {"_id": "s2", "email": "b@x.com", "createdAt": created_at},
    ]})
    target = MemoryRelationalStore({"User": [{"id": "t1", "email": "a@x.com"}]})
    analyzer = DiscrepancyAnalyzer(source, target, cutover_at=cutover_at)

    assert analyzer.compare(USERS).cause == DiscrepancyCause.CREATED_AFTER_CUTOVER


def test_unparseable_created_at_counts_as_unmatched():
    analyzer, _, _ = _analyzer(
        {"User": [
            {"_id": "s1", "email": "a@x.com"},
            {"_id": "s2", "email": "b@x.com", "createdAt": "not a date"},
        ]},
        {"User": [{"id": "t1", "email": "a@x.com"}]},
    )

    record = analyzer.compare(USERS)

    assert record.cause == DiscrepancyCause.UNMATCHED_SUBJECT
    assert record.details["unmatched"] == 1


def test_legacy_id_link_counts_as_resolved():
    analyzer, _, _ = _analyzer(
        {"User": [
            {"_id": "s1", "email": "old@x.com"},
            {"_id": "s2", "email": "dup@x.com"},
            {"_id": "s3", "email": "dup@x.com"},
        ]},
        {"User": [{"id": "t1", "email": "new@x.com", "legacyId": "s1"}]},
    )

    record = analyzer.compare(USERS)

    assert record.details["unmatched"] == 0
    assert record.cause == DiscrepancyCause.DUPLICATE_NATURAL_KEY


def test_orphaned_relationship_reference():
    analyzer, _, _ = _analyzer(
        {
            "User": [{"_id": "s1", "email": "a@x.com"}, {"_id": "s2", "email": "b@x.com"}],
            "mentor_assignments": [
                {"_id": "a1", "studentId": "s1", "mentorId": "m1", "isActive": True},
                {"_id": "a2", "studentId": "s2", "mentorId": "m1", "isActive": True},
            ],
        },
        {
            "User": [{"id": "t1", "email": "a@x.com", "legacyId": "s1"}],
            "mentor_assignments": [{"id": "r1", "studentId": "t1", "mentorId": "tm1", "isActive": True}],
        },
    )

    record = analyzer.compare(ASSIGNMENTS)

    assert record.cause == DiscrepancyCause.ORPHANED_REFERENCE
    assert record.details["orphaned"] == 1
    assert record.samples == [{"_id": "a2", "studentId": "s2"}]


def test_invariant_violations_in_both_stores():
    analyzer, _, _ = _analyzer(
        {"mentor_assignments": [
            {"_id": "a1", "studentId": "s1", "mentorId": "m1", "isActive": True},
            {"_id": "a2", "studentId": "s1", "mentorId": "m2", "isActive": True},
        ]},
        {"mentor_assignments": [
            {"id": "r1", "studentId": "t1", "mentorId": "tm1", "isActive": True},
            {"id": "r2", "studentId": "t1", "mentorId": "tm2", "isActive": True},
            {"id": "r3", "studentId": "t2", "mentorId": "tm2", "isActive": True},
        ]},
    )

    findings = analyzer.check_invariants([MENTOR_ASSIGNMENT])

    assert {(f["store"], f["subject_id"]) for f in findings} == {("source", "s1"), ("target", "t1")}
    assert all(f["kind"] == "invariant_violation" for f in findings)


def test_analysis_is_read_only():
    source_docs = {
        "User": [{"_id": "s1", "email": "a@x.com"}, {"_id": "s2", "email": "a@x.com"}],
        "mentor_assignments": [{"_id": "a1", "studentId": "s2", "mentorId": "m1", "isActive": True}],
    }
    target_rows = {"User": [{"id": "t1", "email": "a@x.com"}], "mentor_assignments": []}
    analyzer, source, target = _analyzer(source_docs, target_rows)
    before = (copy.deepcopy(source.collections), copy.deepcopy(target.tables))

    analyzer.analyze([USERS, ASSIGNMENTS], kinds=[MENTOR_ASSIGNMENT])

    assert (source.collections, target.tables) == before


def test_run_fills_stage_report():
    analyzer, _, _ = _analyzer(
        {"User": [{"_id": "s1", "email": "a@x.com"}, {"_id": "s2", "email": "a@x.com"}]},
        {"User": [{"id": "t1", "email": "a@x.com"}]},
    )

    stage = StageReport(name="analyze", stage="analyze")
    result = analyzer.run([USERS], RunContext(), report=stage)

    assert not result.clean
    assert stage.status == MigrationStatus.COMPLETED
    assert stage.counters["discrepancies"] == 1
    assert stage.findings[0]["cause"] == "duplicate_natural_key"


@pytest.mark.parametrize("created_after_cutover,expected", [
    (True, DiscrepancyCause.CREATED_AFTER_CUTOVER),
    (False, DiscrepancyCause.UNEXPLAINED),
])
def test_other_entities(created_after_cutover, expected):
    pair = EntityPair("events", "Event", "events", created_after_cutover=created_after_cutover)
    analyzer, _, _ = _analyzer({"Event": [{"_id": "e1"}]}, {"events": []})

    assert analyzer.compare(pair).cause == expected
