import bcrypt
import pytest

from cutover.models.migration import RunContext
from cutover.models.subject import Subject
from cutover.services.synchronizer import EntitySynchronizer, SyncOutcome
from cutover.stores.memory import MemoryDocumentStore, MemoryRelationalStore


def _synchronizer(source, target, **kwargs):
    kwargs.setdefault("bcrypt_rounds", 4)
    return EntitySynchronizer(source, target, **kwargs)


def test_duplicate_source_email_creates_neither(ctx):
    source = MemoryDocumentStore({"User": [
        {"_id": "s1", "email": "a@x.com", "name": "A One"},
        {"_id": "s2", "email": "a@x.com", "name": "A Two"},
    ]})
    target = MemoryRelationalStore({"User": [{"id": "t1", "email": "a@x.com", "name": "A"}]})

    report, id_map = _synchronizer(source, target).sync_all(ctx)

    assert report.counters == {"ambiguous": 2}
    assert target.count("User") == 1
    assert id_map == {}
    assert [f["kind"] for f in report.findings] == ["ambiguous_match", "ambiguous_match"]
    assert report.findings[0]["candidates"] == []


def test_creates_missing_subjects_and_links(source, target, ctx):
    report, id_map = _synchronizer(source, target).sync_all(ctx)

    assert report.counters["created"] == 3
    assert report.migrated == 3
    assert target.count("User") == 3
    rows = {r["legacyId"]: r for r in target.list_rows("User")}
    assert set(rows) == {"u1", "u2", "m1"}
    assert rows["u1"]["email"] == "asha@example.com"
    assert rows["m1"]["role"] == "MENTOR"
    assert id_map == {legacy: row["id"] for legacy, row in rows.items()}


def test_second_run_creates_nothing(source, target):
    synchronizer = _synchronizer(source, target)
    _, first_map = synchronizer.sync_all(RunContext())

    report, second_map = synchronizer.sync_all(RunContext())

    assert report.counters == {"matched": 3}
    assert report.migrated == 0
    assert target.count("User") == 3
    assert second_map == first_map


def test_subject_without_natural_keys_is_created_once():
    source = MemoryDocumentStore({"User": [{"_id": "s1", "name": "No Keys"}]})
    target = MemoryRelationalStore()
    synchronizer = _synchronizer(source, target)
    synchronizer.sync_all(RunContext())

    report, id_map = synchronizer.sync_all(RunContext())

    assert report.counters == {"matched": 1}
    assert target.count("User") == 1
    assert id_map == {"s1": target.list_rows("User")[0]["id"]}


def test_email_changed_after_first_run_keeps_link():
    source = MemoryDocumentStore({"User": [{"_id": "s1", "email": "old@x.com", "name": "Asha"}]})
    target = MemoryRelationalStore()
    synchronizer = _synchronizer(source, target)
    synchronizer.sync_all(RunContext())
    source.update_one("User", "s1", {"email": "new@x.com"})

    report, _ = synchronizer.sync_all(RunContext())
    assert report.counters == {"matched": 1}
    assert target.count("User") == 1

    report, _ = synchronizer.sync_all(RunContext(), force=True)
    assert report.counters == {"updated": 1}
    assert [(r["legacyId"], r["email"]) for r in target.list_rows("User")] == [("s1", "new@x.com")]


def test_source_linked_to_several_targets_is_ambiguous(ctx):
    source = MemoryDocumentStore({"User": [{"_id": "s1", "email": "a@x.com"}]})
    target = MemoryRelationalStore({"User": [
        {"id": "t1", "email": "a@x.com", "legacyId": "s1"},
        {"id": "t2", "email": "b@x.com", "legacyId": "s1"},
    ]})

    report, id_map = _synchronizer(source, target).sync_all(ctx)

    assert report.counters == {"ambiguous": 1}
    assert report.findings[0]["candidates"] == ["t1", "t2"]
    assert id_map == {}
    assert target.count("User") == 2


def test_placeholder_email_and_temporary_password(ctx):
    source = MemoryDocumentStore({"User": [{"_id": "s1", "rollNumber": "42", "name": "No Mail"}]})
    target = MemoryRelationalStore()

    _synchronizer(source, target).sync_all(ctx)

    row = target.list_rows("User")[0]
    assert row["email"] == "student_42@placeholder.local"
    assert row["role"] == "STUDENT"
    assert bcrypt.checkpw(b"Student123!", row["password"].encode("utf-8"))


def test_existing_password_hash_is_kept(ctx):
    source = MemoryDocumentStore({"User": [{"_id": "s1", "email": "a@x.com", "password": "$2b$hash"}]})
    target = MemoryRelationalStore()

    _synchronizer(source, target).sync_all(ctx)

    assert target.list_rows("User")[0]["password"] == "$2b$hash"


def test_default_institution_fills_missing_value(ctx):
    source = MemoryDocumentStore({"User": [{"_id": "s1", "email": "a@x.com"}]})
    target = MemoryRelationalStore()

    _synchronizer(source, target, default_institution_id="I1").sync_all(ctx)

    assert target.list_rows("User")[0]["institutionId"] == "I1"


def test_target_linked_to_other_source_is_ambiguous():
    source = MemoryDocumentStore({"User": [{"_id": "s9", "email": "a@x.com"}]})
    target = MemoryRelationalStore({"User": [{"id": "t1", "email": "a@x.com", "legacyId": "s1"}]})
    synchronizer = _synchronizer(source, target)

    result = synchronizer.sync_subject(Subject(source_id="s9", email="a@x.com"))

    assert result.outcome == SyncOutcome.AMBIGUOUS
    assert "already linked" in result.match.reason
    assert target.count("User") == 1


def test_force_updates_matched_target():
    source = MemoryDocumentStore({"User": [{"_id": "s1", "email": "a@x.com", "name": "New Name"}]})
    target = MemoryRelationalStore({"User": [{"id": "t1", "email": "a@x.com", "name": "Old", "password": "keep"}]})

    report, id_map = _synchronizer(source, target).sync_all(RunContext(), force=True)

    row = target.list_rows("User")[0]
    assert report.counters == {"updated": 1}
    assert row["name"] == "New Name"
    assert row["legacyId"] == "s1"
    assert row["password"] == "keep"
    assert id_map == {"s1": "t1"}


def test_dry_run_writes_nothing(source, target, dry_ctx):
    report, id_map = _synchronizer(source, target).sync_all(dry_ctx)

    assert report.counters["created"] == 3
    assert target.count("User") == 0
    assert id_map == {}


def test_errors_are_recorded_per_subject(source, target, ctx):
    target.fail_next_insert = RuntimeError("connection reset")

    report, _ = _synchronizer(source, target).sync_all(ctx)

    assert report.errors == 1
    assert report.counters["error"] == 1
    assert report.counters["created"] == 2


@pytest.mark.parametrize("role,expected", [("STUDENT", "Student123!"), ("MENTOR", "Mentor123!")])
def test_temporary_password(role, expected):
    assert _synchronizer(None, None).temporary_password(role) == expected
