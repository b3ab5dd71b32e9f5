from datetime import datetime, timezone

import pytest

from cutover.errors import CutoverError
from cutover.stores.memory import MemoryDocumentStore, MemoryRelationalStore, matches_filter


@pytest.mark.parametrize("filter,expected", [
    ({}, True),
    ({"a": 1}, True),
    ({"a": 2}, False),
    ({"b": None}, True),
    ({"b": {"$exists": True}}, False),
    ({"a": {"$in": [1, 2]}}, True),
    ({"a": {"$ne": 1}}, False),
    ({"$or": [{"a": 2}, {"c": "x"}]}, True),
])
def test_matches_filter(filter, expected):
    assert matches_filter({"a": 1, "c": "x"}, filter) is expected


def test_unsupported_operator():
    with pytest.raises(ValueError):
        matches_filter({"a": 1}, {"a": {"$gt": 0}})


def test_reads_return_copies():
    store = MemoryDocumentStore({"c": [{"_id": "1", "tags": []}]})

    doc = store.find_one("c")
    doc["tags"].append("x")

    assert store.find_one("c")["tags"] == []


def test_update_one_reports_change():
    store = MemoryDocumentStore({"c": [{"_id": "1", "a": 1}]})

    assert store.update_one("c", "1", {"a": 2})
    assert not store.update_one("c", "1", {"a": 2})
    assert not store.update_one("c", "missing", {"a": 2})


def test_rename_collection_is_guarded():
    store = MemoryDocumentStore({"a": [{"_id": "1"}], "b": []})

    with pytest.raises(CutoverError):
        store.rename_collection("a", "b")
    with pytest.raises(CutoverError):
        store.rename_collection("zzz", "c")

    store.rename_collection("a", "c")
    assert store.count("c") == 1


def test_supersede_and_insert_is_all_or_nothing():
    store = MemoryRelationalStore({"r": [{"id": "1", "studentId": "s", "isActive": True}]})
    store.fail_next_insert = RuntimeError("boom")
    at = datetime.now(timezone.utc)

    with pytest.raises(RuntimeError):
        store.supersede_and_insert("r", "studentId", "s", {"mentorId": "m2"}, "superseded", at)

    assert store.list_rows("r") == [{"id": "1", "studentId": "s", "isActive": True}]
    assert store.supersede_and_insert("r", "studentId", "s", {"studentId": "s", "mentorId": "m2"}, "superseded", at) == 1
    assert len(store.active_relationships("r", "studentId", "s")) == 1


def test_upsert_by_natural_key():
    store = MemoryRelationalStore()

    first = store.upsert_by_natural_key("User", "email", {"email": "a@x.com", "name": "A"})
    second = store.upsert_by_natural_key("User", "email", {"email": "a@x.com", "name": "B"})

    assert first == second
    assert store.list_rows("User")[0]["name"] == "B"


def test_raw_sql_is_not_interpreted():
    store = MemoryRelationalStore()

    with pytest.raises(NotImplementedError, match="MemoryRelationalStore"):
        store.query("select 1")
    with pytest.raises(NotImplementedError):
        store.execute("delete from users")
