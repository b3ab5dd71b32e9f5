import pytest

from cutover.models.migration import RunContext
from cutover.stores.memory import MemoryDocumentStore, MemoryObjectStore, MemoryRelationalStore


@pytest.fixture
def ctx():
    return RunContext()


@pytest.fixture
def dry_ctx():
    return RunContext(dry_run=True)


@pytest.fixture
def source():
    return MemoryDocumentStore({
        "User": [
            {"_id": "u1", "email": "Asha@Example.com", "rollNumber": "231535182938", "name": "Asha", "role": "STUDENT", "institutionId": "I9"},
            {"_id": "u2", "email": "ravi@example.com", "rollNumber": "231535182939", "name": "Ravi", "role": "STUDENT", "institutionId": "I9"},
            {"_id": "m1", "email": "mentor@example.com", "name": "Meera", "role": "MENTOR", "institutionId": "I9"},
        ],
    })


@pytest.fixture
def target():
    return MemoryRelationalStore({"User": [], "mentor_assignments": []})


@pytest.fixture
def objects():
    return MemoryObjectStore()
