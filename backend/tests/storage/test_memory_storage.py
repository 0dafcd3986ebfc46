"""
In-memory storage - natural keys, conditional updates and transaction rollback.
"""
from __future__ import annotations

import threading

import pytest

from backend.storage.memory import MemoryStorage
from backend.storage.ports import DuplicateKeyError, UnknownTableError
from backend.storage.tables import AUDIT_ENTRIES, MEMBERSHIPS, USERS


def _member(student_id: str, status: str = "active") -> dict:
    return {"class_id": "c-1", "student_id": student_id, "institution_id": "inst-a", "status": status}


def test_insert_rejects_duplicate_natural_key():
    store = MemoryStorage()
    store.insert(MEMBERSHIPS, _member("s-1"))
    with pytest.raises(DuplicateKeyError):
        store.insert(MEMBERSHIPS, _member("s-1", "removed"))
    assert store.insert(MEMBERSHIPS, _member("s-1"), if_absent=True) is None
    assert store.get(MEMBERSHIPS, {"class_id": "c-1", "student_id": "s-1"})["status"] == "active"


def test_serial_ids_are_monotonic():
    store = MemoryStorage()
    ids = [store.insert(AUDIT_ENTRIES, {"id": None, "target_id": f"t-{i}"})["id"] for i in range(3)]
    assert ids == [1, 2, 3]


def test_conditional_update_counts_only_matching_rows():
    store = MemoryStorage()
    store.insert(MEMBERSHIPS, _member("s-1"))
    assert store.update(MEMBERSHIPS, {"student_id": "s-1", "status": "removed"}, {"reason": "x"}) == 0
    assert store.update(MEMBERSHIPS, {"student_id": "s-1", "status": "active"}, {"status": "removed"}) == 1
    assert store.update(MEMBERSHIPS, {"student_id": "s-1", "status": "active"}, {"status": "removed"}) == 0


def test_update_of_key_columns_is_rejected():
    store = MemoryStorage()
    store.insert(MEMBERSHIPS, _member("s-1"))
    with pytest.raises(ValueError):
        store.update(MEMBERSHIPS, {"student_id": "s-1"}, {"student_id": "s-2"})


def test_returned_rows_are_copies():
    store = MemoryStorage()
    store.insert(USERS, {"user_id": "u-1", "role": "teacher"})
    row = store.get(USERS, {"user_id": "u-1"})
    row["role"] = "admin"
    assert store.get(USERS, {"user_id": "u-1"})["role"] == "teacher"


def test_transaction_rolls_back_all_writes_on_error():
    store = MemoryStorage()
    store.insert(MEMBERSHIPS, _member("s-1"))
    with pytest.raises(RuntimeError):
        with store.transaction() as tx:
            tx.update(MEMBERSHIPS, {"student_id": "s-1"}, {"status": "removed"})
            tx.insert(AUDIT_ENTRIES, {"id": None, "target_id": "c-1:s-1"})
            raise RuntimeError("boom")
    assert store.get(MEMBERSHIPS, {"class_id": "c-1", "student_id": "s-1"})["status"] == "active"
    assert store.select(AUDIT_ENTRIES, {}) == []


def test_unknown_table_is_rejected():
    store = MemoryStorage()
    with pytest.raises(UnknownTableError):
        store.select("courses", {})


def test_racing_conditional_updates_have_exactly_one_winner():
    store = MemoryStorage()
    store.insert(MEMBERSHIPS, _member("s-1"))
    results: list[int] = []
    barrier = threading.Barrier(8)

    def _remove():
        barrier.wait()
        results.append(store.update(MEMBERSHIPS, {"student_id": "s-1", "status": "active"}, {"status": "removed"}))

    threads = [threading.Thread(target=_remove) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert sorted(results) == [0] * 7 + [1]
