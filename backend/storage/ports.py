"""
Storage ports used by the roster, assignment, enrollment and audit contexts.

Keep these small and framework-agnostic so tests can supply the in-memory
store (or simple fakes) instead of Postgres.

Contract:
    - `get(table, key)` point lookup by the table's natural key, `None` when absent.
    - `select(table, filter)` equality filter, rows in insertion order.
    - `insert(table, row)` returns the stored row (serial ids assigned);
      raises `DuplicateKeyError` when the natural key already exists, or
      returns None with `if_absent=True` (the transaction stays usable).
    - `update(table, filter, patch)` conditional update; returns affected count.
    - `transaction()` yields a `StorageSession` whose writes commit together or
      not at all.

Concurrency:
    Correctness relies on `update` being a single atomic conditional write.
    Implementations never hold a lock beyond a single row operation.
"""
from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Mapping, Optional, Protocol


Row = dict


class StorageError(Exception):
    """Base for storage failures."""


class DuplicateKeyError(StorageError):
    """Insert hit an existing natural key."""


class UnknownTableError(StorageError):
    pass


class StorageSession(Protocol):
    def get(self, table: str, key: Mapping[str, Any]) -> Optional[Row]: ...

    def select(self, table: str, filter: Mapping[str, Any]) -> list[Row]: ...

    def insert(self, table: str, row: Mapping[str, Any], *, if_absent: bool = False) -> Optional[Row]: ...

    def update(self, table: str, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int: ...


class StorageProtocol(StorageSession, Protocol):
    def transaction(self) -> AbstractContextManager[StorageSession]: ...


__all__ = [
    "Row",
    "StorageError",
    "DuplicateKeyError",
    "UnknownTableError",
    "StorageSession",
    "StorageProtocol",
]
