"""
In-memory storage for development and tests.

Why:
    Services depend on the small storage port only, so local work and unit
    tests run without Postgres. The store mirrors the semantics the services
    rely on: natural-key uniqueness, serial ids, atomic conditional updates
    and all-or-nothing transactions.

Design:
    - Every single row operation is atomic under a short internal lock; no
      lock is held across a transaction.
    - A transaction keeps an undo journal and reverts its own writes on
      exception. Uncommitted writes are visible to concurrent readers (read
      uncommitted); conditional updates still guarantee that only one of two
      racing transitions succeeds.
"""
from __future__ import annotations

from contextlib import contextmanager
from copy import deepcopy
from threading import Lock
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from .ports import DuplicateKeyError, Row
from .tables import TABLES, TableSpec, table_spec

_Journal = List[Tuple[str, str, tuple, Optional[dict]]]


def _matches(row: Mapping[str, Any], filter: Mapping[str, Any]) -> bool:
    return all(row.get(col) == value for col, value in filter.items())


def _key_of(spec: TableSpec, row: Mapping[str, Any]) -> tuple:
    try:
        return tuple(row[col] for col in spec.key)
    except KeyError as exc:
        raise ValueError(f"missing key column for {spec.name}: {exc.args[0]}") from exc


class MemoryStorage:
    def __init__(self) -> None:
        self._tables: Dict[str, Dict[tuple, dict]] = {name: {} for name in TABLES}
        self._serials: Dict[str, int] = {}
        self._lock = Lock()

    # --- Port ---------------------------------------------------------------
    def get(self, table: str, key: Mapping[str, Any]) -> Optional[Row]:
        spec = table_spec(table)
        k = _key_of(spec, key)
        with self._lock:
            row = self._tables[table].get(k)
            return deepcopy(row) if row is not None else None

    def select(self, table: str, filter: Mapping[str, Any]) -> List[Row]:
        table_spec(table)
        with self._lock:
            return [deepcopy(r) for r in self._tables[table].values() if _matches(r, filter)]

    def insert(self, table: str, row: Mapping[str, Any], *, if_absent: bool = False) -> Optional[Row]:
        return self._insert(table, row, None, if_absent)

    def update(self, table: str, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        return self._update(table, filter, patch, None)

    @contextmanager
    def transaction(self) -> Iterator["_MemorySession"]:
        session = _MemorySession(self)
        try:
            yield session
        except BaseException:
            self._rollback(session.journal)
            raise

    # --- Internals ----------------------------------------------------------
    def _insert(
        self,
        table: str,
        row: Mapping[str, Any],
        journal: Optional[_Journal],
        if_absent: bool = False,
    ) -> Optional[Row]:
        spec = table_spec(table)
        data = deepcopy(dict(row))
        with self._lock:
            if spec.serial and data.get(spec.serial) is None:
                nxt = self._serials.get(table, 0) + 1
                self._serials[table] = nxt
                data[spec.serial] = nxt
            k = _key_of(spec, data)
            bucket = self._tables[table]
            if k in bucket:
                if if_absent:
                    return None
                raise DuplicateKeyError(f"{table}{k}")
            bucket[k] = data
            if journal is not None:
                journal.append(("insert", table, k, None))
            return deepcopy(data)

    def _update(
        self,
        table: str,
        filter: Mapping[str, Any],
        patch: Mapping[str, Any],
        journal: Optional[_Journal],
    ) -> int:
        spec = table_spec(table)
        if any(col in spec.key for col in patch):
            raise ValueError(f"key columns of {table} are immutable")
        affected = 0
        with self._lock:
            for k, current in self._tables[table].items():
                if not _matches(current, filter):
                    continue
                if journal is not None:
                    journal.append(("update", table, k, deepcopy(current)))
                current.update(deepcopy(dict(patch)))
                affected += 1
        return affected

    def _rollback(self, journal: _Journal) -> None:
        with self._lock:
            for op, table, k, previous in reversed(journal):
                bucket = self._tables[table]
                if op == "insert":
                    bucket.pop(k, None)
                else:
                    bucket[k] = previous  # type: ignore[assignment]
        journal.clear()


class _MemorySession:
    """Transaction-scoped view that journals its writes for rollback."""

    def __init__(self, store: MemoryStorage) -> None:
        self._store = store
        self.journal: _Journal = []

    def get(self, table: str, key: Mapping[str, Any]) -> Optional[Row]:
        return self._store.get(table, key)

    def select(self, table: str, filter: Mapping[str, Any]) -> List[Row]:
        return self._store.select(table, filter)

    def insert(self, table: str, row: Mapping[str, Any], *, if_absent: bool = False) -> Optional[Row]:
        return self._store._insert(table, row, self.journal, if_absent)

    def update(self, table: str, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        return self._store._update(table, filter, patch, self.journal)


__all__ = ["MemoryStorage"]
