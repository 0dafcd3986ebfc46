"""
Postgres-backed storage adapter (psycopg 3).

Security:
- Identifiers are composed with `psycopg.sql.Identifier` from the table
  registry only; values are always bound parameters.
- Every write is a single statement whose predicate carries the full natural
  key plus any tenant columns the caller supplies.

Design:
- Minimal psycopg3 usage; each call (or transaction) opens a short-lived
  connection.
- `statement_timeout` is set per transaction so a stuck query cannot outlive
  the request-scoped timeout.
- Timestamps are returned as ISO-8601 strings to match the in-memory store.
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
import os
from typing import Any, Iterator, List, Mapping, Optional

try:
    import psycopg
    from psycopg import sql as _sql
    from psycopg.rows import dict_row
    HAVE_PSYCOPG = True
except Exception:  # pragma: no cover - optional in some dev envs
    psycopg = None  # type: ignore
    HAVE_PSYCOPG = False

from .ports import DuplicateKeyError, Row, StorageError
from .tables import table_spec


def _dsn() -> str:
    dsn = os.getenv("DATABASE_URL") or os.getenv("KLASSENBUCH_DATABASE_URL")
    if not dsn:
        raise RuntimeError("DATABASE_URL is required for PostgresStorage")
    return dsn


def _normalize(row: Optional[Mapping[str, Any]]) -> Optional[Row]:
    if row is None:
        return None
    out = {}
    for col, value in row.items():
        out[col] = value.isoformat() if isinstance(value, datetime) else value
    return out


def _where(filter: Mapping[str, Any]):
    if not filter:
        return _sql.SQL("true"), []
    parts = []
    params: List[Any] = []
    for col, value in filter.items():
        if value is None:
            parts.append(_sql.SQL("{} is null").format(_sql.Identifier(col)))
        else:
            parts.append(_sql.SQL("{} = %s").format(_sql.Identifier(col)))
            params.append(value)
    return _sql.SQL(" and ").join(parts), params


def _table(name: str):
    spec = table_spec(name)
    return spec, _sql.Identifier("public", spec.name)


@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except psycopg.errors.UniqueViolation as exc:  # type: ignore[union-attr]
        raise DuplicateKeyError(str(exc.diag.constraint_name or "unique_violation")) from exc
    except psycopg.OperationalError as exc:  # type: ignore[union-attr]
        raise StorageError(exc.__class__.__name__) from exc
    except psycopg.Error as exc:  # type: ignore[union-attr]
        # DataError, IntegrityError and friends: the statement failed, the row is untouched.
        raise StorageError(exc.__class__.__name__) from exc


class _PgSession:
    """Statement helpers bound to one cursor (one transaction)."""

    def __init__(self, cur) -> None:
        self._cur = cur

    def get(self, table: str, key: Mapping[str, Any]) -> Optional[Row]:
        spec, ident = _table(table)
        missing = [c for c in spec.key if c not in key]
        if missing:
            raise ValueError(f"missing key column for {table}: {missing[0]}")
        clause, params = _where({c: key[c] for c in spec.key})
        with _translate_errors():
            self._cur.execute(_sql.SQL("select * from {} where {}").format(ident, clause), params)
            return _normalize(self._cur.fetchone())

    def select(self, table: str, filter: Mapping[str, Any]) -> List[Row]:
        spec, ident = _table(table)
        clause, params = _where(filter)
        order = _sql.SQL(", ").join(_sql.Identifier(c) for c in spec.key)
        with _translate_errors():
            self._cur.execute(
                _sql.SQL("select * from {} where {} order by {}").format(ident, clause, order),
                params,
            )
            rows = self._cur.fetchall() or []
        return [_normalize(r) for r in rows]  # type: ignore[misc]

    def insert(self, table: str, row: Mapping[str, Any], *, if_absent: bool = False) -> Optional[Row]:
        spec, ident = _table(table)
        data = {c: v for c, v in row.items() if not (c == spec.serial and v is None)}
        cols = _sql.SQL(", ").join(_sql.Identifier(c) for c in data)
        values = _sql.SQL(", ").join(_sql.Placeholder() for _ in data)
        conflict = _sql.SQL(" on conflict do nothing") if if_absent else _sql.SQL("")
        with _translate_errors():
            self._cur.execute(
                _sql.SQL("insert into {} ({}) values ({}){} returning *").format(ident, cols, values, conflict),
                list(data.values()),
            )
            return _normalize(self._cur.fetchone())

    def update(self, table: str, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        spec, ident = _table(table)
        if any(col in spec.key for col in patch):
            raise ValueError(f"key columns of {table} are immutable")
        assignments = _sql.SQL(", ").join(
            _sql.SQL("{} = %s").format(_sql.Identifier(c)) for c in patch
        )
        clause, params = _where(filter)
        with _translate_errors():
            self._cur.execute(
                _sql.SQL("update {} set {} where {}").format(ident, assignments, clause),
                list(patch.values()) + params,
            )
            return int(self._cur.rowcount or 0)


class PostgresStorage:
    def __init__(self, dsn: Optional[str] = None, *, statement_timeout_ms: Optional[int] = None) -> None:
        if not HAVE_PSYCOPG:
            raise RuntimeError("psycopg3 is required for PostgresStorage")
        self._dsn = dsn or _dsn()
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def transaction(self) -> Iterator[_PgSession]:
        """Open one connection; commit on success, roll back on any exception."""
        with _translate_errors():
            conn = psycopg.connect(self._dsn, row_factory=dict_row)
        with conn:
            with conn.cursor() as cur:
                if self._statement_timeout_ms:
                    cur.execute(
                        "select set_config('statement_timeout', %s, true)",
                        (str(int(self._statement_timeout_ms)),),
                    )
                yield _PgSession(cur)

    def get(self, table: str, key: Mapping[str, Any]) -> Optional[Row]:
        with self.transaction() as tx:
            return tx.get(table, key)

    def select(self, table: str, filter: Mapping[str, Any]) -> List[Row]:
        with self.transaction() as tx:
            return tx.select(table, filter)

    def insert(self, table: str, row: Mapping[str, Any], *, if_absent: bool = False) -> Optional[Row]:
        with self.transaction() as tx:
            return tx.insert(table, row, if_absent=if_absent)

    def update(self, table: str, filter: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        with self.transaction() as tx:
            return tx.update(table, filter, patch)


__all__ = ["PostgresStorage", "HAVE_PSYCOPG"]
