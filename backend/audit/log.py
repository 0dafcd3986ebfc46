"""
Append-only audit log for every gated mutation attempt (and every denial).

Intent:
    Services receive an `AuditLog` explicitly (never a module global) and call
    `record` with the same storage transaction that carries the state change,
    so the entry and the mutation commit or roll back together. Denials are
    recorded in their own transaction because no mutation happens.

Behavior:
    - `record` assigns a monotonically increasing id and a UTC timestamp.
    - There is no update or delete operation.
    - `history(target_id)` returns entries in id order for reconstruction.
    - `failures_recorded(entry)` keeps a `failed` entry when storage breaks
      after authorization passed.
"""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Callable, Iterator, List, Optional

from backend.storage.ports import StorageError, StorageProtocol, StorageSession
from backend.storage.tables import AUDIT_ENTRIES

logger = logging.getLogger("klassenbuch.audit")


class Outcome(str, Enum):
    APPLIED = "applied"
    DENIED = "denied"
    FAILED = "failed"


@dataclass(frozen=True)
class AuditEntry:
    actor_id: str
    action: str
    target_type: str
    target_id: str
    outcome: Outcome
    reason: Optional[str] = None
    institution_id: Optional[str] = None
    timestamp: Optional[str] = None
    id: Optional[int] = None

    def to_row(self) -> dict:
        row = asdict(self)
        row["outcome"] = self.outcome.value
        return row

    @classmethod
    def from_row(cls, row: dict) -> "AuditEntry":
        return cls(
            id=int(row["id"]) if row.get("id") is not None else None,
            actor_id=row["actor_id"],
            action=row["action"],
            target_type=row["target_type"],
            target_id=row["target_id"],
            outcome=Outcome(row["outcome"]),
            reason=row.get("reason"),
            institution_id=row.get("institution_id"),
            timestamp=row.get("timestamp"),
        )


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class AuditLog:
    def __init__(self, storage: StorageProtocol, *, clock: Callable[[], str] | None = None) -> None:
        self._storage = storage
        self._clock = clock or _utcnow_iso

    def record(self, entry: AuditEntry, *, tx: Optional[StorageSession] = None) -> AuditEntry:
        stamped = replace(entry, id=None, timestamp=entry.timestamp or self._clock())
        session = tx if tx is not None else self._storage
        stored = AuditEntry.from_row(session.insert(AUDIT_ENTRIES, stamped.to_row()))
        logger.debug(
            "audit id=%s action=%s outcome=%s target_tail=%s",
            stored.id,
            stored.action,
            stored.outcome.value,
            (stored.target_id or "")[-6:],
        )
        return stored

    @contextmanager
    def failures_recorded(self, entry: AuditEntry) -> Iterator[None]:
        """Record `entry` as failed when the block raises a StorageError, then re-raise.

        Used around mutations that already passed the gate; the failed entry
        is written outside the rolled-back transaction on a best-effort basis.
        """
        try:
            yield
        except StorageError:
            failed = replace(entry, outcome=Outcome.FAILED, reason="storage_unavailable")
            try:
                self.record(failed)
            except StorageError as exc:
                logger.warning(
                    "audit write for failed mutation lost action=%s target_tail=%s error=%s",
                    entry.action,
                    (entry.target_id or "")[-6:],
                    exc.__class__.__name__,
                )
            raise

    def history(self, target_id: str, *, target_type: Optional[str] = None) -> List[AuditEntry]:
        flt = {"target_id": target_id}
        if target_type:
            flt["target_type"] = target_type
        rows = self._storage.select(AUDIT_ENTRIES, flt)
        entries = [AuditEntry.from_row(r) for r in rows]
        entries.sort(key=lambda e: e.id or 0)
        return entries


__all__ = ["Outcome", "AuditEntry", "AuditLog"]
