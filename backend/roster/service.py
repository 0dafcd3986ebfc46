"""Roster service: class-membership lifecycle with gated, audited transitions.

Why:
    Teachers (and admins within scope) add and remove students from classes.
    Removal is a status transition that keeps the record, and every attempt
    leaves an audit entry, so the membership history can be reconstructed.

Concurrency:
    Each operation is one read-check-write unit run via `call_storage`. The
    write is a single conditional update keyed by (class_id, student_id,
    status, institution_id); of two racing removals exactly one affects a
    row, the other sees `NotEnrolled`. No service-level locks.

Failures:
    A storage failure after the gate allowed the change still leaves a
    `failed` audit entry (best effort) and surfaces as `StorageUnavailable`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Callable, List, Optional

from backend.audit.log import AuditEntry, AuditLog, Outcome
from backend.authorization.gate import Action, Deny, TargetScope, check
from backend.authorization.tenancy import tenant_predicate
from backend.errors import AlreadyEnrolled, Forbidden, InvalidInput, MissingTarget, NotEnrolled
from backend.identity_access.context import CallerContext
from backend.storage.calls import call_storage, call_storage_read
from backend.storage.config import EngineConfig
from backend.storage.ports import StorageProtocol
from backend.storage.tables import CLASSES, MEMBERSHIP_HISTORY, MEMBERSHIPS

logger = logging.getLogger("klassenbuch.roster")

TARGET_TYPE = "class_membership"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


@dataclass(frozen=True)
class ClassRoster:
    class_id: str
    teacher_id: str
    institution_id: str
    department_id: Optional[str] = None
    title: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "ClassRoster":
        return cls(
            class_id=row["class_id"],
            teacher_id=row["teacher_id"],
            institution_id=row["institution_id"],
            department_id=row.get("department_id"),
            title=row.get("title"),
        )

    def target(self) -> TargetScope:
        # Teacher access is ownership of the class.
        return TargetScope(self.institution_id, self.department_id, owner_id=self.teacher_id)


@dataclass(frozen=True)
class MembershipRecord:
    class_id: str
    student_id: str
    status: MembershipStatus
    joined_at: Optional[str] = None
    removed_at: Optional[str] = None
    removed_by: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "MembershipRecord":
        return cls(
            class_id=row["class_id"],
            student_id=row["student_id"],
            status=MembershipStatus(row["status"]),
            joined_at=row.get("joined_at"),
            removed_at=row.get("removed_at"),
            removed_by=row.get("removed_by"),
            reason=row.get("reason"),
        )

    def to_public(self) -> dict:
        return {
            "class_id": self.class_id,
            "student_id": self.student_id,
            "status": self.status.value,
            "joined_at": self.joined_at,
            "removed_at": self.removed_at,
            "removed_by": self.removed_by,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class RemovalResult:
    membership: MembershipRecord
    audit: AuditEntry


@dataclass(frozen=True)
class EnrollmentResult:
    membership: MembershipRecord
    audit: AuditEntry
    reactivated: bool = False


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_id(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput("missing_target")
    return value.strip()


def _require_reason(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput("missing_reason")
    return value.strip()


def _membership_target(class_id: str, student_id: str) -> str:
    return f"{class_id}:{student_id}"


class RosterService:
    def __init__(
        self,
        storage: StorageProtocol,
        audit: AuditLog,
        *,
        config: EngineConfig | None = None,
        clock: Callable[[], str] | None = None,
    ) -> None:
        self._storage = storage
        self._audit = audit
        self._config = config or EngineConfig()
        self._clock = clock or _utcnow_iso

    # --- Public operations --------------------------------------------------
    async def remove_student(
        self, student_id: str, class_id: str, ctx: CallerContext, reason: str
    ) -> RemovalResult:
        """Transition an active membership to removed.

        Raises InvalidInput (missing_reason, missing_target) before any
        storage access, MissingTarget for an unknown class, Forbidden when the
        gate denies, NotEnrolled when no active record exists.
        """
        student_id = _require_id(student_id)
        class_id = _require_id(class_id)
        reason_text = _require_reason(reason)
        return await call_storage(
            self._remove_unit,
            ctx,
            class_id,
            student_id,
            reason_text,
            timeout=self._config.storage_call_timeout_seconds,
        )

    async def add_student(
        self, student_id: str, class_id: str, ctx: CallerContext
    ) -> EnrollmentResult:
        """Create an active membership iff none is active (re-adding a removed
        student archives the removed record first)."""
        student_id = _require_id(student_id)
        class_id = _require_id(class_id)
        return await call_storage(
            self._add_unit,
            ctx,
            class_id,
            student_id,
            timeout=self._config.storage_call_timeout_seconds,
        )

    async def list_roster(
        self, class_id: str, ctx: CallerContext, *, include_removed: bool = False
    ) -> tuple[ClassRoster, List[MembershipRecord]]:
        class_id = _require_id(class_id)
        return await call_storage_read(
            self._list_unit,
            ctx,
            class_id,
            include_removed,
            timeout=self._config.storage_call_timeout_seconds,
            backoff=self._config.read_retry_backoff_seconds,
        )

    async def export_roster(
        self, class_id: str, ctx: CallerContext, *, fmt: str = "csv", include_removed: bool = False
    ) -> str:
        from .export import EXPORT_FORMATS, render

        fmt = (fmt or "").strip().lower()
        if fmt not in EXPORT_FORMATS:
            raise InvalidInput("invalid_format")
        roster, records = await self.list_roster(class_id, ctx, include_removed=include_removed)
        return render(fmt, roster, records)

    # --- Units (run in a worker thread) -------------------------------------
    def _load_roster(self, class_id: str) -> ClassRoster:
        row = self._storage.get(CLASSES, {"class_id": class_id})
        if row is None:
            raise MissingTarget("class_not_found")
        return ClassRoster.from_row(row)

    def _gate(self, ctx: CallerContext, action: Action, roster: ClassRoster, target_id: str) -> None:
        decision = check(ctx, action, roster.target())
        if isinstance(decision, Deny):
            self._audit.record(
                AuditEntry(
                    actor_id=ctx.actor_id,
                    action=action.value,
                    target_type=TARGET_TYPE,
                    target_id=target_id,
                    outcome=Outcome.DENIED,
                    reason=decision.reason.value,
                    institution_id=roster.institution_id,
                )
            )
            logger.info(
                "roster denied action=%s actor_tail=%s class_tail=%s reason=%s",
                action.value,
                ctx.actor_id[-6:],
                roster.class_id[-6:],
                decision.reason.value,
            )
            raise Forbidden(decision.reason.value)

    def _remove_unit(
        self, ctx: CallerContext, class_id: str, student_id: str, reason: str
    ) -> RemovalResult:
        roster = self._load_roster(class_id)
        target_id = _membership_target(class_id, student_id)
        self._gate(ctx, Action.ROSTER_REMOVE, roster, target_id)
        key = {"class_id": class_id, "student_id": student_id}
        now = self._clock()
        row = None
        entry = None
        applied = AuditEntry(
            actor_id=ctx.actor_id,
            action=Action.ROSTER_REMOVE.value,
            target_type=TARGET_TYPE,
            target_id=target_id,
            outcome=Outcome.APPLIED,
            reason=reason,
            institution_id=roster.institution_id,
        )
        with self._audit.failures_recorded(applied), self._storage.transaction() as tx:
            affected = tx.update(
                MEMBERSHIPS,
                {**key, "status": MembershipStatus.ACTIVE.value, **tenant_predicate(ctx, roster.institution_id)},
                {
                    "status": MembershipStatus.REMOVED.value,
                    "removed_at": now,
                    "removed_by": ctx.actor_id,
                    "reason": reason,
                },
            )
            if affected == 1:
                entry = self._audit.record(applied, tx=tx)
                row = tx.get(MEMBERSHIPS, key)
        if row is None or entry is None:
            self._audit.record(
                AuditEntry(
                    actor_id=ctx.actor_id,
                    action=Action.ROSTER_REMOVE.value,
                    target_type=TARGET_TYPE,
                    target_id=target_id,
                    outcome=Outcome.FAILED,
                    reason="not_enrolled",
                    institution_id=roster.institution_id,
                )
            )
            raise NotEnrolled()
        logger.info(
            "roster removal applied class_tail=%s student_tail=%s actor_tail=%s",
            class_id[-6:],
            student_id[-6:],
            ctx.actor_id[-6:],
        )
        return RemovalResult(membership=MembershipRecord.from_row(row), audit=entry)

    def _add_unit(self, ctx: CallerContext, class_id: str, student_id: str) -> EnrollmentResult:
        roster = self._load_roster(class_id)
        target_id = _membership_target(class_id, student_id)
        self._gate(ctx, Action.ROSTER_ADD, roster, target_id)
        key = {"class_id": class_id, "student_id": student_id}
        tenant = tenant_predicate(ctx, roster.institution_id)
        now = self._clock()
        row = None
        entry = None
        reactivated = False
        attempt = AuditEntry(
            actor_id=ctx.actor_id,
            action=Action.ROSTER_ADD.value,
            target_type=TARGET_TYPE,
            target_id=target_id,
            outcome=Outcome.APPLIED,
            institution_id=roster.institution_id,
        )
        with self._audit.failures_recorded(attempt), self._storage.transaction() as tx:
            row = tx.insert(
                MEMBERSHIPS,
                {
                    **key,
                    "institution_id": tenant["institution_id"],
                    "status": MembershipStatus.ACTIVE.value,
                    "joined_at": now,
                    "removed_at": None,
                    "removed_by": None,
                    "reason": None,
                },
                if_absent=True,
            )
            if row is None:
                previous = tx.get(MEMBERSHIPS, key)
                if previous is not None and previous.get("status") == MembershipStatus.REMOVED.value:
                    # Guard on removed_at so the archived copy is exactly the row replaced.
                    affected = tx.update(
                        MEMBERSHIPS,
                        {
                            **key,
                            **tenant,
                            "status": MembershipStatus.REMOVED.value,
                            "removed_at": previous.get("removed_at"),
                        },
                        {
                            "status": MembershipStatus.ACTIVE.value,
                            "joined_at": now,
                            "removed_at": None,
                            "removed_by": None,
                            "reason": None,
                        },
                    )
                    if affected == 1:
                        archived = dict(previous)
                        archived["history_id"] = None
                        tx.insert(MEMBERSHIP_HISTORY, archived)
                        row = tx.get(MEMBERSHIPS, key)
                        reactivated = True
            if row is not None:
                entry = self._audit.record(
                    replace(attempt, reason="reactivated" if reactivated else "enrolled"),
                    tx=tx,
                )
        if row is None or entry is None:
            self._audit.record(
                AuditEntry(
                    actor_id=ctx.actor_id,
                    action=Action.ROSTER_ADD.value,
                    target_type=TARGET_TYPE,
                    target_id=target_id,
                    outcome=Outcome.FAILED,
                    reason="already_enrolled",
                    institution_id=roster.institution_id,
                )
            )
            raise AlreadyEnrolled()
        logger.info(
            "roster add applied class_tail=%s student_tail=%s reactivated=%s",
            class_id[-6:],
            student_id[-6:],
            reactivated,
        )
        return EnrollmentResult(
            membership=MembershipRecord.from_row(row), audit=entry, reactivated=reactivated
        )

    def _list_unit(
        self, ctx: CallerContext, class_id: str, include_removed: bool
    ) -> tuple[ClassRoster, List[MembershipRecord]]:
        roster = self._load_roster(class_id)
        self._gate(ctx, Action.ROSTER_READ, roster, class_id)
        flt = {"class_id": class_id}
        if not include_removed:
            flt["status"] = MembershipStatus.ACTIVE.value
        rows = self._storage.select(MEMBERSHIPS, flt)
        records = [MembershipRecord.from_row(r) for r in rows]
        if include_removed:
            history = self._storage.select(MEMBERSHIP_HISTORY, {"class_id": class_id})
            records.extend(MembershipRecord.from_row(r) for r in history)
        records.sort(key=lambda r: (r.student_id, r.joined_at or ""))
        return roster, records


__all__ = [
    "MembershipStatus",
    "ClassRoster",
    "MembershipRecord",
    "RemovalResult",
    "EnrollmentResult",
    "RosterService",
]
