"""Assignment service: teacher <-> department edges.

Why:
    Department and institution admins attach teachers to departments. A
    teacher holds at most one active edge per institution; the edge table is
    keyed by (institution_id, user_id) so the database enforces it.

Denials:
    A denial where the target's institution differs from the caller's own is
    reported as `CrossTenant`; every other denial is `Forbidden`. Both are
    audited before they are raised. The gate runs against the department
    right after it is loaded, before any edge or user lookup, so a caller
    from another institution gets `CrossTenant` and never `MissingTarget`.
    Storage failures after the gate leave a `failed` audit entry.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Callable, Optional

from backend.audit.log import AuditEntry, AuditLog, Outcome
from backend.authorization.gate import Action, Deny, TargetScope, check
from backend.authorization.tenancy import tenant_id_for_write
from backend.errors import AlreadyAssigned, CrossTenant, Forbidden, InvalidInput, MissingTarget
from backend.identity_access.context import CallerContext, GlobalScope
from backend.identity_access.domain import Role, parse_role
from backend.storage.calls import call_storage
from backend.storage.config import EngineConfig
from backend.storage.ports import StorageProtocol
from backend.storage.tables import ASSIGNMENT_EDGES, DEPARTMENTS, USERS

logger = logging.getLogger("klassenbuch.assignments")

TARGET_TYPE = "department_assignment"


class EdgeStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"


@dataclass(frozen=True)
class AssignmentEdge:
    user_id: str
    institution_id: str
    department_id: Optional[str]
    status: EdgeStatus
    assigned_at: Optional[str] = None
    assigned_by: Optional[str] = None
    removed_at: Optional[str] = None
    removed_by: Optional[str] = None

    @classmethod
    def from_row(cls, row: dict) -> "AssignmentEdge":
        return cls(
            user_id=row["user_id"],
            institution_id=row["institution_id"],
            department_id=row.get("department_id"),
            status=EdgeStatus(row["status"]),
            assigned_at=row.get("assigned_at"),
            assigned_by=row.get("assigned_by"),
            removed_at=row.get("removed_at"),
            removed_by=row.get("removed_by"),
        )

    def to_public(self) -> dict:
        return {
            "user_id": self.user_id,
            "institution_id": self.institution_id,
            "department_id": self.department_id,
            "status": self.status.value,
            "assigned_at": self.assigned_at,
            "removed_at": self.removed_at,
        }


@dataclass(frozen=True)
class AssignmentResult:
    edge: AssignmentEdge
    audit: AuditEntry


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _require_id(value: object) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput("missing_target")
    return value.strip()


def _edge_target(department_id: str, teacher_id: str) -> str:
    return f"{department_id}:{teacher_id}"


def is_cross_tenant(ctx: CallerContext, target_institution_id: Optional[str]) -> bool:
    if isinstance(ctx.scope, GlobalScope):
        return False
    return target_institution_id != ctx.principal.institution_id


class AssignmentService:
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

    async def unassign_teacher(self, department_id: str, teacher_id: str, ctx: CallerContext) -> AssignmentResult:
        department_id = _require_id(department_id)
        teacher_id = _require_id(teacher_id)
        return await call_storage(
            self._unassign_unit,
            ctx,
            department_id,
            teacher_id,
            timeout=self._config.storage_call_timeout_seconds,
        )

    async def assign_teacher(self, department_id: str, teacher_id: str, ctx: CallerContext) -> AssignmentResult:
        department_id = _require_id(department_id)
        teacher_id = _require_id(teacher_id)
        return await call_storage(
            self._assign_unit,
            ctx,
            department_id,
            teacher_id,
            timeout=self._config.storage_call_timeout_seconds,
        )

    # --- Units ----------------------------------------------------------------
    def _load_department(self, department_id: str) -> dict:
        row = self._storage.get(DEPARTMENTS, {"department_id": department_id})
        if row is None:
            raise MissingTarget("department_not_found")
        return row

    def _gate(
        self,
        ctx: CallerContext,
        action: Action,
        target: TargetScope,
        target_id: str,
    ) -> None:
        decision = check(ctx, action, target)
        if not isinstance(decision, Deny):
            return
        cross = is_cross_tenant(ctx, target.institution_id)
        reason = "cross_tenant" if cross else decision.reason.value
        self._audit.record(
            AuditEntry(
                actor_id=ctx.actor_id,
                action=action.value,
                target_type=TARGET_TYPE,
                target_id=target_id,
                outcome=Outcome.DENIED,
                reason=reason,
                institution_id=target.institution_id,
            )
        )
        logger.info(
            "assignment denied action=%s actor_tail=%s reason=%s",
            action.value,
            ctx.actor_id[-6:],
            reason,
        )
        if cross:
            raise CrossTenant()
        raise Forbidden(reason)

    def _applied(self, ctx: CallerContext, action: Action, target_id: str, institution_id: str) -> AuditEntry:
        return AuditEntry(
            actor_id=ctx.actor_id,
            action=action.value,
            target_type=TARGET_TYPE,
            target_id=target_id,
            outcome=Outcome.APPLIED,
            institution_id=institution_id,
        )

    def _record_failure(self, ctx: CallerContext, action: Action, target_id: str, reason: str, institution_id: str) -> None:
        self._audit.record(
            AuditEntry(
                actor_id=ctx.actor_id,
                action=action.value,
                target_type=TARGET_TYPE,
                target_id=target_id,
                outcome=Outcome.FAILED,
                reason=reason,
                institution_id=institution_id,
            )
        )

    def _unassign_unit(self, ctx: CallerContext, department_id: str, teacher_id: str) -> AssignmentResult:
        department = self._load_department(department_id)
        institution_id = department["institution_id"]
        target_id = _edge_target(department_id, teacher_id)
        # Gate before the edge lookup so other tenants learn nothing about edges.
        self._gate(ctx, Action.TEACHER_UNASSIGN, TargetScope(institution_id, department_id), target_id)
        edge = self._storage.get(ASSIGNMENT_EDGES, {"institution_id": institution_id, "user_id": teacher_id})
        if edge is None or edge.get("department_id") != department_id or edge.get("status") != EdgeStatus.ACTIVE.value:
            self._record_failure(ctx, Action.TEACHER_UNASSIGN, target_id, "assignment_not_found", institution_id)
            raise MissingTarget("assignment_not_found")
        now = self._clock()
        row = None
        entry = None
        applied = self._applied(ctx, Action.TEACHER_UNASSIGN, target_id, institution_id)
        with self._audit.failures_recorded(applied), self._storage.transaction() as tx:
            affected = tx.update(
                ASSIGNMENT_EDGES,
                {
                    "institution_id": tenant_id_for_write(ctx, institution_id),
                    "user_id": teacher_id,
                    "department_id": department_id,
                    "status": EdgeStatus.ACTIVE.value,
                },
                {"status": EdgeStatus.REMOVED.value, "removed_at": now, "removed_by": ctx.actor_id},
            )
            if affected == 1:
                entry = self._audit.record(applied, tx=tx)
                row = tx.get(ASSIGNMENT_EDGES, {"institution_id": institution_id, "user_id": teacher_id})
        if row is None or entry is None:
            # Lost a race with a concurrent unassign.
            self._record_failure(ctx, Action.TEACHER_UNASSIGN, target_id, "assignment_not_found", institution_id)
            raise MissingTarget("assignment_not_found")
        logger.info(
            "teacher unassigned dept_tail=%s teacher_tail=%s actor_tail=%s",
            department_id[-6:],
            teacher_id[-6:],
            ctx.actor_id[-6:],
        )
        return AssignmentResult(edge=AssignmentEdge.from_row(row), audit=entry)

    def _assign_unit(self, ctx: CallerContext, department_id: str, teacher_id: str) -> AssignmentResult:
        department = self._load_department(department_id)
        institution_id = department["institution_id"]
        target_id = _edge_target(department_id, teacher_id)
        self._gate(ctx, Action.TEACHER_ASSIGN, TargetScope(institution_id, department_id), target_id)
        user = self._storage.get(USERS, {"user_id": teacher_id})
        if user is None or user.get("institution_id") != institution_id:
            raise MissingTarget("teacher_not_found")
        if parse_role(user.get("role")) is not Role.TEACHER:
            raise InvalidInput("not_a_teacher")
        tenant_id = tenant_id_for_write(ctx, institution_id)
        key = {"institution_id": tenant_id, "user_id": teacher_id}
        now = self._clock()
        row = None
        entry = None
        applied = self._applied(ctx, Action.TEACHER_ASSIGN, target_id, institution_id)
        with self._audit.failures_recorded(applied), self._storage.transaction() as tx:
            row = tx.insert(
                ASSIGNMENT_EDGES,
                {
                    **key,
                    "department_id": department_id,
                    "status": EdgeStatus.ACTIVE.value,
                    "assigned_at": now,
                    "assigned_by": ctx.actor_id,
                    "removed_at": None,
                    "removed_by": None,
                },
                if_absent=True,
            )
            if row is None:
                affected = tx.update(
                    ASSIGNMENT_EDGES,
                    {**key, "status": EdgeStatus.REMOVED.value},
                    {
                        "department_id": department_id,
                        "status": EdgeStatus.ACTIVE.value,
                        "assigned_at": now,
                        "assigned_by": ctx.actor_id,
                        "removed_at": None,
                        "removed_by": None,
                    },
                )
                if affected == 1:
                    row = tx.get(ASSIGNMENT_EDGES, key)
            if row is not None:
                entry = self._audit.record(applied, tx=tx)
        if row is None or entry is None:
            self._record_failure(ctx, Action.TEACHER_ASSIGN, target_id, "already_assigned", institution_id)
            raise AlreadyAssigned()
        logger.info(
            "teacher assigned dept_tail=%s teacher_tail=%s actor_tail=%s",
            department_id[-6:],
            teacher_id[-6:],
            ctx.actor_id[-6:],
        )
        return AssignmentResult(edge=AssignmentEdge.from_row(row), audit=entry)


__all__ = ["EdgeStatus", "AssignmentEdge", "AssignmentResult", "AssignmentService", "is_cross_tenant"]
