"""Bulk role assignment: apply an ordered batch of role changes.

Why:
    Admins change roles for many users at once (CSV uploads). Each entry is
    authorized, conflict-checked and committed independently, so one bad or
    failing row never blocks the others, and every entry leaves exactly one
    audit entry.

Per entry, in this order:
    1. Target lookup: an unknown user, or a requested institution that is not
       the user's institution, is `Denied(out_of_scope)`.
    2. Gate `role.assign` against the user's stored (institution,
       department). A user whose current rank is above the requester's is
       `Denied(insufficient_role)`.
    3. Conflicts: `privilege_escalation` (requested rank above the
       requester's), `duplicate_target` (an earlier entry targets the same
       user with a different role), `missing_department` (department_admin
       without a department, or a requested department that is unknown, in
       another institution or outside the requester's scope).
    4. Conditional update of the user's role within the tenant, audited in
       the same transaction.

An entry that fails for any other reason is `Failed` with its own audit
entry; it never aborts the rest of the batch.

Concurrency:
    Entries run with bounded concurrency (`batch_max_workers`). Duplicate
    detection is computed up front in declared order, so it does not depend
    on scheduling. A cancel event or the batch deadline stops starting new
    entries; committed entries stay committed and the result is marked
    `incomplete`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Callable, Dict, Optional, Protocol, Sequence, Tuple, Union

from backend.audit.log import AuditEntry, AuditLog, Outcome
from backend.authorization.gate import Action, Deny, DenyReason, TargetScope, check, contains
from backend.authorization.tenancy import tenant_id_for_write
from backend.errors import InvalidInput, StorageUnavailable
from backend.identity_access.context import CallerContext
from backend.identity_access.domain import ROLES_REQUIRING_DEPARTMENT, Role, parse_role, rank
from backend.storage.calls import call_storage
from backend.storage.config import EngineConfig
from backend.storage.ports import StorageProtocol
from backend.storage.tables import DEPARTMENTS, USERS

logger = logging.getLogger("klassenbuch.assignments")

TARGET_TYPE = "user_role"


class ConflictReason(str, Enum):
    PRIVILEGE_ESCALATION = "privilege_escalation"
    DUPLICATE_TARGET = "duplicate_target"
    MISSING_DEPARTMENT = "missing_department"


@dataclass(frozen=True)
class RoleChangeRequest:
    target_user_id: str
    requested_role: Role
    institution_id: Optional[str] = None
    department_id: Optional[str] = None

    def to_public(self) -> dict:
        return {
            "user_id": self.target_user_id,
            "role": self.requested_role.value,
            "institution_id": self.institution_id,
            "department_id": self.department_id,
        }


@dataclass(frozen=True)
class RoleChangeBatch:
    requester_id: str
    entries: Tuple[RoleChangeRequest, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Applied:
    kind = "applied"
    reason = None


@dataclass(frozen=True)
class Denied:
    reason: str
    kind = "denied"


@dataclass(frozen=True)
class Conflict:
    reason: str
    kind = "conflict"


@dataclass(frozen=True)
class Failed:
    reason: str
    kind = "failed"


EntryOutcome = Union[Applied, Denied, Conflict, Failed]


@dataclass(frozen=True)
class EntryResult:
    index: int
    entry: RoleChangeRequest
    outcome: EntryOutcome

    def to_public(self) -> dict:
        return {
            "index": self.index,
            "entry": self.entry.to_public(),
            "outcome": self.outcome.kind,
            "reason": self.outcome.reason,
        }


@dataclass(frozen=True)
class BatchResult:
    results: Tuple[EntryResult, ...]
    incomplete: bool = False

    def counts(self) -> Dict[str, int]:
        out = {"applied": 0, "denied": 0, "conflict": 0, "failed": 0}
        for r in self.results:
            out[r.outcome.kind] += 1
        return out


class CancelSignal(Protocol):
    def is_set(self) -> bool:
        ...


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def duplicate_indices(entries: Sequence[RoleChangeRequest]) -> set[int]:
    """Indices of entries that target an already-targeted user with a different role."""
    first_role: Dict[str, Role] = {}
    dupes: set[int] = set()
    for i, entry in enumerate(entries):
        seen = first_role.get(entry.target_user_id)
        if seen is None:
            first_role[entry.target_user_id] = entry.requested_role
        elif seen is not entry.requested_role:
            dupes.add(i)
    return dupes


class RoleBatchService:
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

    async def apply_batch(
        self,
        batch: RoleChangeBatch,
        ctx: CallerContext,
        *,
        cancel_event: Optional[CancelSignal] = None,
    ) -> BatchResult:
        if batch.requester_id != ctx.actor_id:
            raise InvalidInput("requester_mismatch")
        entries = list(batch.entries)
        if not entries:
            raise InvalidInput("empty_batch")
        if len(entries) > self._config.batch_max_entries:
            raise InvalidInput("too_many_entries")

        dupes = duplicate_indices(entries)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.batch_deadline_seconds
        semaphore = asyncio.Semaphore(self._config.batch_max_workers)
        results: Dict[int, EntryResult] = {}

        async def run(index: int, entry: RoleChangeRequest) -> None:
            async with semaphore:
                if (cancel_event is not None and cancel_event.is_set()) or loop.time() >= deadline:
                    return
                outcome = await self._run_entry(ctx, entry, index in dupes)
                results[index] = EntryResult(index=index, entry=entry, outcome=outcome)

        await asyncio.gather(*(run(i, e) for i, e in enumerate(entries)))
        ordered = tuple(results[i] for i in sorted(results))
        incomplete = len(ordered) < len(entries)
        result = BatchResult(results=ordered, incomplete=incomplete)
        logger.info(
            "role batch done requester_tail=%s entries=%s counts=%s incomplete=%s",
            ctx.actor_id[-6:],
            len(entries),
            result.counts(),
            incomplete,
        )
        return result

    async def _run_entry(self, ctx: CallerContext, entry: RoleChangeRequest, duplicate: bool) -> EntryOutcome:
        try:
            return await call_storage(
                self._entry_unit,
                ctx,
                entry,
                duplicate,
                timeout=self._config.storage_call_timeout_seconds,
            )
        except StorageUnavailable as exc:
            logger.warning(
                "role batch entry failed user_tail=%s code=%s",
                entry.target_user_id[-6:],
                exc.code,
            )
            await self._record_entry_failure(ctx, entry, "storage_unavailable")
            return Failed("storage_unavailable")
        except Exception:
            logger.exception("role batch entry crashed user_tail=%s", entry.target_user_id[-6:])
            await self._record_entry_failure(ctx, entry, "internal_error")
            return Failed("internal_error")

    async def _record_entry_failure(self, ctx: CallerContext, entry: RoleChangeRequest, reason: str) -> None:
        failed = AuditEntry(
            actor_id=ctx.actor_id,
            action=Action.ROLE_ASSIGN.value,
            target_type=TARGET_TYPE,
            target_id=entry.target_user_id,
            outcome=Outcome.FAILED,
            reason=reason,
            institution_id=entry.institution_id,
        )
        try:
            await call_storage(self._audit.record, failed, timeout=self._config.storage_call_timeout_seconds)
        except StorageUnavailable as exc:
            logger.warning(
                "audit write for failed entry lost user_tail=%s code=%s",
                entry.target_user_id[-6:],
                exc.code,
            )

    def _audit_entry(
        self,
        ctx: CallerContext,
        entry: RoleChangeRequest,
        outcome: Outcome,
        reason: Optional[str],
        institution_id: Optional[str],
    ) -> AuditEntry:
        return AuditEntry(
            actor_id=ctx.actor_id,
            action=Action.ROLE_ASSIGN.value,
            target_type=TARGET_TYPE,
            target_id=entry.target_user_id,
            outcome=outcome,
            reason=reason,
            institution_id=institution_id,
        )

    def _entry_unit(self, ctx: CallerContext, entry: RoleChangeRequest, duplicate: bool) -> EntryOutcome:
        user = self._storage.get(USERS, {"user_id": entry.target_user_id})
        institution_id = entry.institution_id or (user.get("institution_id") if user else None)
        if user is None or institution_id != user.get("institution_id"):
            self._audit.record(
                self._audit_entry(ctx, entry, Outcome.DENIED, DenyReason.OUT_OF_SCOPE.value, institution_id)
            )
            return Denied(DenyReason.OUT_OF_SCOPE.value)

        target = TargetScope(user.get("institution_id"), user.get("department_id"))
        decision = check(ctx, Action.ROLE_ASSIGN, target)
        current = parse_role(user.get("role"))
        if not isinstance(decision, Deny) and (current is None or rank(current) > ctx.rank):
            decision = Deny(DenyReason.INSUFFICIENT_ROLE)
        if isinstance(decision, Deny):
            self._audit.record(self._audit_entry(ctx, entry, Outcome.DENIED, decision.reason.value, institution_id))
            logger.info(
                "role change denied user_tail=%s reason=%s",
                entry.target_user_id[-6:],
                decision.reason.value,
            )
            return Denied(decision.reason.value)

        conflict = self._conflict_for(ctx, entry, duplicate, institution_id)
        if conflict is not None:
            self._audit.record(self._audit_entry(ctx, entry, Outcome.FAILED, conflict.value, institution_id))
            return Conflict(conflict.value)

        patch: Dict[str, Optional[str]] = {"role": entry.requested_role.value}
        if entry.department_id:
            patch["department_id"] = entry.department_id
        applied = False
        with self._storage.transaction() as tx:
            affected = tx.update(
                USERS,
                {"user_id": entry.target_user_id, "institution_id": tenant_id_for_write(ctx, institution_id)},
                patch,
            )
            if affected == 1:
                self._audit.record(
                    self._audit_entry(ctx, entry, Outcome.APPLIED, None, institution_id),
                    tx=tx,
                )
                applied = True
        if not applied:
            self._audit.record(self._audit_entry(ctx, entry, Outcome.FAILED, "target_changed", institution_id))
            return Failed("target_changed")
        return Applied()

    def _conflict_for(
        self,
        ctx: CallerContext,
        entry: RoleChangeRequest,
        duplicate: bool,
        institution_id: str,
    ) -> Optional[ConflictReason]:
        if rank(entry.requested_role) > ctx.rank:
            return ConflictReason.PRIVILEGE_ESCALATION
        if duplicate:
            return ConflictReason.DUPLICATE_TARGET
        if entry.requested_role in ROLES_REQUIRING_DEPARTMENT and not entry.department_id:
            return ConflictReason.MISSING_DEPARTMENT
        if entry.department_id:
            department = self._storage.get(DEPARTMENTS, {"department_id": entry.department_id})
            if department is None or department.get("institution_id") != institution_id:
                return ConflictReason.MISSING_DEPARTMENT
            if not contains(ctx.scope, TargetScope(institution_id, entry.department_id)):
                return ConflictReason.MISSING_DEPARTMENT
        return None


__all__ = [
    "ConflictReason",
    "RoleChangeRequest",
    "RoleChangeBatch",
    "Applied",
    "Denied",
    "Conflict",
    "Failed",
    "EntryOutcome",
    "EntryResult",
    "BatchResult",
    "CancelSignal",
    "duplicate_indices",
    "RoleBatchService",
]
