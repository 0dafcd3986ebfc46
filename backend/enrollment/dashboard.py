"""Enrollment dashboard aggregator (read-only).

Why:
    Students see their own enrollments; department and institution admins see
    the dashboards of students in their scope. The view composes membership
    state (current rows plus archived history) with optional activity and
    schedule data.

Behavior:
    - Access goes through the gate (`dashboard.read`); a denial is audited
      and raised as `Forbidden`. Allowed reads are not audited. Callers
      scoped to themselves (students, teachers) are checked against the
      requested id before any lookup, so they cannot tell unknown ids from
      foreign ones.
    - Storage reads retry once with backoff on `StorageUnavailable`.
    - Missing or failing collaborators never fail the read: the view lists
      them in `degraded` and omits their data.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from backend.audit.log import AuditEntry, AuditLog, Outcome
from backend.authorization.gate import Action, Deny, TargetScope, check
from backend.errors import Forbidden, InvalidInput, MissingTarget
from backend.identity_access.context import CallerContext, SelfScope
from backend.identity_access.domain import Role, parse_role
from backend.storage.calls import call_storage_read
from backend.storage.config import EngineConfig
from backend.storage.ports import StorageProtocol
from backend.storage.tables import CLASSES, MEMBERSHIP_HISTORY, MEMBERSHIPS, USERS

from .ports import ActivityProvider, ActivitySnapshot, ScheduleProvider, UpcomingItem

logger = logging.getLogger("klassenbuch.enrollment")

SOURCE_ACTIVITY = "activity"
SOURCE_SCHEDULE = "schedule"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    REMOVED = "removed"
    COMPLETED = "completed"


@dataclass(frozen=True)
class EnrollmentRecord:
    student_id: str
    class_id: str
    status: EnrollmentStatus
    class_title: Optional[str] = None
    progress: Optional[float] = None
    last_activity: Optional[str] = None
    joined_at: Optional[str] = None
    removed_at: Optional[str] = None

    def to_public(self) -> dict:
        return {
            "class_id": self.class_id,
            "class_title": self.class_title,
            "status": self.status.value,
            "progress": self.progress,
            "last_activity": self.last_activity,
            "joined_at": self.joined_at,
            "removed_at": self.removed_at,
        }


@dataclass(frozen=True)
class CompletionMetrics:
    active_count: int = 0
    completed_count: int = 0
    removed_count: int = 0
    average_progress: Optional[float] = None
    last_activity: Optional[str] = None

    def to_public(self) -> dict:
        return {
            "active_count": self.active_count,
            "completed_count": self.completed_count,
            "removed_count": self.removed_count,
            "average_progress": self.average_progress,
            "last_activity": self.last_activity,
        }


@dataclass(frozen=True)
class DashboardView:
    student_id: str
    active: Tuple[EnrollmentRecord, ...] = field(default_factory=tuple)
    past: Tuple[EnrollmentRecord, ...] = field(default_factory=tuple)
    metrics: CompletionMetrics = field(default_factory=CompletionMetrics)
    upcoming: Tuple[UpcomingItem, ...] = field(default_factory=tuple)
    degraded: Tuple[str, ...] = field(default_factory=tuple)

    def to_public(self) -> dict:
        return {
            "student_id": self.student_id,
            "active": [r.to_public() for r in self.active],
            "past": [r.to_public() for r in self.past],
            "metrics": self.metrics.to_public(),
            "upcoming": [u.to_public() for u in self.upcoming],
            "degraded": list(self.degraded),
        }


@dataclass(frozen=True)
class _MembershipSnapshot:
    current: List[dict]
    history: List[dict]
    titles: Dict[str, Optional[str]]


def derive_status(membership_status: str, activity: Optional[ActivitySnapshot]) -> EnrollmentStatus:
    if membership_status == EnrollmentStatus.REMOVED.value:
        return EnrollmentStatus.REMOVED
    if activity is not None and (activity.completed or activity.progress >= 100):
        return EnrollmentStatus.COMPLETED
    return EnrollmentStatus.ACTIVE


def compute_metrics(records: Sequence[EnrollmentRecord]) -> CompletionMetrics:
    counts = {s: 0 for s in EnrollmentStatus}
    progress = []
    last = None
    for r in records:
        counts[r.status] += 1
        if r.status is not EnrollmentStatus.REMOVED and r.progress is not None:
            progress.append(r.progress)
        if r.last_activity and (last is None or r.last_activity > last):
            last = r.last_activity
    avg = round(sum(progress) / len(progress), 1) if progress else None
    return CompletionMetrics(
        active_count=counts[EnrollmentStatus.ACTIVE],
        completed_count=counts[EnrollmentStatus.COMPLETED],
        removed_count=counts[EnrollmentStatus.REMOVED],
        average_progress=avg,
        last_activity=last,
    )


class DashboardService:
    def __init__(
        self,
        storage: StorageProtocol,
        audit: AuditLog,
        *,
        config: EngineConfig | None = None,
        activity: ActivityProvider | None = None,
        schedule: ScheduleProvider | None = None,
    ) -> None:
        self._storage = storage
        self._audit = audit
        self._config = config or EngineConfig()
        self._activity = activity
        self._schedule = schedule

    async def get_dashboard(self, student_id: str, ctx: CallerContext) -> DashboardView:
        if not isinstance(student_id, str) or not student_id.strip():
            raise InvalidInput("missing_target")
        student_id = student_id.strip()
        snapshot = await call_storage_read(
            self._read_unit,
            ctx,
            student_id,
            timeout=self._config.storage_call_timeout_seconds,
            backoff=self._config.read_retry_backoff_seconds,
        )
        degraded: List[str] = []
        activity = await self._collect(SOURCE_ACTIVITY, self._activity, "get_activity", student_id, degraded)
        upcoming = await self._collect(SOURCE_SCHEDULE, self._schedule, "get_upcoming", student_id, degraded)
        return self._compose(student_id, snapshot, activity or {}, upcoming or (), degraded)

    def _gate(self, ctx: CallerContext, target: TargetScope, student_id: str) -> None:
        decision = check(ctx, Action.DASHBOARD_READ, target)
        if not isinstance(decision, Deny):
            return
        self._audit.record(
            AuditEntry(
                actor_id=ctx.actor_id,
                action=Action.DASHBOARD_READ.value,
                target_type="student_dashboard",
                target_id=student_id,
                outcome=Outcome.DENIED,
                reason=decision.reason.value,
                institution_id=target.institution_id or ctx.principal.institution_id,
            )
        )
        logger.info(
            "dashboard denied actor_tail=%s student_tail=%s reason=%s",
            ctx.actor_id[-6:],
            student_id[-6:],
            decision.reason.value,
        )
        raise Forbidden(decision.reason.value)

    def _read_unit(self, ctx: CallerContext, student_id: str) -> _MembershipSnapshot:
        if isinstance(ctx.scope, SelfScope):
            # Self-scoped callers only ever see their own id; decide before any lookup.
            self._gate(ctx, TargetScope(None, owner_id=student_id), student_id)
        student = self._storage.get(USERS, {"user_id": student_id})
        if student is None or parse_role(student.get("role")) is not Role.STUDENT:
            raise MissingTarget("student_not_found")
        self._gate(
            ctx,
            TargetScope(student.get("institution_id"), student.get("department_id"), owner_id=student_id),
            student_id,
        )
        current = self._storage.select(MEMBERSHIPS, {"student_id": student_id})
        history = self._storage.select(MEMBERSHIP_HISTORY, {"student_id": student_id})
        titles: Dict[str, Optional[str]] = {}
        for row in current + history:
            cid = row["class_id"]
            if cid not in titles:
                cls = self._storage.get(CLASSES, {"class_id": cid})
                titles[cid] = cls.get("title") if cls else None
        return _MembershipSnapshot(current=current, history=history, titles=titles)

    async def _collect(self, source: str, provider, method: str, student_id: str, degraded: List[str]):
        if provider is None:
            degraded.append(source)
            return None
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(getattr(provider, method), student_id),
                timeout=self._config.storage_call_timeout_seconds,
            )
        except Exception as exc:
            logger.warning(
                "dashboard source unavailable source=%s student_tail=%s error=%s",
                source,
                student_id[-6:],
                exc.__class__.__name__,
            )
            degraded.append(source)
            return None

    def _compose(
        self,
        student_id: str,
        snapshot: _MembershipSnapshot,
        activity: Mapping[str, ActivitySnapshot],
        upcoming: Sequence[UpcomingItem],
        degraded: List[str],
    ) -> DashboardView:
        records: List[EnrollmentRecord] = []
        for row in snapshot.current:
            snap = activity.get(row["class_id"])
            records.append(self._record(student_id, row, snapshot.titles, snap, derive_status(row["status"], snap)))
        for row in snapshot.history:
            records.append(
                self._record(student_id, row, snapshot.titles, None, EnrollmentStatus.REMOVED)
            )
        active = tuple(r for r in records if r.status is EnrollmentStatus.ACTIVE)
        past = tuple(
            sorted(
                (r for r in records if r.status is not EnrollmentStatus.ACTIVE),
                key=lambda r: r.removed_at or r.joined_at or "",
                reverse=True,
            )
        )
        return DashboardView(
            student_id=student_id,
            active=active,
            past=past,
            metrics=compute_metrics(records),
            upcoming=tuple(upcoming),
            degraded=tuple(degraded),
        )

    @staticmethod
    def _record(
        student_id: str,
        row: dict,
        titles: Mapping[str, Optional[str]],
        snap: Optional[ActivitySnapshot],
        status: EnrollmentStatus,
    ) -> EnrollmentRecord:
        return EnrollmentRecord(
            student_id=student_id,
            class_id=row["class_id"],
            class_title=titles.get(row["class_id"]),
            status=status,
            progress=snap.progress if snap else None,
            last_activity=snap.last_activity if snap else None,
            joined_at=row.get("joined_at"),
            removed_at=row.get("removed_at"),
        )


__all__ = [
    "EnrollmentStatus",
    "EnrollmentRecord",
    "CompletionMetrics",
    "DashboardView",
    "DashboardService",
    "derive_status",
    "compute_metrics",
]
