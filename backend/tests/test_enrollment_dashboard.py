"""
Enrollment dashboard - scope, degraded views, status derivation and metrics.
"""
from __future__ import annotations

import pytest

from backend.audit.log import AuditLog
from backend.enrollment.dashboard import (
    CompletionMetrics,
    DashboardService,
    EnrollmentRecord,
    EnrollmentStatus,
    compute_metrics,
    derive_status,
)
from backend.enrollment.ports import (
    ActivitySnapshot,
    InMemoryActivityProvider,
    InMemoryScheduleProvider,
    UpcomingItem,
)
from backend.errors import Forbidden, MissingTarget, StorageUnavailable
from backend.roster.service import RosterService
from backend.storage.ports import StorageError
from backend.storage.tables import AUDIT_ENTRIES
from utils.world import FAST_CONFIG, ctx, fixed_clock

pytestmark = pytest.mark.anyio("asyncio")


def _providers():
    activity = InMemoryActivityProvider()
    activity.put("s-1", "c-math-7", ActivitySnapshot(progress=40.0, last_activity="2025-01-14T10:00:00+00:00"))
    schedule = InMemoryScheduleProvider()
    schedule.add("s-1", UpcomingItem("c-math-7", "Bruchrechnung", "2025-01-20T08:00:00+00:00"))
    schedule.add("s-1", UpcomingItem("c-math-7", "Wiederholung", "2025-01-16T08:00:00+00:00"))
    return activity, schedule


def _service(storage, **kw) -> DashboardService:
    return DashboardService(storage, AuditLog(storage, clock=fixed_clock), config=FAST_CONFIG, **kw)


@pytest.mark.anyio
async def test_student_reads_own_dashboard(storage):
    activity, schedule = _providers()
    svc = _service(storage, activity=activity, schedule=schedule)
    view = await svc.get_dashboard("s-1", ctx(storage, "s-1"))

    assert view.degraded == ()
    assert [r.class_id for r in view.active] == ["c-math-7"]
    assert view.active[0].class_title == "Mathematik 7a"
    assert view.active[0].progress == 40.0
    assert view.past == ()
    assert [u.title for u in view.upcoming] == ["Wiederholung", "Bruchrechnung"]
    assert view.metrics == CompletionMetrics(
        active_count=1,
        completed_count=0,
        removed_count=0,
        average_progress=40.0,
        last_activity="2025-01-14T10:00:00+00:00",
    )


@pytest.mark.anyio
@pytest.mark.parametrize("viewer", ["s-2", "t-anna", "ia-b"])
async def test_out_of_scope_viewers_are_denied_and_audited(storage, viewer):
    svc = _service(storage)
    with pytest.raises(Forbidden) as exc:
        await svc.get_dashboard("s-1", ctx(storage, viewer))
    assert exc.value.code == "out_of_scope"
    rows = storage.select(AUDIT_ENTRIES, {})
    assert [(r["actor_id"], r["action"], r["outcome"]) for r in rows] == [(viewer, "dashboard.read", "denied")]


@pytest.mark.anyio
@pytest.mark.parametrize("viewer", ["da-math", "ia-a", "admin-1"])
async def test_admins_in_scope_may_read(storage, viewer):
    svc = _service(storage)
    view = await svc.get_dashboard("s-1", ctx(storage, viewer))
    assert view.student_id == "s-1"
    assert storage.select(AUDIT_ENTRIES, {}) == []


@pytest.mark.anyio
async def test_department_admin_of_other_department_is_denied(storage):
    svc = _service(storage)
    with pytest.raises(Forbidden):
        await svc.get_dashboard("s-1", ctx(storage, "da-art"))


@pytest.mark.anyio
@pytest.mark.parametrize("student_id", ["ghost", "t-anna"])
async def test_unknown_or_non_student_is_missing_target(storage, student_id):
    svc = _service(storage)
    with pytest.raises(MissingTarget) as exc:
        await svc.get_dashboard(student_id, ctx(storage, "admin-1"))
    assert exc.value.code == "student_not_found"


@pytest.mark.anyio
@pytest.mark.parametrize("student_id", ["ghost", "t-anna", "s-3"])
async def test_student_asking_for_any_other_id_is_forbidden(storage, student_id):
    svc = _service(storage)
    with pytest.raises(Forbidden) as exc:
        await svc.get_dashboard(student_id, ctx(storage, "s-1"))
    assert exc.value.code == "out_of_scope"
    rows = storage.select(AUDIT_ENTRIES, {})
    assert [(r["target_id"], r["outcome"]) for r in rows] == [(student_id, "denied")]


@pytest.mark.anyio
async def test_missing_providers_degrade_the_view(storage):
    svc = _service(storage)
    view = await svc.get_dashboard("s-1", ctx(storage, "s-1"))
    assert view.degraded == ("activity", "schedule")
    assert view.active[0].progress is None
    assert view.upcoming == ()
    assert view.to_public()["degraded"] == ["activity", "schedule"]


@pytest.mark.anyio
async def test_failing_provider_degrades_without_failing_the_read(storage):
    class _Broken:
        def get_upcoming(self, student_id):
            raise ConnectionError("schedule down")

    activity, _ = _providers()
    svc = _service(storage, activity=activity, schedule=_Broken())
    view = await svc.get_dashboard("s-1", ctx(storage, "s-1"))
    assert view.degraded == ("schedule",)
    assert view.active[0].progress == 40.0


@pytest.mark.anyio
async def test_completed_and_removed_enrollments_are_past(storage):
    roster = RosterService(storage, AuditLog(storage, clock=fixed_clock), config=FAST_CONFIG, clock=fixed_clock)
    teacher = ctx(storage, "t-anna")
    await roster.remove_student("s-1", "c-math-7", teacher, "moved")
    await roster.add_student("s-1", "c-math-7", teacher)

    activity = InMemoryActivityProvider()
    activity.put("s-1", "c-math-7", ActivitySnapshot(progress=100.0, completed=True))
    svc = _service(storage, activity=activity, schedule=InMemoryScheduleProvider())
    view = await svc.get_dashboard("s-1", ctx(storage, "s-1"))

    assert view.active == ()
    assert sorted(r.status.value for r in view.past) == ["completed", "removed"]
    assert view.metrics.completed_count == 1
    assert view.metrics.removed_count == 1
    assert view.metrics.average_progress == 100.0


@pytest.mark.anyio
async def test_transient_storage_failure_is_retried_once(storage, monkeypatch):
    student = ctx(storage, "s-1")
    original = storage.get
    calls = {"n": 0}

    def flaky_get(table, key):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StorageError("connection reset")
        return original(table, key)

    monkeypatch.setattr(storage, "get", flaky_get)
    svc = _service(storage)
    view = await svc.get_dashboard("s-1", student)
    assert view.student_id == "s-1"
    assert calls["n"] > 1


@pytest.mark.anyio
async def test_persistent_storage_failure_surfaces(storage, monkeypatch):
    student = ctx(storage, "s-1")

    def broken_get(table, key):
        raise StorageError("down")

    monkeypatch.setattr(storage, "get", broken_get)
    svc = _service(storage)
    with pytest.raises(StorageUnavailable):
        await svc.get_dashboard("s-1", student)


def test_derive_status():
    assert derive_status("removed", ActivitySnapshot(completed=True)) is EnrollmentStatus.REMOVED
    assert derive_status("active", ActivitySnapshot(progress=100)) is EnrollmentStatus.COMPLETED
    assert derive_status("active", ActivitySnapshot(progress=99.5)) is EnrollmentStatus.ACTIVE
    assert derive_status("active", None) is EnrollmentStatus.ACTIVE


def test_compute_metrics_excludes_removed_from_average():
    records = [
        EnrollmentRecord("s-1", "a", EnrollmentStatus.ACTIVE, progress=20.0),
        EnrollmentRecord("s-1", "b", EnrollmentStatus.ACTIVE, progress=25.0),
        EnrollmentRecord("s-1", "c", EnrollmentStatus.REMOVED, progress=90.0),
    ]
    metrics = compute_metrics(records)
    assert metrics.average_progress == 22.5
    assert metrics.removed_count == 1
    assert compute_metrics([]).average_progress is None
