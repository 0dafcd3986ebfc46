"""
Teacher <-> department assignment edges: unassign, assign, tenant isolation.
"""
from __future__ import annotations

import asyncio

import pytest

from backend.assignments.service import AssignmentService, EdgeStatus
from backend.audit.log import AuditLog, Outcome
from backend.errors import AlreadyAssigned, CrossTenant, Forbidden, InvalidInput, MissingTarget, StorageUnavailable
from backend.storage.ports import StorageError
from backend.storage.tables import ASSIGNMENT_EDGES, AUDIT_ENTRIES
from utils.world import FAST_CONFIG, FIXED_NOW, ctx, fixed_clock

pytestmark = pytest.mark.anyio("asyncio")


def _service(storage) -> AssignmentService:
    return AssignmentService(storage, AuditLog(storage, clock=fixed_clock), config=FAST_CONFIG, clock=fixed_clock)


def _edge(storage, user_id, inst="inst-a"):
    return storage.get(ASSIGNMENT_EDGES, {"institution_id": inst, "user_id": user_id})


@pytest.mark.anyio
async def test_department_admin_unassigns_teacher_in_own_department(storage):
    svc = _service(storage)
    result = await svc.unassign_teacher("dept-math", "t-anna", ctx(storage, "da-math"))

    assert result.edge.status is EdgeStatus.REMOVED
    assert result.edge.removed_at == FIXED_NOW
    assert result.audit.outcome is Outcome.APPLIED
    assert result.audit.target_type == "department_assignment"
    assert result.audit.target_id == "dept-math:t-anna"
    assert _edge(storage, "t-anna")["removed_by"] == "da-math"


@pytest.mark.anyio
async def test_other_institution_admin_gets_cross_tenant(storage):
    svc = _service(storage)
    with pytest.raises(CrossTenant) as exc:
        await svc.unassign_teacher("dept-math", "t-anna", ctx(storage, "ia-b"))
    assert exc.value.code == "cross_tenant"
    assert exc.value.http_status == 403

    assert _edge(storage, "t-anna")["status"] == "active"
    rows = storage.select(AUDIT_ENTRIES, {})
    assert [(r["outcome"], r["reason"]) for r in rows] == [("denied", "cross_tenant")]


@pytest.mark.anyio
async def test_department_admin_of_other_department_is_out_of_scope(storage):
    svc = _service(storage)
    with pytest.raises(Forbidden) as exc:
        await svc.unassign_teacher("dept-math", "t-anna", ctx(storage, "da-art"))
    assert not isinstance(exc.value, CrossTenant)
    assert exc.value.code == "out_of_scope"


@pytest.mark.anyio
async def test_teacher_cannot_unassign(storage):
    svc = _service(storage)
    with pytest.raises(Forbidden) as exc:
        await svc.unassign_teacher("dept-math", "t-anna", ctx(storage, "t-ben"))
    assert exc.value.code == "insufficient_role"


@pytest.mark.anyio
async def test_global_admin_unassigns_in_any_institution(storage):
    svc = _service(storage)
    result = await svc.unassign_teacher("dept-bio", "t-cara", ctx(storage, "admin-1"))
    assert result.edge.institution_id == "inst-b"
    assert _edge(storage, "t-cara", inst="inst-b")["status"] == "removed"


@pytest.mark.anyio
@pytest.mark.parametrize(
    "dept,teacher,code",
    [
        ("dept-nope", "t-anna", "department_not_found"),
        ("dept-art", "t-anna", "assignment_not_found"),
        ("dept-math", "t-ben", "assignment_not_found"),
    ],
)
async def test_unassign_missing_targets(storage, dept, teacher, code):
    svc = _service(storage)
    with pytest.raises(MissingTarget) as exc:
        await svc.unassign_teacher(dept, teacher, ctx(storage, "ia-a"))
    assert exc.value.code == code


@pytest.mark.anyio
async def test_concurrent_unassigns_have_exactly_one_success(storage):
    svc = _service(storage)
    admin = ctx(storage, "ia-a")
    results = await asyncio.gather(
        *(svc.unassign_teacher("dept-math", "t-anna", admin) for _ in range(4)),
        return_exceptions=True,
    )
    assert sum(1 for r in results if not isinstance(r, Exception)) == 1
    assert all(isinstance(r, MissingTarget) for r in results if isinstance(r, Exception))
    applied = storage.select(AUDIT_ENTRIES, {"outcome": "applied"})
    assert len(applied) == 1


@pytest.mark.anyio
async def test_assign_new_teacher_and_reject_second_edge(storage):
    svc = _service(storage)
    admin = ctx(storage, "da-math")
    result = await svc.assign_teacher("dept-math", "t-ben", admin)
    assert result.edge.status is EdgeStatus.ACTIVE
    assert result.edge.department_id == "dept-math"

    with pytest.raises(AlreadyAssigned):
        await svc.assign_teacher("dept-math", "t-ben", admin)
    failed = storage.select(AUDIT_ENTRIES, {"outcome": "failed"})
    assert [r["reason"] for r in failed] == ["already_assigned"]


@pytest.mark.anyio
async def test_teacher_holds_one_active_edge_per_institution(storage):
    svc = _service(storage)
    with pytest.raises(AlreadyAssigned):
        await svc.assign_teacher("dept-art", "t-anna", ctx(storage, "ia-a"))
    assert _edge(storage, "t-anna")["department_id"] == "dept-math"


@pytest.mark.anyio
async def test_reassign_after_unassign_moves_the_edge(storage):
    svc = _service(storage)
    admin = ctx(storage, "ia-a")
    await svc.unassign_teacher("dept-math", "t-anna", admin)
    result = await svc.assign_teacher("dept-art", "t-anna", admin)
    assert result.edge.status is EdgeStatus.ACTIVE
    assert result.edge.department_id == "dept-art"
    assert result.edge.removed_at is None


@pytest.mark.anyio
async def test_assign_rejects_students_and_foreign_users(storage):
    svc = _service(storage)
    admin = ctx(storage, "ia-a")
    with pytest.raises(InvalidInput) as exc:
        await svc.assign_teacher("dept-math", "s-1", admin)
    assert exc.value.code == "not_a_teacher"

    with pytest.raises(MissingTarget) as exc:
        await svc.assign_teacher("dept-math", "t-cara", admin)
    assert exc.value.code == "teacher_not_found"


@pytest.mark.anyio
async def test_blank_ids_are_invalid_input(storage):
    svc = _service(storage)
    with pytest.raises(InvalidInput):
        await svc.unassign_teacher(" ", "t-anna", ctx(storage, "ia-a"))
    assert storage.select(AUDIT_ENTRIES, {}) == []


@pytest.mark.anyio
@pytest.mark.parametrize("teacher", ["t-cara", "nobody"])
async def test_foreign_department_is_cross_tenant_before_any_edge_lookup(storage, teacher):
    svc = _service(storage)
    with pytest.raises(CrossTenant):
        await svc.unassign_teacher("dept-bio", teacher, ctx(storage, "ia-a"))
    rows = storage.select(AUDIT_ENTRIES, {})
    assert [(r["target_id"], r["outcome"], r["reason"]) for r in rows] == [
        (f"dept-bio:{teacher}", "denied", "cross_tenant")
    ]


@pytest.mark.anyio
async def test_assign_into_foreign_department_is_cross_tenant(storage):
    svc = _service(storage)
    with pytest.raises(CrossTenant):
        await svc.assign_teacher("dept-bio", "t-ben", ctx(storage, "ia-a"))


@pytest.mark.anyio
async def test_unassign_storage_failure_keeps_failed_audit_entry(storage, monkeypatch):
    original = storage._update

    def broken_update(table, filter, patch, journal):
        if table == ASSIGNMENT_EDGES:
            raise StorageError("connection reset")
        return original(table, filter, patch, journal)

    monkeypatch.setattr(storage, "_update", broken_update)
    svc = _service(storage)
    with pytest.raises(StorageUnavailable):
        await svc.unassign_teacher("dept-math", "t-anna", ctx(storage, "da-math"))

    assert _edge(storage, "t-anna")["status"] == "active"
    rows = storage.select(AUDIT_ENTRIES, {})
    assert [(r["outcome"], r["reason"]) for r in rows] == [("failed", "storage_unavailable")]
