"""
Assignment API routes: teacher <-> department edges and bulk role changes.

Permissions:
    Department admins act within their department, institution admins within
    their institution, admins everywhere. Cross-institution attempts answer
    403 with `cross_tenant`.

Bulk:
    `POST /api/roles/bulk` takes JSON entries; `POST /api/roles/bulk/csv`
    takes a CSV body (`user_id,role,institution_id,department_id`). Both
    answer 200 with per-entry outcomes; a batch cut short by the deadline or by the
    client disconnecting is marked `incomplete`. CSV bodies are capped at
    `MAX_FILE_BYTES` and read only after the caller is resolved.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel, Field
from pydantic.functional_validators import field_validator

from backend.assignments import batch_file
from backend.assignments.batch import BatchResult, RoleChangeBatch, RoleChangeRequest
from backend.errors import EngineError, InvalidInput
from backend.identity_access.domain import parse_role
from backend.web.wiring import get_engine

from .common import disconnect_signal, error_response, ok, read_capped_body, resolve_caller
from .security import csrf_guard

assignments_router = APIRouter(tags=["Assignments"])
logger = logging.getLogger("klassenbuch.web.assignments")


class RoleChangePayload(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=200)
    role: str = Field(..., min_length=1, max_length=64)
    institution_id: Optional[str] = Field(default=None, max_length=200)
    department_id: Optional[str] = Field(default=None, max_length=200)

    @field_validator("institution_id", "department_id")
    @classmethod
    def _strip_empty(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v if v else None
        return v


class TeacherAssignPayload(BaseModel):
    teacher_id: str = Field(..., max_length=200)


class BulkRolePayload(BaseModel):
    entries: List[RoleChangePayload] = Field(default_factory=list)


def _batch_from_payload(requester_id: str, payload: BulkRolePayload) -> RoleChangeBatch:
    entries = []
    for item in payload.entries:
        role = parse_role(item.role)
        if role is None:
            raise InvalidInput("invalid_role", detail=item.user_id)
        entries.append(
            RoleChangeRequest(
                target_user_id=item.user_id.strip(),
                requested_role=role,
                institution_id=item.institution_id,
                department_id=item.department_id,
            )
        )
    return RoleChangeBatch(requester_id=requester_id, entries=tuple(entries))


def _serialize_batch(result: BatchResult) -> dict:
    return {
        "incomplete": result.incomplete,
        "counts": result.counts(),
        "results": [r.to_public() for r in result.results],
    }


@assignments_router.post("/api/departments/{department_id}/teachers")
async def assign_teacher(request: Request, department_id: str, payload: TeacherAssignPayload):
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        ctx = await resolve_caller(request)
        result = await get_engine().assignments.assign_teacher(department_id, payload.teacher_id, ctx)
    except EngineError as exc:
        return error_response(exc)
    return ok({"edge": result.edge.to_public(), "audit_id": result.audit.id}, status_code=201)


@assignments_router.delete("/api/departments/{department_id}/teachers/{teacher_id}")
async def unassign_teacher(request: Request, department_id: str, teacher_id: str):
    """
    Remove a teacher's department assignment.

    Behavior:
        - 200 with the removed edge.
        - 403 `cross_tenant` when the edge belongs to another institution.
        - 404 when no active assignment exists.
    """
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        ctx = await resolve_caller(request)
        result = await get_engine().assignments.unassign_teacher(department_id, teacher_id, ctx)
    except EngineError as exc:
        return error_response(exc)
    return ok({"edge": result.edge.to_public(), "audit_id": result.audit.id})


@assignments_router.post("/api/roles/bulk")
async def bulk_assign_roles(request: Request, payload: BulkRolePayload):
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        ctx = await resolve_caller(request)
        batch = _batch_from_payload(ctx.actor_id, payload)
        async with disconnect_signal(request) as gone:
            result = await get_engine().batches.apply_batch(batch, ctx, cancel_event=gone)
    except EngineError as exc:
        return error_response(exc)
    return ok(_serialize_batch(result))


@assignments_router.post("/api/roles/bulk/csv")
async def bulk_assign_roles_csv(request: Request):
    """
    Apply a CSV upload of role changes.

    Rows failing validation are reported under `row_errors` and skipped.
    A file without any valid row answers 400.
    """
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        ctx = await resolve_caller(request)
        raw = await read_capped_body(request, batch_file.MAX_FILE_BYTES)
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise InvalidInput("invalid_encoding")
        parsed = batch_file.parse_batch_csv(text, ctx.actor_id)
        if not parsed.batch.entries:
            return error_response(InvalidInput("no_valid_rows"))
        async with disconnect_signal(request) as gone:
            result = await get_engine().batches.apply_batch(parsed.batch, ctx, cancel_event=gone)
    except EngineError as exc:
        return error_response(exc)
    logger.info(
        "bulk csv applied rows=%s row_errors=%s",
        len(parsed.batch.entries),
        len(parsed.errors),
    )
    body = _serialize_batch(result)
    body["row_errors"] = [e.to_public() for e in parsed.errors]
    return ok(body)


__all__ = ["assignments_router"]
