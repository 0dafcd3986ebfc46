"""
Roster API routes: add, remove, list and export class members.

Why:
    Thin adapter over `RosterService`. Authentication comes from the session
    cookie; the caller's role and scope are resolved per request and never
    taken from the body. All authorization happens in the service via the
    shared gate.

Status mapping:
    200/201 ok, 400 invalid input, 401 unauthenticated, 403 denied,
    404 not enrolled / unknown class, 409 already enrolled, 503 storage.
"""
from __future__ import annotations

import re
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field
from pydantic.functional_validators import field_validator

from backend.errors import EngineError
from backend.web.wiring import get_engine

from .common import error_response, ok, private_headers, resolve_caller
from .security import csrf_guard

roster_router = APIRouter(tags=["Roster"])

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class MemberAddPayload(BaseModel):
    student_id: str = Field(..., max_length=200)


class RemovalPayload(BaseModel):
    # Blank reasons are rejected by the service with missing_reason.
    reason: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("reason")
    @classmethod
    def _strip(cls, v):
        return v.strip() if isinstance(v, str) else v


@roster_router.post("/api/classes/{class_id}/members")
async def add_member(request: Request, class_id: str, payload: MemberAddPayload):
    """
    Enroll a student in a class.

    Permissions:
        Class teacher (owner) or an admin whose scope contains the class.
    """
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        ctx = await resolve_caller(request)
        result = await get_engine().roster.add_student(payload.student_id, class_id, ctx)
    except EngineError as exc:
        return error_response(exc)
    return ok(
        {
            "membership": result.membership.to_public(),
            "reactivated": result.reactivated,
            "audit_id": result.audit.id,
        },
        status_code=201,
    )


@roster_router.post("/api/classes/{class_id}/members/{student_id}/removal")
async def remove_member(request: Request, class_id: str, student_id: str, payload: RemovalPayload):
    """
    Remove a student from a class with a mandatory reason.

    Behavior:
        - 200 with the removed membership and the audit entry id.
        - 400 `missing_reason` when the reason is empty.
        - 404 `not_enrolled` when the student has no active membership
          (removal is not idempotent).
    """
    csrf = csrf_guard(request)
    if csrf:
        return csrf
    try:
        ctx = await resolve_caller(request)
        result = await get_engine().roster.remove_student(student_id, class_id, ctx, payload.reason or "")
    except EngineError as exc:
        return error_response(exc)
    return ok({"membership": result.membership.to_public(), "audit_id": result.audit.id})


@roster_router.get("/api/classes/{class_id}/members")
async def list_members(request: Request, class_id: str, include_removed: bool = False):
    try:
        ctx = await resolve_caller(request)
        roster, records = await get_engine().roster.list_roster(class_id, ctx, include_removed=include_removed)
    except EngineError as exc:
        return error_response(exc)
    return ok(
        {
            "class_id": roster.class_id,
            "title": roster.title,
            "members": [r.to_public() for r in records],
        }
    )


@roster_router.get("/api/classes/{class_id}/roster/export")
async def export_roster(request: Request, class_id: str, format: str = "csv", include_removed: bool = False):
    """Download the roster as CSV or JSON (attachment)."""
    try:
        ctx = await resolve_caller(request)
        body = await get_engine().roster.export_roster(
            class_id, ctx, fmt=format, include_removed=include_removed
        )
    except EngineError as exc:
        return error_response(exc)
    fmt = format.strip().lower()
    media_type = "text/csv" if fmt == "csv" else "application/json"
    headers = private_headers()
    headers["Content-Disposition"] = f'attachment; filename="roster-{_SAFE_NAME.sub("_", class_id)}.{fmt}"'
    return Response(content=body, media_type=media_type, headers=headers)


__all__ = ["roster_router"]
