"""
Enrollment dashboard route.

Students read their own dashboard; department and institution admins read
dashboards of students in their scope. A degraded view (missing activity or
schedule data) is still 200 and lists the missing sources under `degraded`.
"""
from __future__ import annotations

from fastapi import APIRouter, Request

from backend.errors import EngineError
from backend.web.wiring import get_engine

from .common import error_response, ok, resolve_caller

enrollment_router = APIRouter(tags=["Enrollment"])


@enrollment_router.get("/api/students/{student_id}/dashboard")
async def student_dashboard(request: Request, student_id: str):
    try:
        ctx = await resolve_caller(request)
        view = await get_engine().dashboard.get_dashboard(student_id, ctx)
    except EngineError as exc:
        return error_response(exc)
    return ok({"dashboard": view.to_public()})


__all__ = ["enrollment_router"]
