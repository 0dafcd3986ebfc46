"""Audit history route (institution admins and admins)."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Request

from backend.errors import EngineError
from backend.web.wiring import get_engine

from .common import error_response, ok, resolve_caller

audit_router = APIRouter(tags=["Audit"])


def _serialize_entry(entry) -> dict:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "action": entry.action,
        "target_type": entry.target_type,
        "target_id": entry.target_id,
        "outcome": entry.outcome.value,
        "reason": entry.reason,
        "timestamp": entry.timestamp,
    }


@audit_router.get("/api/audit")
async def audit_history(request: Request, target_id: str = "", target_type: Optional[str] = None):
    try:
        ctx = await resolve_caller(request)
        entries = await get_engine().audit_history.get_history(target_id, ctx, target_type=target_type)
    except EngineError as exc:
        return error_response(exc)
    return ok({"target_id": target_id, "entries": [_serialize_entry(e) for e in entries]})


__all__ = ["audit_router"]
