"""
Error taxonomy shared by the roster, assignment and enrollment contexts.

Why:
    Services raise the builtin families the web adapter already knows how to
    map (ValueError -> 400, PermissionError -> 403, LookupError -> 404). Each
    error additionally carries a stable machine `code` and a status signal so
    the adapter never has to parse messages.

Status signals:
    ok | denied | not-found | invalid-input | internal-error
"""
from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class; `code` is the stable identifier surfaced to clients."""

    status = "internal-error"
    http_status = 500
    default_code = "internal_error"

    def __init__(self, code: Optional[str] = None, detail: Optional[str] = None):
        self.code = code or self.default_code
        self.detail = detail
        super().__init__(self.code)


class Unauthenticated(EngineError, PermissionError):
    """No valid principal behind the session token. Never retried."""

    status = "denied"
    http_status = 401
    default_code = "unauthenticated"


class Forbidden(EngineError, PermissionError):
    """Authorization denial. `code` is the gate's reason (out_of_scope, insufficient_role)."""

    status = "denied"
    http_status = 403
    default_code = "forbidden"


class CrossTenant(Forbidden):
    default_code = "cross_tenant"


class InvalidInput(EngineError, ValueError):
    """Missing or malformed input, rejected before any storage access."""

    status = "invalid-input"
    http_status = 400
    default_code = "invalid_input"


class MissingTarget(EngineError, LookupError):
    status = "not-found"
    http_status = 404
    default_code = "missing_target"


class NotEnrolled(EngineError, LookupError):
    status = "not-found"
    http_status = 404
    default_code = "not_enrolled"


class AlreadyEnrolled(EngineError, ValueError):
    status = "invalid-input"
    http_status = 409
    default_code = "already_enrolled"


class AlreadyAssigned(EngineError, ValueError):
    status = "invalid-input"
    http_status = 409
    default_code = "already_assigned"


class StorageUnavailable(EngineError):
    """Storage call failed or timed out. Mutations surface it; reads retry once."""

    http_status = 503
    default_code = "storage_unavailable"


__all__ = [
    "EngineError",
    "Unauthenticated",
    "Forbidden",
    "CrossTenant",
    "InvalidInput",
    "MissingTarget",
    "NotEnrolled",
    "AlreadyEnrolled",
    "AlreadyAssigned",
    "StorageUnavailable",
]
