"""
Shared web security helpers for the roster, assignment and audit routes.

Write endpoints are called by the browser with the session cookie, so they
require a same-origin Origin/Referer. Server-to-server calls without either
header pass unless strict mode is on (prod, or STRICT_CSRF=true).
"""
from __future__ import annotations

import os
from typing import Optional, Tuple
from urllib.parse import urlparse

from fastapi import Request
from fastapi.responses import JSONResponse


def _parse_origin(url: str) -> Tuple[str, str, int]:
    p = urlparse(url)
    if not p.scheme or not p.hostname:
        raise ValueError("invalid_origin")
    scheme = p.scheme.lower()
    port = p.port if p.port is not None else (443 if scheme == "https" else 80)
    return scheme, p.hostname.lower(), int(port)


def _server_origin(request: Request) -> Tuple[str, str, int]:
    """Server origin; X-Forwarded-* is only trusted with KLASSENBUCH_TRUST_PROXY=true."""
    trust_proxy = (os.getenv("KLASSENBUCH_TRUST_PROXY", "false") or "").lower() == "true"
    scheme = (request.url.scheme or "http").lower()
    host = (request.url.hostname or "").lower()
    port = int(request.url.port) if request.url.port else None
    if trust_proxy:
        xf_proto = (request.headers.get("x-forwarded-proto") or "").split(",")[0].strip()
        xf_host = (request.headers.get("x-forwarded-host") or "").split(",")[0].strip()
        if xf_proto:
            scheme = xf_proto.lower()
        if xf_host:
            if ":" in xf_host:
                host, port_str = xf_host.rsplit(":", 1)
                host = host.lower()
                port = int(port_str) if port_str.isdigit() else None
            else:
                host = xf_host.lower()
                port = None
    if port is None:
        port = 443 if scheme == "https" else 80
    return scheme, host, port


def is_same_origin(request: Request) -> bool:
    header = request.headers.get("origin") or request.headers.get("referer")
    if not header:
        return True
    try:
        return _parse_origin(header) == _server_origin(request)
    except ValueError:
        return False


def _strict_mode() -> bool:
    env = (os.getenv("KLASSENBUCH_ENV", "dev") or "").lower()
    toggle = (os.getenv("STRICT_CSRF", "false") or "").lower() == "true"
    return env == "prod" or toggle


def csrf_guard(request: Request) -> Optional[JSONResponse]:
    """Return a 403 response for cross-site writes, None when the request may proceed."""
    if _strict_mode() and not (request.headers.get("origin") or request.headers.get("referer")):
        return JSONResponse(
            {"status": "denied", "error": "csrf_violation"},
            status_code=403,
            headers={"Cache-Control": "private, no-store"},
        )
    if not is_same_origin(request):
        return JSONResponse(
            {"status": "denied", "error": "csrf_violation"},
            status_code=403,
            headers={"Cache-Control": "private, no-store"},
        )
    return None


__all__ = ["is_same_origin", "csrf_guard"]
