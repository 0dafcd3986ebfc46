"Klassenbuch roster & enrollment API"
from __future__ import annotations

import logging
import os
import sys

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.web import config as _cfg
from backend.web.routes.assignments import assignments_router
from backend.web.routes.audit import audit_router
from backend.web.routes.common import SESSION_COOKIE_NAME, private_headers
from backend.web.routes.enrollment import enrollment_router
from backend.web.routes.roster import roster_router


def _should_load_dotenv() -> bool:
    """Decide if we should load a local .env file.

    - Never load under pytest to avoid contaminating test env.
    - Allow explicit opt-out via KLASSENBUCH_ENABLE_DOTENV (default true
      outside pytest).
    """
    if "pytest" in sys.modules or os.getenv("PYTEST_CURRENT_TEST"):
        return False
    flag = (os.getenv("KLASSENBUCH_ENABLE_DOTENV", "true") or "").strip().lower()
    return flag in ("1", "true", "yes")


if _should_load_dotenv():
    from dotenv import load_dotenv

    load_dotenv()

# Minimal production safety checks (fail-fast on insecure config)
_cfg.ensure_secure_config_on_startup()

logger = logging.getLogger("klassenbuch.web")

app = FastAPI(
    title="Klassenbuch",
    description="Roster & enrollment authorization engine",
    version="0.1.0",
)


def _is_public_path(path: str) -> bool:
    return path in ("/health", "/favicon.ico")


@app.middleware("http")
async def session_extraction(request: Request, call_next):
    """Expose the opaque session id; routes resolve the principal themselves.

    API requests without a session cookie are rejected here with 401 so no
    route ever runs anonymously.
    """
    path = request.url.path
    if _is_public_path(path):
        return await call_next(request)
    sid = request.cookies.get(SESSION_COOKIE_NAME)
    if not sid and path.startswith("/api/"):
        headers = private_headers()
        headers["Vary"] = "Origin"
        return JSONResponse({"status": "denied", "error": "unauthenticated"}, status_code=401, headers=headers)
    request.state.session_id = sid
    return await call_next(request)


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    return response


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.exception("unhandled error path=%s", request.url.path)
    return JSONResponse({"status": "internal-error", "error": "internal_error"}, status_code=500, headers=private_headers())


@app.get("/health")
async def health():
    return {"status": "healthy"}


app.include_router(roster_router)
app.include_router(assignments_router)
app.include_router(enrollment_router)
app.include_router(audit_router)
