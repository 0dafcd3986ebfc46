"""
Response helpers and caller resolution shared by the API routers.

Every response carries a status signal (`ok | denied | not-found |
invalid-input | internal-error`) and `Cache-Control: private, no-store`,
since all payloads are role- and tenant-scoped.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import Any, AsyncIterator, Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from backend.errors import EngineError, InvalidInput, Unauthenticated
from backend.identity_access.context import CallerContext
from backend.storage.calls import call_storage
from backend.web.wiring import get_engine

logger = logging.getLogger("klassenbuch.web")

SESSION_COOKIE_NAME = "klassenbuch_session"


def private_headers() -> dict:
    return {"Cache-Control": "private, no-store"}


def json_private(payload: Any, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(content=payload, status_code=status_code, headers=private_headers())


def ok(payload: Optional[dict] = None, *, status_code: int = 200) -> JSONResponse:
    body = {"status": "ok"}
    body.update(payload or {})
    return json_private(body, status_code=status_code)


def error_response(exc: EngineError) -> JSONResponse:
    body = {"status": exc.status, "error": exc.code}
    if exc.detail:
        body["detail"] = exc.detail
    if exc.http_status >= 500:
        logger.warning("request failed code=%s", exc.code)
    return json_private(body, status_code=exc.http_status)


def session_id(request: Request) -> Optional[str]:
    sid = getattr(request.state, "session_id", None)
    return sid or request.cookies.get(SESSION_COOKIE_NAME)


async def resolve_caller(request: Request) -> CallerContext:
    """Resolve the caller per request; the principal is re-read every time."""
    sid = session_id(request)
    if not sid:
        raise Unauthenticated()
    engine = get_engine()
    return await call_storage(
        engine.resolver.resolve,
        sid,
        timeout=engine.config.storage_call_timeout_seconds,
    )


@asynccontextmanager
async def disconnect_signal(request: Request, *, interval: float = 0.25) -> AsyncIterator[asyncio.Event]:
    """Yield an event that is set once the client goes away.

    Long-running handlers pass it on as a cancel signal; work already
    committed stays committed.
    """
    event = asyncio.Event()

    async def watch() -> None:
        while not event.is_set():
            await asyncio.sleep(interval)
            try:
                gone = await request.is_disconnected()
            except Exception as exc:
                logger.debug("disconnect watch stopped error=%s", exc.__class__.__name__)
                return
            if gone:
                logger.info("client disconnected path=%s", request.url.path)
                event.set()

    task = asyncio.create_task(watch())
    try:
        yield event
    finally:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


async def read_capped_body(request: Request, limit: int) -> bytes:
    """Read the request body, refusing anything larger than `limit` bytes."""
    declared = request.headers.get("content-length", "")
    if declared.isdigit() and int(declared) > limit:
        raise InvalidInput("file_too_large")
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise InvalidInput("file_too_large")
    return bytes(body)


__all__ = [
    "SESSION_COOKIE_NAME",
    "disconnect_signal",
    "read_capped_body",
    "private_headers",
    "json_private",
    "ok",
    "error_response",
    "session_id",
    "resolve_caller",
]
