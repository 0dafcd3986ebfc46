"""
Async boundary for blocking storage work.

Why:
    Storage adapters are synchronous (psycopg, in-memory). Handlers are async
    and must not block the event loop, so each read-check-write unit runs in a
    worker thread and is bounded by the request-scoped storage timeout.

Behavior:
    - Timeouts and adapter failures surface as `StorageUnavailable`.
    - Domain errors raised inside the unit propagate unchanged.
    - `call_storage_read` retries exactly once after a backoff. Mutations
      never use it: a retried conditional write after an ambiguous failure
      could break the single-active-membership invariant.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, TypeVar

from backend.errors import StorageUnavailable

from .ports import DuplicateKeyError, StorageError

T = TypeVar("T")

logger = logging.getLogger("klassenbuch.storage")


async def call_storage(fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args, **kwargs), timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise StorageUnavailable("storage_timeout") from exc
    except DuplicateKeyError:
        raise
    except StorageError as exc:
        raise StorageUnavailable("storage_unavailable", detail=str(exc)) from exc


async def call_storage_read(
    fn: Callable[..., T],
    *args: Any,
    timeout: float,
    backoff: float,
    **kwargs: Any,
) -> T:
    try:
        return await call_storage(fn, *args, timeout=timeout, **kwargs)
    except StorageUnavailable as exc:
        logger.warning("storage read failed (%s); retrying once after %.3fs", exc.code, backoff)
        await asyncio.sleep(backoff)
    return await call_storage(fn, *args, timeout=timeout, **kwargs)


__all__ = ["call_storage", "call_storage_read"]
