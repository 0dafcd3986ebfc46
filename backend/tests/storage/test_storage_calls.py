"""
Async storage boundary - timeouts surface as StorageUnavailable, reads retry once.
"""
from __future__ import annotations

import time

import pytest

from backend.errors import NotEnrolled, StorageUnavailable
from backend.storage.calls import call_storage, call_storage_read
from backend.storage.ports import DuplicateKeyError, StorageError

pytestmark = pytest.mark.anyio("asyncio")


@pytest.mark.anyio
async def test_timeout_maps_to_storage_unavailable():
    with pytest.raises(StorageUnavailable) as exc:
        await call_storage(time.sleep, 0.5, timeout=0.05)
    assert exc.value.code == "storage_timeout"


@pytest.mark.anyio
async def test_adapter_error_maps_to_storage_unavailable_but_domain_errors_pass():
    def _fail():
        raise StorageError("connection refused")

    def _not_enrolled():
        raise NotEnrolled()

    def _dup():
        raise DuplicateKeyError("memberships")

    with pytest.raises(StorageUnavailable):
        await call_storage(_fail, timeout=1)
    with pytest.raises(NotEnrolled):
        await call_storage(_not_enrolled, timeout=1)
    with pytest.raises(DuplicateKeyError):
        await call_storage(_dup, timeout=1)


@pytest.mark.anyio
async def test_read_retries_exactly_once():
    calls = []

    def _flaky():
        calls.append(1)
        if len(calls) == 1:
            raise StorageError("blip")
        return "ok"

    assert await call_storage_read(_flaky, timeout=1, backoff=0) == "ok"
    assert len(calls) == 2


@pytest.mark.anyio
async def test_read_gives_up_after_second_failure():
    calls = []

    def _down():
        calls.append(1)
        raise StorageError("down")

    with pytest.raises(StorageUnavailable):
        await call_storage_read(_down, timeout=1, backoff=0)
    assert len(calls) == 2


@pytest.mark.anyio
async def test_read_does_not_retry_domain_errors():
    calls = []

    def _missing():
        calls.append(1)
        raise NotEnrolled()

    with pytest.raises(NotEnrolled):
        await call_storage_read(_missing, timeout=1, backoff=0)
    assert len(calls) == 1
