"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend to avoid sandbox restrictions
that can affect the Trio backend (e.g., socketpair permission errors).
"""
import os
import sys
from pathlib import Path

import pytest

# Ensure the repository root and the tests dir (for `utils`) are importable
REPO_ROOT = Path(__file__).resolve().parents[2]
TESTS_DIR = REPO_ROOT / "backend" / "tests"
for p in (str(REPO_ROOT), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _clear_env_toggles(monkeypatch: pytest.MonkeyPatch):
    """Clear env-driven toggles so every test starts from dev defaults.

    Why:
        Config and CSRF tests set KLASSENBUCH_ENV/STRICT_CSRF and engine
        limits; a leftover value would change unrelated tests in a full run.
    """
    for var in (
        "KLASSENBUCH_ENV",
        "KLASSENBUCH_TRUST_PROXY",
        "STRICT_CSRF",
        "STORAGE_BACKEND",
        "STORAGE_CALL_TIMEOUT_MS",
        "STORAGE_READ_RETRY_BACKOFF_MS",
        "BATCH_MAX_WORKERS",
        "BATCH_DEADLINE_SECONDS",
        "BATCH_MAX_ENTRIES",
        "DATABASE_URL",
        "KLASSENBUCH_DATABASE_URL",
    ):
        monkeypatch.delenv(var, raising=False)
    yield


@pytest.fixture(autouse=True)
def _reset_engine_between_tests():
    """Drop any engine a test wired via `set_engine` so state never leaks."""
    yield
    try:
        from backend.web.wiring import set_engine
    except Exception:
        return
    set_engine(None)


@pytest.fixture
def storage():
    from utils.world import seed_world

    return seed_world()
