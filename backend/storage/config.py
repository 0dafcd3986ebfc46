"""
Centralized engine configuration: storage timeouts, retry backoff and batch limits.

Intent:
    Provide a single place to read the environment variables that bound
    storage calls and bulk processing, with explicit defaults and ranges.

Why:
    Centralising configuration reduces drift across services and makes
    validation explicit. Tests build `EngineConfig` directly instead of
    patching the environment.

Permissions:
    Pure configuration; no external calls or privileges required.
"""
from __future__ import annotations

from dataclasses import dataclass
import os


STORAGE_BACKENDS = frozenset({"memory", "postgres"})


@dataclass(frozen=True)
class EngineConfig:
    storage_backend: str = "memory"
    storage_call_timeout_ms: int = 5000
    read_retry_backoff_ms: int = 200
    batch_max_workers: int = 4
    batch_deadline_seconds: int = 30
    batch_max_entries: int = 10000

    @property
    def storage_call_timeout_seconds(self) -> float:
        return self.storage_call_timeout_ms / 1000.0

    @property
    def read_retry_backoff_seconds(self) -> float:
        return self.read_retry_backoff_ms / 1000.0


def _int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got: {raw!r}")
    if value < minimum or value > maximum:
        raise ValueError(f"{name} out of range ({minimum}..{maximum}), got: {value}")
    return value


def load_engine_config() -> EngineConfig:
    """Parse and validate engine configuration from environment variables.

    Env:
        STORAGE_BACKEND                 memory | postgres (default: memory)
        STORAGE_CALL_TIMEOUT_MS         1..60000 (default: 5000)
        STORAGE_READ_RETRY_BACKOFF_MS   0..10000 (default: 200)
        BATCH_MAX_WORKERS               1..64 (default: 4)
        BATCH_DEADLINE_SECONDS          1..600 (default: 30)
        BATCH_MAX_ENTRIES               1..10000 (default: 10000)
    """
    backend = (os.getenv("STORAGE_BACKEND") or "memory").strip().lower()
    if backend not in STORAGE_BACKENDS:
        raise ValueError("STORAGE_BACKEND must be 'memory' or 'postgres'")
    return EngineConfig(
        storage_backend=backend,
        storage_call_timeout_ms=_int_env("STORAGE_CALL_TIMEOUT_MS", 5000, minimum=1, maximum=60000),
        read_retry_backoff_ms=_int_env("STORAGE_READ_RETRY_BACKOFF_MS", 200, minimum=0, maximum=10000),
        batch_max_workers=_int_env("BATCH_MAX_WORKERS", 4, minimum=1, maximum=64),
        batch_deadline_seconds=_int_env("BATCH_DEADLINE_SECONDS", 30, minimum=1, maximum=600),
        batch_max_entries=_int_env("BATCH_MAX_ENTRIES", 10000, minimum=1, maximum=10000),
    )


__all__ = ["EngineConfig", "STORAGE_BACKENDS", "load_engine_config"]
