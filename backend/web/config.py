"""
Configuration and startup security checks for Klassenbuch.

Why: Roster and role data of minors must never land in a throwaway in-memory
store or travel over an unencrypted database connection in production. This
module provides a single guard that enforces minimal production safety
constraints without burdening local development.

Permissions: The caller needs no special privileges. The function simply reads
environment variables and raises `SystemExit` on fatal misconfiguration.
"""
from __future__ import annotations

import os

from backend.storage.config import load_engine_config


def _is_prod_like(env: str) -> bool:
    env_l = (env or "").lower()
    return env_l in {"prod", "production", "stage", "staging"}


def ensure_secure_config_on_startup() -> None:
    """Fail fast on insecure or invalid configuration.

    Checks (all environments):
    - Engine variables (timeouts, batch limits, backend) parse and are in range.

    Checks (prod-like environments only):
    - STORAGE_BACKEND must be `postgres`; the in-memory store loses all state.
    - DATABASE_URL must be set and must not disable TLS.
    """
    try:
        cfg = load_engine_config()
    except ValueError as exc:
        raise SystemExit(f"Refusing to start: {exc}")

    env = os.getenv("KLASSENBUCH_ENV", "dev")
    if not _is_prod_like(env):
        return  # dev/test remain permissive

    if cfg.storage_backend != "postgres":
        raise SystemExit(
            "Refusing to start: STORAGE_BACKEND=memory is not allowed in production/staging."
        )

    dsn = (os.getenv("DATABASE_URL") or os.getenv("KLASSENBUCH_DATABASE_URL") or "").strip()
    if not dsn:
        raise SystemExit("Refusing to start: DATABASE_URL is required in production/staging.")
    if "sslmode=disable" in dsn:
        raise SystemExit(
            "Refusing to start: DATABASE_URL contains sslmode=disable in production. Use sslmode=require or verify TLS."
        )
