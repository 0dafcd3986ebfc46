"""
Engine wiring for the web adapter.

Why:
    Routes need one consistent set of services sharing the same storage and
    audit log. The engine is built lazily from the environment on first use;
    tests call `set_engine(build_engine(storage=MemoryStorage(), ...))` to
    swap it.

Backends:
    STORAGE_BACKEND=memory (default) uses the in-memory store; `postgres` uses
    psycopg with a per-transaction statement timeout equal to the storage
    call timeout.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Callable, Optional

from backend.assignments.batch import RoleBatchService
from backend.assignments.service import AssignmentService
from backend.audit.history import AuditHistoryService
from backend.audit.log import AuditLog
from backend.enrollment.dashboard import DashboardService
from backend.enrollment.ports import ActivityProvider, ScheduleProvider
from backend.identity_access.context import ScopeResolver
from backend.identity_access.stores import DirectoryPrincipalProvider, SessionStore
from backend.roster.service import RosterService
from backend.storage.config import EngineConfig, load_engine_config
from backend.storage.memory import MemoryStorage
from backend.storage.ports import StorageProtocol

logger = logging.getLogger("klassenbuch.web")


@dataclass
class Engine:
    config: EngineConfig
    storage: StorageProtocol
    sessions: SessionStore
    resolver: ScopeResolver
    audit: AuditLog
    roster: RosterService
    assignments: AssignmentService
    batches: RoleBatchService
    dashboard: DashboardService
    audit_history: AuditHistoryService


def _storage_for(config: EngineConfig) -> StorageProtocol:
    if config.storage_backend == "postgres":
        from backend.storage.postgres import PostgresStorage

        return PostgresStorage(statement_timeout_ms=config.storage_call_timeout_ms)
    return MemoryStorage()


def build_engine(
    config: Optional[EngineConfig] = None,
    *,
    storage: Optional[StorageProtocol] = None,
    sessions: Optional[SessionStore] = None,
    activity: Optional[ActivityProvider] = None,
    schedule: Optional[ScheduleProvider] = None,
    clock: Optional[Callable[[], str]] = None,
) -> Engine:
    cfg = config or load_engine_config()
    store = storage if storage is not None else _storage_for(cfg)
    session_store = sessions or SessionStore()
    audit = AuditLog(store, clock=clock)
    return Engine(
        config=cfg,
        storage=store,
        sessions=session_store,
        resolver=ScopeResolver(DirectoryPrincipalProvider(session_store, store)),
        audit=audit,
        roster=RosterService(store, audit, config=cfg, clock=clock),
        assignments=AssignmentService(store, audit, config=cfg, clock=clock),
        batches=RoleBatchService(store, audit, config=cfg, clock=clock),
        dashboard=DashboardService(store, audit, config=cfg, activity=activity, schedule=schedule),
        audit_history=AuditHistoryService(audit, config=cfg),
    )


_ENGINE: Optional[Engine] = None


def get_engine() -> Engine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = build_engine()
        logger.info("engine wired backend=%s", _ENGINE.config.storage_backend)
    return _ENGINE


def set_engine(engine: Optional[Engine]) -> None:
    """Allow tests to swap the wired services (None resets to lazy wiring)."""
    global _ENGINE
    _ENGINE = engine


__all__ = ["Engine", "build_engine", "get_engine", "set_engine"]
