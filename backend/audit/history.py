"""Gated read of a target's audit trail (history reconstruction).

Institution admins read trails within their institution, admins read all.
A denial is itself recorded.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from backend.authorization.gate import Action, Deny, TargetScope, check
from backend.errors import Forbidden, InvalidInput, MissingTarget
from backend.identity_access.context import CallerContext
from backend.storage.calls import call_storage_read
from backend.storage.config import EngineConfig

from .log import AuditEntry, AuditLog, Outcome

logger = logging.getLogger("klassenbuch.audit")


class AuditHistoryService:
    def __init__(self, audit: AuditLog, *, config: EngineConfig | None = None) -> None:
        self._audit = audit
        self._config = config or EngineConfig()

    async def get_history(
        self, target_id: str, ctx: CallerContext, *, target_type: Optional[str] = None
    ) -> List[AuditEntry]:
        if not isinstance(target_id, str) or not target_id.strip():
            raise InvalidInput("missing_target")
        return await call_storage_read(
            self._history_unit,
            ctx,
            target_id.strip(),
            target_type,
            timeout=self._config.storage_call_timeout_seconds,
            backoff=self._config.read_retry_backoff_seconds,
        )

    def _history_unit(self, ctx: CallerContext, target_id: str, target_type: Optional[str]) -> List[AuditEntry]:
        entries = self._audit.history(target_id, target_type=target_type)
        if not entries:
            raise MissingTarget("audit_history_not_found")
        for institution_id in sorted({e.institution_id or "" for e in entries}):
            decision = check(ctx, Action.AUDIT_READ, TargetScope(institution_id or None))
            if isinstance(decision, Deny):
                self._audit.record(
                    AuditEntry(
                        actor_id=ctx.actor_id,
                        action=Action.AUDIT_READ.value,
                        target_type=entries[0].target_type,
                        target_id=target_id,
                        outcome=Outcome.DENIED,
                        reason=decision.reason.value,
                        institution_id=institution_id or None,
                    )
                )
                logger.info(
                    "audit read denied actor_tail=%s reason=%s",
                    ctx.actor_id[-6:],
                    decision.reason.value,
                )
                raise Forbidden(decision.reason.value)
        return entries


__all__ = ["AuditHistoryService"]
