"""
Tenant predicate for conditional writes.

Every mutation carries an institution id in its WHERE clause, so a write can
never land in another tenant even if a lookup raced with a concurrent change.
Scoped callers always write within their own institution; a Global caller
writes within the target's institution.
"""
from __future__ import annotations

from typing import Dict, Optional

from backend.identity_access.context import CallerContext, GlobalScope


def tenant_id_for_write(ctx: CallerContext, target_institution_id: Optional[str]) -> Optional[str]:
    if isinstance(ctx.scope, GlobalScope):
        return target_institution_id
    return ctx.principal.institution_id


def tenant_predicate(ctx: CallerContext, target_institution_id: Optional[str]) -> Dict[str, Optional[str]]:
    return {"institution_id": tenant_id_for_write(ctx, target_institution_id)}


__all__ = ["tenant_id_for_write", "tenant_predicate"]
