"""
Identity & scope resolution: session token -> CallerContext.

Why:
    Authorization needs more than a role: it needs the set of tenant entities
    the caller may act on. This module maps the principal's role and
    affiliation into the scope lattice consumed by the gate.

Behavior:
    - admin -> GlobalScope
    - institution_admin -> InstitutionScope(institution)
    - department_admin -> DepartmentScope(institution, department)
    - teacher, student -> SelfScope(user)
    - Nothing is cached: every `resolve` call asks the provider again, so a
      role changed mid-session takes effect on the next request.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Union

from backend.errors import Unauthenticated

from .domain import Principal, Role, rank


@dataclass(frozen=True)
class GlobalScope:
    pass


@dataclass(frozen=True)
class InstitutionScope:
    institution_id: str


@dataclass(frozen=True)
class DepartmentScope:
    institution_id: str
    department_id: str


@dataclass(frozen=True)
class SelfScope:
    user_id: str


Scope = Union[GlobalScope, InstitutionScope, DepartmentScope, SelfScope]


def scope_for(principal: Principal) -> Scope:
    role = principal.role
    if role is Role.ADMIN:
        return GlobalScope()
    if role is Role.INSTITUTION_ADMIN:
        return InstitutionScope(principal.institution_id)
    if role is Role.DEPARTMENT_ADMIN:
        if not principal.department_id:
            raise Unauthenticated("invalid_principal")
        return DepartmentScope(principal.institution_id, principal.department_id)
    if role in (Role.TEACHER, Role.STUDENT):
        return SelfScope(principal.id)
    raise Unauthenticated("invalid_principal")  # pragma: no cover - closed enum


@dataclass(frozen=True)
class CallerContext:
    principal: Principal
    scope: Scope

    @property
    def actor_id(self) -> str:
        return self.principal.id

    @property
    def role(self) -> Role:
        return self.principal.role

    @property
    def rank(self) -> int:
        return rank(self.principal.role)


def context_for(principal: Principal) -> CallerContext:
    return CallerContext(principal=principal, scope=scope_for(principal))


class IdentityProviderProtocol(Protocol):
    def get_authenticated_principal(self, token: str) -> Optional[Principal]:
        ...


class ScopeResolver:
    """Resolve a CallerContext per request from the identity provider."""

    def __init__(self, provider: IdentityProviderProtocol) -> None:
        self._provider = provider

    def resolve(self, session_token: Optional[str]) -> CallerContext:
        if not isinstance(session_token, str) or not session_token.strip():
            raise Unauthenticated()
        try:
            principal = self._provider.get_authenticated_principal(session_token)
        except ValueError as exc:
            raise Unauthenticated("invalid_principal") from exc
        if principal is None:
            raise Unauthenticated()
        return context_for(principal)


__all__ = [
    "GlobalScope",
    "InstitutionScope",
    "DepartmentScope",
    "SelfScope",
    "Scope",
    "scope_for",
    "CallerContext",
    "context_for",
    "IdentityProviderProtocol",
    "ScopeResolver",
]
