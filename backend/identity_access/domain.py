"""
Identity domain: the closed role set, its rank table and the Principal snapshot.

Why:
- Centralize allowed roles to avoid drift between the gate, the services and
  the web layer.
- Ranks are an explicit table, never string comparison, so escalation checks
  are total over every role.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    DEPARTMENT_ADMIN = "department_admin"
    INSTITUTION_ADMIN = "institution_admin"
    ADMIN = "admin"


# Strict total order; higher outranks lower. Immutable to prevent accidental mutation.
ROLE_RANKS: Mapping[Role, int] = MappingProxyType(
    {
        Role.STUDENT: 0,
        Role.TEACHER: 1,
        Role.DEPARTMENT_ADMIN: 2,
        Role.INSTITUTION_ADMIN: 3,
        Role.ADMIN: 4,
    }
)

ALLOWED_ROLES = frozenset(r.value for r in Role)

# Roles that are meaningless without a department attachment.
ROLES_REQUIRING_DEPARTMENT = frozenset({Role.DEPARTMENT_ADMIN})


def rank(role: Role) -> int:
    return ROLE_RANKS[role]


def parse_role(value: object) -> Optional[Role]:
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    try:
        return Role(value.strip().lower())
    except ValueError:
        return None


@dataclass(frozen=True)
class Principal:
    """Authenticated caller as reported by the identity provider (per request)."""

    id: str
    role: Role
    institution_id: str
    department_id: Optional[str] = None

    @classmethod
    def from_claims(
        cls,
        *,
        id: object,
        role: object,
        institution_id: object,
        department_id: object = None,
    ) -> "Principal":
        """Validate raw provider claims; raises ValueError("invalid_principal")."""
        parsed = parse_role(role)
        if parsed is None:
            raise ValueError("invalid_principal")
        if not isinstance(id, str) or not id.strip():
            raise ValueError("invalid_principal")
        if not isinstance(institution_id, str) or not institution_id.strip():
            raise ValueError("invalid_principal")
        dept = department_id.strip() if isinstance(department_id, str) and department_id.strip() else None
        if parsed in ROLES_REQUIRING_DEPARTMENT and dept is None:
            raise ValueError("invalid_principal")
        return cls(id=id.strip(), role=parsed, institution_id=institution_id.strip(), department_id=dept)


__all__ = [
    "Role",
    "ROLE_RANKS",
    "ALLOWED_ROLES",
    "ROLES_REQUIRING_DEPARTMENT",
    "rank",
    "parse_role",
    "Principal",
]
