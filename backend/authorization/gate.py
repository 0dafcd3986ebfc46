"""
Authorization gate: the single allow/deny decision for every gated operation.

Why:
    Hierarchy and scope rules are defined once and tested once. Services ask
    the gate, record the decision in the audit log and only then touch state.

Rules:
    - Allowed iff the caller's rank >= the action's minimum rank AND the
      caller's scope contains the target.
    - Rank is checked first: a student trying to mutate anything is denied
      with `insufficient_role`, not `out_of_scope`.
    - Containment: Global contains everything; Institution(I) contains
      targets in I; Department(I, D) contains targets in (I, D); Self(U)
      contains only targets owned by U.
    - Teacher roster access is ownership: roster targets carry the class
      teacher as owner, and a teacher's scope is Self.

The function is pure: no I/O, no logging, no audit side effects.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional, Union

from backend.identity_access.context import (
    CallerContext,
    DepartmentScope,
    GlobalScope,
    InstitutionScope,
    Scope,
    SelfScope,
)
from backend.identity_access.domain import Role, rank


class Action(str, Enum):
    ROSTER_ADD = "roster.add_student"
    ROSTER_REMOVE = "roster.remove_student"
    ROSTER_READ = "roster.read"
    TEACHER_ASSIGN = "assignment.assign_teacher"
    TEACHER_UNASSIGN = "assignment.unassign_teacher"
    ROLE_ASSIGN = "role.assign"
    DASHBOARD_READ = "dashboard.read"
    AUDIT_READ = "audit.read"


MINIMUM_ROLE: Mapping[Action, Role] = MappingProxyType(
    {
        Action.ROSTER_ADD: Role.TEACHER,
        Action.ROSTER_REMOVE: Role.TEACHER,
        Action.ROSTER_READ: Role.TEACHER,
        Action.TEACHER_ASSIGN: Role.DEPARTMENT_ADMIN,
        Action.TEACHER_UNASSIGN: Role.DEPARTMENT_ADMIN,
        Action.ROLE_ASSIGN: Role.DEPARTMENT_ADMIN,
        Action.DASHBOARD_READ: Role.STUDENT,
        Action.AUDIT_READ: Role.INSTITUTION_ADMIN,
    }
)


class DenyReason(str, Enum):
    OUT_OF_SCOPE = "out_of_scope"
    INSUFFICIENT_ROLE = "insufficient_role"


@dataclass(frozen=True)
class TargetScope:
    """Tenant coordinates of the entity an action touches."""

    institution_id: Optional[str]
    department_id: Optional[str] = None
    owner_id: Optional[str] = None


@dataclass(frozen=True)
class Allow:
    allowed = True


@dataclass(frozen=True)
class Deny:
    reason: DenyReason
    allowed = False


Decision = Union[Allow, Deny]


def contains(scope: Scope, target: TargetScope) -> bool:
    if isinstance(scope, GlobalScope):
        return True
    if isinstance(scope, InstitutionScope):
        return target.institution_id is not None and target.institution_id == scope.institution_id
    if isinstance(scope, DepartmentScope):
        return (
            target.institution_id is not None
            and target.department_id is not None
            and (target.institution_id, target.department_id) == (scope.institution_id, scope.department_id)
        )
    if isinstance(scope, SelfScope):
        return target.owner_id is not None and target.owner_id == scope.user_id
    return False


def check(ctx: CallerContext, action: Action, target: TargetScope) -> Decision:
    if ctx.rank < rank(MINIMUM_ROLE[action]):
        return Deny(DenyReason.INSUFFICIENT_ROLE)
    if not contains(ctx.scope, target):
        return Deny(DenyReason.OUT_OF_SCOPE)
    return Allow()


__all__ = [
    "Action",
    "MINIMUM_ROLE",
    "DenyReason",
    "TargetScope",
    "Allow",
    "Deny",
    "Decision",
    "contains",
    "check",
]
