"""
Identity & scope resolution - per-request principal, role changes apply immediately.
"""
from __future__ import annotations

import pytest

from backend.errors import Unauthenticated
from backend.identity_access.context import (
    DepartmentScope,
    GlobalScope,
    InstitutionScope,
    ScopeResolver,
    SelfScope,
)
from backend.identity_access.domain import Principal, Role
from backend.identity_access.stores import DirectoryPrincipalProvider, SessionStore
from backend.storage.tables import USERS


def _resolver(storage):
    sessions = SessionStore()
    return sessions, ScopeResolver(DirectoryPrincipalProvider(sessions, storage))


@pytest.mark.parametrize(
    "user_id,expected",
    [
        ("admin-1", GlobalScope()),
        ("ia-a", InstitutionScope("inst-a")),
        ("da-math", DepartmentScope("inst-a", "dept-math")),
        ("t-anna", SelfScope("t-anna")),
        ("s-1", SelfScope("s-1")),
    ],
)
def test_scope_lattice_per_role(storage, user_id, expected):
    sessions, resolver = _resolver(storage)
    sess = sessions.create(sub=user_id)
    ctx = resolver.resolve(sess.session_id)
    assert ctx.scope == expected
    assert ctx.actor_id == user_id


def test_missing_or_unknown_session_is_unauthenticated(storage):
    _, resolver = _resolver(storage)
    with pytest.raises(Unauthenticated):
        resolver.resolve(None)
    with pytest.raises(Unauthenticated):
        resolver.resolve("   ")
    with pytest.raises(Unauthenticated):
        resolver.resolve("no-such-session")


def test_expired_session_is_unauthenticated(storage):
    sessions, resolver = _resolver(storage)
    sess = sessions.create(sub="t-anna", ttl_seconds=-1)
    with pytest.raises(Unauthenticated):
        resolver.resolve(sess.session_id)


def test_session_for_user_missing_from_directory(storage):
    sessions, resolver = _resolver(storage)
    sess = sessions.create(sub="ghost")
    with pytest.raises(Unauthenticated):
        resolver.resolve(sess.session_id)


def test_role_change_takes_effect_on_next_resolve(storage):
    sessions, resolver = _resolver(storage)
    sess = sessions.create(sub="t-ben")
    assert resolver.resolve(sess.session_id).role is Role.TEACHER

    storage.update(USERS, {"user_id": "t-ben"}, {"role": "student"})

    ctx = resolver.resolve(sess.session_id)
    assert ctx.role is Role.STUDENT
    assert ctx.scope == SelfScope("t-ben")


def test_malformed_directory_row_is_invalid_principal(storage):
    sessions, resolver = _resolver(storage)
    storage.insert(USERS, {"user_id": "x-1", "role": "superuser", "institution_id": "inst-a", "department_id": None})
    storage.insert(USERS, {"user_id": "x-2", "role": "department_admin", "institution_id": "inst-a", "department_id": None})
    for sub in ("x-1", "x-2"):
        sess = sessions.create(sub=sub)
        with pytest.raises(Unauthenticated) as exc:
            resolver.resolve(sess.session_id)
        assert exc.value.code == "invalid_principal"


def test_principal_from_claims_normalizes_role_and_ids():
    p = Principal.from_claims(id=" t-1 ", role="Teacher", institution_id="inst-a", department_id="  ")
    assert p == Principal(id="t-1", role=Role.TEACHER, institution_id="inst-a", department_id=None)
    with pytest.raises(ValueError):
        Principal.from_claims(id="t-1", role="teacher", institution_id="")
