"""
In-memory SessionStore and the directory-backed principal provider.

Why: Cookies carry only an opaque session id. The session proves who the
caller is (`sub`); role and affiliation are read from the user directory on
every request so a role change applies immediately and is never trusted from
a request body. For production, replace the session store with a DB-backed one.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional
import secrets
import time

from backend.storage.ports import StorageSession
from backend.storage.tables import USERS

from .domain import Principal


def _now() -> int:
    return int(time.time())


@dataclass
class SessionRecord:
    session_id: str
    sub: str
    name: str
    expires_at: Optional[int] = None


class SessionStore:
    def __init__(self):
        self._data: Dict[str, SessionRecord] = {}

    def create(self, *, sub: str, name: str = "", ttl_seconds: int = 3600) -> SessionRecord:
        sid = secrets.token_urlsafe(24)
        rec = SessionRecord(session_id=sid, sub=sub, name=name, expires_at=_now() + ttl_seconds)
        self._data[sid] = rec
        return rec

    def get(self, session_id: str) -> Optional[SessionRecord]:
        rec = self._data.get(session_id)
        if not rec:
            return None
        if rec.expires_at and rec.expires_at < _now():
            self._data.pop(session_id, None)
            return None
        return rec

    def delete(self, session_id: str) -> None:
        self._data.pop(session_id, None)


class DirectoryPrincipalProvider:
    """Identity provider port: session id -> Principal from the `users` table.

    Returns None for unknown/expired sessions and for subs missing from the
    directory; raises ValueError("invalid_principal") for malformed rows.
    """

    def __init__(self, sessions: SessionStore, directory: StorageSession) -> None:
        self._sessions = sessions
        self._directory = directory

    def get_authenticated_principal(self, token: str) -> Optional[Principal]:
        rec = self._sessions.get(token)
        if rec is None:
            return None
        row = self._directory.get(USERS, {"user_id": rec.sub})
        if row is None:
            return None
        return Principal.from_claims(
            id=row.get("user_id"),
            role=row.get("role"),
            institution_id=row.get("institution_id"),
            department_id=row.get("department_id"),
        )


__all__ = ["SessionRecord", "SessionStore", "DirectoryPrincipalProvider"]
