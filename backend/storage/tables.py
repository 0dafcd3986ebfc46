"""
Table registry: natural keys and serial columns for every persisted table.

Both storage adapters consult this registry, so an unknown table name can never
reach SQL composition and the in-memory store enforces the same uniqueness as
the database primary keys.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from .ports import UnknownTableError


@dataclass(frozen=True)
class TableSpec:
    name: str
    key: Tuple[str, ...]
    serial: Optional[str] = None


CLASSES = "classes"
MEMBERSHIPS = "memberships"
MEMBERSHIP_HISTORY = "membership_history"
DEPARTMENTS = "departments"
USERS = "users"
ASSIGNMENT_EDGES = "assignment_edges"
AUDIT_ENTRIES = "audit_entries"

TABLES: Mapping[str, TableSpec] = {
    # class_id, teacher_id, institution_id, department_id, title
    CLASSES: TableSpec(CLASSES, ("class_id",)),
    # current membership per (class, student); status active|removed
    MEMBERSHIPS: TableSpec(MEMBERSHIPS, ("class_id", "student_id")),
    # removed records archived on re-enrollment
    MEMBERSHIP_HISTORY: TableSpec(MEMBERSHIP_HISTORY, ("history_id",), serial="history_id"),
    DEPARTMENTS: TableSpec(DEPARTMENTS, ("department_id",)),
    # user_id, role, institution_id, department_id
    USERS: TableSpec(USERS, ("user_id",)),
    # one edge per teacher per institution
    ASSIGNMENT_EDGES: TableSpec(ASSIGNMENT_EDGES, ("institution_id", "user_id")),
    AUDIT_ENTRIES: TableSpec(AUDIT_ENTRIES, ("id",), serial="id"),
}


def table_spec(name: str) -> TableSpec:
    spec = TABLES.get(name)
    if spec is None:
        raise UnknownTableError(name)
    return spec


__all__ = [
    "TableSpec",
    "TABLES",
    "table_spec",
    "CLASSES",
    "MEMBERSHIPS",
    "MEMBERSHIP_HISTORY",
    "DEPARTMENTS",
    "USERS",
    "ASSIGNMENT_EDGES",
    "AUDIT_ENTRIES",
]
