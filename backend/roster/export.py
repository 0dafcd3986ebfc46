"""Roster export renderers (CSV and JSON).

Pure functions over already-authorized records; the gate runs in
`RosterService.export_roster` before anything is rendered.
"""

from __future__ import annotations

import csv
import io
import json
from typing import Iterable

from .service import ClassRoster, MembershipRecord

EXPORT_FORMATS = frozenset({"csv", "json"})

CSV_COLUMNS = ("class_id", "student_id", "status", "joined_at", "removed_at", "removed_by", "reason")

# Spreadsheet apps evaluate cells starting with these as formulas.
FORMULA_PREFIXES = ("=", "+", "-", "@", "\t", "\r")


def _cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, str) and value.startswith(FORMULA_PREFIXES):
        return "'" + value
    return value


def render_csv(records: Iterable[MembershipRecord]) -> str:
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=list(CSV_COLUMNS), lineterminator="\n")
    writer.writeheader()
    for record in records:
        writer.writerow({k: _cell(v) for k, v in record.to_public().items()})
    return buf.getvalue()


def render_json(roster: ClassRoster, records: Iterable[MembershipRecord]) -> str:
    payload = {
        "class_id": roster.class_id,
        "title": roster.title,
        "teacher_id": roster.teacher_id,
        "members": [r.to_public() for r in records],
    }
    return json.dumps(payload, ensure_ascii=False)


def render(fmt: str, roster: ClassRoster, records: list[MembershipRecord]) -> str:
    if fmt == "csv":
        return render_csv(records)
    if fmt == "json":
        return render_json(roster, records)
    raise ValueError("invalid_format")


__all__ = ["EXPORT_FORMATS", "CSV_COLUMNS", "render_csv", "render_json", "render"]
