"""CSV upload -> RoleChangeBatch with per-row validation errors.

Columns (header names are matched case-insensitively, ignoring `_` and spaces):
    user_id, role            required
    institution_id,          optional
    department_id

Limits: 10 MiB of text and 10 000 data rows; beyond that the whole file is
rejected with `InvalidInput` before anything is applied. Invalid rows are
reported and skipped; the valid rows form the batch.
"""

from __future__ import annotations

import csv
from dataclasses import dataclass, field
import io
from typing import List, Optional, Tuple

from backend.errors import InvalidInput
from backend.identity_access.domain import parse_role

from .batch import RoleChangeBatch, RoleChangeRequest

MAX_FILE_BYTES = 10 * 1024 * 1024
MAX_ROWS = 10000

REQUIRED_COLUMNS = ("user_id", "role")
OPTIONAL_COLUMNS = ("institution_id", "department_id")


@dataclass(frozen=True)
class RowError:
    line: int
    field: str
    code: str

    def to_public(self) -> dict:
        return {"line": self.line, "field": self.field, "code": self.code}


@dataclass(frozen=True)
class ParsedBatch:
    batch: RoleChangeBatch
    errors: Tuple[RowError, ...] = field(default_factory=tuple)


def _normalize_header(value: str) -> str:
    return value.strip().lower().replace("_", "").replace(" ", "")


_HEADER_ALIASES = {_normalize_header(c): c for c in REQUIRED_COLUMNS + OPTIONAL_COLUMNS}


def _cell(row: List[str], index: Optional[int]) -> Optional[str]:
    if index is None or index >= len(row):
        return None
    value = row[index].strip()
    return value or None


def parse_batch_csv(text: str, requester_id: str, *, max_rows: int = MAX_ROWS) -> ParsedBatch:
    if not isinstance(text, str) or not text.strip():
        raise InvalidInput("empty_file")
    if len(text.encode("utf-8")) > MAX_FILE_BYTES:
        raise InvalidInput("file_too_large")

    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    try:
        header = next(reader)
    except StopIteration:
        raise InvalidInput("empty_file")
    columns = {}
    for i, name in enumerate(header):
        canonical = _HEADER_ALIASES.get(_normalize_header(name))
        if canonical is None:
            raise InvalidInput("unknown_column")
        columns[canonical] = i
    missing = [c for c in REQUIRED_COLUMNS if c not in columns]
    if missing:
        raise InvalidInput("missing_columns", detail=", ".join(missing))

    entries: List[RoleChangeRequest] = []
    errors: List[RowError] = []
    data_rows = 0
    for row in reader:
        if not any(cell.strip() for cell in row):
            continue
        data_rows += 1
        if data_rows > max_rows:
            raise InvalidInput("too_many_rows")
        line = reader.line_num
        user_id = _cell(row, columns["user_id"])
        raw_role = _cell(row, columns["role"])
        if user_id is None:
            errors.append(RowError(line, "user_id", "missing_user_id"))
            continue
        role = parse_role(raw_role)
        if role is None:
            errors.append(RowError(line, "role", "invalid_role"))
            continue
        entries.append(
            RoleChangeRequest(
                target_user_id=user_id,
                requested_role=role,
                institution_id=_cell(row, columns.get("institution_id")),
                department_id=_cell(row, columns.get("department_id")),
            )
        )
    return ParsedBatch(batch=RoleChangeBatch(requester_id=requester_id, entries=tuple(entries)), errors=tuple(errors))


__all__ = ["MAX_ROWS", "MAX_FILE_BYTES", "RowError", "ParsedBatch", "parse_batch_csv"]
