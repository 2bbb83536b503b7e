"""
Row validation against a template's required fields.

Splits data rows into usable rows and defective rows. A defective row keeps
its 1-based row number and the names of the fields it lacks.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from docbatch.templates.placeholders import field_key


class MissingValuePolicy(str, Enum):
    """Which values count as "missing" for a required field.

    NULL_ONLY: absent or None. ``0``, ``False`` and ``""`` are present,
        matching spreadsheet semantics where a blank cell is still a cell.
    BLANK_IS_MISSING: additionally treats empty/whitespace-only strings as
        missing.
    """
    NULL_ONLY = "null_only"
    BLANK_IS_MISSING = "blank_is_missing"


@dataclass
class ValidRow:
    row_number: int
    data: Dict[str, Any]


@dataclass
class InvalidRow:
    row_number: int
    data: Dict[str, Any]
    missing_fields: List[str]

    @property
    def reason(self) -> str:
        return "missing fields: " + ", ".join(self.missing_fields)


@dataclass
class RowValidationResult:
    valid_rows: List[ValidRow] = field(default_factory=list)
    invalid_rows: List[InvalidRow] = field(default_factory=list)

    @property
    def total_rows(self) -> int:
        return len(self.valid_rows) + len(self.invalid_rows)

    @property
    def has_valid_rows(self) -> bool:
        return bool(self.valid_rows)


def is_missing(row: Mapping[str, Any], name: str, policy: MissingValuePolicy) -> bool:
    """Apply ``policy`` to field ``name`` of ``row`` (case-insensitive lookup)."""
    key = field_key(name)
    for column, value in row.items():
        if field_key(column) != key:
            continue
        if value is None:
            return True
        if policy == MissingValuePolicy.BLANK_IS_MISSING and isinstance(value, str):
            return value.strip() == ""
        return False
    return True


def validate_rows(
    rows: Sequence[Mapping[str, Any]],
    required_fields: Iterable[str],
    policy: MissingValuePolicy = MissingValuePolicy.NULL_ONLY,
) -> RowValidationResult:
    """Classify each row as valid or invalid; row numbers start at 1."""
    required = sorted(set(required_fields), key=field_key)
    result = RowValidationResult()
    for index, row in enumerate(rows, start=1):
        missing = [name for name in required if is_missing(row, name, policy)]
        if missing:
            result.invalid_rows.append(
                InvalidRow(row_number=index, data=dict(row), missing_fields=missing)
            )
        else:
            result.valid_rows.append(ValidRow(row_number=index, data=dict(row)))
    return result
