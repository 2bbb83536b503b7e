"""Data set parsing: CSV or JSON bytes into an ordered list of row dicts."""

import csv
import io
import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

from docbatch.errors import ValidationError

logger = logging.getLogger(__name__)

_DELIMITERS = ",;\t|"
_ENCODINGS = ("utf-8-sig", "cp1252", "latin-1")

SUPPORTED_DATA_EXTENSIONS = (".csv", ".tsv", ".json")


def parse_data_set(filename: str, raw: bytes, max_rows: Optional[int] = None) -> List[Dict[str, Any]]:
    """Parse an uploaded data file, dispatching on its extension."""
    ext = os.path.splitext(filename or "")[1].lower()
    if ext == ".json":
        rows = _parse_json(raw)
    elif ext in (".csv", ".tsv"):
        rows = _parse_csv(_decode(raw))
    else:
        raise ValidationError(
            f"Unsupported data file type '{ext or filename}'. "
            f"Allowed: {', '.join(SUPPORTED_DATA_EXTENSIONS)}"
        )
    return normalize_rows(rows, max_rows=max_rows)


def normalize_rows(rows: Any, max_rows: Optional[int] = None) -> List[Dict[str, Any]]:
    """Check the shape of already-decoded rows and copy them into plain dicts."""
    if not isinstance(rows, list):
        raise ValidationError("Data set must be a list of rows")
    if not rows:
        raise ValidationError("Data set contains no data rows")
    if max_rows is not None and len(rows) > max_rows:
        raise ValidationError(f"Data set has {len(rows)} rows; the maximum is {max_rows}")

    errors = []
    normalized: List[Dict[str, Any]] = []
    for index, row in enumerate(rows, start=1):
        if not isinstance(row, dict):
            errors.append(f"row {index}: expected an object, got {type(row).__name__}")
            continue
        bad = [k for k, v in row.items() if isinstance(v, (dict, list))]
        if bad:
            errors.append(f"row {index}: nested values are not supported ({', '.join(bad)})")
            continue
        normalized.append({str(k).strip(): v for k, v in row.items()})
    if errors:
        raise ValidationError("Malformed data set", details=errors)
    return normalized


def _decode(raw: bytes) -> str:
    for encoding in _ENCODINGS:
        try:
            return raw.decode(encoding)
        except UnicodeDecodeError:
            continue
    raise ValidationError("Data file is not valid text")


def _parse_json(raw: bytes) -> Any:
    try:
        data = json.loads(_decode(raw))
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Data file is not valid JSON: {exc.msg} (line {exc.lineno})")
    if isinstance(data, dict) and isinstance(data.get("rows"), list):
        return data["rows"]
    return data


def _sniff_delimiter(text: str) -> str:
    sample = "\n".join(text.splitlines()[:20])
    try:
        return csv.Sniffer().sniff(sample, delimiters=_DELIMITERS).delimiter
    except csv.Error:
        return ","


def _parse_csv(text: str) -> List[Dict[str, Any]]:
    reader = csv.reader(io.StringIO(text), delimiter=_sniff_delimiter(text))
    records: List[Sequence[str]] = []
    line_numbers: List[int] = []
    try:
        for record in reader:
            if not any(cell.strip() for cell in record):
                continue
            records.append(record)
            line_numbers.append(reader.line_num)
    except csv.Error as exc:
        raise ValidationError(f"Malformed CSV at line {reader.line_num}: {exc}")

    if not records:
        raise ValidationError("Data set is empty")

    header = [cell.strip() for cell in records[0]]
    if any(not name for name in header):
        raise ValidationError("CSV header contains an empty column name")
    duplicates = sorted({name for name in header if header.count(name) > 1})
    if duplicates:
        raise ValidationError(f"CSV header has duplicate columns: {', '.join(duplicates)}")

    errors = []
    rows: List[Dict[str, Any]] = []
    for record, line in zip(records[1:], line_numbers[1:]):
        if len(record) != len(header):
            errors.append(f"line {line}: expected {len(header)} columns, found {len(record)}")
            continue
        rows.append({name: value.strip() for name, value in zip(header, record)})
    if errors:
        logger.info("CSV rejected with %d malformed lines", len(errors))
        raise ValidationError("Inconsistent column counts in data set", details=errors)
    if not rows:
        raise ValidationError("Data set contains no data rows")
    return rows
