"""Spreadsheet parsing built on openpyxl."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time
from io import BytesIO
from typing import Any, Iterable, Sequence
from zipfile import BadZipFile

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from ..errors import WorkbookParseError
from ..naming import EMPTY_HEADER_MARKER


@dataclass(slots=True)
class ParsedSheet:
    name: str
    headers: list[str] = field(default_factory=list)
    rows: list[dict[str, str | None]] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.rows


def parse_workbook(content: bytes) -> list[ParsedSheet]:
    """Parse workbook bytes into ordered sheets of header-keyed rows.

    The first non-blank row of each worksheet is the header row. Unnamed
    header cells are labelled ``__EMPTY``, ``__EMPTY_1``, ... and fully blank
    data rows are dropped.
    """

    try:
        workbook = openpyxl.load_workbook(BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, BadZipFile, KeyError, OSError, ValueError) as exc:
        raise WorkbookParseError(f"Unable to read workbook: {exc}") from exc

    try:
        return [
            _parse_sheet(worksheet.title, worksheet.iter_rows(values_only=True))
            for worksheet in workbook.worksheets
        ]
    finally:
        workbook.close()


def _parse_sheet(name: str, raw_rows: Iterable[Sequence[Any]]) -> ParsedSheet:
    rows = [[_cell_text(value) for value in raw] for raw in raw_rows]

    header_index = next((index for index, row in enumerate(rows) if not _is_blank(row)), None)
    if header_index is None:
        return ParsedSheet(name=name)

    width = max(len(row) for row in rows[header_index:])
    headers = _label_headers(rows[header_index], width)

    records: list[dict[str, str | None]] = []
    for row in rows[header_index + 1 :]:
        if _is_blank(row):
            continue
        padded = list(row) + [None] * (width - len(row))
        records.append(dict(zip(headers, padded)))

    return ParsedSheet(name=name, headers=headers, rows=records)


def _label_headers(header_row: Sequence[str | None], width: int) -> list[str]:
    raw = [header_row[index] if index < len(header_row) else None for index in range(width)]
    # Explicit header text is reserved so generated suffixes never reuse it.
    reserved = {value for value in raw if value is not None}
    issued: set[str] = set()
    counters: dict[str, int] = {}
    labels: list[str] = []
    for value in raw:
        if value is not None and value not in issued:
            label = value
        else:
            base = value if value is not None else EMPTY_HEADER_MARKER
            count = counters.get(base, 0)
            label = base if count == 0 else f"{base}_{count}"
            while label in issued or label in reserved:
                count += 1
                label = f"{base}_{count}"
            counters[base] = count + 1
        issued.add(label)
        labels.append(label)
    return labels


def _is_blank(row: Sequence[str | None]) -> bool:
    return all(value is None for value in row)


def _cell_text(value: Any) -> str | None:
    """Render a cell value the way the spreadsheet displays it."""

    if value is None:
        return None
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat(sep=" ")
    if isinstance(value, (date, time)):
        return value.isoformat()

    text = str(value)
    return text if text.strip() else None
