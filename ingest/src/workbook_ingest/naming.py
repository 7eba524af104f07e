"""Identifier derivation shared by ingestion and query-time prompts."""

from __future__ import annotations

import hashlib
import re
import unicodedata
from typing import Iterable

SOURCE_ALIAS = "source_db"
TABLE_PREFIX = "sheet_"
NUMERIC_PREFIX = "col_"
EMPTY_HEADER_MARKER = "__EMPTY"

_NON_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(value: object) -> str:
    """Lower-case ASCII slug using ``_`` as the only separator."""

    normalized = unicodedata.normalize("NFKD", str(value))
    ascii_text = normalized.encode("ascii", "ignore").decode("ascii").lower()
    return _NON_SLUG_RE.sub("_", ascii_text).strip("_")


def sanitize_column_name(raw_header: object) -> str:
    """Map spreadsheet header text to a stable column identifier.

    The mapping is idempotent: sanitizing an already sanitized name returns it
    unchanged, including names that already carry the numeric prefix.
    """

    slug = slugify(raw_header) or "column"
    if slug[0].isdigit():
        slug = f"{NUMERIC_PREFIX}{slug}"
    return slug


def build_table_name(sheet_name: object) -> str:
    """Derive the table identifier for a worksheet."""

    return f"{TABLE_PREFIX}{slugify(sheet_name)}"


def workbook_hash(file_id: str) -> str:
    """Short deterministic identifier for the database built from ``file_id``."""

    return hashlib.sha256(file_id.encode("utf-8")).hexdigest()[:12]


def is_placeholder_header(header: str | None) -> bool:
    return not header or header.startswith(EMPTY_HEADER_MARKER)


def deduplicate_names(names: Iterable[str]) -> list[str]:
    """Suffix repeated names with ``_1``, ``_2``... keeping first-seen order."""

    used: set[str] = set()
    result: list[str] = []
    for name in names:
        candidate = name
        counter = 1
        while candidate in used:
            candidate = f"{name}_{counter}"
            counter += 1
        used.add(candidate)
        result.append(candidate)
    return result


def quote_identifier(name: str) -> str:
    """Quote an identifier for interpolation into DuckDB statements."""

    return '"' + name.replace('"', '""') + '"'
