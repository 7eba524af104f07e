"""Workbook ingestion toolkit package."""

from .errors import (
    DurabilityError,
    IngestionError,
    TableCountMismatchError,
    TableNameCollisionError,
    WorkbookParseError,
)
from .naming import SOURCE_ALIAS, build_table_name, sanitize_column_name, workbook_hash
from .pipeline import IngestionResult, SheetInfo, WorkbookIngestor, WorkbookMetadata
from .schema import SchemaDescriber

__all__ = [
    "DurabilityError",
    "IngestionError",
    "TableCountMismatchError",
    "TableNameCollisionError",
    "WorkbookParseError",
    "SOURCE_ALIAS",
    "build_table_name",
    "sanitize_column_name",
    "workbook_hash",
    "IngestionResult",
    "SheetInfo",
    "WorkbookIngestor",
    "WorkbookMetadata",
    "SchemaDescriber",
]
