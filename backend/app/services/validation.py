"""Post-upload verification of workbook database files."""

from __future__ import annotations

import asyncio
import re
from pathlib import Path

import duckdb

from workbook_ingest.pipeline import WorkbookMetadata

from app.core.logging import get_logger
from app.models.files import ValidationIssue, ValidationResult, ValidationSchema, ValidationSummary
from app.services.query_engine import SchemaSnapshot, open_query_engine
from app.services.storage import BlobStore, StorageError, cleanup_temp_files, download_to_temp

logger = get_logger(__name__)

DEFAULT_COLUMN_TYPE = "VARCHAR"
_SCHEMA_LINE_RE = re.compile(r"- (\w+) \(([^)]+)\):")


def schema_from_metadata(
    metadata: WorkbookMetadata,
    table_columns: dict[str, list[str]] | None = None,
) -> ValidationSchema:
    """Build the expected schema for a metadata document.

    Column names and types are parsed from the generated descriptions, which
    are free text and may yield nothing. Column lists recorded at ingestion
    time take precedence when provided.
    """

    expected = ValidationSchema(expected_tables=[sheet.table for sheet in metadata.sheets])
    for table in expected.expected_tables:
        parsed = _SCHEMA_LINE_RE.findall(metadata.table_schemas.get(table, ""))
        types = {name: data_type.strip().upper() for name, data_type in parsed}

        if table_columns and table in table_columns:
            columns = list(table_columns[table])
            types = {column: types.get(column, DEFAULT_COLUMN_TYPE) for column in columns}
        else:
            columns = list(types)

        expected.expected_columns[table] = columns
        expected.expected_data_types[table] = types
    return expected


def compare_schema(expected: ValidationSchema, actual: SchemaSnapshot) -> ValidationResult:
    """Diff the expected schema against the catalog of a database file."""

    errors: list[ValidationIssue] = []
    warnings: list[ValidationIssue] = []
    summary = ValidationSummary()

    actual_tables = set(actual.tables)
    for table in expected.expected_tables:
        summary.tables_validated += 1
        if table not in actual_tables:
            errors.append(
                ValidationIssue(type="missing_table", table=table, message=f"Expected table '{table}' not found")
            )
            continue

        actual_columns = actual.columns.get(table, {})
        expected_columns = expected.expected_columns.get(table, [])
        expected_types = expected.expected_data_types.get(table, {})

        for column in expected_columns:
            summary.columns_validated += 1
            if column not in actual_columns:
                errors.append(
                    ValidationIssue(
                        type="missing_column",
                        table=table,
                        column=column,
                        message=f"Expected column '{column}' not found in table '{table}'",
                    )
                )
                continue

            expected_type = expected_types.get(column)
            if expected_type is None:
                continue
            summary.data_types_validated += 1
            actual_type = actual_columns[column]
            if actual_type.upper() != expected_type.upper():
                errors.append(
                    ValidationIssue(
                        type="wrong_data_type",
                        table=table,
                        column=column,
                        expected=expected_type,
                        actual=actual_type,
                        message=f"Column '{table}.{column}' has type {actual_type}, expected {expected_type}",
                    )
                )

        for column, actual_type in actual_columns.items():
            if column not in expected_columns:
                warnings.append(
                    ValidationIssue(
                        type="extra_column",
                        table=table,
                        column=column,
                        actual=actual_type,
                        message=f"Unexpected column '{column}' in table '{table}'",
                    )
                )
            elif column not in expected_types and actual_type.upper() != DEFAULT_COLUMN_TYPE:
                warnings.append(
                    ValidationIssue(
                        type="unexpected_data_type",
                        table=table,
                        column=column,
                        actual=actual_type,
                        message=f"Column '{table}.{column}' has undeclared type {actual_type}",
                    )
                )

    for table in actual.tables:
        if table not in expected.expected_tables:
            warnings.append(
                ValidationIssue(type="extra_table", table=table, message=f"Unexpected table '{table}' found")
            )

    return ValidationResult(success=not errors, errors=errors, warnings=warnings, summary=summary)


def _read_schema(database_path: Path) -> SchemaSnapshot:
    with open_query_engine(database_path) as engine:
        return engine.describe_schema()


class DatabaseValidator:
    """Download a stored database file and check it against an expected schema."""

    def __init__(self, storage: BlobStore, *, temp_dir: Path) -> None:
        self.storage = storage
        self.temp_dir = temp_dir

    async def validate(self, expected: ValidationSchema, storage_key: str) -> ValidationResult:
        local_path: Path | None = None
        try:
            local_path = await download_to_temp(self.storage, storage_key, self.temp_dir)
            snapshot = await asyncio.to_thread(_read_schema, local_path)
        except (StorageError, duckdb.Error, OSError) as exc:
            logger.warning("validation.database_error", key=storage_key, error=str(exc))
            return ValidationResult(
                success=False,
                errors=[ValidationIssue(type="database_error", message=f"Validation failed: {exc}")],
            )
        finally:
            cleanup_temp_files(local_path)

        result = compare_schema(expected, snapshot)
        logger.info(
            "validation.completed",
            key=storage_key,
            success=result.success,
            errors=len(result.errors),
            warnings=len(result.warnings),
        )
        return result

    async def validate_with_metadata(
        self,
        metadata: WorkbookMetadata,
        storage_key: str,
        table_columns: dict[str, list[str]] | None = None,
    ) -> ValidationResult:
        return await self.validate(schema_from_metadata(metadata, table_columns), storage_key)
