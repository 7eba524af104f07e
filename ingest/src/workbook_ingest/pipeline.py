"""Workbook to DuckDB ingestion workflow."""

from __future__ import annotations

import asyncio
import json
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from .errors import TableCountMismatchError, TableNameCollisionError
from .naming import build_table_name, deduplicate_names, is_placeholder_header, sanitize_column_name, workbook_hash
from .parsers.workbook import ParsedSheet, parse_workbook
from .resources import close_quietly
from .schema import SchemaDescriber
from .stores.duckdb_writer import DuckDBWriter, row_values, verify_database_file

logger = structlog.get_logger(__name__)


class SheetInfo(BaseModel):
    table: str = Field(..., description="Derived table name.")
    original_name: str = Field(..., description="Worksheet name in the uploaded workbook.")


class WorkbookMetadata(BaseModel):
    workbook_id: str = Field(..., description="Hash identifying the database file.")
    file_id: str = Field(..., description="Identifier assigned to the uploaded workbook.")
    sheets: list[SheetInfo] = Field(default_factory=list)
    table_schemas: dict[str, str] = Field(default_factory=dict)

    def sheet_for(self, table: str) -> SheetInfo | None:
        return next((sheet for sheet in self.sheets if sheet.table == table), None)


@dataclass(slots=True)
class TablePlan:
    sheet_name: str
    table: str
    source_headers: list[str]
    columns: list[str]
    sheet: ParsedSheet

    def values(self) -> list[list[str]]:
        return [row_values(record, self.source_headers) for record in self.sheet.rows]


@dataclass(slots=True)
class IngestionResult:
    hash: str
    database_path: Path
    metadata_path: Path
    metadata: WorkbookMetadata
    sheets_processed: int
    table_columns: dict[str, list[str]] = field(default_factory=dict)
    row_counts: dict[str, int] = field(default_factory=dict)


class WorkbookIngestor:
    """Convert a workbook into one DuckDB file plus a metadata document."""

    def __init__(self, describer: SchemaDescriber, *, output_dir: Path | None = None) -> None:
        self.describer = describer
        self.output_dir = Path(output_dir or tempfile.gettempdir())

    def database_path(self, digest: str) -> Path:
        return self.output_dir / f"{digest}.duckdb"

    def metadata_path(self, digest: str) -> Path:
        return self.output_dir / f"{digest}.json"

    async def ingest(self, content: bytes, file_id: str) -> IngestionResult:
        digest = workbook_hash(file_id)
        log = logger.bind(file_id=file_id, workbook_id=digest)

        db_path = self.database_path(digest)
        plans, row_counts = await asyncio.to_thread(self._build_database, content, db_path, log)

        table_schemas: dict[str, str] = {}
        for plan in plans:
            samples = [dict(zip(plan.columns, values)) for values in plan.values()[: self.describer.sample_size]]
            table_schemas[plan.table] = await self.describer.describe(plan.table, samples, plan.columns)

        metadata = WorkbookMetadata(
            workbook_id=digest,
            file_id=file_id,
            sheets=[SheetInfo(table=plan.table, original_name=plan.sheet_name) for plan in plans],
            table_schemas=table_schemas,
        )
        metadata_path = self.metadata_path(digest)
        document = json.dumps(metadata.model_dump(), indent=2, ensure_ascii=False)
        await asyncio.to_thread(metadata_path.write_text, document, encoding="utf-8")

        log.info("workbook.ingest.completed", sheets_processed=len(plans))
        return IngestionResult(
            hash=digest,
            database_path=db_path,
            metadata_path=metadata_path,
            metadata=metadata,
            sheets_processed=len(plans),
            table_columns={plan.table: list(plan.columns) for plan in plans},
            row_counts=row_counts,
        )

    def _build_database(
        self,
        content: bytes,
        db_path: Path,
        log: structlog.stdlib.BoundLogger,
    ) -> tuple[list[TablePlan], dict[str, int]]:
        """Parse the workbook and write every sheet to ``db_path``; runs off the event loop."""

        sheets = parse_workbook(content)
        plans = self._plan_tables(sheets, log)
        expected = [plan.table for plan in plans]
        log.info("workbook.ingest.planned", sheets=len(sheets), tables=expected)

        writer = DuckDBWriter(db_path).open()
        try:
            writer.drop_stale_tables(expected)

            for plan in plans:
                self._load_table(writer, plan, log)

            actual = writer.list_tables()
            if len(actual) != len(plans):
                raise TableCountMismatchError(
                    f"Table count mismatch: expected {len(plans)} tables, found {len(actual)} ({actual})"
                )

            writer.flush()
        finally:
            close_quietly(writer, label=str(db_path))

        row_counts = verify_database_file(db_path, expected)
        log.info("workbook.ingest.flushed", path=str(db_path), row_counts=row_counts)
        return plans, row_counts

    def _plan_tables(self, sheets: list[ParsedSheet], log: structlog.stdlib.BoundLogger) -> list[TablePlan]:
        plans: list[TablePlan] = []
        owners: dict[str, str] = {}

        for sheet in sheets:
            if sheet.is_empty:
                log.info("workbook.sheet.skipped", sheet=sheet.name, reason="no_rows")
                continue

            source_headers = [header for header in sheet.headers if not is_placeholder_header(header)]
            if not source_headers:
                log.warning("workbook.sheet.skipped", sheet=sheet.name, reason="no_named_columns")
                continue

            sanitized = [sanitize_column_name(header) for header in source_headers]
            columns = deduplicate_names(sanitized)
            if columns != sanitized:
                collisions = {
                    header: column
                    for header, base, column in zip(source_headers, sanitized, columns)
                    if base != column
                }
                log.warning("workbook.columns.collision", sheet=sheet.name, renamed=collisions)

            table = build_table_name(sheet.name)
            if table in owners:
                raise TableNameCollisionError(
                    f"Sheets {owners[table]!r} and {sheet.name!r} both map to table {table!r}"
                )
            owners[table] = sheet.name

            plans.append(
                TablePlan(
                    sheet_name=sheet.name,
                    table=table,
                    source_headers=source_headers,
                    columns=columns,
                    sheet=sheet,
                )
            )

        return plans

    @staticmethod
    def _load_table(writer: DuckDBWriter, plan: TablePlan, log: structlog.stdlib.BoundLogger) -> None:
        writer.create_table(plan.table, plan.columns)
        attempted = writer.insert_rows(plan.table, plan.columns, plan.values())
        stored = writer.count_rows(plan.table)
        if stored != attempted:
            log.warning("workbook.table.row_count_mismatch", table=plan.table, attempted=attempted, stored=stored)
        log.info("workbook.table.loaded", table=plan.table, sheet=plan.sheet_name, rows=stored, columns=len(plan.columns))
