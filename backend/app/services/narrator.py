"""Streamed natural-language narration of query results."""

from __future__ import annotations

import json
import re
from collections.abc import AsyncIterator, Sequence
from typing import Any

from pydantic import BaseModel, Field

from workbook_ingest.llm import TextGenerator
from workbook_ingest.naming import SOURCE_ALIAS
from workbook_ingest.pipeline import WorkbookMetadata

from app.core.logging import get_logger
from app.models.chat import StreamChunk

logger = get_logger(__name__)

_SCHEMA_COLUMN_RE = re.compile(r"- (\w+) \(")


class ColumnHeaders(BaseModel):
    columns: list[str] = Field(
        default_factory=list,
        description="Array of column names that will be returned by the SQL query",
    )


class ResponseNarrator:
    """Turn a result set into a streamed analyst answer."""

    def __init__(
        self,
        generator: TextGenerator,
        *,
        header_generator: TextGenerator | None = None,
        max_rows: int = 100,
        alias: str = SOURCE_ALIAS,
    ) -> None:
        self._generator = generator
        self._header_generator = header_generator
        self.max_rows = max_rows
        self.alias = alias
        self._table_re = re.compile(rf"\b{re.escape(alias)}\.\"?(\w+)\"?", re.IGNORECASE)

    async def stream(
        self,
        sql_query: str,
        rows: Sequence[Sequence[Any]],
        execution_time_ms: float,
        metadata: WorkbookMetadata | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield a metadata chunk, narration text chunks, then a done chunk."""

        yield StreamChunk(
            type="metadata",
            sql_query=sql_query,
            row_count=len(rows),
            execution_time=execution_time_ms,
        )

        prompt = await self.build_prompt(sql_query, rows, metadata)
        streamed = 0
        async for text in self._generator.stream_text(prompt):
            if not text:
                continue
            streamed += 1
            yield StreamChunk(type="text", content=text)

        logger.info("narration.completed", chunks=streamed, row_count=len(rows))
        yield StreamChunk(type="done")

    async def build_prompt(
        self,
        sql_query: str,
        rows: Sequence[Sequence[Any]],
        metadata: WorkbookMetadata | None = None,
    ) -> str:
        headers = await self.extract_column_headers(sql_query, metadata)
        data = self.format_rows(rows, headers)
        truncated = f"\n... (showing first {self.max_rows} rows)" if len(rows) > self.max_rows else ""
        return (
            "You are a master data analyst with 20+ years of experience. Analyze the query results below and "
            "provide a direct, actionable response. Cut through the noise and focus on what matters.\n\n"
            f"Query: {sql_query}\n"
            f"Rows: {len(rows)}\n\n"
            f"Data:\n{data}{truncated}\n\n"
            "Give me the key findings. Be conversational but concise. No fluff, no obvious statements. "
            "What insights should I act on? Respond in plain text only - no markdown or formatting."
        )

    async def extract_column_headers(
        self,
        sql_query: str,
        metadata: WorkbookMetadata | None,
    ) -> list[str] | None:
        if metadata is None or not metadata.table_schemas:
            return None

        if self._header_generator is not None:
            try:
                result = await self._header_generator.generate_structured(
                    build_header_prompt(sql_query, metadata),
                    ColumnHeaders,
                )
            except Exception as exc:  # noqa: BLE001 - fall back to the schema text
                logger.warning("narration.headers.failed", error=str(exc))
            else:
                if result.columns:
                    return list(result.columns)

        return self._headers_from_schema(sql_query, metadata)

    def _headers_from_schema(self, sql_query: str, metadata: WorkbookMetadata) -> list[str] | None:
        """Column names listed in the first referenced table's schema text.

        The description is free text; this is a hint, not the real result shape.
        """

        tables = list(dict.fromkeys(match.group(1) for match in self._table_re.finditer(sql_query)))
        for table in tables:
            schema_text = metadata.table_schemas.get(table)
            if not schema_text:
                continue
            columns = _SCHEMA_COLUMN_RE.findall(schema_text)
            if columns:
                return columns
        return None

    def format_rows(self, rows: Sequence[Sequence[Any]], headers: list[str] | None) -> str:
        shown = [list(row) for row in rows[: self.max_rows]]
        width = len(shown[0]) if shown else 0
        if not headers or not shown or len(headers) != width:
            return json.dumps(shown, indent=2, ensure_ascii=False, default=str)

        lines = [
            "| " + " | ".join(headers) + " |",
            "|" + "|".join("---" for _ in headers) + "|",
        ]
        for row in shown:
            cells = ["" if cell is None else str(cell).replace("|", "\\|") for cell in row]
            lines.append("| " + " | ".join(cells) + " |")
        return "\n".join(lines)


def build_header_prompt(sql_query: str, metadata: WorkbookMetadata) -> str:
    schemas = "\n\n".join(f"Table: {table}\n{schema}" for table, schema in metadata.table_schemas.items())
    return (
        "Analyze this SQL query and determine the exact column names that will be returned in the result set.\n\n"
        f"SQL Query: {sql_query}\n\n"
        f"Available table schemas:\n{schemas}\n\n"
        "Rules:\n"
        "1. Only include columns that are explicitly SELECTed in the query\n"
        "2. For calculated columns (using AS), use the alias name\n"
        "3. For aggregated functions, use descriptive names\n"
        "4. Return ONLY the column names as a JSON array of strings\n"
        "5. Do not include any explanations or markdown formatting\n\n"
        'Example output: ["park_name", "visitor_difference"]'
    )
