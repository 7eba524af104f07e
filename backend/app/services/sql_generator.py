"""Natural-language to SQL generation with execution-grounded retries."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Sequence
from typing import Any

import duckdb
from pydantic import BaseModel, Field

from workbook_ingest.llm import TextGenerator, strip_code_fence
from workbook_ingest.naming import SOURCE_ALIAS
from workbook_ingest.pipeline import WorkbookMetadata

from app.core.logging import get_logger
from app.models.chat import ChatTurn
from app.services.query_engine import QueryEngine
from app.services.sql_guard import SqlPolicyViolation

logger = get_logger(__name__)

RETRYABLE_ERRORS = (duckdb.Error, SqlPolicyViolation)


class SqlQuery(BaseModel):
    query: str = Field(..., description="A single valid SQL SELECT query.")


class SqlGenerator:
    """Ask the text generator for SQL and repair it using live errors and data."""

    def __init__(
        self,
        generator: TextGenerator,
        *,
        max_retries: int = 2,
        sample_limit: int = 3,
        alias: str = SOURCE_ALIAS,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be zero or greater")
        self._generator = generator
        self.max_retries = max_retries
        self.sample_limit = sample_limit
        self.alias = alias
        self._table_re = re.compile(rf"\b{re.escape(alias)}\.\"?(\w+)\"?", re.IGNORECASE)

    async def generate(
        self,
        messages: Sequence[ChatTurn],
        metadata: WorkbookMetadata,
        engine: QueryEngine | None = None,
    ) -> str:
        """Return SQL for the latest turn.

        Without an engine the first generated statement is returned as is.
        With one, each statement is executed; failures feed the next prompt
        until ``max_retries`` is exhausted, then the last error is raised.
        """

        last_query: str | None = None
        last_error: Exception | None = None
        samples: dict[str, list[tuple[Any, ...]]] = {}

        for attempt in range(self.max_retries + 1):
            if attempt == 0:
                prompt = build_sql_prompt(messages, metadata, alias=self.alias)
            else:
                prompt = build_retry_prompt(
                    messages,
                    metadata,
                    failed_query=last_query or "",
                    error=last_error,
                    samples=samples,
                    alias=self.alias,
                )

            result = await self._generator.generate_structured(prompt, SqlQuery)
            query = strip_code_fence(result.query)
            last_query = query
            logger.info("sql.generate.attempt", attempt=attempt + 1, query=query)

            if engine is None:
                return query

            try:
                await asyncio.to_thread(engine.execute, query)
            except RETRYABLE_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "sql.generate.execution_failed",
                    attempt=attempt + 1,
                    error=str(exc),
                    will_retry=attempt < self.max_retries,
                )
                if attempt == 0:
                    samples = await asyncio.to_thread(self.collect_samples, engine, query)
                continue

            return query

        if last_error is None:
            raise RuntimeError("SQL generation finished without an attempt")
        raise last_error

    def referenced_tables(self, sql: str) -> list[str]:
        """Tables referenced through the alias, in order of first mention."""

        seen: dict[str, None] = {}
        for match in self._table_re.finditer(sql):
            seen.setdefault(match.group(1), None)
        return list(seen)

    def collect_samples(self, engine: QueryEngine, sql: str) -> dict[str, list[tuple[Any, ...]]]:
        samples: dict[str, list[tuple[Any, ...]]] = {}
        for table in self.referenced_tables(sql):
            try:
                samples[table] = engine.sample_rows(table, self.sample_limit)
            except RETRYABLE_ERRORS as exc:
                logger.warning("sql.generate.sample_failed", table=table, error=str(exc))
        return samples


def format_schema(metadata: WorkbookMetadata) -> str:
    if not metadata.table_schemas:
        return "No database schema available."
    return "\n\n".join(metadata.table_schemas.values())


def format_tables(metadata: WorkbookMetadata) -> str:
    return "\n".join(f'- {sheet.table} (originally "{sheet.original_name}")' for sheet in metadata.sheets)


def format_conversation(messages: Sequence[ChatTurn]) -> str:
    return "\n".join(f"{message.role}: {message.content}" for message in messages)


def format_samples(samples: dict[str, list[tuple[Any, ...]]], *, limit: int = 3) -> str:
    if not samples:
        return "No samples available."
    blocks: list[str] = []
    for table, rows in samples.items():
        lines = [", ".join(f"{index}: {cell}" for index, cell in enumerate(row)) for row in rows[:limit]]
        body = "\n".join(lines) if lines else "(no rows)"
        blocks.append(f"Table: {table}\nSample Data (first {limit} rows):\n{body}")
    return "\n\n".join(blocks)


def _alias_rule(alias: str) -> str:
    return (
        f'When referencing tables in your SQL query, you MUST prefix each table name with "{alias}." '
        f'(e.g., "{alias}.sheet_sheet1" instead of just "sheet_sheet1").'
    )


def build_sql_prompt(messages: Sequence[ChatTurn], metadata: WorkbookMetadata, *, alias: str = SOURCE_ALIAS) -> str:
    return (
        "You are a SQL expert. Based on the following database schema and user conversation, "
        "generate a SQL query to answer the user's question.\n\n"
        f"Database Schema:\n{format_schema(metadata)}\n\n"
        f"Available Tables:\n{format_tables(metadata)}\n\n"
        f"User Conversation:\n{format_conversation(messages)}\n\n"
        f"IMPORTANT: {_alias_rule(alias)}\n\n"
        "Generate ONLY a valid SQL SELECT query. Do not include any explanations or markdown formatting. "
        "Only use the tables and columns that exist in the schema above. All columns are stored as text; "
        "CAST them before numeric comparison or aggregation."
    )


def build_retry_prompt(
    messages: Sequence[ChatTurn],
    metadata: WorkbookMetadata,
    *,
    failed_query: str,
    error: Exception | None,
    samples: dict[str, list[tuple[Any, ...]]],
    alias: str = SOURCE_ALIAS,
) -> str:
    return (
        "You are a SQL expert. The previous SQL query failed to execute. Please generate a corrected SQL query "
        "based on the error message and the actual data structure.\n\n"
        f"Database Schema:\n{format_schema(metadata)}\n\n"
        f"Available Tables:\n{format_tables(metadata)}\n\n"
        f"User Conversation:\n{format_conversation(messages)}\n\n"
        f"FAILED QUERY:\n{failed_query}\n\n"
        f"ERROR MESSAGE:\n{error}\n\n"
        f"ACTUAL DATA SAMPLES:\n{format_samples(samples)}\n\n"
        "IMPORTANT:\n"
        f"1. {_alias_rule(alias)}\n"
        "2. Analyze the error message and the actual data samples to understand what went wrong.\n"
        "3. Generate ONLY a valid SQL SELECT query that will execute successfully.\n"
        "4. Do not include any explanations or markdown formatting.\n"
        "5. Only use the tables and columns that exist in the schema above."
    )
