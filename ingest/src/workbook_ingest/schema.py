"""Schema descriptions for generated tables."""

from __future__ import annotations

import json
from typing import Mapping, Sequence

import structlog

from .llm import TextGenerator

logger = structlog.get_logger(__name__)

SCHEMA_SYSTEM_PROMPT = "You are a database schema expert."


def no_data_description(table_name: str) -> str:
    return f"Table: {table_name}\nColumns: No data available"


def failed_description(table_name: str) -> str:
    return f"Table: {table_name}\nColumns: Schema generation failed"


class SchemaDescriber:
    """Produce the schema text stored in workbook metadata.

    Descriptions are documentation for prompt grounding. A failing generator
    degrades to a placeholder instead of failing ingestion.
    """

    def __init__(self, generator: TextGenerator | None = None, *, sample_size: int = 5) -> None:
        self._generator = generator
        self.sample_size = sample_size

    async def describe(
        self,
        table_name: str,
        sample_rows: Sequence[Mapping[str, object]],
        columns: Sequence[str],
    ) -> str:
        if not sample_rows:
            return no_data_description(table_name)

        samples = [dict(row) for row in sample_rows[: self.sample_size]]

        if self._generator is None:
            return self._describe_offline(table_name, samples, columns)

        prompt = build_schema_prompt(table_name, samples, columns)
        try:
            text = await self._generator.generate_text(prompt, system=SCHEMA_SYSTEM_PROMPT)
        except Exception as exc:  # noqa: BLE001 - descriptions are best effort
            logger.warning("schema.describe.failed", table=table_name, error=str(exc))
            return failed_description(table_name)

        text = text.strip()
        if not text:
            logger.warning("schema.describe.empty", table=table_name)
            return failed_description(table_name)
        return text

    @staticmethod
    def _describe_offline(
        table_name: str,
        samples: Sequence[Mapping[str, object]],
        columns: Sequence[str],
    ) -> str:
        first = samples[0]
        lines = [f"Table: {table_name}", "Columns:"]
        for column in columns:
            example = first.get(column)
            detail = f'example "{example}"' if example not in (None, "") else "no example value"
            lines.append(f"- {column} (VARCHAR): {detail}")
        return "\n".join(lines)


def build_schema_prompt(
    table_name: str,
    samples: Sequence[Mapping[str, object]],
    columns: Sequence[str],
) -> str:
    column_list = ", ".join(columns)
    sample_json = json.dumps(list(samples), indent=2, ensure_ascii=False, default=str)
    return (
        "Analyze this table data and generate a schema description.\n"
        f"Table name: {table_name}\n"
        f"Sample data: {sample_json}\n"
        f"Actual column names in database: {column_list}\n\n"
        "Generate schema in format:\n"
        f"Table: {table_name}\n"
        "Columns:\n"
        "- [actual_column_name_from_database] (VARCHAR): [brief description]\n\n"
        "Rules:\n"
        "1. Use exact table name\n"
        f"2. Use ONLY the actual column names from the database: {column_list}\n"
        "3. All columns must be VARCHAR\n"
        "4. Keep descriptions brief and factual\n"
        "5. Do NOT use original Excel header names, use the sanitized database column names"
    )
