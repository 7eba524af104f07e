"""Typer-based CLI for ingesting workbooks locally."""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from pathlib import Path
from typing import Iterable, Optional, Tuple

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from workbook_ingest.errors import IngestionError, WorkbookParseError
from workbook_ingest.llm import create_text_generator
from workbook_ingest.pipeline import WorkbookIngestor, WorkbookMetadata
from workbook_ingest.schema import SchemaDescriber

app = typer.Typer(help="Ingestion utilities for the workbook analyst")
console = Console()

_ENV_LOCATIONS: Tuple[Path, ...] = (Path("./backend/.env"), Path("./.env"))
_WORKBOOK_SUFFIXES = {".xlsx", ".xlsm"}


def _load_env_files(locations: Iterable[Path]) -> None:
    """Populate os.environ from simple KEY=VALUE lines in the provided files."""

    for location in locations:
        if not location.exists():
            continue

        for raw_line in location.read_text(encoding="utf-8").splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, value = line.split("=", 1)
            key = key.strip()
            value = value.strip().strip("\"'")
            if key and key not in os.environ:
                os.environ[key] = value


def _build_describer(
    *,
    describe: bool,
    model: str,
    openai_api_key: Optional[str],
    openai_api_base: Optional[str],
) -> SchemaDescriber:
    if not describe:
        return SchemaDescriber()

    _load_env_files(_ENV_LOCATIONS)
    api_key = openai_api_key or os.getenv("OPENAI_API_KEY")
    api_base = openai_api_base or os.getenv("OPENAI_API_BASE")
    if not api_key:
        raise typer.BadParameter("OpenAI API key not provided via flag or environment. Use --no-describe to skip.")

    generator = create_text_generator(
        model=model,
        temperature=0.1,
        api_key=api_key,
        api_base=api_base,
        max_tokens=300,
    )
    return SchemaDescriber(generator)


@app.command()
def run(
    workbook: Path = typer.Argument(..., exists=True, dir_okay=False, help="Path to an .xlsx workbook."),
    file_id: Optional[str] = typer.Option(None, "--file-id", help="Identifier for the workbook. Defaults to a new UUID."),
    output_dir: Path = typer.Option(Path("./data/duckdb"), "--output-dir", "-o", help="Directory for the database and metadata files."),
    describe: bool = typer.Option(True, "--describe/--no-describe", help="Generate schema descriptions with the LLM."),
    model: str = typer.Option("gpt-4", "--model", help="Model used for schema descriptions."),
    openai_api_key: Optional[str] = typer.Option(None, "--openai-api-key", envvar="OPENAI_API_KEY", help="OpenAI API key (falls back to env)."),
    openai_api_base: Optional[str] = typer.Option(None, "--openai-api-base", envvar="OPENAI_API_BASE", help="Optional OpenAI API base URL."),
):
    """Convert a workbook into a DuckDB file and metadata document."""

    if workbook.suffix.lower() not in _WORKBOOK_SUFFIXES:
        typer.secho(f"Unsupported file type: {workbook.suffix or '(none)'}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    describer = _build_describer(
        describe=describe,
        model=model,
        openai_api_key=openai_api_key,
        openai_api_base=openai_api_base,
    )
    ingestor = WorkbookIngestor(describer, output_dir=output_dir)
    identifier = file_id or uuid.uuid4().hex

    typer.secho(f"Ingesting {workbook.name} as {identifier}...", fg=typer.colors.CYAN)
    try:
        result = asyncio.run(ingestor.ingest(workbook.read_bytes(), identifier))
    except (WorkbookParseError, IngestionError) as exc:
        typer.secho(f"Ingestion failed: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    table = Table(show_header=True, header_style="bold")
    table.add_column("Table")
    table.add_column("Sheet")
    table.add_column("Rows", justify="right")
    table.add_column("Columns")
    for sheet in result.metadata.sheets:
        table.add_row(
            sheet.table,
            sheet.original_name,
            str(result.row_counts.get(sheet.table, 0)),
            ", ".join(result.table_columns.get(sheet.table, [])),
        )

    typer.secho("Ingestion complete", fg=typer.colors.GREEN)
    console.print(table)
    typer.echo(f"Sheets processed: {result.sheets_processed}")
    typer.echo(f"Database path: {result.database_path}")
    typer.echo(f"Metadata path: {result.metadata_path}")


@app.command()
def inspect(
    metadata_path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Metadata JSON produced by `run`."),
):
    """Print the tables and schema descriptions from a metadata document."""

    try:
        metadata = WorkbookMetadata.model_validate(json.loads(metadata_path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, ValidationError) as exc:
        typer.secho(f"Invalid metadata document: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1) from exc

    console.rule(f"Workbook {metadata.workbook_id} (file {metadata.file_id})")
    for sheet in metadata.sheets:
        console.print(f"[bold]{sheet.table}[/bold] (sheet \"{sheet.original_name}\")")
        console.print(metadata.table_schemas.get(sheet.table, "No schema description."), markup=False)
        console.print()


if __name__ == "__main__":  # pragma: no cover
    app()
