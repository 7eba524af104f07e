from __future__ import annotations

import json

from typer.testing import CliRunner

from workbook_ingest.cli import app
from workbook_ingest.naming import workbook_hash

runner = CliRunner()


def test_run_without_descriptions_writes_database(tmp_path, build_workbook) -> None:
    workbook = tmp_path / "budget.xlsx"
    workbook.write_bytes(build_workbook({"Budget 2024": [["Line Item", "Amount"], ["Rent", 1200]]}))
    output_dir = tmp_path / "out"

    result = runner.invoke(
        app,
        ["run", str(workbook), "--file-id", "cli-1", "--output-dir", str(output_dir), "--no-describe"],
    )

    assert result.exit_code == 0, result.output
    assert "Ingestion complete" in result.output
    assert "sheet_budget_2024" in result.output
    metadata = json.loads((output_dir / f"{workbook_hash('cli-1')}.json").read_text(encoding="utf-8"))
    assert metadata["sheets"] == [{"table": "sheet_budget_2024", "original_name": "Budget 2024"}]
    assert (output_dir / f"{workbook_hash('cli-1')}.duckdb").exists()


def test_run_rejects_other_file_types(tmp_path) -> None:
    csv = tmp_path / "data.csv"
    csv.write_text("a,b\n1,2\n", encoding="utf-8")

    result = runner.invoke(app, ["run", str(csv), "--no-describe"])

    assert result.exit_code == 1
    assert "Unsupported file type" in result.output


def test_run_reports_unreadable_workbooks(tmp_path) -> None:
    broken = tmp_path / "broken.xlsx"
    broken.write_bytes(b"not a zip archive")

    result = runner.invoke(app, ["run", str(broken), "--no-describe", "--output-dir", str(tmp_path / "out")])

    assert result.exit_code == 1
    assert "Ingestion failed" in result.output


def test_inspect_prints_schema_text(tmp_path) -> None:
    document = {
        "workbook_id": "abc123def456",
        "file_id": "f-1",
        "sheets": [{"table": "sheet_people", "original_name": "People"}],
        "table_schemas": {"sheet_people": "Table: sheet_people\nColumns:\n- name (VARCHAR): Person name"},
    }
    path = tmp_path / "meta.json"
    path.write_text(json.dumps(document), encoding="utf-8")

    result = runner.invoke(app, ["inspect", str(path)])

    assert result.exit_code == 0, result.output
    assert "sheet_people" in result.output
    assert "- name (VARCHAR): Person name" in result.output
