import pytest

from workbook_ingest.pipeline import SheetInfo, WorkbookMetadata

from app.models.files import ValidationSchema
from app.services.query_engine import SchemaSnapshot
from app.services.storage import FilesystemBlobStore
from app.services.validation import DatabaseValidator, compare_schema, schema_from_metadata

EXPECTED = ValidationSchema(
    expected_tables=["sheet_sales"],
    expected_columns={"sheet_sales": ["region", "amount"]},
    expected_data_types={"sheet_sales": {"region": "VARCHAR", "amount": "VARCHAR"}},
)


def _snapshot(**columns: dict[str, str]) -> SchemaSnapshot:
    return SchemaSnapshot(tables=sorted(columns), columns=dict(columns))


def test_matching_schema_passes() -> None:
    result = compare_schema(EXPECTED, _snapshot(sheet_sales={"region": "VARCHAR", "amount": "VARCHAR"}))

    assert result.success
    assert result.errors == []
    assert result.warnings == []
    assert result.summary.tables_validated == 1
    assert result.summary.columns_validated == 2
    assert result.summary.data_types_validated == 2


def test_extra_table_is_only_a_warning() -> None:
    result = compare_schema(
        EXPECTED,
        _snapshot(sheet_sales={"region": "VARCHAR", "amount": "VARCHAR"}, sheet_extra={"x": "VARCHAR"}),
    )

    assert result.success
    assert [(issue.type, issue.table) for issue in result.warnings] == [("extra_table", "sheet_extra")]


def test_missing_table_fails() -> None:
    result = compare_schema(EXPECTED, _snapshot(sheet_other={"x": "VARCHAR"}))

    assert not result.success
    assert [issue.type for issue in result.errors] == ["missing_table"]
    assert result.errors[0].message == "Expected table 'sheet_sales' not found"


def test_column_differences_are_reported() -> None:
    result = compare_schema(
        EXPECTED,
        _snapshot(sheet_sales={"region": "INTEGER", "notes": "VARCHAR", "flag": "BOOLEAN"}),
    )

    assert not result.success
    assert {(issue.type, issue.column) for issue in result.errors} == {
        ("wrong_data_type", "region"),
        ("missing_column", "amount"),
    }
    wrong_type = next(issue for issue in result.errors if issue.type == "wrong_data_type")
    assert (wrong_type.expected, wrong_type.actual) == ("VARCHAR", "INTEGER")
    assert {(issue.type, issue.column) for issue in result.warnings} == {
        ("extra_column", "notes"),
        ("extra_column", "flag"),
    }


def test_undeclared_non_text_type_is_a_warning() -> None:
    expected = ValidationSchema(
        expected_tables=["t"],
        expected_columns={"t": ["a", "b"]},
        expected_data_types={"t": {"a": "VARCHAR"}},
    )

    result = compare_schema(expected, _snapshot(t={"a": "VARCHAR", "b": "DOUBLE"}))

    assert result.success
    assert [(issue.type, issue.column) for issue in result.warnings] == [("unexpected_data_type", "b")]


def test_schema_from_metadata_parses_descriptions(sales_metadata) -> None:
    expected = schema_from_metadata(sales_metadata)

    assert expected.expected_tables == ["sheet_sales"]
    assert expected.expected_columns == {"sheet_sales": ["region", "amount"]}
    assert expected.expected_data_types == {"sheet_sales": {"region": "VARCHAR", "amount": "VARCHAR"}}


def test_ingestion_columns_override_free_text_descriptions() -> None:
    metadata = WorkbookMetadata(
        workbook_id="abc",
        file_id="f",
        sheets=[SheetInfo(table="sheet_a", original_name="A")],
        table_schemas={"sheet_a": "Table: sheet_a\nColumns: Schema generation failed"},
    )

    expected = schema_from_metadata(metadata, {"sheet_a": ["x", "y"]})

    assert expected.expected_columns == {"sheet_a": ["x", "y"]}
    assert expected.expected_data_types == {"sheet_a": {"x": "VARCHAR", "y": "VARCHAR"}}


@pytest.mark.asyncio
async def test_validator_checks_stored_database(tmp_path, make_database, sales_metadata) -> None:
    storage = FilesystemBlobStore(tmp_path / "storage")
    database = make_database(
        tmp_path / "built.duckdb",
        ["CREATE TABLE sheet_sales (region VARCHAR, amount VARCHAR)", "CREATE TABLE sheet_extra (x VARCHAR)"],
    )
    await storage.upload("duckdb/abc/abc.duckdb", database.read_bytes())
    validator = DatabaseValidator(storage, temp_dir=tmp_path / "tmp")

    result = await validator.validate_with_metadata(sales_metadata, "duckdb/abc/abc.duckdb")

    assert result.success
    assert [issue.type for issue in result.warnings] == ["extra_table"]
    assert list((tmp_path / "tmp").iterdir()) == []


@pytest.mark.asyncio
async def test_validator_reports_unreadable_database(tmp_path, sales_metadata) -> None:
    validator = DatabaseValidator(FilesystemBlobStore(tmp_path / "storage"), temp_dir=tmp_path / "tmp")

    result = await validator.validate_with_metadata(sales_metadata, "duckdb/missing/missing.duckdb")

    assert not result.success
    assert [issue.type for issue in result.errors] == ["database_error"]
    assert result.errors[0].message.startswith("Validation failed:")
