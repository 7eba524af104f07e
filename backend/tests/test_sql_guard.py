import pytest

from app.services.sql_guard import POLICY_MESSAGE, SqlPolicyViolation, validate_read_only_sql


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM source_db.sheet_sales",
        "select count(*) from source_db.sheet_sales where region = 'drop'",
        "WITH totals AS (SELECT region FROM source_db.sheet_sales) SELECT * FROM totals",
        "SELECT 1 UNION ALL SELECT 2",
        "SELECT region FROM source_db.sheet_sales;",
    ],
)
def test_read_only_statements_pass(sql: str) -> None:
    assert validate_read_only_sql(f"  {sql}\n") == sql


@pytest.mark.parametrize(
    "sql",
    [
        "DROP TABLE source_db.sheet_sales",
        "   insert into sheet_sales values ('x', '1')",
        "Update sheet_sales SET amount = '0'",
        "delete from sheet_sales",
        "ALTER TABLE sheet_sales ADD COLUMN x VARCHAR",
        "CREATE TABLE x AS SELECT 1",
    ],
)
def test_mutating_prefixes_are_rejected(sql: str) -> None:
    with pytest.raises(SqlPolicyViolation, match=POLICY_MESSAGE):
        validate_read_only_sql(sql)


def test_stacked_statements_are_rejected() -> None:
    with pytest.raises(SqlPolicyViolation):
        validate_read_only_sql("SELECT 1; DROP TABLE sheet_sales")


def test_mutation_behind_cte_is_rejected() -> None:
    with pytest.raises(SqlPolicyViolation):
        validate_read_only_sql("WITH doomed AS (SELECT 1) DELETE FROM sheet_sales")


@pytest.mark.parametrize("sql", ["ATTACH 'other.duckdb' AS other", "PRAGMA show_tables"])
def test_non_query_statements_are_rejected(sql: str) -> None:
    with pytest.raises(SqlPolicyViolation):
        validate_read_only_sql(sql)


@pytest.mark.parametrize("sql", ["", "   ", "SELECT * FROM ("])
def test_empty_or_unparseable_sql_is_rejected(sql: str) -> None:
    with pytest.raises(SqlPolicyViolation):
        validate_read_only_sql(sql)


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT content FROM read_text('/app/.env')",
        "SELECT * FROM read_csv('/etc/passwd')",
        "SELECT * FROM read_csv_auto('data.csv')",
        "SELECT * FROM read_parquet('https://example.com/data.parquet')",
        "SELECT region FROM source_db.sheet_sales WHERE region IN (SELECT content FROM read_text('.env'))",
    ],
)
def test_file_and_network_sources_are_rejected(sql: str) -> None:
    with pytest.raises(SqlPolicyViolation, match="table functions and file paths"):
        validate_read_only_sql(sql)


@pytest.mark.parametrize(
    "sql",
    [
        "SELECT * FROM 'https://example.com/data.csv'",
        "SELECT * FROM \"/etc/passwd\"",
        "SELECT * FROM glob('/root/*')",
    ],
)
def test_path_like_sources_are_rejected(sql: str) -> None:
    with pytest.raises(SqlPolicyViolation):
        validate_read_only_sql(sql)
