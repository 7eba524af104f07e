"""Read-only enforcement for SQL submitted against workbook databases."""

from __future__ import annotations

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

MUTATING_PREFIXES = ("delete", "drop", "alter", "create", "insert", "update")
POLICY_MESSAGE = "Only SELECT queries are allowed for security reasons"
SOURCE_MESSAGE = "Queries may only read workbook tables; table functions and file paths are not allowed"

_READ_ROOTS = (exp.Select, exp.Union, exp.Except, exp.Intersect, exp.Subquery)
_MUTATING_NODES = (
    exp.Insert,
    exp.Update,
    exp.Delete,
    exp.Drop,
    exp.Create,
    exp.Alter,
    exp.Merge,
    exp.Command,
)
_PATH_MARKERS = ("/", "\\", ".", ":")
_FILE_FUNCTIONS = frozenset(
    {
        "getenv",
        "glob",
        "parquet_scan",
        "query",
        "query_table",
        "read_blob",
        "read_csv",
        "read_csv_auto",
        "read_json",
        "read_json_auto",
        "read_ndjson",
        "read_parquet",
        "read_text",
        "read_xlsx",
        "sniff_csv",
    }
)


class SqlPolicyViolation(ValueError):
    """The statement is not a single read-only query."""


def validate_read_only_sql(sql: str) -> str:
    """Return the trimmed statement, or raise ``SqlPolicyViolation``.

    The verb prefix check runs first; the statement is then parsed so that
    stacked statements and mutations nested in CTEs or subqueries are caught.
    """

    statement_text = sql.strip()
    if not statement_text:
        raise SqlPolicyViolation("SQL statement must not be empty.")

    if statement_text.lower().startswith(MUTATING_PREFIXES):
        raise SqlPolicyViolation(POLICY_MESSAGE)

    try:
        statements = [node for node in sqlglot.parse(statement_text, read="duckdb") if node is not None]
    except SqlglotError as exc:
        raise SqlPolicyViolation(f"Unable to parse SQL statement: {exc}") from exc

    if len(statements) != 1:
        raise SqlPolicyViolation("Exactly one SQL statement is allowed.")

    statement = statements[0]
    if not isinstance(statement, _READ_ROOTS):
        raise SqlPolicyViolation(POLICY_MESSAGE)

    if statement.find(*_MUTATING_NODES) is not None:
        raise SqlPolicyViolation(POLICY_MESSAGE)

    if (
        statement.find(exp.ReadCSV) is not None
        or any(_function_name(node) in _FILE_FUNCTIONS for node in statement.find_all(exp.Func))
        or not all(_is_named_table(table) for table in statement.find_all(exp.Table))
    ):
        raise SqlPolicyViolation(SOURCE_MESSAGE)

    return statement_text


def _is_named_table(table: exp.Table) -> bool:
    """True for plain identifiers; false for table functions, literals and path-like names."""

    target = table.this
    if not isinstance(target, exp.Identifier):
        return False
    return not any(marker in target.name for marker in _PATH_MARKERS)


def _function_name(node: exp.Func) -> str:
    if isinstance(node, exp.Anonymous):
        return str(node.name).lower()
    return node.sql_name().lower()
