"""Read-side access to workbook databases through an in-memory DuckDB."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import duckdb

from workbook_ingest.naming import SOURCE_ALIAS, quote_identifier
from workbook_ingest.resources import Closable, close_quietly

from app.core.logging import get_logger
from app.services.sql_guard import validate_read_only_sql

logger = get_logger(__name__)


@dataclass(slots=True)
class QueryResult:
    rows: list[tuple[Any, ...]]
    execution_time_ms: float

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass(slots=True)
class SchemaSnapshot:
    tables: list[str] = field(default_factory=list)
    columns: dict[str, dict[str, str]] = field(default_factory=dict)


class QueryEngine(Closable):
    """Private in-memory DuckDB instance with one workbook file attached.

    Every query must reference tables through the attach alias. Mutating
    statements are rejected by the SQL guard before reaching DuckDB, and the
    connection cannot touch files or the network once the workbook is attached.
    """

    def __init__(self, alias: str = SOURCE_ALIAS) -> None:
        self.alias = alias
        self._conn: duckdb.DuckDBPyConnection | None = None

    def open(self, database_path: Path) -> "QueryEngine":
        conn = duckdb.connect(":memory:")
        escaped = str(database_path).replace("'", "''")
        try:
            conn.execute(f"ATTACH '{escaped}' AS {quote_identifier(self.alias)} (READ_ONLY)")
            # Block file, network and extension access for the rest of the session.
            conn.execute("SET enable_external_access = false")
            conn.execute("SET lock_configuration = true")
        except duckdb.Error:
            conn.close()
            raise
        self._conn = conn
        logger.debug("query_engine.attached", path=str(database_path), alias=self.alias)
        return self

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise RuntimeError("Query engine is not open.")
        return self._conn

    def execute(self, sql: str) -> QueryResult:
        statement = validate_read_only_sql(sql)
        started = time.perf_counter()
        rows = self.connection.execute(statement).fetchall()
        elapsed = (time.perf_counter() - started) * 1000
        logger.info("query_engine.executed", rows=len(rows), execution_time_ms=round(elapsed, 2))
        return QueryResult(rows=rows, execution_time_ms=elapsed)

    def sample_rows(self, table: str, limit: int = 3) -> list[tuple[Any, ...]]:
        sql = f"SELECT * FROM {self.alias}.{quote_identifier(table)} LIMIT {int(limit)}"
        return self.execute(sql).rows

    def describe_schema(self) -> SchemaSnapshot:
        """Tables and column types of the attached file, from DuckDB's catalog."""

        tables = [
            row[0]
            for row in self.connection.execute(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_catalog = ? ORDER BY table_name",
                [self.alias],
            ).fetchall()
        ]
        columns: dict[str, dict[str, str]] = {table: {} for table in tables}
        for table_name, column_name, data_type in self.connection.execute(
            "SELECT table_name, column_name, data_type FROM information_schema.columns "
            "WHERE table_catalog = ? ORDER BY table_name, ordinal_position",
            [self.alias],
        ).fetchall():
            columns.setdefault(table_name, {})[column_name] = str(data_type).upper()
        return SchemaSnapshot(tables=tables, columns=columns)

    def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        conn.close()


@contextmanager
def open_query_engine(database_path: Path, *, alias: str = SOURCE_ALIAS) -> Iterator[QueryEngine]:
    """Open an engine on ``database_path`` and always release it afterwards."""

    engine = QueryEngine(alias).open(database_path)
    try:
        yield engine
    finally:
        close_quietly(engine, label=f"query_engine:{database_path}")
