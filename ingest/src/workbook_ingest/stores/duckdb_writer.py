"""DuckDB file writer used by the ingestion pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Sequence

import duckdb
import structlog

from ..errors import DurabilityError
from ..naming import quote_identifier
from ..resources import Closable

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class DuckDBWriter(Closable):
    """Single-writer handle on one on-disk DuckDB file."""

    db_path: Path
    _conn: duckdb.DuckDBPyConnection | None = field(default=None, init=False, repr=False)

    def open(self) -> "DuckDBWriter":
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = duckdb.connect(str(self.db_path))
        return self

    @property
    def connection(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise RuntimeError(f"DuckDB file {self.db_path} is not open.")
        return self._conn

    def list_tables(self) -> list[str]:
        return [row[0] for row in self.connection.execute("SHOW TABLES").fetchall()]

    def drop_stale_tables(self, expected: Iterable[str]) -> list[str]:
        """Drop tables left over from earlier runs that are not expected now."""

        keep = set(expected)
        stale = [name for name in self.list_tables() if name not in keep]
        for name in stale:
            self.connection.execute(f"DROP TABLE IF EXISTS {quote_identifier(name)}")
        if stale:
            logger.info("duckdb.stale_tables.dropped", path=str(self.db_path), tables=stale)
        return stale

    def create_table(self, name: str, columns: Sequence[str]) -> None:
        """Drop and recreate ``name`` with every column typed as text."""

        column_sql = ", ".join(f"{quote_identifier(column)} VARCHAR" for column in columns)
        self.connection.execute(f"DROP TABLE IF EXISTS {quote_identifier(name)}")
        self.connection.execute(f"CREATE TABLE {quote_identifier(name)} ({column_sql})")

    def insert_rows(
        self,
        name: str,
        columns: Sequence[str],
        rows: Iterable[Sequence[str]],
    ) -> int:
        """Insert rows one bound statement at a time; returns rows attempted."""

        placeholders = ", ".join("?" for _ in columns)
        column_sql = ", ".join(quote_identifier(column) for column in columns)
        statement = f"INSERT INTO {quote_identifier(name)} ({column_sql}) VALUES ({placeholders})"

        conn = self.connection
        attempted = 0
        conn.begin()
        try:
            for row in rows:
                conn.execute(statement, list(row))
                attempted += 1
        except duckdb.Error:
            conn.rollback()
            raise
        conn.commit()
        return attempted

    def count_rows(self, name: str) -> int:
        result = self.connection.execute(f"SELECT COUNT(*) FROM {quote_identifier(name)}").fetchone()
        return int(result[0]) if result else 0

    def flush(self) -> None:
        """Commit, checkpoint and close so the file is complete on disk."""

        conn = self.connection
        try:
            conn.commit()
        except duckdb.TransactionException:
            logger.debug("duckdb.flush.nothing_to_commit", path=str(self.db_path))

        try:
            conn.execute("CHECKPOINT")
        except duckdb.Error as exc:
            raise DurabilityError(f"Checkpoint failed for {self.db_path}: {exc}") from exc

        try:
            conn.close()
        except duckdb.Error as exc:
            logger.warning("duckdb.flush.close_failed", path=str(self.db_path), error=str(exc))
        finally:
            self._conn = None

    def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        conn.close()


def verify_database_file(db_path: Path, expected_tables: Sequence[str]) -> dict[str, int]:
    """Reopen a flushed file read-only and return row counts per table."""

    if not db_path.exists():
        raise DurabilityError(f"Database file {db_path} was not written.")

    conn = duckdb.connect(str(db_path), read_only=True)
    try:
        present = {row[0] for row in conn.execute("SHOW TABLES").fetchall()}
        missing = [name for name in expected_tables if name not in present]
        if missing:
            raise DurabilityError(f"Database file {db_path} is missing tables after flush: {missing}")

        counts: dict[str, int] = {}
        for name in expected_tables:
            result = conn.execute(f"SELECT COUNT(*) FROM {quote_identifier(name)}").fetchone()
            counts[name] = int(result[0]) if result else 0
        return counts
    finally:
        conn.close()


def row_values(record: Mapping[str, str | None], headers: Sequence[str]) -> list[str]:
    """Bind every cell as trimmed text, with an empty string for missing values."""

    values: list[str] = []
    for header in headers:
        value = record.get(header)
        values.append("" if value is None else str(value).strip())
    return values
