from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from io import BytesIO
from pathlib import Path
from typing import Any

import duckdb
import pytest
import pytest_asyncio
from openpyxl import Workbook
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from workbook_ingest.pipeline import SheetInfo, WorkbookIngestor, WorkbookMetadata
from workbook_ingest.schema import SchemaDescriber

from app.core.config import AppSettings
from app.core.db import init_models
from app.services.narrator import ResponseNarrator
from app.services.sql_generator import SqlGenerator
from app.services.storage import FilesystemBlobStore
from app.services.validation import DatabaseValidator
from app.services.workflows import WorkbookContext

SALES_SCHEMA = "Table: sheet_sales\nColumns:\n- region (VARCHAR): Sales region\n- amount (VARCHAR): Order amount"


class StubGenerator:
    """Scripted text generator.

    ``structured`` holds the answers for successive structured calls; an
    exception in that list is raised instead of returned.
    """

    def __init__(
        self,
        *,
        structured: list[Any] | None = None,
        tokens: list[str] | None = None,
        text: str = "",
    ) -> None:
        self.structured = list(structured or [])
        self.tokens = list(tokens or [])
        self.text = text
        self.prompts: list[str] = []

    async def generate_text(self, prompt: str, *, system: str | None = None) -> str:
        self.prompts.append(prompt)
        return self.text

    async def generate_structured(self, prompt: str, schema: type[BaseModel]) -> BaseModel:
        self.prompts.append(prompt)
        if not self.structured:
            raise AssertionError("StubGenerator received an unexpected structured call")
        answer = self.structured.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer if isinstance(answer, schema) else schema.model_validate(answer)

    async def stream_text(self, prompt: str) -> AsyncIterator[str]:
        self.prompts.append(prompt)
        for token in self.tokens:
            yield token


def _build_workbook(sheets: dict[str, list[list[Any]]]) -> bytes:
    workbook = Workbook()
    workbook.remove(workbook.active)
    for name, rows in sheets.items():
        worksheet = workbook.create_sheet(title=name)
        for row in rows:
            worksheet.append(row)
    buffer = BytesIO()
    workbook.save(buffer)
    return buffer.getvalue()


@pytest.fixture
def build_workbook() -> Callable[[dict[str, list[list[Any]]]], bytes]:
    return _build_workbook


@pytest.fixture
def sales_workbook() -> bytes:
    return _build_workbook(
        {
            "Sales": [
                ["Region", "Amount"],
                ["North", "120"],
                ["South", "80"],
                ["North", "30"],
            ]
        }
    )


def write_database(path: Path, statements: list[str]) -> Path:
    conn = duckdb.connect(str(path))
    try:
        for statement in statements:
            conn.execute(statement)
    finally:
        conn.close()
    return path


@pytest.fixture
def sales_database(tmp_path) -> Path:
    """A workbook database with one ``sheet_sales`` table."""

    return write_database(
        tmp_path / "sales.duckdb",
        [
            "CREATE TABLE sheet_sales (region VARCHAR, amount VARCHAR)",
            "INSERT INTO sheet_sales VALUES ('North', '120'), ('South', '80'), ('North', '30')",
        ],
    )


@pytest.fixture
def sales_metadata() -> WorkbookMetadata:
    return WorkbookMetadata(
        workbook_id="abc123def456",
        file_id="file-1",
        sheets=[SheetInfo(table="sheet_sales", original_name="Sales")],
        table_schemas={"sheet_sales": SALES_SCHEMA},
    )


@pytest.fixture
def settings(tmp_path) -> AppSettings:
    return AppSettings(
        openai_api_key="test-key",
        storage_root=str(tmp_path / "storage"),
        temp_dir=str(tmp_path / "tmp"),
    )


@pytest.fixture
def sql_stub() -> StubGenerator:
    return StubGenerator()


@pytest.fixture
def narration_stub() -> StubGenerator:
    return StubGenerator(tokens=["North ", "leads ", "sales."])


@pytest.fixture
def workbook_context(tmp_path, settings, sql_stub, narration_stub) -> WorkbookContext:
    """Context wired to local storage and scripted generators."""

    temp_dir = tmp_path / "tmp"
    storage = FilesystemBlobStore(tmp_path / "storage")
    return WorkbookContext(
        settings=settings,
        storage=storage,
        ingestor=WorkbookIngestor(SchemaDescriber(), output_dir=temp_dir),
        validator=DatabaseValidator(storage, temp_dir=temp_dir),
        sql_generator=SqlGenerator(sql_stub),
        narrator=ResponseNarrator(narration_stub),
        temp_dir=temp_dir,
    )


@pytest_asyncio.fixture
async def db_session(tmp_path) -> AsyncIterator[AsyncSession]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'workbooks.db'}", poolclass=NullPool)
    await init_models(engine)
    session_factory = async_sessionmaker(bind=engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def stub_factory() -> Callable[..., StubGenerator]:
    return StubGenerator


@pytest.fixture
def make_database() -> Callable[[Path, list[str]], Path]:
    return write_database
