from __future__ import annotations

from io import BytesIO
from typing import Any, Callable

import pytest
from openpyxl import Workbook


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
    """Serialize ``{sheet name: rows}`` into .xlsx bytes."""

    return _build_workbook


class StubTextGenerator:
    """Records prompts and returns a canned description."""

    def __init__(self, text: str = "", *, error: Exception | None = None) -> None:
        self.text = text
        self.error = error
        self.prompts: list[str] = []
        self.systems: list[str | None] = []

    async def generate_text(self, prompt: str, *, system: str | None = None) -> str:
        self.prompts.append(prompt)
        self.systems.append(system)
        if self.error is not None:
            raise self.error
        return self.text


@pytest.fixture
def stub_generator_factory() -> Callable[..., StubTextGenerator]:
    return StubTextGenerator
