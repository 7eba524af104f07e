import pytest

from app.services.narrator import ColumnHeaders, ResponseNarrator

SQL = "SELECT region, amount FROM source_db.sheet_sales"
ROWS = [("North", "120"), ("South", "80")]


async def _collect(narrator: ResponseNarrator, *args) -> list:
    return [chunk async for chunk in narrator.stream(*args)]


@pytest.mark.asyncio
async def test_stream_emits_metadata_then_text_then_done(stub_factory, sales_metadata) -> None:
    narrator = ResponseNarrator(stub_factory(tokens=["North ", "", "leads."]))

    chunks = await _collect(narrator, SQL, ROWS, 4.2, sales_metadata)

    assert [chunk.type for chunk in chunks] == ["metadata", "text", "text", "done"]
    assert chunks[0].sql_query == SQL
    assert chunks[0].row_count == 2
    assert chunks[0].execution_time == 4.2
    assert "".join(chunk.content for chunk in chunks if chunk.type == "text") == "North leads."


@pytest.mark.asyncio
async def test_stream_without_tokens_still_finishes(stub_factory) -> None:
    chunks = await _collect(ResponseNarrator(stub_factory()), SQL, [], 1.0)

    assert [chunk.type for chunk in chunks] == ["metadata", "done"]
    assert chunks[0].row_count == 0


@pytest.mark.asyncio
async def test_headers_from_generator_render_markdown_table(stub_factory, sales_metadata) -> None:
    narration = stub_factory()
    headers = stub_factory(structured=[ColumnHeaders(columns=["region", "total"])])
    narrator = ResponseNarrator(narration, header_generator=headers)

    await _collect(narrator, SQL, [("North", "a|b")], 1.0, sales_metadata)

    prompt = narration.prompts[0]
    assert "| region | total |\n|---|---|\n| North | a\\|b |" in prompt
    assert f"Query: {SQL}" in prompt
    assert "Rows: 1" in prompt


@pytest.mark.asyncio
async def test_header_failure_falls_back_to_schema_columns(stub_factory, sales_metadata) -> None:
    narrator = ResponseNarrator(stub_factory(), header_generator=stub_factory(structured=[RuntimeError("boom")]))

    headers = await narrator.extract_column_headers(SQL, sales_metadata)

    assert headers == ["region", "amount"]


@pytest.mark.asyncio
async def test_headers_are_absent_without_metadata(stub_factory) -> None:
    narrator = ResponseNarrator(stub_factory(), header_generator=stub_factory())

    assert await narrator.extract_column_headers(SQL, None) is None


@pytest.mark.asyncio
async def test_rows_fall_back_to_json_when_headers_do_not_fit(stub_factory, sales_metadata) -> None:
    narration = stub_factory()
    narrator = ResponseNarrator(narration)

    await _collect(narrator, "SELECT COUNT(*) FROM source_db.sheet_sales", [(3,)], 1.0, sales_metadata)

    assert "Data:\n[\n  [\n    3\n  ]\n]" in narration.prompts[0]


@pytest.mark.asyncio
async def test_large_results_are_truncated_but_counted(stub_factory) -> None:
    narration = stub_factory()
    narrator = ResponseNarrator(narration, max_rows=100)
    rows = [(f"value-{index:03d}",) for index in range(150)]

    chunks = await _collect(narrator, "SELECT v FROM source_db.t", rows, 1.0)

    prompt = narration.prompts[0]
    assert chunks[0].row_count == 150
    assert "Rows: 150" in prompt
    assert "(showing first 100 rows)" in prompt
    assert "value-099" in prompt
    assert "value-100" not in prompt


def test_format_rows_handles_empty_results(stub_factory) -> None:
    assert ResponseNarrator(stub_factory()).format_rows([], ["a"]) == "[]"
