import duckdb
import pytest

from app.models.chat import ChatTurn
from app.services.query_engine import open_query_engine
from app.services.sql_generator import SqlGenerator, build_sql_prompt, format_samples

QUESTION = [ChatTurn(role="user", content="Which region sold the most?")]


@pytest.mark.asyncio
async def test_first_query_is_returned_without_engine(stub_factory, sales_metadata) -> None:
    stub = stub_factory(structured=[{"query": "SELECT region FROM source_db.sheet_sales"}])

    sql = await SqlGenerator(stub).generate(QUESTION, sales_metadata)

    assert sql == "SELECT region FROM source_db.sheet_sales"
    assert len(stub.prompts) == 1


@pytest.mark.asyncio
async def test_code_fences_are_stripped(stub_factory, sales_metadata) -> None:
    stub = stub_factory(structured=[{"query": "```sql\nSELECT 1\n```"}])

    assert await SqlGenerator(stub).generate(QUESTION, sales_metadata) == "SELECT 1"


@pytest.mark.asyncio
async def test_retry_prompt_carries_failed_query_error_and_samples(stub_factory, sales_database, sales_metadata) -> None:
    failed = "SELECT revenue FROM source_db.sheet_sales"
    fixed = "SELECT region FROM source_db.sheet_sales"
    stub = stub_factory(structured=[{"query": failed}, {"query": fixed}])

    with open_query_engine(sales_database) as engine:
        sql = await SqlGenerator(stub).generate(QUESTION, sales_metadata, engine)

    assert sql == fixed
    retry_prompt = stub.prompts[1]
    assert f"FAILED QUERY:\n{failed}" in retry_prompt
    assert "revenue" in retry_prompt.split("ERROR MESSAGE:\n", 1)[1]
    assert "Table: sheet_sales" in retry_prompt
    assert "0: North, 1: 120" in retry_prompt


@pytest.mark.asyncio
async def test_policy_violations_are_retried(stub_factory, sales_database, sales_metadata) -> None:
    stub = stub_factory(
        structured=[
            {"query": "DROP TABLE source_db.sheet_sales"},
            {"query": "SELECT COUNT(*) FROM source_db.sheet_sales"},
        ]
    )

    with open_query_engine(sales_database) as engine:
        sql = await SqlGenerator(stub).generate(QUESTION, sales_metadata, engine)
        assert engine.execute(sql).rows == [(3,)]

    assert "Only SELECT queries are allowed" in stub.prompts[1]


@pytest.mark.asyncio
async def test_last_error_is_raised_after_retries(stub_factory, sales_database, sales_metadata) -> None:
    bad = {"query": "SELECT missing FROM source_db.sheet_sales"}
    stub = stub_factory(structured=[bad, bad, bad])

    with open_query_engine(sales_database) as engine:
        with pytest.raises(duckdb.BinderException):
            await SqlGenerator(stub, max_retries=2).generate(QUESTION, sales_metadata, engine)

    assert len(stub.prompts) == 3


@pytest.mark.asyncio
async def test_zero_retries_raises_the_first_error(stub_factory, sales_database, sales_metadata) -> None:
    stub = stub_factory(structured=[{"query": "SELECT missing FROM source_db.sheet_sales"}])

    with open_query_engine(sales_database) as engine:
        with pytest.raises(duckdb.BinderException):
            await SqlGenerator(stub, max_retries=0).generate(QUESTION, sales_metadata, engine)

    assert len(stub.prompts) == 1


def test_negative_retry_budget_is_rejected(stub_factory) -> None:
    with pytest.raises(ValueError, match="max_retries"):
        SqlGenerator(stub_factory(), max_retries=-1)


@pytest.mark.asyncio
async def test_generator_errors_are_not_retried(stub_factory, sales_database, sales_metadata) -> None:
    stub = stub_factory(structured=[RuntimeError("upstream unavailable")])

    with open_query_engine(sales_database) as engine:
        with pytest.raises(RuntimeError, match="upstream unavailable"):
            await SqlGenerator(stub).generate(QUESTION, sales_metadata, engine)

    assert len(stub.prompts) == 1


def test_prompt_lists_schema_tables_and_conversation(sales_metadata) -> None:
    messages = [
        ChatTurn(role="user", content="Total sales?"),
        ChatTurn(role="assistant", content="200 overall."),
        ChatTurn(role="user", content="Per region?"),
    ]

    prompt = build_sql_prompt(messages, sales_metadata)

    assert "- region (VARCHAR): Sales region" in prompt
    assert '- sheet_sales (originally "Sales")' in prompt
    assert "user: Total sales?\nassistant: 200 overall.\nuser: Per region?" in prompt
    assert 'prefix each table name with "source_db."' in prompt


def test_referenced_tables_are_deduplicated(stub_factory) -> None:
    generator = SqlGenerator(stub_factory())

    tables = generator.referenced_tables(
        'SELECT * FROM source_db.sheet_a JOIN source_db."sheet_b" USING (id) WHERE id IN (SELECT id FROM source_db.sheet_a)'
    )

    assert tables == ["sheet_a", "sheet_b"]


def test_format_samples_handles_missing_data() -> None:
    assert format_samples({}) == "No samples available."
    assert "(no rows)" in format_samples({"sheet_empty": []})
