"""Request-level orchestration of ingestion, querying and deletion."""

from __future__ import annotations

import asyncio
import json
import re
import tempfile
import time
import uuid
from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from workbook_ingest.llm import create_text_generator
from workbook_ingest.naming import workbook_hash
from workbook_ingest.pipeline import IngestionResult, WorkbookIngestor, WorkbookMetadata
from workbook_ingest.resources import close_quietly
from workbook_ingest.schema import SchemaDescriber

from app.core.config import AppSettings
from app.core.logging import get_logger
from app.models.chat import ChatTurn, StreamChunk
from app.models.files import TableOverview, ValidationResult
from app.models.tables import WorkbookFile
from app.services import records
from app.services.narrator import ResponseNarrator
from app.services.query_engine import QueryEngine, QueryResult, open_query_engine
from app.services.records import FileStatus
from app.services.sql_generator import SqlGenerator
from app.services.sql_guard import validate_read_only_sql
from app.services.storage import BlobStore, StorageError, build_blob_store, cleanup_temp_files, download_to_temp
from app.services.validation import DatabaseValidator

logger = get_logger(__name__)

ALLOWED_SUFFIXES = {".xlsx", ".xlsm"}
_UNSAFE_NAME_RE = re.compile(r"[^a-zA-Z0-9._-]")
_SQL_ERROR_RE = re.compile(r"syntax|table|column", re.IGNORECASE)


class UploadRejected(ValueError):
    """The uploaded file is not an acceptable workbook."""


class FileRecordNotFound(LookupError):
    """No workbook exists for the requested file id."""


class FileNotReady(RuntimeError):
    """The workbook exists but has not finished processing."""


class DeletionFailed(RuntimeError):
    """Stored objects for a workbook could not be removed."""


@dataclass(slots=True)
class WorkbookContext:
    """Explicit handles shared by the request workflows."""

    settings: AppSettings
    storage: BlobStore
    ingestor: WorkbookIngestor
    validator: DatabaseValidator
    sql_generator: SqlGenerator
    narrator: ResponseNarrator
    temp_dir: Path


@dataclass(slots=True)
class UploadOutcome:
    record: WorkbookFile
    ingestion: IngestionResult
    validation: ValidationResult

    def tables(self) -> list[TableOverview]:
        return [
            TableOverview(
                table=sheet.table,
                original_name=sheet.original_name,
                columns=self.ingestion.table_columns.get(sheet.table, []),
                row_count=self.ingestion.row_counts.get(sheet.table, 0),
            )
            for sheet in self.ingestion.metadata.sheets
        ]


@dataclass(slots=True)
class StoragePaths:
    folder: str
    source: str
    database: str
    metadata: str

    @classmethod
    def for_upload(cls, prefix: str, digest: str, file_name: str) -> "StoragePaths":
        folder = f"{prefix.strip('/')}/{digest}" if prefix.strip("/") else digest
        return cls(
            folder=folder,
            source=f"{folder}/{file_name}",
            database=f"{folder}/{digest}.duckdb",
            metadata=f"{folder}/metadata.json",
        )


def build_workbook_context(settings: AppSettings) -> WorkbookContext:
    """Construct storage and generator clients from settings."""

    if not settings.openai_api_key:
        logger.error("workflows.context.missing_api_key", message="OpenAI key not configured")
        raise RuntimeError("OpenAI API key required for workbook analysis.")

    def _generator(model: str, temperature: float, max_tokens: int | None = None):
        return create_text_generator(
            model=model,
            temperature=temperature,
            api_key=settings.openai_api_key,
            api_base=settings.openai_api_base,
            max_tokens=max_tokens,
        )

    temp_dir = Path(settings.temp_dir or tempfile.gettempdir()) / "workbook-analyst"
    storage = build_blob_store(settings)
    describer = SchemaDescriber(
        _generator(settings.schema_model, settings.schema_temperature, settings.schema_max_tokens),
        sample_size=settings.schema_sample_rows,
    )

    return WorkbookContext(
        settings=settings,
        storage=storage,
        ingestor=WorkbookIngestor(describer, output_dir=temp_dir),
        validator=DatabaseValidator(storage, temp_dir=temp_dir),
        sql_generator=SqlGenerator(
            _generator(settings.sql_model, settings.sql_temperature),
            max_retries=settings.sql_max_retries,
            sample_limit=settings.sql_sample_rows,
        ),
        narrator=ResponseNarrator(
            _generator(settings.narration_model, settings.narration_temperature),
            header_generator=_generator(settings.column_model, settings.column_temperature),
            max_rows=settings.narration_max_rows,
        ),
        temp_dir=temp_dir,
    )


def generate_unique_file_name(original_name: str) -> str:
    """``<sanitized stem>__<epoch ms><suffix>`` for storage keys."""

    path = PurePosixPath(original_name.replace("\\", "/"))
    stem = _UNSAFE_NAME_RE.sub("_", path.stem) or "workbook"
    suffix = _UNSAFE_NAME_RE.sub("_", path.suffix.lower())
    return f"{stem}__{int(time.time() * 1000)}{suffix}"


def check_upload(settings: AppSettings, original_name: str, size: int) -> None:
    suffix = PurePosixPath(original_name).suffix.lower()
    if suffix not in ALLOWED_SUFFIXES:
        raise UploadRejected("Invalid file type. Only Excel workbooks (.xlsx, .xlsm) are allowed.")
    if size == 0:
        raise UploadRejected("Uploaded file is empty.")
    if size > settings.max_upload_bytes:
        limit_mb = settings.max_upload_bytes // (1024 * 1024)
        raise UploadRejected(f"File size exceeds {limit_mb}MB limit")


def is_sql_error(message: str) -> bool:
    """Whether an execution error reads like a problem with the SQL itself."""

    return bool(_SQL_ERROR_RE.search(message))


async def ingest_upload(
    context: WorkbookContext,
    session: AsyncSession,
    *,
    content: bytes,
    original_name: str,
) -> UploadOutcome:
    """Store an uploaded workbook, build its database and record the result."""

    check_upload(context.settings, original_name, len(content))

    file_id = uuid.uuid4().hex
    digest = workbook_hash(file_id)
    file_name = generate_unique_file_name(original_name)
    paths = StoragePaths.for_upload(context.settings.storage_prefix, digest, file_name)
    log = logger.bind(file_id=file_id, workbook_id=digest)

    await context.storage.upload(paths.source, content)
    uploaded = [paths.source]

    try:
        await records.create_record(
            session,
            file_id=file_id,
            file_name=file_name,
            original_name=original_name,
            sha_hash=digest,
            source_path=paths.source,
        )
    except Exception:
        await _remove_objects(context.storage, uploaded, log)
        raise

    result: IngestionResult | None = None
    try:
        await records.update_status(session, file_id, FileStatus.PROCESSING)
        result = await context.ingestor.ingest(content, file_id)

        database_bytes = await asyncio.to_thread(result.database_path.read_bytes)
        await context.storage.upload(paths.database, database_bytes)
        uploaded.append(paths.database)
        metadata_bytes = await asyncio.to_thread(result.metadata_path.read_bytes)
        await context.storage.upload(paths.metadata, metadata_bytes)
        uploaded.append(paths.metadata)

        await records.update_status(
            session,
            file_id,
            FileStatus.COMPLETED,
            sheets_processed=result.sheets_processed,
            duckdb_path=paths.database,
            metadata_path=paths.metadata,
        )
    except Exception as exc:
        log.error("workflows.upload.failed", error=str(exc), error_type=type(exc).__name__)
        await _mark_failed(session, file_id, str(exc), log)
        await _remove_objects(context.storage, uploaded, log)
        raise
    finally:
        if result is not None:
            cleanup_temp_files(result.database_path, result.metadata_path)

    validation = await context.validator.validate_with_metadata(
        result.metadata,
        paths.database,
        result.table_columns,
    )
    if not validation.success:
        log.warning("workflows.upload.validation_failed", errors=[issue.message for issue in validation.errors])

    record = await records.get_record(session, file_id)
    if record is None:
        raise FileRecordNotFound(f"Workbook {file_id} disappeared during upload")

    log.info("workflows.upload.completed", sheets_processed=result.sheets_processed)
    return UploadOutcome(record=record, ingestion=result, validation=validation)


async def require_completed(session: AsyncSession, file_id: str) -> WorkbookFile:
    record = await records.get_record(session, file_id)
    if record is None:
        raise FileRecordNotFound(f"Workbook {file_id} not found")
    if record.status != FileStatus.COMPLETED.value or not record.duckdb_path or not record.metadata_path:
        raise FileNotReady(f"Workbook {file_id} is {record.status}")
    return record


async def load_metadata(context: WorkbookContext, record: WorkbookFile) -> WorkbookMetadata:
    if not record.metadata_path:
        raise FileNotReady(f"Workbook {record.file_id} has no metadata yet")
    raw = await context.storage.download(record.metadata_path)
    try:
        return WorkbookMetadata.model_validate(json.loads(raw))
    except (json.JSONDecodeError, ValidationError) as exc:
        raise StorageError(f"Metadata for {record.file_id} is unreadable: {exc}") from exc


async def run_sql(
    context: WorkbookContext,
    session: AsyncSession,
    *,
    file_id: str,
    sql: str,
) -> QueryResult:
    """Execute caller-supplied read-only SQL against a workbook."""

    statement = validate_read_only_sql(sql)
    record = await require_completed(session, file_id)

    local_path = await download_to_temp(context.storage, record.duckdb_path, context.temp_dir)
    try:
        return await asyncio.to_thread(_execute_file, local_path, statement)
    finally:
        cleanup_temp_files(local_path)


def _execute_file(database_path: Path, statement: str) -> QueryResult:
    with open_query_engine(database_path) as engine:
        return engine.execute(statement)


async def stream_chat_turn(
    context: WorkbookContext,
    session: AsyncSession,
    *,
    file_id: str,
    messages: Sequence[ChatTurn],
) -> AsyncIterator[StreamChunk]:
    """Answer the latest chat turn as a stream of chunks."""

    record = await require_completed(session, file_id)
    metadata = await load_metadata(context, record)

    local_path = await download_to_temp(context.storage, record.duckdb_path, context.temp_dir)
    try:
        engine = await asyncio.to_thread(QueryEngine().open, local_path)
        try:
            sql = await context.sql_generator.generate(messages, metadata, engine)
            result = await asyncio.to_thread(engine.execute, sql)
        finally:
            close_quietly(engine, label=str(local_path))

        async for chunk in context.narrator.stream(sql, result.rows, result.execution_time_ms, metadata):
            yield chunk
    finally:
        cleanup_temp_files(local_path)


async def delete_workbook(context: WorkbookContext, session: AsyncSession, *, file_id: str) -> int:
    """Remove every stored object for a workbook, then its record."""

    record = await records.get_record(session, file_id)
    if record is None:
        raise FileRecordNotFound(f"Workbook {file_id} not found")

    prefix = context.settings.storage_prefix.strip("/")
    folder = f"{prefix}/{record.sha_hash}/" if prefix else f"{record.sha_hash}/"
    log = logger.bind(file_id=file_id, folder=folder)

    try:
        entries = await context.storage.list(folder)
        keys = [entry.key for entry in entries]
        if keys:
            await context.storage.delete(keys)
    except StorageError as exc:
        log.error("workflows.delete.storage_failed", error=str(exc))
        await records.update_status(session, file_id, FileStatus.DELETION_FAILED, error_message=str(exc))
        raise DeletionFailed(f"Failed to delete stored files for {file_id}: {exc}") from exc

    await records.delete_record(session, file_id)
    log.info("workflows.delete.completed", objects_deleted=len(keys))
    return len(keys)


async def _mark_failed(session: AsyncSession, file_id: str, message: str, log) -> None:
    try:
        await session.rollback()
        await records.update_status(session, file_id, FileStatus.FAILED, error_message=message[:2000])
    except Exception as exc:  # noqa: BLE001 - the ingestion error is the one to surface
        log.error("workflows.upload.status_update_failed", error=str(exc))


async def _remove_objects(storage: BlobStore, keys: list[str], log) -> None:
    if not keys:
        return
    try:
        await storage.delete(keys)
    except StorageError as exc:
        log.error("workflows.upload.rollback_failed", keys=keys, error=str(exc))
