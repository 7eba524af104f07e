"""Workbook status rows in the metadata store."""

from __future__ import annotations

from collections.abc import Sequence
from enum import Enum

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.tables import WorkbookFile


class FileStatus(str, Enum):
    CREATED = "created"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DELETION_FAILED = "deletion_failed"


class RecordNotFound(LookupError):
    """No status row exists for the requested file id."""


async def create_record(
    session: AsyncSession,
    *,
    file_id: str,
    file_name: str,
    original_name: str,
    sha_hash: str,
    source_path: str | None = None,
    status: FileStatus = FileStatus.CREATED,
) -> WorkbookFile:
    """Insert a new status row."""

    record = WorkbookFile(
        file_id=file_id,
        file_name=file_name,
        original_name=original_name,
        sha_hash=sha_hash,
        source_path=source_path,
        status=status.value,
    )
    session.add(record)
    await session.commit()
    await session.refresh(record)
    return record


async def get_record(session: AsyncSession, file_id: str) -> WorkbookFile | None:
    stmt = select(WorkbookFile).where(WorkbookFile.file_id == file_id)
    return await session.scalar(stmt)


async def list_records(session: AsyncSession, *, limit: int = 50) -> Sequence[WorkbookFile]:
    stmt = select(WorkbookFile).order_by(WorkbookFile.id.desc()).limit(limit)
    results = await session.scalars(stmt)
    return list(results)


async def update_status(
    session: AsyncSession,
    file_id: str,
    status: FileStatus,
    **fields: object,
) -> None:
    """Set ``status`` plus any derived columns (hash, counts, paths, error)."""

    allowed = {"sha_hash", "sheets_processed", "source_path", "duckdb_path", "metadata_path", "error_message"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError(f"Unsupported status fields: {sorted(unknown)}")

    stmt = (
        update(WorkbookFile)
        .where(WorkbookFile.file_id == file_id)
        .values(status=status.value, **fields)
        .execution_options(synchronize_session="fetch")
    )
    result = await session.execute(stmt)
    if result.rowcount == 0:
        await session.rollback()
        raise RecordNotFound(f"No workbook record for file id {file_id}")
    await session.commit()


async def delete_record(session: AsyncSession, file_id: str) -> bool:
    result = await session.execute(delete(WorkbookFile).where(WorkbookFile.file_id == file_id))
    await session.commit()
    return bool(result.rowcount)
