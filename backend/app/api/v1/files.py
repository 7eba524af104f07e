"""Workbook upload, inspection and deletion endpoints."""

from __future__ import annotations

import duckdb
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status
from sqlalchemy.ext.asyncio import AsyncSession

from workbook_ingest.errors import IngestionError, WorkbookParseError

from app.api import deps
from app.core.logging import get_logger
from app.models.files import DeleteResponse, FileRecordOut, MetadataResponse, UploadResponse
from app.services import records, workflows
from app.services.storage import StorageError

router = APIRouter()
logger = get_logger(__name__)


@router.post(
    "",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a workbook and build its database.",
)
async def upload_workbook(
    file: UploadFile = File(...),
    context: workflows.WorkbookContext = Depends(deps.get_workbook_context),
    db_session: AsyncSession = Depends(deps.get_db_session),
) -> UploadResponse:
    """Ingest an uploaded workbook."""

    content = await file.read()
    try:
        outcome = await workflows.ingest_upload(
            context,
            db_session,
            content=content,
            original_name=file.filename or "workbook.xlsx",
        )
    except (workflows.UploadRejected, WorkbookParseError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (IngestionError, StorageError, duckdb.Error) as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to process file: {exc}",
        ) from exc

    return UploadResponse(
        file=FileRecordOut.model_validate(outcome.record),
        tables=outcome.tables(),
        validation=outcome.validation,
    )


@router.get("/{file_id}", response_model=FileRecordOut, summary="Fetch a workbook status record.")
async def get_workbook(
    file_id: str,
    db_session: AsyncSession = Depends(deps.get_db_session),
) -> FileRecordOut:
    record = await records.get_record(db_session, file_id)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="File not found")
    return FileRecordOut.model_validate(record)


@router.get("/{file_id}/metadata", response_model=MetadataResponse, summary="Fetch a workbook's schema metadata.")
async def get_workbook_metadata(
    file_id: str,
    context: workflows.WorkbookContext = Depends(deps.get_workbook_context),
    db_session: AsyncSession = Depends(deps.get_db_session),
) -> MetadataResponse:
    try:
        record = await workflows.require_completed(db_session, file_id)
        metadata = await workflows.load_metadata(context, record)
    except workflows.FileRecordNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except workflows.FileNotReady as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except StorageError as exc:
        logger.error("files.metadata.failed", file_id=file_id, error=str(exc))
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return MetadataResponse(metadata=metadata.model_dump())


@router.delete("/{file_id}", response_model=DeleteResponse, summary="Delete a workbook and its stored files.")
async def delete_workbook(
    file_id: str,
    context: workflows.WorkbookContext = Depends(deps.get_workbook_context),
    db_session: AsyncSession = Depends(deps.get_db_session),
) -> DeleteResponse:
    try:
        deleted = await workflows.delete_workbook(context, db_session, file_id=file_id)
    except workflows.FileRecordNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except workflows.DeletionFailed as exc:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return DeleteResponse(file_id=file_id, objects_deleted=deleted)
