"""Query and chat endpoints for workbook analysis."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from json import JSONDecodeError

import duckdb
from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.core.db import get_session
from app.core.logging import get_logger
from app.models.chat import ChatRequest, QueryResponse, SqlQueryRequest, StreamChunk
from app.services import workflows
from app.services.sql_guard import SqlPolicyViolation
from app.services.storage import StorageError

router = APIRouter()
logger = get_logger(__name__)


def _http_error(exc: Exception) -> HTTPException:
    """Map workflow failures to client or server errors."""

    if isinstance(exc, duckdb.Error):
        if workflows.is_sql_error(str(exc)):
            return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"SQL error: {exc}")
    elif isinstance(exc, (SqlPolicyViolation, ValueError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    elif isinstance(exc, workflows.FileRecordNotFound):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    elif isinstance(exc, workflows.FileNotReady):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Query failed: {exc}")


_HANDLED_ERRORS = (
    SqlPolicyViolation,
    ValueError,
    workflows.FileRecordNotFound,
    workflows.FileNotReady,
    duckdb.Error,
    StorageError,
)


@router.post(
    "/query",
    response_model=QueryResponse,
    status_code=status.HTTP_200_OK,
    summary="Run read-only SQL against a workbook.",
)
async def run_query(
    request: SqlQueryRequest,
    context: workflows.WorkbookContext = Depends(deps.get_workbook_context),
    db_session: AsyncSession = Depends(deps.get_db_session),
) -> QueryResponse:
    try:
        result = await workflows.run_sql(context, db_session, file_id=request.file_id, sql=request.sql)
    except _HANDLED_ERRORS as exc:
        raise _http_error(exc) from exc

    return QueryResponse(
        sql=request.sql.strip(),
        rows=[list(row) for row in result.rows],
        row_count=result.row_count,
        execution_time_ms=result.execution_time_ms,
    )


@router.post("/chat", summary="Ask a question about a workbook; streams server-sent events.")
async def chat(
    request: ChatRequest,
    context: workflows.WorkbookContext = Depends(deps.get_workbook_context),
    db_session: AsyncSession = Depends(deps.get_db_session),
) -> StreamingResponse:
    """Answer the latest user turn as ``data: {chunk}`` events."""

    try:
        validated = deps.validate_chat_request(request)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    stream = workflows.stream_chat_turn(
        context,
        db_session,
        file_id=validated.file_id,
        messages=validated.messages,
    )

    # Pull the metadata chunk first so generation failures still get a status code.
    try:
        first = await anext(stream)
    except _HANDLED_ERRORS as exc:
        await stream.aclose()
        raise _http_error(exc) from exc

    return StreamingResponse(
        _sse_events(first, stream),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


async def _sse_events(first: StreamChunk, stream: AsyncIterator[StreamChunk]) -> AsyncIterator[str]:
    yield first.to_sse()
    try:
        async for chunk in stream:
            yield chunk.to_sse()
    except Exception as exc:  # noqa: BLE001 - headers are already sent
        logger.exception("chat.stream.failed", exc_info=exc)
        yield StreamChunk(type="error", content="Response generation failed. Please retry.").to_sse()


@router.websocket("/chat/ws")
async def chat_websocket(
    websocket: WebSocket,
    context: workflows.WorkbookContext = Depends(deps.get_workbook_context),
) -> None:
    """Stream workbook answers over a WebSocket connection."""

    await websocket.accept()

    try:
        while True:
            try:
                raw_message = await websocket.receive_text()
            except WebSocketDisconnect:
                break

            try:
                payload = json.loads(raw_message)
            except JSONDecodeError:
                await websocket.send_json({"event": "error", "data": {"message": "Invalid JSON payload."}})
                continue

            try:
                validated = deps.validate_chat_request(ChatRequest(**payload))
            except (ValidationError, ValueError, TypeError) as exc:
                await websocket.send_json({"event": "error", "data": {"message": str(exc)}})
                continue

            try:
                async with get_session() as db_session:
                    async for chunk in workflows.stream_chat_turn(
                        context,
                        db_session,
                        file_id=validated.file_id,
                        messages=validated.messages,
                    ):
                        await websocket.send_json(chunk.to_event())
            except WebSocketDisconnect:
                break
            except _HANDLED_ERRORS as exc:
                await websocket.send_json({"event": "error", "data": {"message": _http_error(exc).detail}})
            except Exception as exc:  # pragma: no cover
                logger.exception("chat.websocket.failed", exc_info=exc)
                await websocket.send_json(
                    {
                        "event": "error",
                        "data": {"message": "Query processing failed. Please retry.", "detail": str(exc)},
                    }
                )
    finally:
        try:
            await websocket.close()
        except RuntimeError:
            pass
