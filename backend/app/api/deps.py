"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import Depends
from starlette.requests import HTTPConnection

from app.core.config import AppSettings, get_settings
from app.core.db import get_session
from app.models.chat import ChatRequest
from app.services import workflows


def get_app_settings() -> AppSettings:
    """Expose application settings as a dependency."""

    return get_settings()


async def get_db_session():
    """Provide an async SQLAlchemy session."""

    async with get_session() as session:
        yield session


def get_workbook_context(
    connection: HTTPConnection,
    settings: AppSettings = Depends(get_app_settings),
) -> workflows.WorkbookContext:
    """Return the application's workbook context, building it on first use."""

    context = getattr(connection.app.state, "workbook_context", None)
    if context is None:
        context = workflows.build_workbook_context(settings)
        connection.app.state.workbook_context = context
    return context


def validate_chat_request(request: ChatRequest) -> ChatRequest:
    """Require the conversation to end with a non-empty user turn."""

    last = request.messages[-1]
    if last.role != "user":
        raise ValueError("The last message must come from the user.")
    if not last.content.strip():
        raise ValueError("Message is required.")
    return request
