"""Pydantic schemas for chat and query interactions."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

Role = Literal["user", "assistant", "system"]


class ChatTurn(BaseModel):
    role: Role = Field(..., description="Conversation role.")
    content: str = Field(..., description="Message contents.")


class ChatRequest(BaseModel):
    file_id: str = Field(..., min_length=1, description="Workbook to query.")
    messages: list[ChatTurn] = Field(..., min_length=1, description="Conversation so far, oldest first.")


class SqlQueryRequest(BaseModel):
    file_id: str = Field(..., min_length=1, description="Workbook to query.")
    sql: str = Field(..., min_length=1, description="Read-only SQL referencing tables through source_db.")


class QueryResponse(BaseModel):
    sql: str
    rows: list[list[Any]]
    row_count: int
    execution_time_ms: float


class StreamChunk(BaseModel):
    """One unit of a narrated answer stream."""

    type: Literal["metadata", "text", "done", "error"]
    content: str | None = None
    sql_query: str | None = None
    row_count: int | None = None
    execution_time: float | None = Field(default=None, description="Query execution time in milliseconds.")

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"

    def to_event(self) -> dict[str, Any]:
        """WebSocket event envelope."""

        event = "token" if self.type == "text" else self.type
        return {"event": event, "data": self.model_dump(exclude_none=True, exclude={"type"})}
