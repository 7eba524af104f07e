"""Pydantic schemas for workbook file endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

IssueType = Literal[
    "missing_table",
    "missing_column",
    "wrong_data_type",
    "database_error",
    "extra_table",
    "extra_column",
    "unexpected_data_type",
]


class FileRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    file_id: str
    file_name: str
    original_name: str
    sha_hash: str
    status: str
    sheets_processed: int | None = None
    duckdb_path: str | None = None
    metadata_path: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ValidationSchema(BaseModel):
    expected_tables: list[str] = Field(default_factory=list)
    expected_columns: dict[str, list[str]] = Field(default_factory=dict)
    expected_data_types: dict[str, dict[str, str]] = Field(default_factory=dict)


class ValidationIssue(BaseModel):
    type: IssueType
    message: str
    table: str | None = None
    column: str | None = None
    expected: str | None = None
    actual: str | None = None


class ValidationSummary(BaseModel):
    tables_validated: int = 0
    columns_validated: int = 0
    data_types_validated: int = 0


class ValidationResult(BaseModel):
    success: bool
    errors: list[ValidationIssue] = Field(default_factory=list)
    warnings: list[ValidationIssue] = Field(default_factory=list)
    summary: ValidationSummary = Field(default_factory=ValidationSummary)


class TableOverview(BaseModel):
    table: str
    original_name: str
    columns: list[str]
    row_count: int


class UploadResponse(BaseModel):
    success: bool = True
    file: FileRecordOut
    tables: list[TableOverview] = Field(default_factory=list)
    validation: ValidationResult | None = None


class MetadataResponse(BaseModel):
    success: bool = True
    metadata: dict[str, Any]


class DeleteResponse(BaseModel):
    success: bool = True
    file_id: str
    objects_deleted: int
