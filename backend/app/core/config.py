"""Application configuration powered by Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppSettings(BaseSettings):
    """Strongly typed application settings."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    environment: Literal["dev", "staging", "prod"] = Field(default="dev")
    project_name: str = Field(default="Workbook Analyst API")
    version: str = Field(default="0.1.0")
    cors_allowed_origins: list[str] = Field(default_factory=list)

    openai_api_key: str | None = Field(default=None, min_length=1)
    openai_api_base: str | None = None

    sql_model: str = Field(default="gpt-4.1")
    sql_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    narration_model: str = Field(default="gpt-4.1")
    narration_temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    column_model: str = Field(default="gpt-4o-mini")
    column_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    schema_model: str = Field(default="gpt-4")
    schema_temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    schema_max_tokens: int = Field(default=300, ge=16)

    metadata_db_url: str = Field(default="sqlite+aiosqlite:///./data/workbooks.db")

    storage_backend: Literal["filesystem", "minio"] = Field(default="filesystem")
    storage_root: str = Field(default="./data/storage")
    storage_prefix: str = Field(default="duckdb")
    minio_endpoint: str = Field(default="localhost:9000")
    minio_access_key: str | None = None
    minio_secret_key: str | None = None
    minio_bucket: str = Field(default="uploads")
    minio_secure: bool = Field(default=False)

    temp_dir: str | None = None
    max_upload_bytes: int = Field(default=100 * 1024 * 1024, ge=1)

    sql_max_retries: int = Field(default=2, ge=0, le=5)
    sql_sample_rows: int = Field(default=3, ge=1, le=20)
    schema_sample_rows: int = Field(default=5, ge=1, le=20)
    narration_max_rows: int = Field(default=100, ge=1)


@lru_cache
def get_settings() -> AppSettings:
    """Provide a cached singleton settings instance."""

    return AppSettings()
