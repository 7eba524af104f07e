"""Blob storage for uploaded workbooks and generated database files."""

from __future__ import annotations

import asyncio
import io
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Protocol, Sequence

from minio import Minio
from minio.deleteobjects import DeleteObject
from minio.error import S3Error

from app.core.config import AppSettings
from app.core.logging import get_logger

logger = get_logger(__name__)

BINARY_CONTENT_TYPE = "application/octet-stream"


class StorageError(RuntimeError):
    """A blob store operation failed."""


@dataclass(slots=True)
class StorageEntry:
    key: str
    size: int | None = None


class BlobStore(Protocol):
    """Key/value byte store."""

    async def upload(self, key: str, data: bytes, *, content_type: str = BINARY_CONTENT_TYPE) -> None: ...

    async def download(self, key: str) -> bytes: ...

    async def delete(self, keys: Sequence[str]) -> None: ...

    async def list(self, prefix: str) -> list[StorageEntry]: ...


class FilesystemBlobStore:
    """Blob store rooted in a local directory; keys are relative POSIX paths."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def _path_for(self, key: str) -> Path:
        relative = PurePosixPath(key)
        if relative.is_absolute() or ".." in relative.parts:
            raise StorageError(f"Invalid storage key: {key}")
        return self.root.joinpath(*relative.parts)

    async def upload(self, key: str, data: bytes, *, content_type: str = BINARY_CONTENT_TYPE) -> None:
        path = self._path_for(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"Upload of {key} failed: {exc}") from exc

    async def download(self, key: str) -> bytes:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Download of {key} failed: {exc}") from exc

    async def delete(self, keys: Sequence[str]) -> None:
        paths = [self._path_for(key) for key in keys]

        def _remove() -> None:
            for path in paths:
                path.unlink(missing_ok=True)
            for parent in {path.parent for path in paths}:
                if parent != self.root and parent.is_dir() and not any(parent.iterdir()):
                    parent.rmdir()

        try:
            await asyncio.to_thread(_remove)
        except OSError as exc:
            raise StorageError(f"Delete failed: {exc}") from exc

    async def list(self, prefix: str) -> list[StorageEntry]:
        base = self._path_for(prefix.rstrip("/"))

        def _walk() -> list[StorageEntry]:
            if not base.is_dir():
                return []
            return [
                StorageEntry(key=path.relative_to(self.root).as_posix(), size=path.stat().st_size)
                for path in sorted(base.rglob("*"))
                if path.is_file()
            ]

        return await asyncio.to_thread(_walk)


class MinioBlobStore:
    """Blob store backed by an S3-compatible MinIO bucket."""

    def __init__(self, client: Minio, bucket: str) -> None:
        self.client = client
        self.bucket = bucket
        self._bucket_ready = False

    async def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return

        def _create() -> None:
            if not self.client.bucket_exists(self.bucket):
                self.client.make_bucket(self.bucket)

        try:
            await asyncio.to_thread(_create)
        except S3Error as exc:
            raise StorageError(f"Bucket {self.bucket} unavailable: {exc}") from exc
        self._bucket_ready = True

    async def upload(self, key: str, data: bytes, *, content_type: str = BINARY_CONTENT_TYPE) -> None:
        await self._ensure_bucket()
        try:
            await asyncio.to_thread(
                self.client.put_object,
                self.bucket,
                key,
                io.BytesIO(data),
                len(data),
                content_type=content_type,
            )
        except S3Error as exc:
            raise StorageError(f"Upload of {key} failed: {exc}") from exc

    async def download(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self.client.get_object(self.bucket, key)
            try:
                return response.read()
            finally:
                response.close()
                response.release_conn()

        try:
            return await asyncio.to_thread(_read)
        except S3Error as exc:
            raise StorageError(f"Download of {key} failed: {exc}") from exc

    async def delete(self, keys: Sequence[str]) -> None:
        if not keys:
            return

        def _remove() -> list[str]:
            errors = self.client.remove_objects(self.bucket, [DeleteObject(key) for key in keys])
            return [f"{error.name}: {error.message}" for error in errors]

        try:
            failures = await asyncio.to_thread(_remove)
        except S3Error as exc:
            raise StorageError(f"Delete failed: {exc}") from exc
        if failures:
            raise StorageError(f"Delete failed for {len(failures)} objects: {failures}")

    async def list(self, prefix: str) -> list[StorageEntry]:
        def _list() -> list[StorageEntry]:
            objects = self.client.list_objects(self.bucket, prefix=prefix, recursive=True)
            return [StorageEntry(key=obj.object_name, size=obj.size) for obj in objects if not obj.is_dir]

        try:
            return await asyncio.to_thread(_list)
        except S3Error as exc:
            raise StorageError(f"Listing {prefix} failed: {exc}") from exc


def build_blob_store(settings: AppSettings) -> BlobStore:
    """Instantiate the configured storage backend."""

    if settings.storage_backend == "minio":
        client = Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
        )
        return MinioBlobStore(client, settings.minio_bucket)

    return FilesystemBlobStore(Path(settings.storage_root).resolve())


async def download_to_temp(store: BlobStore, key: str, temp_dir: Path) -> Path:
    """Copy an object into a request-private local file."""

    data = await store.download(key)
    path = temp_dir / f"{time.time_ns()}_{PurePosixPath(key).name}"

    def _write() -> None:
        temp_dir.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    await asyncio.to_thread(_write)
    logger.debug("storage.download.local_copy", key=key, path=str(path), size=len(data))
    return path


def cleanup_temp_files(*paths: Path | None) -> None:
    """Remove local files, logging failures instead of raising."""

    for path in paths:
        if path is None:
            continue
        for candidate in (path, path.with_name(path.name + ".wal")):
            try:
                candidate.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("storage.cleanup.failed", path=str(candidate), error=str(exc))
