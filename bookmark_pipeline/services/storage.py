"""Object storage for snapshots and thumbnails.

Objects are addressed by ``"{bucket}/{key}"`` paths, which is also the form
recorded on the bookmark (``snapshots/{owner}/{bookmark}/page.html``).

Backends:
- local: files under a root directory (development, tests)
- minio: any S3-compatible store via the MinIO SDK
"""

import asyncio
import io
import json
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import structlog
import urllib3
from minio import Minio
from minio.error import S3Error

from bookmark_pipeline.config import Settings
from bookmark_pipeline.core.errors import SnapshotNotFoundError, StorageError

logger = structlog.get_logger(__name__)

HTML_CONTENT_TYPE = "text/html; charset=utf-8"
JPEG_CONTENT_TYPE = "image/jpeg"
PDF_CONTENT_TYPE = "application/pdf"

SNAPSHOT_FILE = "page.html"
THUMBNAIL_FILE = "thumbnail.jpg"


def snapshot_key(owner_id: str, bookmark_id: str, filename: str) -> str:
    return f"{owner_id}/{bookmark_id}/{filename}"


def join_path(bucket: str, key: str) -> str:
    return f"{bucket}/{key}"


def split_path(path: str) -> tuple[str, str]:
    """Split ``bucket/key`` into its parts.

    Raises:
        StorageError: If the path has no key part (not retryable)
    """
    bucket, sep, key = path.strip("/").partition("/")
    if not sep or not bucket or not key:
        raise StorageError(
            f"Object path must be 'bucket/key', got {path!r}", retryable=False
        )
    return bucket, key


@dataclass
class StoredObject:
    data: bytes
    content_type: Optional[str] = None


class ObjectStorage(ABC):
    """Abstract interface for snapshot object storage."""

    @abstractmethod
    async def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        """Write an object, overwriting any existing one. Returns its path."""
        ...

    @abstractmethod
    async def get(self, path: str) -> StoredObject:
        """
        Read an object by path.

        Raises:
            SnapshotNotFoundError: If no object exists at ``path``
            StorageError: On backend failures
        """
        ...

    @abstractmethod
    async def delete(self, path: str) -> None:
        ...

    async def close(self) -> None:
        return None


class LocalObjectStorage(ObjectStorage):
    """Filesystem-backed storage. Content types live in a sidecar file."""

    def __init__(self, root: str | Path):
        self._root = Path(root)

    def _file(self, bucket: str, key: str) -> Path:
        target = (self._root / bucket / key).resolve()
        if self._root.resolve() not in target.parents:
            raise StorageError(f"Object key escapes storage root: {bucket}/{key}", retryable=False)
        return target

    @staticmethod
    def _meta(target: Path) -> Path:
        return target.with_name(target.name + ".meta.json")

    async def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        target = self._file(bucket, key)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
            self._meta(target).write_text(json.dumps({"content_type": content_type}))

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Failed to write {bucket}/{key}: {e}") from e

        logger.debug("object_stored", bucket=bucket, key=key, bytes=len(data))
        return join_path(bucket, key)

    async def get(self, path: str) -> StoredObject:
        bucket, key = split_path(path)
        target = self._file(bucket, key)

        def _read() -> StoredObject:
            data = target.read_bytes()
            meta = self._meta(target)
            if meta.exists():
                content_type = json.loads(meta.read_text()).get("content_type")
            else:
                content_type = mimetypes.guess_type(target.name)[0]
            return StoredObject(data=data, content_type=content_type)

        try:
            return await asyncio.to_thread(_read)
        except FileNotFoundError as e:
            raise SnapshotNotFoundError(path) from e
        except OSError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    async def delete(self, path: str) -> None:
        bucket, key = split_path(path)
        target = self._file(bucket, key)

        def _unlink() -> None:
            target.unlink(missing_ok=True)
            self._meta(target).unlink(missing_ok=True)

        await asyncio.to_thread(_unlink)


class MinioObjectStorage(ObjectStorage):
    """S3-compatible storage through the MinIO SDK.

    The SDK is synchronous; every call runs in a worker thread.
    """

    def __init__(self, client: Minio, region: str = "us-east-1"):
        self._client = client
        self._region = region
        self._known_buckets: set[str] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "MinioObjectStorage":
        http_client = urllib3.PoolManager(
            timeout=urllib3.Timeout(
                connect=min(10.0, settings.storage_timeout_s),
                read=settings.storage_timeout_s,
            ),
            retries=urllib3.Retry(
                total=3,
                backoff_factor=0.2,
                status_forcelist=[500, 502, 503, 504],
            ),
        )
        client = Minio(
            settings.minio_endpoint,
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_secure,
            http_client=http_client,
        )
        return cls(client)

    async def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._known_buckets:
            return
        exists = await asyncio.to_thread(self._client.bucket_exists, bucket)
        if not exists:
            try:
                await asyncio.to_thread(self._client.make_bucket, bucket, self._region)
                logger.info("bucket_created", bucket=bucket)
            except S3Error as e:
                # Another replica created it first.
                if e.code not in ("BucketAlreadyOwnedByYou", "BucketAlreadyExists"):
                    raise
        self._known_buckets.add(bucket)

    async def put(self, bucket: str, key: str, data: bytes, content_type: str) -> str:
        try:
            await self._ensure_bucket(bucket)
            await asyncio.to_thread(
                self._client.put_object,
                bucket,
                key,
                io.BytesIO(data),
                len(data),
                content_type=content_type,
            )
        except (S3Error, urllib3.exceptions.HTTPError) as e:
            raise StorageError(f"Failed to write {bucket}/{key}: {e}") from e

        logger.debug("object_stored", bucket=bucket, key=key, bytes=len(data))
        return join_path(bucket, key)

    async def get(self, path: str) -> StoredObject:
        bucket, key = split_path(path)

        def _read() -> StoredObject:
            response = self._client.get_object(bucket, key)
            try:
                return StoredObject(
                    data=response.read(),
                    content_type=response.headers.get("Content-Type"),
                )
            finally:
                response.close()
                response.release_conn()

        try:
            return await asyncio.to_thread(_read)
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchBucket"):
                raise SnapshotNotFoundError(path) from e
            raise StorageError(f"Failed to read {path}: {e}") from e
        except urllib3.exceptions.HTTPError as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    async def delete(self, path: str) -> None:
        bucket, key = split_path(path)
        try:
            await asyncio.to_thread(self._client.remove_object, bucket, key)
        except (S3Error, urllib3.exceptions.HTTPError) as e:
            raise StorageError(f"Failed to delete {path}: {e}") from e


def create_object_storage(settings: Settings) -> ObjectStorage:
    if settings.storage_mode == "local":
        logger.info("object_storage_initialized", mode="local", root=settings.storage_local_root)
        return LocalObjectStorage(settings.storage_local_root)

    logger.info(
        "object_storage_initialized",
        mode="minio",
        endpoint=settings.minio_endpoint,
        secure=settings.minio_secure,
    )
    return MinioObjectStorage.from_settings(settings)
