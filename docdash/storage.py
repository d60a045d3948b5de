# docdash/storage.py
import asyncio
import io
import logging
import time
from datetime import timedelta
from pathlib import PurePosixPath
from typing import Optional
from uuid import uuid4

from minio import Minio
from minio.error import MinioException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from docdash.config import settings
from docdash.errors import BackendError

logger = logging.getLogger(__name__)

_STORAGE_ERRORS = (MinioException, Urllib3HTTPError, OSError)


def _safe_filename(filename: str) -> str:
    name = PurePosixPath((filename or "uploaded").replace("\\", "/")).name
    name = name.replace("..", "")
    return name or "uploaded"


def build_object_path(owner_id: str, filename: str, now_ms: Optional[int] = None) -> str:
    # {owner_id}/{epoch_ms}_{uuid8}_{filename}
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{owner_id}/{now_ms}_{uuid4().hex[:8]}_{_safe_filename(filename)}"


def get_minio_client() -> Minio:
    return Minio(
        settings.minio_endpoint,
        access_key=settings.minio_access_key,
        secret_key=settings.minio_secret_key,
        secure=settings.minio_secure,
    )


class ObjectStore:
    """
    MinIO-backed object storage. minio-py is blocking, so every call runs in a
    worker thread; failures surface as BackendError.
    """

    def __init__(self, client: Optional[Minio] = None):
        self._client = client or get_minio_client()
        self._known_buckets = set()

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._known_buckets:
            return
        if not self._client.bucket_exists(bucket):
            self._client.make_bucket(bucket)
            logger.info("Created bucket %s", bucket)
        self._known_buckets.add(bucket)

    def _put(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        self._ensure_bucket(bucket)
        self._client.put_object(bucket, path, io.BytesIO(data), length=len(data), content_type=content_type)

    async def put_object(self, bucket: str, path: str, data: bytes, content_type: Optional[str] = None) -> None:
        try:
            await asyncio.to_thread(self._put, bucket, path, data, content_type or "application/octet-stream")
        except _STORAGE_ERRORS as e:
            logger.exception("put_object failed for %s/%s", bucket, path)
            raise BackendError("put_object", str(e)) from e

    async def get_signed_url(self, bucket: str, path: str, ttl_seconds: int) -> str:
        try:
            return await asyncio.to_thread(
                self._client.presigned_get_object, bucket, path, expires=timedelta(seconds=ttl_seconds)
            )
        except _STORAGE_ERRORS + (ValueError,) as e:
            logger.exception("presigned_get_object failed for %s/%s", bucket, path)
            raise BackendError("get_signed_url", str(e)) from e

    async def remove_object(self, bucket: str, path: str) -> None:
        try:
            await asyncio.to_thread(self._client.remove_object, bucket, path)
        except _STORAGE_ERRORS as e:
            logger.exception("remove_object failed for %s/%s", bucket, path)
            raise BackendError("remove_object", str(e)) from e
