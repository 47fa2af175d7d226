"""Object storage for uploaded match sheets.

Two backends:
- LocalStorage: files under STORAGE_LOCAL_ROOT/<bucket>/<path> (dev, tests)
- S3Storage: any S3-compatible service (R2, MinIO, AWS) via aioboto3

Both raise StorageError on failure so the pipeline can report the stage.

Usage:
    storage = get_storage()
    await storage.upload("match-reports", "sumulas/prod/<id>/FPF_SUMULA.pdf", data, "application/pdf")
    data = await storage.download("match-reports", "sumulas/prod/<id>/FPF_SUMULA.pdf")
"""

import asyncio
import logging
from functools import lru_cache
from pathlib import Path
from typing import Protocol

from matchdesk.config import get_settings
from matchdesk.sumula.errors import StorageError

logger = logging.getLogger(__name__)


def build_document_path(scope: str, backing_id: object) -> str:
    """Object key of a match sheet: sumulas/<scope>/<id>/FPF_SUMULA.pdf"""
    return f"sumulas/{scope.lower()}/{backing_id}/FPF_SUMULA.pdf"


class StorageAdapter(Protocol):
    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None: ...

    async def download(self, bucket: str, path: str) -> bytes: ...


class LocalStorage:
    """Filesystem-backed storage."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _resolve(self, bucket: str, path: str) -> Path:
        target = (self.root / bucket / path).resolve()
        if self.root.resolve() not in target.parents:
            raise StorageError(f"path escapes storage root: {path}", stage="STORAGE")
        return target

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(bucket, path)

        def _write():
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Failed to store {bucket}/{path}: {e}", stage="STORAGE") from e
        logger.debug(f"LocalStorage: stored {bucket}/{path} ({len(data)} bytes)")

    async def download(self, bucket: str, path: str) -> bytes:
        target = self._resolve(bucket, path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except FileNotFoundError as e:
            raise StorageError(f"Object not found: {bucket}/{path}", stage="STORAGE") from e
        except OSError as e:
            raise StorageError(f"Failed to read {bucket}/{path}: {e}", stage="STORAGE") from e


class S3Storage:
    """Async S3-compatible storage client."""

    def __init__(
        self,
        endpoint_url: str,
        access_key_id: str,
        secret_access_key: str,
        region: str = "auto",
    ):
        self.endpoint_url = endpoint_url
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self.region = region
        self._session = None

    async def _get_client(self):
        """Get or create aioboto3 S3 client."""
        if self._session is None:
            import aioboto3

            self._session = aioboto3.Session()
        return self._session.client(
            "s3",
            endpoint_url=self.endpoint_url or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            region_name=self.region,
        )

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> None:
        try:
            async with await self._get_client() as client:
                await client.put_object(
                    Bucket=bucket,
                    Key=path,
                    Body=data,
                    ContentType=content_type,
                )
        except Exception as e:
            logger.error(f"S3Storage: Failed to upload {bucket}/{path}: {e}")
            raise StorageError(f"Failed to upload {bucket}/{path}: {e}", stage="STORAGE") from e
        logger.debug(f"S3Storage: Uploaded {bucket}/{path} ({len(data)} bytes)")

    async def download(self, bucket: str, path: str) -> bytes:
        try:
            async with await self._get_client() as client:
                response = await client.get_object(Bucket=bucket, Key=path)
                return await response["Body"].read()
        except Exception as e:
            error_str = str(e).lower()
            if "nosuchkey" in error_str or "not found" in error_str or "404" in error_str:
                message = f"Object not found: {bucket}/{path}"
            else:
                message = f"Failed to download {bucket}/{path}: {e}"
            logger.error(f"S3Storage: {message}")
            raise StorageError(message, stage="STORAGE") from e

    async def close(self) -> None:
        self._session = None


@lru_cache
def get_storage() -> StorageAdapter:
    """Storage backend selected by STORAGE_BACKEND."""
    settings = get_settings()
    if settings.STORAGE_BACKEND == "s3":
        if not (settings.S3_ACCESS_KEY_ID and settings.S3_SECRET_ACCESS_KEY):
            raise StorageError("S3 storage selected but credentials are not configured")
        return S3Storage(
            endpoint_url=settings.S3_ENDPOINT_URL,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            region=settings.S3_REGION,
        )
    return LocalStorage(settings.STORAGE_LOCAL_ROOT)
