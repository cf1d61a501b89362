"""S3-compatible object storage service using MinIO.

Holds uploaded invoice images and the official receipts (UPO) downloaded
from the national platform.

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging
import mimetypes
from typing import BinaryIO

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.shared.config import Settings
from services.shared.errors import NotFoundError, TransientError

logger = logging.getLogger(__name__)


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        object_name: Full object path in storage
        bucket: Bucket name
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    error: str | None = None
    etag: str | None = None
    size: int | None = None


def detect_content_type(filename: str) -> str:
    content_type, _ = mimetypes.guess_type(filename)
    return content_type or "application/octet-stream"


class StorageService:
    """Blob store backed by an on-premises MinIO deployment."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._client: Minio | None = None
        self._bucket_exists_cache: set[str] = set()

    def _get_client(self) -> Minio:
        """Get or create MinIO client (lazy initialization).

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is not None:
            return self._client

        credentials = {
            "APP_STORAGE_ACCESS_KEY": self.settings.storage_access_key,
            "APP_STORAGE_SECRET_KEY": self.settings.storage_secret_key,
        }
        missing = [name for name, value in credentials.items() if not value]
        if missing:
            raise ValueError(f"Storage credentials not configured. Set {', '.join(missing)}")

        self._client = Minio(
            endpoint=self.settings.storage_endpoint,
            access_key=self.settings.storage_access_key,
            secret_key=self.settings.storage_secret_key,
            secure=self.settings.storage_secure,
        )
        logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")
        return self._client

    def is_available(self) -> bool:
        credentials = (self.settings.storage_access_key, self.settings.storage_secret_key)
        return self.settings.storage_enabled and all(credentials)

    def health_check(self) -> bool:
        """Check if storage backend is reachable.

        Returns:
            True if MinIO server responds to list_buckets
        """
        if not self.is_available():
            return False

        try:
            self._get_client().list_buckets()
            return True
        except Exception as e:
            logger.warning(f"Storage health check failed: {e}")
            return False

    def _ensure_bucket(self, bucket: str) -> None:
        if bucket in self._bucket_exists_cache:
            return

        client = self._get_client()
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")

        self._bucket_exists_cache.add(bucket)

    @retry(
        retry=retry_if_exception_type(S3Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _put(self, bucket: str, object_name: str, data: bytes, content_type: str) -> str:
        client = self._get_client()
        self._ensure_bucket(bucket)
        data_stream: BinaryIO = io.BytesIO(data)
        result = client.put_object(
            bucket_name=bucket,
            object_name=object_name,
            data=data_stream,
            length=len(data),
            content_type=content_type,
        )
        return result.etag

    def upload_bytes(
        self,
        data: bytes,
        object_name: str,
        content_type: str | None = None,
    ) -> StorageResult:
        """Upload bytes to storage.

        Args:
            data: Bytes to upload
            object_name: Target object name in storage
            content_type: MIME type (auto-detected if not provided)

        Returns:
            StorageResult with upload details
        """
        bucket = self.settings.storage_bucket
        content_type = content_type or detect_content_type(object_name)

        try:
            etag = self._put(bucket, object_name, data, content_type)
        except S3Error as e:
            logger.error(f"S3 error uploading {object_name}: {e}")
            return StorageResult(
                success=False,
                object_name=object_name,
                bucket=bucket,
                error=f"S3 error: {e.code} - {e.message}",
            )
        except Exception as e:
            logger.error(f"Error uploading {object_name}: {e}")
            return StorageResult(
                success=False, object_name=object_name, bucket=bucket, error=str(e)
            )

        logger.info(f"Uploaded {object_name} to {bucket} ({len(data)} bytes)")
        return StorageResult(
            success=True, object_name=object_name, bucket=bucket, etag=etag, size=len(data)
        )

    def download_bytes(self, object_name: str) -> bytes:
        """Read an object back.

        Raises:
            NotFoundError: If the object does not exist
            TransientError: For any other storage failure
        """
        bucket = self.settings.storage_bucket
        response = None
        try:
            response = self._get_client().get_object(bucket_name=bucket, object_name=object_name)
            return response.read()
        except S3Error as e:
            if e.code in ("NoSuchKey", "NoSuchBucket"):
                raise NotFoundError("Blob", object_name) from e
            raise TransientError(
                f"Storage read failed: {e.code}", code="STORAGE_UNAVAILABLE"
            ) from e
        except Exception as e:
            raise TransientError(f"Storage read failed: {e}", code="STORAGE_UNAVAILABLE") from e
        finally:
            if response is not None:
                response.close()
                response.release_conn()
