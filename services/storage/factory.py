"""Blob store interface and factory."""

import logging
from typing import Protocol

from services.shared.config import Settings
from services.storage.local import LocalBlobStore
from services.storage.service import StorageResult, StorageService

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    """Opaque byte storage for uploaded documents and official receipts."""

    def upload_bytes(
        self, data: bytes, object_name: str, content_type: str | None = None
    ) -> StorageResult: ...

    def download_bytes(self, object_name: str) -> bytes: ...

    def is_available(self) -> bool: ...

    def health_check(self) -> bool: ...


def create_blob_store(settings: Settings) -> BlobStore:
    """Return MinIO storage when enabled, otherwise a local directory store."""
    if settings.storage_enabled:
        logger.info(f"Using object storage bucket '{settings.storage_bucket}'")
        return StorageService(settings)
    logger.info(f"Using local blob storage at {settings.local_storage_dir}")
    return LocalBlobStore(settings)
