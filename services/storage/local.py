"""Filesystem blob store used when object storage is disabled."""

import logging
from pathlib import Path

from services.shared.config import Settings
from services.shared.errors import NotFoundError, TransientError
from services.storage.service import StorageResult

logger = logging.getLogger(__name__)


class LocalBlobStore:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.root = Path(settings.local_storage_dir)

    def _path(self, object_name: str) -> Path:
        path = (self.root / object_name).resolve()
        if not path.is_relative_to(self.root.resolve()):
            raise ValueError(f"Object name escapes storage root: {object_name}")
        return path

    def is_available(self) -> bool:
        return True

    def health_check(self) -> bool:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Local storage unavailable: {e}")
            return False
        return True

    def upload_bytes(
        self, data: bytes, object_name: str, content_type: str | None = None
    ) -> StorageResult:
        path = self._path(object_name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        except OSError as e:
            logger.error(f"Error writing {object_name}: {e}")
            return StorageResult(success=False, object_name=object_name, error=str(e))
        logger.info(f"Stored {object_name} locally ({len(data)} bytes)")
        return StorageResult(success=True, object_name=object_name, size=len(data))

    def download_bytes(self, object_name: str) -> bytes:
        path = self._path(object_name)
        try:
            return path.read_bytes()
        except FileNotFoundError as e:
            raise NotFoundError("Blob", object_name) from e
        except OSError as e:
            raise TransientError(f"Storage read failed: {e}", code="STORAGE_UNAVAILABLE") from e
