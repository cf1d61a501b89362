"""Write-only audit trail."""

import json
import logging
from abc import ABC, abstractmethod
from typing import Any

logger = logging.getLogger(__name__)


class AuditSink(ABC):
    @abstractmethod
    async def record(self, event: str, **fields: Any) -> None:
        """Append one audit entry. Never read back by the pipeline."""
        pass


class LoggingAuditSink(AuditSink):
    async def record(self, event: str, **fields: Any) -> None:
        logger.info(f"audit {event} {json.dumps(fields, default=str, sort_keys=True)}")
