"""User notifications for extraction outcomes.

Delivery channels (email, push) live outside this service; the logging
notifier is the default sink.
"""

import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class Notifier(ABC):
    @abstractmethod
    async def extraction_completed(
        self, tenant_id: str, invoice_id: str, requires_review: bool
    ) -> None:
        pass

    @abstractmethod
    async def extraction_failed(self, tenant_id: str, invoice_id: str, error: str) -> None:
        pass


class LoggingNotifier(Notifier):
    async def extraction_completed(
        self, tenant_id: str, invoice_id: str, requires_review: bool
    ) -> None:
        outcome = "needs review" if requires_review else "ready for approval"
        logger.info(f"Notify tenant {tenant_id}: invoice {invoice_id} extracted, {outcome}")

    async def extraction_failed(self, tenant_id: str, invoice_id: str, error: str) -> None:
        logger.info(f"Notify tenant {tenant_id}: extraction failed for {invoice_id}: {error}")
