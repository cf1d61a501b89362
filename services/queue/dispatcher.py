"""Routes pipeline events to the component that handles them.

Handlers are idempotent: every one of them re-reads persisted state and does
nothing when the record has already moved on. Pipeline errors are logged and
swallowed here, because the failing component has already persisted the
failure and scheduled any retry.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from services.jobs.orchestrator import ExtractionOrchestrator
from services.ksef.submission import SubmissionManager
from services.notifications.notifier import Notifier
from services.queue import events
from services.queue.events import Event
from services.shared.errors import PipelineError
from services.shared.metrics import events_dispatched_total

logger = logging.getLogger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class EventDispatcher:
    def __init__(
        self,
        orchestrator: ExtractionOrchestrator,
        submissions: SubmissionManager,
        notifier: Notifier,
    ) -> None:
        self.orchestrator = orchestrator
        self.submissions = submissions
        self.notifier = notifier
        self._handlers: dict[str, Handler] = {
            events.DOCUMENT_UPLOADED: self._document_uploaded,
            events.EXTRACTION_RUN: self._run_job,
            events.EXTRACTION_RETRY: self._run_job,
            events.EXTRACTION_COMPLETED: self._extraction_completed,
            events.EXTRACTION_FAILED: self._extraction_failed,
            events.INVOICE_APPROVED: self._invoice_approved,
            events.SUBMISSION_RETRY: self._submission_retry,
            events.SUBMISSION_POLL: self._submission_poll,
            events.SUBMISSION_ACCEPTED: self._submission_accepted,
        }

    async def dispatch(self, event: Event) -> bool:
        """Handle one event.

        Returns:
            True if a handler ran without a pipeline error
        """
        handler = self._handlers.get(event.name)
        if handler is None:
            logger.warning(f"No handler for event {event.name}, ignoring")
            events_dispatched_total.labels(event=event.name, status="ignored").inc()
            return False

        try:
            await handler(event.payload)
        except PipelineError as e:
            logger.error(f"Handling {event.name} ({event.dedup_key}) failed: {e}")
            events_dispatched_total.labels(event=event.name, status="error").inc()
            return False

        events_dispatched_total.labels(event=event.name, status="ok").inc()
        return True

    async def _document_uploaded(self, payload: dict[str, Any]) -> None:
        await self.orchestrator.start_extraction(payload["invoiceId"])

    async def _run_job(self, payload: dict[str, Any]) -> None:
        await self.orchestrator.run_job(payload["jobId"])

    async def _extraction_completed(self, payload: dict[str, Any]) -> None:
        await self.notifier.extraction_completed(
            payload["tenantId"], payload["invoiceId"], bool(payload.get("requiresReview"))
        )

    async def _extraction_failed(self, payload: dict[str, Any]) -> None:
        await self.notifier.extraction_failed(
            payload["tenantId"], payload["invoiceId"], payload.get("error", "")
        )

    async def _invoice_approved(self, payload: dict[str, Any]) -> None:
        await self.submissions.submit(payload["invoiceId"])

    async def _submission_retry(self, payload: dict[str, Any]) -> None:
        await self.submissions.retry(payload["invoiceId"])

    async def _submission_poll(self, payload: dict[str, Any]) -> None:
        await self.submissions.poll(payload["invoiceId"])

    async def _submission_accepted(self, payload: dict[str, Any]) -> None:
        await self.submissions.download_receipt(payload["invoiceId"])
