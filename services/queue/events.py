"""Pipeline events and the queues that carry them.

Every event has a deduplication key. A queue accepts a key at most once, so
re-publishing the same event (for example after a crash between a save and a
publish) never runs a handler twice. Keys embed the record version that
produced them, which keeps legitimately repeated events (a second poll, a
second retry) distinct.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import timedelta
from typing import Any

from pydantic import BaseModel

from services.domain.models import ExtractionJob, Invoice, Submission

logger = logging.getLogger(__name__)

DOCUMENT_UPLOADED = "document.uploaded"
EXTRACTION_RUN = "extraction.run"
EXTRACTION_RETRY = "extraction.retry"
EXTRACTION_COMPLETED = "extraction.completed"
EXTRACTION_FAILED = "extraction.failed"
INVOICE_APPROVED = "invoice.approved"
SUBMISSION_RETRY = "submission.retry"
SUBMISSION_POLL = "submission.poll"
SUBMISSION_ACCEPTED = "submission.accepted"


class Event(BaseModel):
    name: str
    payload: dict[str, Any]
    dedup_key: str

    @classmethod
    def document_uploaded(cls, invoice: Invoice) -> "Event":
        return cls(
            name=DOCUMENT_UPLOADED,
            payload={
                "invoiceId": invoice.id,
                "tenantId": invoice.tenant_id,
                "filePath": invoice.file_path,
            },
            dedup_key=f"{DOCUMENT_UPLOADED}:{invoice.id}",
        )

    @classmethod
    def extraction_run(cls, job: ExtractionJob) -> "Event":
        return cls(
            name=EXTRACTION_RUN,
            payload={"jobId": job.id, "invoiceId": job.invoice_id},
            dedup_key=f"{EXTRACTION_RUN}:{job.id}",
        )

    @classmethod
    def extraction_retry(cls, job: ExtractionJob) -> "Event":
        return cls(
            name=EXTRACTION_RETRY,
            payload={"jobId": job.id, "invoiceId": job.invoice_id, "retryCount": job.retry_count},
            dedup_key=f"{EXTRACTION_RETRY}:{job.id}:v{job.version}",
        )

    @classmethod
    def extraction_completed(cls, job: ExtractionJob) -> "Event":
        return cls(
            name=EXTRACTION_COMPLETED,
            payload={
                "jobId": job.id,
                "invoiceId": job.invoice_id,
                "tenantId": job.tenant_id,
                "requiresReview": bool(job.requires_review),
            },
            dedup_key=f"{EXTRACTION_COMPLETED}:{job.id}:v{job.version}",
        )

    @classmethod
    def extraction_failed(cls, job: ExtractionJob) -> "Event":
        return cls(
            name=EXTRACTION_FAILED,
            payload={
                "jobId": job.id,
                "invoiceId": job.invoice_id,
                "tenantId": job.tenant_id,
                "error": job.error_message or job.error_code or "unknown error",
            },
            dedup_key=f"{EXTRACTION_FAILED}:{job.id}:v{job.version}",
        )

    @classmethod
    def invoice_approved(cls, invoice: Invoice) -> "Event":
        return cls(
            name=INVOICE_APPROVED,
            payload={"invoiceId": invoice.id, "tenantId": invoice.tenant_id},
            dedup_key=f"{INVOICE_APPROVED}:{invoice.id}:v{invoice.version}",
        )

    @classmethod
    def submission_retry(cls, submission: Submission) -> "Event":
        return cls(
            name=SUBMISSION_RETRY,
            payload={"invoiceId": submission.invoice_id, "submissionId": submission.id},
            dedup_key=f"{SUBMISSION_RETRY}:{submission.id}:v{submission.version}",
        )

    @classmethod
    def submission_poll(cls, submission: Submission) -> "Event":
        return cls(
            name=SUBMISSION_POLL,
            payload={"invoiceId": submission.invoice_id, "submissionId": submission.id},
            dedup_key=f"{SUBMISSION_POLL}:{submission.id}:v{submission.version}",
        )

    @classmethod
    def submission_accepted(cls, submission: Submission) -> "Event":
        return cls(
            name=SUBMISSION_ACCEPTED,
            payload={
                "invoiceId": submission.invoice_id,
                "submissionId": submission.id,
                "referenceNumber": submission.reference_number,
            },
            dedup_key=f"{SUBMISSION_ACCEPTED}:{submission.id}",
        )


class EventQueue(ABC):
    @abstractmethod
    async def publish(self, event: Event, delay: float | None = None) -> bool:
        """Enqueue an event, optionally deferred by ``delay`` seconds.

        Returns:
            False if an event with the same dedup key was already accepted
        """
        pass


class ArqEventQueue(EventQueue):
    """Events as arq jobs; the dedup key doubles as the arq job id."""

    def __init__(self, redis: Any) -> None:
        self.redis = redis

    async def publish(self, event: Event, delay: float | None = None) -> bool:
        job = await self.redis.enqueue_job(
            "dispatch_event",
            event.model_dump(mode="json"),
            _job_id=event.dedup_key,
            _defer_by=timedelta(seconds=delay) if delay else None,
        )
        if job is None:
            logger.debug(f"Duplicate event ignored: {event.dedup_key}")
            return False
        logger.info(f"Published {event.name} ({event.dedup_key}) delay={delay or 0}s")
        return True


class InMemoryEventQueue(EventQueue):
    """In-process queue for development and tests.

    Delays are recorded but not waited for; ``drain`` delivers events in
    publication order, including events published while draining.
    """

    def __init__(self) -> None:
        self.published: list[tuple[Event, float | None]] = []
        self._pending: list[Event] = []
        self._seen: set[str] = set()

    async def publish(self, event: Event, delay: float | None = None) -> bool:
        if event.dedup_key in self._seen:
            return False
        self._seen.add(event.dedup_key)
        self.published.append((event, delay))
        self._pending.append(event)
        return True

    def names(self) -> list[str]:
        return [event.name for event, _ in self.published]

    async def drain(
        self, handler: Callable[[Event], Awaitable[Any]], max_events: int = 1000
    ) -> int:
        """Deliver pending events to ``handler`` until the queue is empty.

        Returns:
            Number of events delivered
        """
        delivered = 0
        while self._pending and delivered < max_events:
            event = self._pending.pop(0)
            await handler(event)
            delivered += 1
        return delivered
