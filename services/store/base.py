"""Abstract record store for invoices, extraction jobs and submissions.

The store is the pipeline's only mutual-exclusion primitive:

- ``create_job`` / ``create_submission`` enforce one record per invoice and raise
  DuplicateRecordError for the loser of a concurrent creation.
- ``save_*`` are optimistic: the caller's ``version`` must match the stored one,
  otherwise ConcurrentUpdateError is raised. A successful save bumps ``version``.
- ``claim_reference`` makes government reference numbers globally unique.
"""

from abc import ABC, abstractmethod
from collections.abc import Iterable

from services.domain.models import (
    ExtractionJob,
    Invoice,
    JobStatus,
    Submission,
    SubmissionStatus,
)


class RecordStore(ABC):
    """Persistence interface used by every pipeline component."""

    # Invoices

    @abstractmethod
    async def create_invoice(self, invoice: Invoice) -> Invoice:
        pass

    @abstractmethod
    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        pass

    @abstractmethod
    async def save_invoice(self, invoice: Invoice) -> Invoice:
        pass

    # Extraction jobs

    @abstractmethod
    async def create_job(self, job: ExtractionJob) -> ExtractionJob:
        """Insert a job; raises DuplicateRecordError if the invoice already has one."""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> ExtractionJob | None:
        pass

    @abstractmethod
    async def get_job_for_invoice(self, invoice_id: str) -> ExtractionJob | None:
        pass

    @abstractmethod
    async def save_job(self, job: ExtractionJob) -> ExtractionJob:
        pass

    @abstractmethod
    async def save_extraction_result(
        self, invoice: Invoice, job: ExtractionJob
    ) -> tuple[Invoice, ExtractionJob]:
        """Write invoice and job together; neither is written if either version is stale."""
        pass

    @abstractmethod
    async def list_jobs(self, statuses: Iterable[JobStatus]) -> list[ExtractionJob]:
        pass

    # Submissions

    @abstractmethod
    async def create_submission(self, submission: Submission) -> Submission:
        """Insert a submission; raises DuplicateRecordError if the invoice already has one."""
        pass

    @abstractmethod
    async def get_submission_for_invoice(self, invoice_id: str) -> Submission | None:
        pass

    @abstractmethod
    async def save_submission(self, submission: Submission) -> Submission:
        pass

    @abstractmethod
    async def list_submissions(self, statuses: Iterable[SubmissionStatus]) -> list[Submission]:
        pass

    @abstractmethod
    async def claim_reference(self, reference_number: str, invoice_id: str) -> str:
        """Bind a reference number to an invoice.

        Returns:
            The invoice id that owns the reference. Equal to ``invoice_id`` when the
            claim succeeded or was already held by the same invoice.
        """
        pass
