"""In-process record store for development and tests.

Records are kept as serialized copies so callers never share mutable state with
the store, which keeps the optimistic-version semantics identical to Redis.
"""

import asyncio
from collections.abc import Iterable
from typing import TypeVar

from pydantic import BaseModel

from services.domain.models import (
    ExtractionJob,
    Invoice,
    JobStatus,
    Submission,
    SubmissionStatus,
)
from services.shared.errors import ConcurrentUpdateError, DuplicateRecordError
from services.store.base import RecordStore


T = TypeVar("T", bound=BaseModel)


def _copy(record: T) -> T:
    return record.model_copy(deep=True)


class InMemoryRecordStore(RecordStore):
    def __init__(self) -> None:
        self._invoices: dict[str, Invoice] = {}
        self._jobs: dict[str, ExtractionJob] = {}
        self._job_by_invoice: dict[str, str] = {}
        self._submissions: dict[str, Submission] = {}
        self._references: dict[str, str] = {}
        self._lock = asyncio.Lock()

    def _check_version(self, kind: str, stored: BaseModel | None, record: BaseModel) -> None:
        if stored is None or stored.version != record.version:  # type: ignore[attr-defined]
            raise ConcurrentUpdateError(
                kind, record.id, record.version  # type: ignore[attr-defined]
            )

    async def create_invoice(self, invoice: Invoice) -> Invoice:
        async with self._lock:
            invoice.version = 1
            self._invoices[invoice.id] = _copy(invoice)
            return invoice

    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        stored = self._invoices.get(invoice_id)
        return _copy(stored) if stored else None

    async def save_invoice(self, invoice: Invoice) -> Invoice:
        async with self._lock:
            self._check_version("Invoice", self._invoices.get(invoice.id), invoice)
            invoice.version += 1
            self._invoices[invoice.id] = _copy(invoice)
            return invoice

    async def create_job(self, job: ExtractionJob) -> ExtractionJob:
        async with self._lock:
            if job.invoice_id in self._job_by_invoice:
                raise DuplicateRecordError("ExtractionJob", job.invoice_id)
            job.version = 1
            self._job_by_invoice[job.invoice_id] = job.id
            self._jobs[job.id] = _copy(job)
            return job

    async def get_job(self, job_id: str) -> ExtractionJob | None:
        stored = self._jobs.get(job_id)
        return _copy(stored) if stored else None

    async def get_job_for_invoice(self, invoice_id: str) -> ExtractionJob | None:
        job_id = self._job_by_invoice.get(invoice_id)
        return await self.get_job(job_id) if job_id else None

    async def save_job(self, job: ExtractionJob) -> ExtractionJob:
        async with self._lock:
            self._check_version("ExtractionJob", self._jobs.get(job.id), job)
            job.version += 1
            self._jobs[job.id] = _copy(job)
            return job

    async def save_extraction_result(
        self, invoice: Invoice, job: ExtractionJob
    ) -> tuple[Invoice, ExtractionJob]:
        async with self._lock:
            self._check_version("Invoice", self._invoices.get(invoice.id), invoice)
            self._check_version("ExtractionJob", self._jobs.get(job.id), job)
            invoice.version += 1
            job.version += 1
            self._invoices[invoice.id] = _copy(invoice)
            self._jobs[job.id] = _copy(job)
            return invoice, job

    async def list_jobs(self, statuses: Iterable[JobStatus]) -> list[ExtractionJob]:
        wanted = set(statuses)
        return [_copy(job) for job in self._jobs.values() if job.status in wanted]

    async def create_submission(self, submission: Submission) -> Submission:
        async with self._lock:
            if submission.invoice_id in self._submissions:
                raise DuplicateRecordError("Submission", submission.invoice_id)
            submission.version = 1
            self._submissions[submission.invoice_id] = _copy(submission)
            return submission

    async def get_submission_for_invoice(self, invoice_id: str) -> Submission | None:
        stored = self._submissions.get(invoice_id)
        return _copy(stored) if stored else None

    async def save_submission(self, submission: Submission) -> Submission:
        async with self._lock:
            stored = self._submissions.get(submission.invoice_id)
            self._check_version("Submission", stored, submission)
            submission.version += 1
            self._submissions[submission.invoice_id] = _copy(submission)
            return submission

    async def list_submissions(self, statuses: Iterable[SubmissionStatus]) -> list[Submission]:
        wanted = set(statuses)
        return [_copy(s) for s in self._submissions.values() if s.status in wanted]

    async def claim_reference(self, reference_number: str, invoice_id: str) -> str:
        async with self._lock:
            return self._references.setdefault(reference_number, invoice_id)
