"""Redis-backed record store.

Uses the same Redis instance as the arq queue. Layout:

- ``invoice:{id}``, ``job:{id}``, ``submission:{invoice_id}``: JSON records
- ``job-by-invoice:{invoice_id}``: uniqueness key, created with SET NX
- ``ksef-ref:{reference}``: reference number ownership, created with SET NX
- ``index:jobs``, ``index:submissions``: id sets used for crash-recovery scans

Versioned writes use WATCH/MULTI so that a concurrent writer aborts the
transaction instead of overwriting a newer record.
"""

import functools
import json
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, TypeVar, cast

from pydantic import BaseModel
from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from services.domain.models import (
    ExtractionJob,
    Invoice,
    JobStatus,
    Submission,
    SubmissionStatus,
)
from services.shared.errors import ConcurrentUpdateError, DuplicateRecordError, TransientError
from services.store.base import RecordStore

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)
F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

JOB_INDEX = "index:jobs"
SUBMISSION_INDEX = "index:submissions"


def _invoice_key(invoice_id: str) -> str:
    return f"invoice:{invoice_id}"


def _job_key(job_id: str) -> str:
    return f"job:{job_id}"


def _job_owner_key(invoice_id: str) -> str:
    return f"job-by-invoice:{invoice_id}"


def _submission_key(invoice_id: str) -> str:
    return f"submission:{invoice_id}"


def _reference_key(reference: str) -> str:
    return f"ksef-ref:{reference}"


def _store_call(method: F) -> F:
    """Surface Redis outages as transient pipeline errors so callers retry."""

    @functools.wraps(method)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await method(*args, **kwargs)
        except RedisError as e:
            raise TransientError(
                f"Record store unavailable: {e}", code="STORE_UNAVAILABLE"
            ) from e

    return cast(F, wrapper)


class RedisRecordStore(RecordStore):
    """Record store on redis.asyncio with optimistic concurrency."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    @classmethod
    def from_url(cls, url: str) -> "RedisRecordStore":
        return cls(Redis.from_url(url, decode_responses=True))

    async def _load(self, key: str, model: type[T]) -> T | None:
        raw = await self._redis.get(key)
        return model.model_validate_json(raw) if raw else None

    async def _versioned_write(self, records: list[tuple[str, str, Any]]) -> None:
        """Write records atomically if every stored version still matches.

        Args:
            records: (kind, redis key, record) triples
        """
        keys = [key for _, key, _ in records]
        async with self._redis.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(*keys)
                for kind, key, record in records:
                    raw = await pipe.get(key)
                    stored_version = _version_of(raw)
                    if stored_version != record.version:
                        raise ConcurrentUpdateError(kind, record.id, record.version)
                pipe.multi()
                for _, key, record in records:
                    bumped = record.model_copy(update={"version": record.version + 1})
                    pipe.set(key, bumped.model_dump_json())
                await pipe.execute()
            except WatchError as e:
                kind, _, record = records[0]
                raise ConcurrentUpdateError(kind, record.id, record.version) from e
        for _, _, record in records:
            record.version += 1

    @_store_call
    async def create_invoice(self, invoice: Invoice) -> Invoice:
        invoice.version = 1
        await self._redis.set(_invoice_key(invoice.id), invoice.model_dump_json())
        return invoice

    @_store_call
    async def get_invoice(self, invoice_id: str) -> Invoice | None:
        return await self._load(_invoice_key(invoice_id), Invoice)

    @_store_call
    async def save_invoice(self, invoice: Invoice) -> Invoice:
        await self._versioned_write([("Invoice", _invoice_key(invoice.id), invoice)])
        return invoice

    @_store_call
    async def create_job(self, job: ExtractionJob) -> ExtractionJob:
        claimed = await self._redis.set(_job_owner_key(job.invoice_id), job.id, nx=True)
        if not claimed:
            raise DuplicateRecordError("ExtractionJob", job.invoice_id)
        job.version = 1
        await self._redis.set(_job_key(job.id), job.model_dump_json())
        await self._redis.sadd(JOB_INDEX, job.id)
        return job

    @_store_call
    async def get_job(self, job_id: str) -> ExtractionJob | None:
        return await self._load(_job_key(job_id), ExtractionJob)

    @_store_call
    async def get_job_for_invoice(self, invoice_id: str) -> ExtractionJob | None:
        job_id = _text(await self._redis.get(_job_owner_key(invoice_id)))
        return await self.get_job(job_id) if job_id else None

    @_store_call
    async def save_job(self, job: ExtractionJob) -> ExtractionJob:
        await self._versioned_write([("ExtractionJob", _job_key(job.id), job)])
        return job

    @_store_call
    async def save_extraction_result(
        self, invoice: Invoice, job: ExtractionJob
    ) -> tuple[Invoice, ExtractionJob]:
        await self._versioned_write(
            [
                ("Invoice", _invoice_key(invoice.id), invoice),
                ("ExtractionJob", _job_key(job.id), job),
            ]
        )
        return invoice, job

    @_store_call
    async def list_jobs(self, statuses: Iterable[JobStatus]) -> list[ExtractionJob]:
        wanted = set(statuses)
        jobs = []
        for job_id in await self._redis.smembers(JOB_INDEX):
            job = await self.get_job(_text(job_id) or "")
            if job is not None and job.status in wanted:
                jobs.append(job)
        return jobs

    @_store_call
    async def create_submission(self, submission: Submission) -> Submission:
        submission.version = 1
        created = await self._redis.set(
            _submission_key(submission.invoice_id), submission.model_dump_json(), nx=True
        )
        if not created:
            raise DuplicateRecordError("Submission", submission.invoice_id)
        await self._redis.sadd(SUBMISSION_INDEX, submission.invoice_id)
        return submission

    @_store_call
    async def get_submission_for_invoice(self, invoice_id: str) -> Submission | None:
        return await self._load(_submission_key(invoice_id), Submission)

    @_store_call
    async def save_submission(self, submission: Submission) -> Submission:
        await self._versioned_write(
            [("Submission", _submission_key(submission.invoice_id), submission)]
        )
        return submission

    @_store_call
    async def list_submissions(self, statuses: Iterable[SubmissionStatus]) -> list[Submission]:
        wanted = set(statuses)
        submissions = []
        for invoice_id in await self._redis.smembers(SUBMISSION_INDEX):
            submission = await self.get_submission_for_invoice(_text(invoice_id) or "")
            if submission is not None and submission.status in wanted:
                submissions.append(submission)
        return submissions

    @_store_call
    async def claim_reference(self, reference_number: str, invoice_id: str) -> str:
        key = _reference_key(reference_number)
        if await self._redis.set(key, invoice_id, nx=True):
            return invoice_id
        owner = _text(await self._redis.get(key))
        logger.warning(f"Reference {reference_number} already claimed by invoice {owner}")
        return owner or invoice_id


def _text(value: str | bytes | None) -> str | None:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


def _version_of(raw: str | bytes | None) -> int | None:
    if raw is None:
        return None
    return json.loads(raw).get("version")
