"""Wiring of the pipeline components.

The API process and the arq worker build the same graph: with the queue
enabled records live in Redis and events travel through arq, otherwise
everything runs in-process.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from arq import create_pool
from arq.connections import RedisSettings

from services.audit.sink import AuditSink, LoggingAuditSink
from services.extraction.base import ExtractionProvider
from services.extraction.factory import create_extraction_provider
from services.jobs.orchestrator import ExtractionOrchestrator
from services.ksef.client import KSeFClient, PlatformClient, SessionCache
from services.ksef.signer import CertificateStore, SignatureWrapper
from services.ksef.submission import SubmissionManager
from services.notifications.notifier import LoggingNotifier, Notifier
from services.ocr.factory import RecognitionEngine, create_recognition_engine
from services.queue.dispatcher import EventDispatcher
from services.queue.events import ArqEventQueue, EventQueue, InMemoryEventQueue
from services.review.corrections import CorrectionReconciler
from services.shared.config import Settings
from services.shared.tenants import TenantDirectory
from services.storage.factory import BlobStore, create_blob_store
from services.store.base import RecordStore
from services.store.memory import InMemoryRecordStore
from services.store.redis_store import RedisRecordStore

logger = logging.getLogger(__name__)


@dataclass
class PipelineContext:
    settings: Settings
    store: RecordStore
    events: EventQueue
    blob_store: BlobStore
    tenants: TenantDirectory
    orchestrator: ExtractionOrchestrator
    reconciler: CorrectionReconciler
    submissions: SubmissionManager
    dispatcher: EventDispatcher
    platform: PlatformClient
    redis: Any = None
    owns_redis: bool = field(default=False, repr=False)

    async def close(self) -> None:
        await self.platform.close()
        if self.owns_redis and self.redis is not None:
            await self.redis.aclose()


async def build_context(
    settings: Settings,
    redis: Any = None,
    *,
    store: RecordStore | None = None,
    events: EventQueue | None = None,
    blob_store: BlobStore | None = None,
    recognition_engine: RecognitionEngine | None = None,
    extraction_provider: ExtractionProvider | None = None,
    platform: PlatformClient | None = None,
    notifier: Notifier | None = None,
    audit: AuditSink | None = None,
) -> PipelineContext:
    """Build the component graph.

    Args:
        settings: Application settings
        redis: Existing arq Redis pool (the worker passes its own)
        store, events, blob_store, recognition_engine, extraction_provider,
        platform, notifier, audit: Optional replacements for the defaults

    Returns:
        PipelineContext holding every component
    """
    owns_redis = False
    if settings.queue_enabled and (store is None or events is None):
        if redis is None:
            redis = await create_pool(RedisSettings.from_dsn(settings.redis_url))
            owns_redis = True
        store = store or RedisRecordStore(redis)
        events = events or ArqEventQueue(redis)
        logger.info(f"Pipeline using Redis at {settings.redis_url}")
    else:
        store = store or InMemoryRecordStore()
        events = events or InMemoryEventQueue()
        logger.info("Pipeline running in-process (queue disabled)")

    blob_store = blob_store or create_blob_store(settings)
    tenants = TenantDirectory(settings)
    audit = audit or LoggingAuditSink()
    signer = SignatureWrapper()
    platform = platform or KSeFClient(settings, signer=signer)

    orchestrator = ExtractionOrchestrator(
        settings,
        store,
        blob_store,
        recognition_engine or create_recognition_engine(settings),
        extraction_provider or create_extraction_provider(settings),
        tenants,
        events,
    )
    reconciler = CorrectionReconciler(settings, store, events, audit, tenants)
    submissions = SubmissionManager(
        settings,
        store,
        platform,
        SessionCache(platform),
        signer,
        CertificateStore(settings),
        tenants,
        blob_store,
        events,
        audit,
    )
    dispatcher = EventDispatcher(orchestrator, submissions, notifier or LoggingNotifier())

    return PipelineContext(
        settings=settings,
        store=store,
        events=events,
        blob_store=blob_store,
        tenants=tenants,
        orchestrator=orchestrator,
        reconciler=reconciler,
        submissions=submissions,
        dispatcher=dispatcher,
        platform=platform,
        redis=redis,
        owns_redis=owns_redis,
    )
