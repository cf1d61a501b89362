"""Shared fixtures: an in-process pipeline wired to deterministic fakes."""

from pathlib import Path

import pytest
from fakes import (
    SELLER_NIP,
    FakeBlobStore,
    FakeExtractionProvider,
    FakePlatform,
    FakeRecognitionEngine,
    MutableClock,
    RecordingAuditSink,
    RecordingNotifier,
)

from services.jobs.orchestrator import ExtractionOrchestrator
from services.ksef.client import SessionCache
from services.ksef.signer import CertificateStore, SignatureWrapper
from services.ksef.submission import SubmissionManager
from services.queue.dispatcher import EventDispatcher
from services.queue.events import InMemoryEventQueue
from services.review.corrections import CorrectionReconciler
from services.shared.config import Settings
from services.shared.context import PipelineContext
from services.shared.tenants import TenantDirectory
from services.store.memory import InMemoryRecordStore


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Test settings: in-process queue, local storage, tenant 'acme' owns SELLER_NIP."""
    return Settings(
        queue_enabled=False,
        storage_enabled=False,
        local_storage_dir=str(tmp_path / "blobs"),
        tenant_tax_ids={"acme": SELLER_NIP},
        ksef_environment="test",
        ksef_cert_path=None,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def events() -> InMemoryEventQueue:
    return InMemoryEventQueue()


@pytest.fixture
def blob_store() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture
def engine() -> FakeRecognitionEngine:
    return FakeRecognitionEngine()


@pytest.fixture
def provider() -> FakeExtractionProvider:
    return FakeExtractionProvider()


@pytest.fixture
def platform() -> FakePlatform:
    return FakePlatform()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def audit() -> RecordingAuditSink:
    return RecordingAuditSink()


@pytest.fixture
def tenants(settings: Settings) -> TenantDirectory:
    return TenantDirectory(settings)


@pytest.fixture
def orchestrator(
    settings: Settings,
    store: InMemoryRecordStore,
    blob_store: FakeBlobStore,
    engine: FakeRecognitionEngine,
    provider: FakeExtractionProvider,
    tenants: TenantDirectory,
    events: InMemoryEventQueue,
    clock: MutableClock,
) -> ExtractionOrchestrator:
    return ExtractionOrchestrator(
        settings, store, blob_store, engine, provider, tenants, events, clock=clock
    )


@pytest.fixture
def reconciler(
    settings: Settings,
    store: InMemoryRecordStore,
    events: InMemoryEventQueue,
    audit: RecordingAuditSink,
    tenants: TenantDirectory,
    clock: MutableClock,
) -> CorrectionReconciler:
    return CorrectionReconciler(settings, store, events, audit, tenants, clock=clock)


@pytest.fixture
def submissions(
    settings: Settings,
    store: InMemoryRecordStore,
    platform: FakePlatform,
    tenants: TenantDirectory,
    blob_store: FakeBlobStore,
    events: InMemoryEventQueue,
    audit: RecordingAuditSink,
    clock: MutableClock,
) -> SubmissionManager:
    return SubmissionManager(
        settings,
        store,
        platform,
        SessionCache(platform, clock=clock),
        SignatureWrapper(),
        CertificateStore(settings),
        tenants,
        blob_store,
        events,
        audit,
        clock=clock,
    )


@pytest.fixture
def dispatcher(
    orchestrator: ExtractionOrchestrator,
    submissions: SubmissionManager,
    notifier: RecordingNotifier,
) -> EventDispatcher:
    return EventDispatcher(orchestrator, submissions, notifier)


@pytest.fixture
def pipeline(
    settings: Settings,
    store: InMemoryRecordStore,
    events: InMemoryEventQueue,
    blob_store: FakeBlobStore,
    tenants: TenantDirectory,
    orchestrator: ExtractionOrchestrator,
    reconciler: CorrectionReconciler,
    submissions: SubmissionManager,
    dispatcher: EventDispatcher,
    platform: FakePlatform,
) -> PipelineContext:
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
    )
