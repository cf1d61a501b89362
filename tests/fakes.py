"""Deterministic stand-ins for the pipeline's external collaborators."""

import io
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID
from PIL import Image

from services.audit.sink import AuditSink
from services.domain.models import Invoice, InvoiceStatus, LineItem, Party
from services.extraction.base import ExtractionProvider, ExtractionResult
from services.extraction.schema import (
    ExtractedHeader,
    ExtractedInvoice,
    ExtractedLineItem,
    ExtractedParty,
    ExtractedTotals,
)
from services.ksef.client import (
    PlatformClient,
    PlatformStatus,
    PlatformSubmission,
    Receipt,
    SessionToken,
)
from services.ksef.signer import SigningCertificate
from services.notifications.notifier import Notifier
from services.ocr.factory import RecognitionResult
from services.shared.config import Settings
from services.shared.errors import NotFoundError
from services.storage.service import StorageResult

SELLER_NIP = "5260250274"
BUYER_NIP = "7740001454"
OTHER_NIP = "1234563218"

INVOICE_TEXT = "FAKTURA VAT FV/2025/001\nSprzedawca NIP 526-025-02-74\nRazem 1230,00 PLN"


class MutableClock:
    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2025, 3, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


def make_image_bytes(size: tuple[int, int] = (200, 100), mode: str = "RGB") -> bytes:
    img = Image.new(mode, size, color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


def make_certificate(
    key_type: str = "ec", valid_from: datetime | None = None, valid_days: int = 365
) -> SigningCertificate:
    """Self-signed certificate for signing tests."""
    key: Any = (
        ec.generate_private_key(ec.SECP256R1())
        if key_type == "ec"
        else rsa.generate_private_key(public_exponent=65537, key_size=2048)
    )
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Acme Sp. z o.o.")])
    start = valid_from or datetime.now(UTC) - timedelta(days=1)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(start)
        .not_valid_after(start + timedelta(days=valid_days))
        .sign(key, hashes.SHA256())
    )
    return SigningCertificate(private_key=key, certificate=certificate)


def extracted_invoice(
    confidence: float = 0.95,
    seller_nip: str | None = SELLER_NIP,
    buyer_nip: str | None = BUYER_NIP,
    gross: str = "1230.00",
) -> ExtractedInvoice:
    return ExtractedInvoice(
        header=ExtractedHeader(
            invoice_number="FV/2025/001",
            issue_date=date(2025, 2, 20),
            due_date=date(2025, 3, 6),
            currency="PLN",
            confidence=confidence,
        ),
        seller=ExtractedParty(
            name="Acme Sp. z o.o.",
            tax_id=seller_nip,
            address="ul. Prosta 1, 00-001 Warszawa",
            country_code="PL",
            confidence=confidence,
        ),
        buyer=ExtractedParty(
            name="Kontrahent S.A.",
            tax_id=buyer_nip,
            country_code="PL",
            confidence=confidence,
        ),
        totals=ExtractedTotals(
            net_amount=Decimal("1000.00"),
            vat_amount=Decimal("230.00"),
            gross_amount=Decimal(gross),
            confidence=confidence,
        ),
        line_items=[
            ExtractedLineItem(
                description="Usługa wdrożeniowa",
                quantity=Decimal("1"),
                unit="szt",
                unit_price=Decimal("1000.00"),
                net_amount=Decimal("1000.00"),
                vat_rate="23",
                vat_amount=Decimal("230.00"),
                gross_amount=Decimal("1230.00"),
                confidence=confidence,
            )
        ],
        overall_confidence=confidence,
    )


def approved_invoice(tenant_id: str = "acme", **overrides: Any) -> Invoice:
    """Invoice that passes approval validation, already in APPROVED."""
    values: dict[str, Any] = {
        "tenant_id": tenant_id,
        "file_path": f"{tenant_id}/inv/original.png",
        "status": InvoiceStatus.APPROVED,
        "invoice_number": "FV/2025/001",
        "issue_date": date(2025, 2, 20),
        "due_date": date(2025, 3, 6),
        "currency": "PLN",
        "net_amount": Decimal("1000.00"),
        "vat_amount": Decimal("230.00"),
        "gross_amount": Decimal("1230.00"),
        "seller": Party(name="Acme Sp. z o.o.", tax_id=SELLER_NIP, country_code="PL"),
        "buyer": Party(name="Kontrahent S.A.", tax_id=BUYER_NIP, country_code="PL"),
        "line_items": [
            LineItem(
                line_number=1,
                description="Usługa wdrożeniowa",
                quantity=Decimal("1"),
                unit="szt",
                unit_price=Decimal("1000.00"),
                net_amount=Decimal("1000.00"),
                vat_rate="23",
                vat_amount=Decimal("230.00"),
                gross_amount=Decimal("1230.00"),
            )
        ],
        "approved_by": "reviewer",
    }
    values.update(overrides)
    return Invoice(**values)


class FakeRecognitionEngine:
    """Returns queued results in order, then the default result."""

    def __init__(self, text: str = INVOICE_TEXT, confidence: float = 91.5) -> None:
        self.default = RecognitionResult(
            text=text, confidence=confidence, language="pol+eng", success=True
        )
        self.queued: list[RecognitionResult] = []
        self.calls = 0

    def recognize(self, image: bytes) -> RecognitionResult:
        self.calls += 1
        if self.queued:
            return self.queued.pop(0)
        return self.default

    def is_available(self) -> bool:
        return True


class FakeExtractionProvider(ExtractionProvider):
    def __init__(self, invoice: ExtractedInvoice | None = None) -> None:
        super().__init__(Settings())
        self.invoice = invoice or extracted_invoice()
        self.queued: list[ExtractionResult] = []
        self.calls: list[tuple[str, dict[str, str] | None]] = []

    def extract_invoice_fields(
        self, ocr_text: str, hints: dict[str, str] | None = None
    ) -> ExtractionResult:
        self.calls.append((ocr_text, hints))
        if self.queued:
            return self.queued.pop(0)
        return ExtractionResult(invoice=self.invoice, success=True, provider="fake")

    def is_available(self) -> bool:
        return True

    @property
    def provider_name(self) -> str:
        return "fake"


class FakeBlobStore:
    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.content_types: dict[str, str | None] = {}
        self.fail_uploads = False

    def upload_bytes(
        self, data: bytes, object_name: str, content_type: str | None = None
    ) -> StorageResult:
        if self.fail_uploads:
            return StorageResult(success=False, object_name=object_name, error="disk full")
        self.objects[object_name] = data
        self.content_types[object_name] = content_type
        return StorageResult(success=True, object_name=object_name, size=len(data))

    def download_bytes(self, object_name: str) -> bytes:
        if object_name not in self.objects:
            raise NotFoundError("Blob", object_name)
        return self.objects[object_name]

    def is_available(self) -> bool:
        return True

    def health_check(self) -> bool:
        return True


class FakePlatform(PlatformClient):
    """Scripted national platform.

    ``submit_outcomes`` and ``status_outcomes`` are consumed in order; an
    exception instance is raised, anything else is returned. When a script
    runs out, sends get a fresh reference and status checks report ACCEPTED.
    """

    def __init__(self) -> None:
        self.submit_outcomes: list[Any] = []
        self.status_outcomes: list[Any] = []
        self.auth_calls: list[str] = []
        self.submitted: list[str] = []
        self.status_calls: list[str] = []
        self.receipt_calls: list[str] = []
        self.closed = False

    async def authenticate(
        self, nip: str, certificate: SigningCertificate | None = None
    ) -> SessionToken:
        self.auth_calls.append(nip)
        return SessionToken(
            token=f"token-{len(self.auth_calls)}",
            nip=nip,
            expires_at=datetime.now(UTC) + timedelta(hours=1),
        )

    async def submit_invoice(self, signed_xml: str, session: SessionToken) -> PlatformSubmission:
        self.submitted.append(signed_xml)
        if self.submit_outcomes:
            outcome = self.submit_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return PlatformSubmission(reference_number=f"KSEF-REF-{len(self.submitted):04d}")

    async def get_status(self, reference_number: str, session: SessionToken) -> PlatformStatus:
        self.status_calls.append(reference_number)
        if self.status_outcomes:
            outcome = self.status_outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return PlatformStatus(
            reference_number=reference_number,
            status="ACCEPTED",
            processing_code=200,
            accepted_at=datetime(2025, 3, 1, 12, 5, tzinfo=UTC),
        )

    async def download_receipt(self, reference_number: str, session: SessionToken) -> Receipt:
        self.receipt_calls.append(reference_number)
        return Receipt(
            reference_number=reference_number,
            content=f"<UPO><Numer>{reference_number}</Numer></UPO>".encode(),
            content_type="application/xml",
        )

    async def close(self) -> None:
        self.closed = True


def pending_status(reference: str) -> PlatformStatus:
    return PlatformStatus(reference_number=reference, status="PENDING", processing_code=100)


class RecordingNotifier(Notifier):
    def __init__(self) -> None:
        self.completed: list[tuple[str, str, bool]] = []
        self.failed: list[tuple[str, str, str]] = []

    async def extraction_completed(
        self, tenant_id: str, invoice_id: str, requires_review: bool
    ) -> None:
        self.completed.append((tenant_id, invoice_id, requires_review))

    async def extraction_failed(self, tenant_id: str, invoice_id: str, error: str) -> None:
        self.failed.append((tenant_id, invoice_id, error))


class RecordingAuditSink(AuditSink):
    def __init__(self) -> None:
        self.entries: list[tuple[str, dict[str, Any]]] = []

    async def record(self, event: str, **fields: Any) -> None:
        self.entries.append((event, fields))

    def events(self) -> list[str]:
        return [event for event, _ in self.entries]
