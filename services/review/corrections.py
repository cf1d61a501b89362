"""Human corrections, approval and reopening of extracted invoices.

Corrections are applied all-or-nothing: every submitted field is validated
first and nothing is written unless all of them pass. Values are normalised
before they are compared with the current value, so replaying the same
correction batch appends nothing.
"""

import logging
from collections.abc import Callable, Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from services.audit.sink import AuditSink
from services.domain.models import Correction, Invoice, InvoiceStatus, Party, utcnow
from services.queue.events import Event, EventQueue
from services.review.validators import (
    is_valid_nip,
    normalize_nip,
    parse_amount,
    parse_currency,
    parse_iso_date,
    validate_for_approval,
)
from services.scoring.confidence import classify_direction
from services.shared.config import Settings
from services.shared.errors import (
    ApprovalError,
    CorrectionValidationError,
    InvalidTransitionError,
    InvoiceNotEditableError,
    NotFoundError,
)
from services.shared.metrics import corrections_applied_total, invoices_approved_total
from services.shared.tenants import TenantDirectory
from services.store.base import RecordStore

logger = logging.getLogger(__name__)

EDITABLE_STATUSES = {InvoiceStatus.EXTRACTED, InvoiceStatus.REVIEWING}


class CorrectionOutcome(BaseModel):
    invoice_id: str
    applied_count: int
    values: dict[str, str | None]
    status: InvoiceStatus


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        raise ValueError("Value cannot be empty")
    return text


def _tax_id(value: Any) -> str:
    if not is_valid_nip(str(value)):
        raise ValueError(f"Invalid NIP: {value}")
    return normalize_nip(str(value))  # type: ignore[return-value]


def _country(value: Any) -> str:
    code = str(value).strip().upper()
    if len(code) != 2 or not code.isalpha():
        raise ValueError(f"Country must be a 2-letter ISO code: {value}")
    return code


def _quantity(value: Any) -> Decimal:
    amount = parse_amount(value, places=None)
    if amount == 0:
        raise ValueError("Quantity must be positive")
    return amount


def _unit_price(value: Any) -> Decimal:
    return parse_amount(value, places=None)


def _vat_rate(value: Any) -> str:
    rate = str(value).strip().rstrip("%").strip().lower()
    if not rate:
        raise ValueError("VAT rate cannot be empty")
    return rate


# path -> (parser, required)
HEADER_FIELDS: dict[str, tuple[Callable[[Any], Any], bool]] = {
    "invoice_number": (_text, True),
    "issue_date": (parse_iso_date, True),
    "due_date": (parse_iso_date, False),
    "currency": (parse_currency, True),
    "net_amount": (parse_amount, True),
    "vat_amount": (parse_amount, True),
    "gross_amount": (parse_amount, True),
}

PARTY_FIELDS: dict[str, tuple[Callable[[Any], Any], bool]] = {
    "name": (_text, True),
    "tax_id": (_tax_id, True),
    "address": (_text, False),
    "country_code": (_country, False),
}

LINE_ITEM_FIELDS: dict[str, tuple[Callable[[Any], Any], bool]] = {
    "description": (_text, True),
    "quantity": (_quantity, False),
    "unit": (_text, False),
    "unit_price": (_unit_price, False),
    "net_amount": (parse_amount, False),
    "vat_rate": (_vat_rate, False),
    "vat_amount": (parse_amount, False),
    "gross_amount": (parse_amount, False),
}


def _as_text(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, date | datetime):
        return value.isoformat()
    return str(value)


class _Target:
    """Resolved field path: where a value lives on the invoice."""

    def __init__(self, owner: Any, attribute: str, parser: Callable[[Any], Any], required: bool):
        self.owner = owner
        self.attribute = attribute
        self.parser = parser
        self.required = required

    def current(self) -> Any:
        return getattr(self.owner, self.attribute)

    def parse(self, raw: Any) -> Any:
        if raw is None or (isinstance(raw, str) and not raw.strip()):
            if self.required:
                raise ValueError("Field is required")
            return None
        return self.parser(raw)


def _resolve(invoice: Invoice, path: str) -> _Target:
    parts = path.split(".")
    if len(parts) == 1 and parts[0] in HEADER_FIELDS:
        return _Target(invoice, parts[0], *HEADER_FIELDS[parts[0]])
    if len(parts) == 2 and parts[0] in ("seller", "buyer") and parts[1] in PARTY_FIELDS:
        party: Party = getattr(invoice, parts[0])
        return _Target(party, parts[1], *PARTY_FIELDS[parts[1]])
    if len(parts) == 3 and parts[0] == "line_items" and parts[2] in LINE_ITEM_FIELDS:
        if not parts[1].isdigit() or int(parts[1]) >= len(invoice.line_items):
            raise ValueError(f"No line item at index {parts[1]}")
        item = invoice.line_items[int(parts[1])]
        return _Target(item, parts[2], *LINE_ITEM_FIELDS[parts[2]])
    raise ValueError("Unknown field")


class CorrectionReconciler:
    def __init__(
        self,
        settings: Settings,
        store: RecordStore,
        events: EventQueue,
        audit: AuditSink,
        tenants: TenantDirectory,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.events = events
        self.audit = audit
        self.tenants = tenants
        self.clock = clock

    async def apply_corrections(
        self, invoice_id: str, corrections: Mapping[str, Any], actor: str
    ) -> CorrectionOutcome:
        """Validate and apply a batch of field corrections.

        Args:
            invoice_id: Invoice to correct
            corrections: Field path to new value, e.g. {"seller.tax_id": "5260250274"}
            actor: Who made the edit

        Returns:
            CorrectionOutcome with the number of appended corrections and the
            normalised values of every submitted field

        Raises:
            NotFoundError: If the invoice does not exist
            InvoiceNotEditableError: If the invoice is not EXTRACTED or REVIEWING
            CorrectionValidationError: If any field is unknown or invalid
        """
        invoice = await self._get_invoice(invoice_id)
        if invoice.status not in EDITABLE_STATUSES:
            raise InvoiceNotEditableError(invoice_id, invoice.status.value)

        errors: dict[str, str] = {}
        resolved: list[tuple[str, _Target, Any]] = []
        for path, raw in corrections.items():
            try:
                target = _resolve(invoice, path)
                resolved.append((path, target, target.parse(raw)))
            except ValueError as e:
                errors[path] = str(e)
        if errors:
            raise CorrectionValidationError(errors)

        now = self.clock()
        appended: list[Correction] = []
        for path, target, value in resolved:
            current = target.current()
            if current == value:
                continue
            setattr(target.owner, target.attribute, value)
            appended.append(
                Correction(
                    field_name=path,
                    original_value=_as_text(current),
                    corrected_value=_as_text(value),
                    corrected_at=now,
                    actor=actor,
                )
            )

        if appended:
            invoice.corrections.extend(appended)
            if any(c.field_name.endswith(".tax_id") for c in appended):
                self._reclassify(invoice)
            invoice.updated_at = now
            invoice = await self.store.save_invoice(invoice)
            for correction in appended:
                await self.audit.record(
                    "invoice.corrected",
                    invoice_id=invoice.id,
                    tenant_id=invoice.tenant_id,
                    **correction.model_dump(mode="json"),
                )
            corrections_applied_total.inc(len(appended))
            logger.info(f"Applied {len(appended)} correction(s) to invoice {invoice_id}")

        values = {path: _as_text(target.current()) for path, target, _ in resolved}
        return CorrectionOutcome(
            invoice_id=invoice.id,
            applied_count=len(appended),
            values=values,
            status=invoice.status,
        )

    def _reclassify(self, invoice: Invoice) -> None:
        classification = classify_direction(
            invoice.seller.tax_id, invoice.buyer.tax_id, self.tenants.get_tax_id(invoice.tenant_id)
        )
        invoice.direction = classification.direction
        invoice.direction_confidence = classification.confidence

    async def approve(self, invoice_id: str, actor: str) -> Invoice:
        """Approve an extracted invoice for submission.

        Raises:
            InvalidTransitionError: If the invoice is not EXTRACTED or REVIEWING
            ApprovalError: If validation errors remain
        """
        invoice = await self._get_invoice(invoice_id)
        if invoice.status not in EDITABLE_STATUSES:
            raise InvalidTransitionError(
                "Invoice", invoice.status.value, InvoiceStatus.APPROVED.value
            )
        errors = validate_for_approval(invoice, self.settings.amount_tolerance)
        if errors:
            raise ApprovalError(errors)

        invoice.transition_to(InvoiceStatus.APPROVED)
        invoice.approved_at = self.clock()
        invoice.approved_by = actor
        invoice = await self.store.save_invoice(invoice)

        await self.audit.record(
            "invoice.approved", invoice_id=invoice.id, tenant_id=invoice.tenant_id, actor=actor
        )
        await self.events.publish(Event.invoice_approved(invoice))
        invoices_approved_total.inc()
        logger.info(f"Invoice {invoice_id} approved by {actor}")
        return invoice

    async def reopen(self, invoice_id: str, actor: str) -> Invoice:
        """Send an errored invoice back to review, e.g. after a platform rejection.

        Raises:
            InvalidTransitionError: If the invoice is not in ERROR
        """
        invoice = await self._get_invoice(invoice_id)
        if invoice.status != InvoiceStatus.ERROR:
            raise InvalidTransitionError(
                "Invoice", invoice.status.value, InvoiceStatus.REVIEWING.value
            )
        previous = {"code": invoice.error_code, "message": invoice.error_message}
        invoice.transition_to(InvoiceStatus.REVIEWING)
        invoice.error_code = None
        invoice.error_message = None
        invoice.approved_at = None
        invoice.approved_by = None
        invoice = await self.store.save_invoice(invoice)

        await self.audit.record(
            "invoice.reopened",
            invoice_id=invoice.id,
            tenant_id=invoice.tenant_id,
            actor=actor,
            previous_error=previous,
        )
        logger.info(f"Invoice {invoice_id} reopened for review by {actor}")
        return invoice

    async def _get_invoice(self, invoice_id: str) -> Invoice:
        invoice = await self.store.get_invoice(invoice_id)
        if invoice is None:
            raise NotFoundError("Invoice", invoice_id)
        return invoice
