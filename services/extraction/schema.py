"""Structured extraction output for Polish VAT invoices.

Every section carries its own 0-1 confidence, optionally refined per field.
Values the service could not determine are passed through as ``None``.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import BaseModel, Field, field_validator

# Legitimately absent on many invoices; a missing value here is not a low-confidence signal
OPTIONAL_FIELDS = frozenset(
    {"due_date", "seller.address", "buyer.address", "seller.country_code", "buyer.country_code"}
)


def _lenient_date(value: Any) -> Any:
    if value is None or isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip())
    except ValueError:
        return None


def _lenient_decimal(value: Any) -> Any:
    if value is None or isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value).replace(" ", "").replace(",", "."))
    except InvalidOperation:
        return None


class ExtractedHeader(BaseModel):
    invoice_number: str | None = Field(None, description="Invoice number (numer faktury)")
    issue_date: date | None = Field(None, description="Issue date (data wystawienia)")
    due_date: date | None = Field(None, description="Payment due date (termin płatności)")
    currency: str | None = Field(None, description="Currency code (ISO 4217)")
    confidence: float | None = Field(None, ge=0, le=1)
    field_confidence: dict[str, float | None] = Field(default_factory=dict)

    parse_dates = field_validator("issue_date", "due_date", mode="before")(_lenient_date)


class ExtractedParty(BaseModel):
    name: str | None = None
    tax_id: str | None = Field(None, description="NIP")
    address: str | None = None
    country_code: str | None = None
    confidence: float | None = Field(None, ge=0, le=1)
    field_confidence: dict[str, float | None] = Field(default_factory=dict)


class ExtractedTotals(BaseModel):
    net_amount: Decimal | None = None
    vat_amount: Decimal | None = None
    gross_amount: Decimal | None = None
    confidence: float | None = Field(None, ge=0, le=1)
    field_confidence: dict[str, float | None] = Field(default_factory=dict)

    parse_amounts = field_validator("net_amount", "vat_amount", "gross_amount", mode="before")(
        _lenient_decimal
    )


class ExtractedLineItem(BaseModel):
    description: str | None = None
    quantity: Decimal | None = None
    unit: str | None = None
    unit_price: Decimal | None = None
    net_amount: Decimal | None = None
    vat_rate: str | None = None
    vat_amount: Decimal | None = None
    gross_amount: Decimal | None = None
    confidence: float | None = Field(None, ge=0, le=1)

    parse_amounts = field_validator(
        "quantity", "unit_price", "net_amount", "vat_amount", "gross_amount", mode="before"
    )(_lenient_decimal)

    @field_validator("vat_rate", mode="before")
    @classmethod
    def normalize_rate(cls, value: Any) -> Any:
        # "23", "8", "zw", "np" are all valid FA(3) rates
        if value is None:
            return None
        return str(value).strip().rstrip("%").strip()


class ExtractedInvoice(BaseModel):
    """Structured invoice returned by an extraction provider."""

    header: ExtractedHeader = Field(default_factory=ExtractedHeader)
    seller: ExtractedParty = Field(default_factory=ExtractedParty)
    buyer: ExtractedParty = Field(default_factory=ExtractedParty)
    totals: ExtractedTotals = Field(default_factory=ExtractedTotals)
    line_items: list[ExtractedLineItem] = Field(default_factory=list)
    overall_confidence: float | None = Field(None, ge=0, le=1)

    def field_confidence_map(self) -> dict[str, float | None]:
        """Flatten section confidences into one entry per field.

        Line items contribute one entry each (``line_items.<index>``).
        """
        result: dict[str, float | None] = {}
        sections: list[tuple[str, BaseModel, dict[str, float | None], float | None]] = [
            ("", self.header, self.header.field_confidence, self.header.confidence),
            ("seller.", self.seller, self.seller.field_confidence, self.seller.confidence),
            ("buyer.", self.buyer, self.buyer.field_confidence, self.buyer.confidence),
            ("", self.totals, self.totals.field_confidence, self.totals.confidence),
        ]
        for prefix, section, overrides, section_confidence in sections:
            for name in type(section).model_fields:
                if name in ("confidence", "field_confidence"):
                    continue
                key = f"{prefix}{name}"
                value = getattr(section, name)
                if value is None and key in OPTIONAL_FIELDS:
                    continue
                result[key] = None if value is None else overrides.get(name, section_confidence)
        for index, item in enumerate(self.line_items):
            result[f"line_items.{index}"] = item.confidence
        return result
