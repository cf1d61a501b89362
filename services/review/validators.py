"""Domain validation for invoice fields.

Used both when a human corrects a field and before an invoice may be approved.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation

from services.domain.models import Invoice

NIP_WEIGHTS = (6, 5, 7, 2, 3, 4, 5, 6, 7)
MONEY_PLACES = 2
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")


def normalize_nip(value: str | None) -> str | None:
    """Strip separators and an optional PL prefix from a tax id."""
    if value is None:
        return None
    cleaned = re.sub(r"[\s-]", "", value).upper()
    if cleaned.startswith("PL"):
        cleaned = cleaned[2:]
    return cleaned


def is_valid_nip(value: str | None) -> bool:
    """Check a Polish NIP: 10 digits whose weighted sum mod 11 equals the last digit.

    A weighted sum with remainder 10 can never match a single check digit, so such
    numbers are invalid.
    """
    nip = normalize_nip(value)
    if nip is None or not re.fullmatch(r"\d{10}", nip):
        return False
    checksum = sum(int(digit) * weight for digit, weight in zip(nip, NIP_WEIGHTS)) % 11
    return checksum == int(nip[9])


def parse_iso_date(value: str | date) -> date:
    """Parse an ISO calendar date (YYYY-MM-DD).

    Raises:
        ValueError: If the value is not a valid calendar date
    """
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
        raise ValueError(f"Not an ISO date (YYYY-MM-DD): {value!r}")
    return date.fromisoformat(text)


def decimal_places(amount: Decimal) -> int:
    exponent = amount.normalize().as_tuple().exponent
    return -exponent if isinstance(exponent, int) and exponent < 0 else 0


def parse_amount(
    value: str | int | float | Decimal, places: int | None = MONEY_PLACES
) -> Decimal:
    """Parse a non-negative monetary amount without going through float.

    Accepts Polish decimal commas ("1 234,50"). Amounts are limited to whole
    cents unless ``places`` is None (unit prices and quantities).

    Raises:
        ValueError: If the value is not a number, is negative or is too precise
    """
    if isinstance(value, Decimal):
        amount = value
    else:
        text = str(value).strip().replace("\u00a0", "").replace(" ", "").replace(",", ".")
        try:
            amount = Decimal(text)
        except InvalidOperation as e:
            raise ValueError(f"Not a monetary amount: {value!r}") from e
    if not amount.is_finite():
        raise ValueError(f"Not a monetary amount: {value!r}")
    if amount < 0:
        raise ValueError(f"Amount cannot be negative: {value!r}")
    if places is not None and decimal_places(amount) > places:
        raise ValueError(f"Amount has more than {places} decimal places: {value!r}")
    return amount


def parse_currency(value: str) -> str:
    code = str(value).strip().upper()
    if not _CURRENCY_RE.match(code):
        raise ValueError(f"Currency must be a 3-letter ISO 4217 code: {value!r}")
    return code


def validate_for_approval(invoice: Invoice, tolerance: Decimal = Decimal("1.00")) -> list[str]:
    """List everything that blocks approval. An empty list means approvable.

    Args:
        invoice: Invoice to check
        tolerance: Allowed |net + vat - gross| difference

    Returns:
        Human-readable validation errors
    """
    errors: list[str] = []

    if not invoice.invoice_number or not invoice.invoice_number.strip():
        errors.append("Invoice number is missing")
    if invoice.issue_date is None:
        errors.append("Issue date is missing")
    if invoice.due_date and invoice.issue_date and invoice.due_date < invoice.issue_date:
        errors.append("Due date is before issue date")
    if not invoice.currency:
        errors.append("Currency is missing")

    for role, party in (("Seller", invoice.seller), ("Buyer", invoice.buyer)):
        if not party.name:
            errors.append(f"{role} name is missing")
        if not party.tax_id:
            errors.append(f"{role} NIP is missing")
        elif not is_valid_nip(party.tax_id):
            errors.append(f"{role} NIP invalid: {party.tax_id}")

    amounts = {
        "Net amount": invoice.net_amount,
        "VAT amount": invoice.vat_amount,
        "Gross amount": invoice.gross_amount,
    }
    for label, amount in amounts.items():
        if amount is None:
            errors.append(f"{label} is missing")
        elif amount < 0:
            errors.append(f"{label} cannot be negative")
        elif decimal_places(amount) > MONEY_PLACES:
            errors.append(f"{label} has fractions of a cent: {amount}")

    if None not in amounts.values():
        net, vat, gross = invoice.net_amount, invoice.vat_amount, invoice.gross_amount
        difference = abs(net + vat - gross)  # type: ignore[operator]
        if difference > tolerance:
            errors.append(
                f"Amount mismatch: net ({invoice.net_amount}) + VAT ({invoice.vat_amount}) "
                f"!= gross ({invoice.gross_amount})"
            )

    for item in invoice.line_items:
        if not item.description:
            errors.append(f"Line {item.line_number}: description is missing")
        for label, value in (
            ("quantity", item.quantity),
            ("unit price", item.unit_price),
            ("net amount", item.net_amount),
        ):
            if value is not None and value < 0:
                errors.append(f"Line {item.line_number}: {label} cannot be negative")
        for label, value in (
            ("net amount", item.net_amount),
            ("VAT amount", item.vat_amount),
            ("gross amount", item.gross_amount),
        ):
            if value is not None and decimal_places(value) > MONEY_PLACES:
                errors.append(f"Line {item.line_number}: {label} has fractions of a cent")

    return errors
