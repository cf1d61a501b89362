"""FA(3) structured e-invoice documents.

Builds the XML document the national platform accepts from an approved
invoice, and reads one back. Amounts are written straight from Decimal, never
through float.

Structure (abridged):

    Faktura
    ├── Naglowek          form code, variant, creation time, system info
    ├── Podmiot1          seller: NIP, name, address
    ├── Podmiot2          buyer: NIP, name, address
    └── Fa                currency, P_1 issue date, P_2 number,
                          P_13_1 net, P_14_1 VAT, P_15 gross,
                          optional payment term, FaWiersz lines
"""

import xml.etree.ElementTree as ET
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field

from services.domain.models import Invoice, LineItem, Party
from services.review.validators import MONEY_PLACES, decimal_places, normalize_nip
from services.shared.errors import DocumentBuildError, PermanentError

FA3_NAMESPACE = "http://crd.gov.pl/wzor/2025/06/25/13775/"
FORM_CODE = "FA (3)"
SCHEMA_VERSION = "1-0E"
FORM_VARIANT = "3"
SYSTEM_INFO = "ksef-invoice-pipeline"
DEFAULT_COUNTRY = "PL"
DEFAULT_UNIT = "szt"

CENT = Decimal("0.01")
TOTAL_TAGS = (("P_13_1", "net_amount"), ("P_14_1", "vat_amount"), ("P_15", "gross_amount"))

ET.register_namespace("", FA3_NAMESPACE)


def _tag(name: str) -> str:
    return f"{{{FA3_NAMESPACE}}}{name}"


def _sub(parent: ET.Element, name: str, text: str | None = None, **attrib: str) -> ET.Element:
    element = ET.SubElement(parent, _tag(name), attrib)
    if text is not None:
        element.text = text
    return element


def format_amount(amount: Decimal, field: str = "amount") -> str:
    """Write a monetary amount in whole cents; never rounds.

    Raises:
        DocumentBuildError: If the amount has fractions of a cent
    """
    if decimal_places(amount) > MONEY_PLACES:
        raise DocumentBuildError(field, "Amount has fractions of a cent")
    return str(amount.quantize(CENT))


def format_price(price: Decimal) -> str:
    # Unit prices may carry more than two decimals
    if decimal_places(price) > MONEY_PLACES:
        return format(price, "f")
    return str(price.quantize(CENT))


def _required(value: Any, field: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise DocumentBuildError(field)
    return value


def _party(parent: ET.Element, name: str, party: Party, role: str) -> None:
    element = _sub(parent, name)
    identity = _sub(element, "DaneIdentyfikacyjne")
    _sub(identity, "NIP", normalize_nip(_required(party.tax_id, f"{role}.tax_id")))
    _sub(identity, "Nazwa", _required(party.name, f"{role}.name").strip())
    address = _sub(element, "Adres")
    _sub(address, "KodKraju", (party.country_code or DEFAULT_COUNTRY).upper())
    if party.address:
        _sub(address, "AdresL1", party.address.strip())


def _line(parent: ET.Element, index: int, item: LineItem) -> None:
    field = f"line_items.{index}"
    row = _sub(parent, "FaWiersz")
    _sub(row, "NrWierszaFa", str(item.line_number))
    _sub(row, "P_7", _required(item.description, f"{field}.description"))
    _sub(row, "P_8A", item.unit or DEFAULT_UNIT)
    if item.quantity is not None:
        _sub(row, "P_8B", str(item.quantity))
    if item.unit_price is not None:
        _sub(row, "P_9A", format_price(item.unit_price))
    net = _required(item.net_amount, f"{field}.net_amount")
    _sub(row, "P_11", format_amount(net, f"{field}.net_amount"))
    if item.gross_amount is not None:
        _sub(row, "P_11A", format_amount(item.gross_amount, f"{field}.gross_amount"))
    if item.vat_amount is not None:
        _sub(row, "P_11Vat", format_amount(item.vat_amount, f"{field}.vat_amount"))
    _sub(row, "P_12", _required(item.vat_rate, f"{field}.vat_rate"))


def build_document(invoice: Invoice, created_at: datetime | None = None) -> str:
    """Render an invoice as an FA(3) XML document.

    Args:
        invoice: Approved invoice
        created_at: Document creation time (defaults to now)

    Returns:
        UTF-8 XML text with declaration

    Raises:
        DocumentBuildError: If a required field is missing
    """
    created_at = created_at or datetime.now(UTC)

    root = ET.Element(_tag("Faktura"))
    header = _sub(root, "Naglowek")
    _sub(header, "KodFormularza", "FA", kodSystemowy=FORM_CODE, wersjaSchemy=SCHEMA_VERSION)
    _sub(header, "WariantFormularza", FORM_VARIANT)
    created = created_at.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
    _sub(header, "DataWytworzeniaFa", created)
    _sub(header, "SystemInfo", SYSTEM_INFO)

    _party(root, "Podmiot1", invoice.seller, "seller")
    _party(root, "Podmiot2", invoice.buyer, "buyer")

    fa = _sub(root, "Fa")
    _sub(fa, "KodWaluty", _required(invoice.currency, "currency").upper())
    _sub(fa, "P_1", _required(invoice.issue_date, "issue_date").isoformat())
    _sub(fa, "P_2", _required(invoice.invoice_number, "invoice_number").strip())
    for tag, field in TOTAL_TAGS:
        _sub(fa, tag, format_amount(_required(getattr(invoice, field), field), field))
    _sub(fa, "RodzajFaktury", "VAT")
    for index, item in enumerate(invoice.line_items):
        _line(fa, index, item)
    if invoice.due_date is not None:
        payment = _sub(fa, "Platnosc")
        term = _sub(payment, "TerminPlatnosci")
        _sub(term, "Termin", invoice.due_date.isoformat())

    ET.indent(root)
    return '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(root, encoding="unicode")


class ParsedDocument(BaseModel):
    """Invoice content read back from an FA(3) document."""

    form_code: str | None = None
    schema_version: str | None = None
    invoice_number: str | None = None
    issue_date: date | None = None
    due_date: date | None = None
    currency: str | None = None
    net_amount: Decimal | None = None
    vat_amount: Decimal | None = None
    gross_amount: Decimal | None = None
    seller: Party = Field(default_factory=Party)
    buyer: Party = Field(default_factory=Party)
    line_items: list[LineItem] = Field(default_factory=list)
    signed: bool = False


def _text(element: ET.Element | None, path: str) -> str | None:
    if element is None:
        return None
    found = element.find(path, {"fa": FA3_NAMESPACE})
    return found.text if found is not None else None


def _decimal(value: str | None) -> Decimal | None:
    return Decimal(value) if value is not None else None


def _read_party(element: ET.Element | None) -> Party:
    return Party(
        name=_text(element, "fa:DaneIdentyfikacyjne/fa:Nazwa"),
        tax_id=_text(element, "fa:DaneIdentyfikacyjne/fa:NIP"),
        address=_text(element, "fa:Adres/fa:AdresL1"),
        country_code=_text(element, "fa:Adres/fa:KodKraju"),
    )


def parse_document(xml: str) -> ParsedDocument:
    """Read header, parties, totals and lines from an FA(3) document.

    Raises:
        PermanentError: If the text is not an FA(3) document
    """
    try:
        root = ET.fromstring(xml.encode("utf-8"))
    except ET.ParseError as e:
        raise PermanentError(f"Malformed FA(3) XML: {e}", code="MALFORMED_DOCUMENT") from e
    if root.tag != _tag("Faktura"):
        raise PermanentError(f"Not an FA(3) document: {root.tag}", code="MALFORMED_DOCUMENT")

    ns = {"fa": FA3_NAMESPACE}
    form = root.find("fa:Naglowek/fa:KodFormularza", ns)
    fa = root.find("fa:Fa", ns)
    due = _text(fa, "fa:Platnosc/fa:TerminPlatnosci/fa:Termin")
    issue = _text(fa, "fa:P_1")

    lines = []
    for row in fa.findall("fa:FaWiersz", ns) if fa is not None else []:
        lines.append(
            LineItem(
                line_number=int(_text(row, "fa:NrWierszaFa") or len(lines) + 1),
                description=_text(row, "fa:P_7"),
                unit=_text(row, "fa:P_8A"),
                quantity=_decimal(_text(row, "fa:P_8B")),
                unit_price=_decimal(_text(row, "fa:P_9A")),
                net_amount=_decimal(_text(row, "fa:P_11")),
                vat_rate=_text(row, "fa:P_12"),
                vat_amount=_decimal(_text(row, "fa:P_11Vat")),
                gross_amount=_decimal(_text(row, "fa:P_11A")),
            )
        )

    return ParsedDocument(
        form_code=form.get("kodSystemowy") if form is not None else None,
        schema_version=form.get("wersjaSchemy") if form is not None else None,
        invoice_number=_text(fa, "fa:P_2"),
        issue_date=date.fromisoformat(issue) if issue else None,
        due_date=date.fromisoformat(due) if due else None,
        currency=_text(fa, "fa:KodWaluty"),
        net_amount=_decimal(_text(fa, "fa:P_13_1")),
        vat_amount=_decimal(_text(fa, "fa:P_14_1")),
        gross_amount=_decimal(_text(fa, "fa:P_15")),
        seller=_read_party(root.find("fa:Podmiot1", ns)),
        buyer=_read_party(root.find("fa:Podmiot2", ns)),
        line_items=lines,
        signed=root.find("{http://www.w3.org/2000/09/xmldsig#}Signature") is not None,
    )
