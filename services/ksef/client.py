"""Client for the national e-invoicing platform (KSeF).

Error classification:
- network errors, timeouts, HTTP 429 and 5xx raise PlatformTransientError
- HTTP 401 raises SessionExpiredError; SessionCache re-authenticates once
- any other 4xx raises PlatformRejectedError with the platform's error code
- a 2xx body that is not a JSON object raises PlatformTransientError

Based on httpx async client documentation:
https://www.python-httpx.org/async/
"""

import asyncio
import logging
import xml.etree.ElementTree as ET
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any, Literal, TypeVar

import httpx
from pydantic import BaseModel

from services.domain.models import utcnow
from services.ksef.signer import SignatureWrapper, SigningCertificate
from services.shared.config import Settings
from services.shared.errors import PlatformRejectedError, PlatformTransientError
from services.shared.metrics import platform_requests_total

logger = logging.getLogger(__name__)

KSEF_URLS = {
    "test": "https://ksef-test.mf.gov.pl",
    "demo": "https://ksef-demo.mf.gov.pl",
    "production": "https://ksef.mf.gov.pl",
}

AUTH_NAMESPACE = (
    "http://ksef.mf.gov.pl/schema/gtw/svc/online/auth/request/201911/InitSessionToken"
)

T = TypeVar("T")


class SessionExpiredError(PlatformTransientError):
    code = "SESSION_EXPIRED"


class SessionToken(BaseModel):
    token: str
    nip: str
    expires_at: datetime
    session_id: str | None = None

    def is_expired(self, now: datetime, margin_seconds: float = 0) -> bool:
        return now >= self.expires_at - timedelta(seconds=margin_seconds)


class PlatformSubmission(BaseModel):
    reference_number: str
    accepted_at: datetime | None = None


class PlatformStatus(BaseModel):
    reference_number: str
    status: Literal["PENDING", "ACCEPTED", "REJECTED"]
    processing_code: int | None = None
    description: str | None = None
    accepted_at: datetime | None = None


class Receipt(BaseModel):
    reference_number: str
    content: bytes
    content_type: str


def map_processing_code(code: int | None) -> Literal["PENDING", "ACCEPTED", "REJECTED"]:
    if code == 200:
        return "ACCEPTED"
    if code is not None and code >= 400:
        return "REJECTED"
    return "PENDING"


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


class PlatformClient(ABC):
    """Operations the submission manager needs from the platform."""

    @abstractmethod
    async def authenticate(
        self, nip: str, certificate: SigningCertificate | None = None
    ) -> SessionToken:
        pass

    @abstractmethod
    async def submit_invoice(self, signed_xml: str, session: SessionToken) -> PlatformSubmission:
        pass

    @abstractmethod
    async def get_status(self, reference_number: str, session: SessionToken) -> PlatformStatus:
        pass

    @abstractmethod
    async def download_receipt(self, reference_number: str, session: SessionToken) -> Receipt:
        pass

    async def close(self) -> None:
        return None


class KSeFClient(PlatformClient):
    def __init__(
        self,
        settings: Settings,
        signer: SignatureWrapper | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings
        self.signer = signer or SignatureWrapper()
        self.base_url = settings.ksef_base_url or KSEF_URLS[settings.ksef_environment]
        self._http = http_client or httpx.AsyncClient(
            base_url=self.base_url, timeout=settings.ksef_timeout_seconds
        )

    async def close(self) -> None:
        await self._http.aclose()

    async def _request(
        self, operation: str, method: str, path: str, **kwargs: Any
    ) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            platform_requests_total.labels(operation=operation, status="timeout").inc()
            raise PlatformTransientError(
                f"KSeF {operation} timed out", details={"operation": operation}
            ) from e
        except httpx.TransportError as e:
            platform_requests_total.labels(operation=operation, status="network").inc()
            raise PlatformTransientError(
                f"KSeF {operation} failed: {e}", details={"operation": operation}
            ) from e

        status = response.status_code
        platform_requests_total.labels(operation=operation, status=str(status)).inc()
        if status < 400:
            return response
        if status == 401:
            raise SessionExpiredError(f"KSeF session rejected during {operation}")
        if status == 429 or status >= 500:
            raise PlatformTransientError(
                f"KSeF {operation} unavailable (HTTP {status})",
                details={"operation": operation, "status_code": status},
            )
        raise self._rejection(operation, response)

    def _json(self, operation: str, response: httpx.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise PlatformTransientError(
                f"KSeF {operation} returned a malformed body",
                code="MALFORMED_RESPONSE",
                details={"operation": operation, "body": response.text[:500]},
            )
        return body

    def _rejection(self, operation: str, response: httpx.Response) -> PlatformRejectedError:
        try:
            body = response.json()
        except ValueError:
            body = {"text": response.text[:500]}

        platform_code = None
        description = None
        exception = body.get("exception") if isinstance(body, dict) else None
        if isinstance(exception, dict):
            entries = exception.get("exceptionDetailList") or []
            if entries:
                platform_code = entries[0].get("exceptionCode")
                description = entries[0].get("exceptionDescription")
        message = description or f"KSeF rejected {operation} (HTTP {response.status_code})"
        return PlatformRejectedError(
            message,
            code=f"KSEF_{platform_code}" if platform_code is not None else None,
            details={
                "operation": operation,
                "status_code": response.status_code,
                "platform_code": platform_code,
                "body": body,
            },
        )

    def _auth_document(self, nip: str) -> str:
        root = ET.Element(f"{{{AUTH_NAMESPACE}}}InitSessionTokenRequest")
        context = ET.SubElement(root, f"{{{AUTH_NAMESPACE}}}Context")
        ET.SubElement(context, f"{{{AUTH_NAMESPACE}}}Timestamp").text = utcnow().isoformat()
        identifier = ET.SubElement(context, f"{{{AUTH_NAMESPACE}}}Identifier")
        ET.SubElement(identifier, f"{{{AUTH_NAMESPACE}}}NIP").text = nip
        xml = ET.tostring(root, encoding="unicode", default_namespace=AUTH_NAMESPACE)
        return '<?xml version="1.0" encoding="UTF-8"?>\n' + xml

    async def authenticate(
        self, nip: str, certificate: SigningCertificate | None = None
    ) -> SessionToken:
        document = self.signer.sign(self._auth_document(nip), certificate)
        response = await self._request(
            "authenticate",
            "POST",
            "/api/online/Session/InitToken",
            content=document.xml.encode("utf-8"),
            headers={"Content-Type": "application/octet-stream", "Accept": "application/json"},
        )
        data = self._json("authenticate", response)
        session = data.get("sessionToken") or {}
        token = session.get("token") or data.get("token")
        if not token:
            raise PlatformTransientError("KSeF returned no session token")
        logger.info(f"Opened KSeF session for NIP {nip} ({self.settings.ksef_environment})")
        return SessionToken(
            token=token,
            nip=nip,
            expires_at=utcnow() + timedelta(seconds=self.settings.ksef_session_ttl_seconds),
            session_id=data.get("referenceNumber"),
        )

    async def submit_invoice(self, signed_xml: str, session: SessionToken) -> PlatformSubmission:
        response = await self._request(
            "submit",
            "POST",
            "/api/online/Invoice/Send",
            content=signed_xml.encode("utf-8"),
            headers={
                "Content-Type": "application/xml",
                "Accept": "application/json",
                "SessionToken": session.token,
            },
        )
        data = self._json("submit", response)
        reference = data.get("elementReferenceNumber") or data.get("ksefReferenceNumber")
        if not reference:
            raise PlatformTransientError("KSeF accepted the upload but returned no reference")
        return PlatformSubmission(
            reference_number=reference, accepted_at=_parse_timestamp(data.get("timestamp"))
        )

    async def get_status(self, reference_number: str, session: SessionToken) -> PlatformStatus:
        response = await self._request(
            "status",
            "GET",
            f"/api/online/Invoice/Status/{reference_number}",
            headers={"Accept": "application/json", "SessionToken": session.token},
        )
        data = self._json("status", response)
        code = data.get("processingCode")
        invoice_status = data.get("invoiceStatus") or {}
        return PlatformStatus(
            reference_number=invoice_status.get("ksefReferenceNumber") or reference_number,
            status=map_processing_code(int(code) if code is not None else None),
            processing_code=int(code) if code is not None else None,
            description=data.get("processingDescription"),
            accepted_at=_parse_timestamp(invoice_status.get("acquisitionTimestamp")),
        )

    async def download_receipt(self, reference_number: str, session: SessionToken) -> Receipt:
        response = await self._request(
            "receipt",
            "GET",
            f"/api/online/Invoice/Upo/{reference_number}",
            headers={"SessionToken": session.token},
        )
        return Receipt(
            reference_number=reference_number,
            content=response.content,
            content_type=response.headers.get("Content-Type", "application/xml"),
        )


class SessionCache:
    """One platform session per NIP, renewed shortly before it expires.

    ``call`` re-authenticates once when the platform rejects a cached token.
    """

    def __init__(
        self,
        client: PlatformClient,
        refresh_margin_seconds: float = 60,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.client = client
        self.refresh_margin_seconds = refresh_margin_seconds
        self.clock = clock
        self._sessions: dict[str, SessionToken] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def get(self, nip: str, certificate: SigningCertificate | None = None) -> SessionToken:
        lock = self._locks.setdefault(nip, asyncio.Lock())
        async with lock:
            session = self._sessions.get(nip)
            if session is None or session.is_expired(self.clock(), self.refresh_margin_seconds):
                session = await self.client.authenticate(nip, certificate)
                self._sessions[nip] = session
            return session

    def invalidate(self, nip: str) -> None:
        self._sessions.pop(nip, None)

    async def call(
        self,
        nip: str,
        certificate: SigningCertificate | None,
        operation: Callable[[SessionToken], Awaitable[T]],
    ) -> T:
        session = await self.get(nip, certificate)
        try:
            return await operation(session)
        except SessionExpiredError:
            logger.info(f"KSeF session for NIP {nip} expired, re-authenticating")
            self.invalidate(nip)
            session = await self.get(nip, certificate)
            return await operation(session)
