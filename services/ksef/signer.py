"""Enveloped XML signatures for FA(3) documents.

The signature covers the whole document (Reference URI="" with the
enveloped-signature transform) and carries the signer's X.509 certificate in
KeyInfo. Canonicalisation is C14N 2.0 from the standard library.

Based on the W3C XML Signature Syntax and Processing recommendation:
https://www.w3.org/TR/xmldsig-core1/
"""

import base64
import hashlib
import logging
import xml.etree.ElementTree as ET
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from pydantic import BaseModel, ConfigDict

from services.shared.config import Settings
from services.shared.errors import SigningError

logger = logging.getLogger(__name__)

DSIG_NAMESPACE = "http://www.w3.org/2000/09/xmldsig#"
C14N_ALGORITHM = "http://www.w3.org/2006/12/xml-c14n2"
ENVELOPED_TRANSFORM = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
DIGEST_ALGORITHM = "http://www.w3.org/2001/04/xmlenc#sha256"
RSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
ECDSA_SHA256 = "http://www.w3.org/2001/04/xmldsig-more#ecdsa-sha256"

ET.register_namespace("ds", DSIG_NAMESPACE)


def _ds(name: str) -> str:
    return f"{{{DSIG_NAMESPACE}}}{name}"


class SigningCertificate(BaseModel):
    """Private key and X.509 certificate loaded from a PKCS#12 bundle."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    private_key: Any
    certificate: x509.Certificate

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    def is_valid_at(self, moment: datetime) -> bool:
        return (
            self.certificate.not_valid_before_utc <= moment <= self.certificate.not_valid_after_utc
        )


class SignedDocument(BaseModel):
    xml: str
    signed: bool


def load_certificate(path: str | Path, password: str = "") -> SigningCertificate:
    """Load a PKCS#12 (.pfx/.p12) signing certificate.

    Raises:
        SigningError: If the file is unreadable or holds no key and certificate
    """
    try:
        data = Path(path).read_bytes()
        key, certificate, _ = pkcs12.load_key_and_certificates(
            data, password.encode("utf-8") if password else None
        )
    except (OSError, ValueError) as e:
        raise SigningError(f"Cannot load certificate {path}: {e}") from e
    if key is None or certificate is None:
        raise SigningError(f"Certificate bundle {path} lacks a private key or certificate")
    logger.info(f"Loaded signing certificate {certificate.subject.rfc4514_string()}")
    return SigningCertificate(private_key=key, certificate=certificate)


def _canonical(element: ET.Element) -> bytes:
    return ET.canonicalize(ET.tostring(element, encoding="unicode")).encode("utf-8")


def _signature_algorithm(key: Any) -> str:
    if isinstance(key, rsa.RSAPrivateKey):
        return RSA_SHA256
    if isinstance(key, ec.EllipticCurvePrivateKey):
        return ECDSA_SHA256
    raise SigningError(f"Unsupported signing key type: {type(key).__name__}")


class SignatureWrapper:
    def sign(self, xml: str, certificate: SigningCertificate | None) -> SignedDocument:
        """Attach an enveloped signature to ``xml``.

        Without a certificate the document is returned unchanged and marked
        unsigned; whether that is acceptable is the caller's decision.

        Raises:
            SigningError: If the document cannot be parsed or signed
        """
        if certificate is None:
            return SignedDocument(xml=xml, signed=False)

        if not certificate.is_valid_at(datetime.now(UTC)):
            raise SigningError(f"Signing certificate is not valid now: {certificate.subject}")

        try:
            root = ET.fromstring(xml.encode("utf-8"))
        except ET.ParseError as e:
            raise SigningError(f"Cannot sign malformed XML: {e}") from e

        key = certificate.private_key
        algorithm = _signature_algorithm(key)
        digest = base64.b64encode(hashlib.sha256(_canonical(root)).digest()).decode("ascii")

        signature = ET.Element(_ds("Signature"), {"Id": "Signature"})
        signed_info = ET.SubElement(signature, _ds("SignedInfo"))
        ET.SubElement(signed_info, _ds("CanonicalizationMethod"), {"Algorithm": C14N_ALGORITHM})
        ET.SubElement(signed_info, _ds("SignatureMethod"), {"Algorithm": algorithm})
        reference = ET.SubElement(signed_info, _ds("Reference"), {"URI": ""})
        transforms = ET.SubElement(reference, _ds("Transforms"))
        ET.SubElement(transforms, _ds("Transform"), {"Algorithm": ENVELOPED_TRANSFORM})
        ET.SubElement(transforms, _ds("Transform"), {"Algorithm": C14N_ALGORITHM})
        ET.SubElement(reference, _ds("DigestMethod"), {"Algorithm": DIGEST_ALGORITHM})
        ET.SubElement(reference, _ds("DigestValue")).text = digest

        payload = _canonical(signed_info)
        if isinstance(key, rsa.RSAPrivateKey):
            raw = key.sign(payload, padding.PKCS1v15(), hashes.SHA256())
        else:
            raw = key.sign(payload, ec.ECDSA(hashes.SHA256()))
        ET.SubElement(signature, _ds("SignatureValue")).text = base64.b64encode(raw).decode(
            "ascii"
        )

        key_info = ET.SubElement(signature, _ds("KeyInfo"))
        x509_data = ET.SubElement(key_info, _ds("X509Data"))
        der = certificate.certificate.public_bytes(serialization.Encoding.DER)
        ET.SubElement(x509_data, _ds("X509Certificate")).text = base64.b64encode(der).decode(
            "ascii"
        )

        root.append(signature)
        signed_xml = '<?xml version="1.0" encoding="UTF-8"?>\n' + ET.tostring(
            root, encoding="unicode"
        )
        return SignedDocument(xml=signed_xml, signed=True)


def verify_signature(xml: str) -> bool:
    """Check digest and signature of a document signed by SignatureWrapper.

    Uses the certificate embedded in KeyInfo.
    """
    root = ET.fromstring(xml.encode("utf-8"))
    signature = root.find(_ds("Signature"))
    if signature is None:
        return False
    signed_info = signature.find(_ds("SignedInfo"))
    if signed_info is None:
        return False
    digest_value = signed_info.findtext(f"{_ds('Reference')}/{_ds('DigestValue')}")
    signature_value = signature.findtext(_ds("SignatureValue"))
    encoded_cert = signature.findtext(
        f"{_ds('KeyInfo')}/{_ds('X509Data')}/{_ds('X509Certificate')}"
    )
    if not digest_value or not signature_value or not encoded_cert:
        return False

    root.remove(signature)
    expected = base64.b64encode(hashlib.sha256(_canonical(root)).digest()).decode("ascii")
    if expected != digest_value:
        return False

    certificate = x509.load_der_x509_certificate(base64.b64decode(encoded_cert))
    public_key = certificate.public_key()
    raw = base64.b64decode(signature_value)
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(raw, _canonical(signed_info), padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(raw, _canonical(signed_info), ec.ECDSA(hashes.SHA256()))
        else:
            return False
    except InvalidSignature:
        return False
    return True


class CertificateStore:
    """Resolves the signing certificate for a tenant.

    Tenant-specific paths win over the default ``ksef_cert_path``. Loaded
    bundles are cached for the lifetime of the store.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._cache: dict[str, SigningCertificate] = {}

    def path_for(self, tenant_id: str) -> str | None:
        return self.settings.ksef_tenant_cert_paths.get(tenant_id) or self.settings.ksef_cert_path

    def get(self, tenant_id: str) -> SigningCertificate | None:
        path = self.path_for(tenant_id)
        if not path:
            return None
        if path not in self._cache:
            self._cache[path] = load_certificate(path, self.settings.ksef_cert_password)
        return self._cache[path]
