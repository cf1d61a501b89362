"""Unit tests for enveloped XML signatures and certificate loading."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.serialization import BestAvailableEncryption, pkcs12
from fakes import approved_invoice, make_certificate

from services.ksef.fa3 import build_document, parse_document
from services.ksef.signer import (
    CertificateStore,
    SignatureWrapper,
    SigningCertificate,
    load_certificate,
    verify_signature,
)
from services.shared.config import Settings
from services.shared.errors import SigningError


@pytest.fixture
def document() -> str:
    return build_document(approved_invoice(), created_at=datetime(2025, 3, 1, tzinfo=UTC))


def _write_bundle(path: Path, certificate: SigningCertificate, password: bytes) -> Path:
    data = pkcs12.serialize_key_and_certificates(
        b"acme",
        certificate.private_key,
        certificate.certificate,
        None,
        BestAvailableEncryption(password),
    )
    path.write_bytes(data)
    return path


class TestSignatureWrapper:
    @pytest.mark.parametrize("key_type", ["ec", "rsa"])
    def test_signed_document_verifies(self, document: str, key_type: str) -> None:
        signed = SignatureWrapper().sign(document, make_certificate(key_type))

        assert signed.signed is True
        assert verify_signature(signed.xml) is True
        parsed = parse_document(signed.xml)
        assert parsed.signed is True
        assert parsed.invoice_number == "FV/2025/001"

    def test_tampered_document_fails_verification(self, document: str) -> None:
        signed = SignatureWrapper().sign(document, make_certificate())
        tampered = signed.xml.replace("FV/2025/001", "FV/2025/999")
        assert verify_signature(tampered) is False

    def test_unsigned_document_does_not_verify(self, document: str) -> None:
        assert verify_signature(document) is False

    def test_without_certificate_document_is_unchanged(self, document: str) -> None:
        signed = SignatureWrapper().sign(document, None)
        assert signed.signed is False
        assert signed.xml == document

    def test_expired_certificate_is_refused(self, document: str) -> None:
        expired = make_certificate(
            valid_from=datetime.now(UTC) - timedelta(days=400), valid_days=30
        )
        with pytest.raises(SigningError) as exc_info:
            SignatureWrapper().sign(document, expired)
        assert exc_info.value.code == "SIGNING_FAILED"

    def test_malformed_xml_is_refused(self) -> None:
        with pytest.raises(SigningError):
            SignatureWrapper().sign("<Faktura>", make_certificate())


class TestCertificateLoading:
    def test_load_pkcs12_bundle(self, tmp_path: Path) -> None:
        original = make_certificate()
        path = _write_bundle(tmp_path / "acme.p12", original, b"secret")

        loaded = load_certificate(path, "secret")

        assert loaded.certificate == original.certificate
        assert "Acme" in loaded.subject

    def test_wrong_password(self, tmp_path: Path) -> None:
        path = _write_bundle(tmp_path / "acme.p12", make_certificate(), b"secret")
        with pytest.raises(SigningError):
            load_certificate(path, "wrong")

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SigningError):
            load_certificate(tmp_path / "missing.p12")

    def test_store_prefers_tenant_certificate(self, tmp_path: Path) -> None:
        default = _write_bundle(tmp_path / "default.p12", make_certificate(), b"pw")
        tenant = _write_bundle(tmp_path / "acme.p12", make_certificate(), b"pw")
        settings = Settings(
            ksef_cert_path=str(default),
            ksef_cert_password="pw",
            ksef_tenant_cert_paths={"acme": str(tenant)},
        )
        store = CertificateStore(settings)

        assert store.path_for("acme") == str(tenant)
        assert store.path_for("globex") == str(default)
        assert store.get("acme") is store.get("acme")

    def test_store_without_certificates(self) -> None:
        assert CertificateStore(Settings(ksef_cert_path=None)).get("acme") is None
