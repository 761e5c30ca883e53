"""
Tests for Certificate Service

Tests loading of signing material:
- PEM certificate with a sibling or explicit key file
- PKCS#12 bundles with a passphrase
- $ENV_VAR indirection
- Metadata extraction and X509 overrides
"""
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from einvoice.core.config import settings
from einvoice.services.certificate_service import (
    CertificateLoadError,
    CertificateNotFoundError,
    CertificateService,
    format_name,
)
from conftest import generate_test_certificate


def _write_pem_pair(directory, cert, key, key_name="signer.key", passphrase=None):
    cert_path = directory / "signer.pem"
    key_path = directory / key_name
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    encryption = (
        serialization.BestAvailableEncryption(passphrase.encode())
        if passphrase else serialization.NoEncryption()
    )
    key_path.write_bytes(key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        encryption,
    ))
    return cert_path, key_path


def test_load_pem_with_sibling_key(tmp_path):
    """Key defaults to the certificate path with a .key suffix"""
    cert, key = generate_test_certificate()
    cert_path, _ = _write_pem_pair(tmp_path, cert, key)

    material = CertificateService().load_signing_material(certificate_ref=str(cert_path))

    assert material.serial_number == str(cert.serial_number)
    assert material.subject_name == "CN=Test Signer, O=Test Org Sdn Bhd, C=MY"
    assert material.issuer_name == material.subject_name
    assert len(material.fingerprint) == 64


def test_load_pem_with_explicit_encrypted_key(tmp_path):
    cert, key = generate_test_certificate()
    cert_path, key_path = _write_pem_pair(tmp_path, cert, key, key_name="other.pem", passphrase="s3cret")

    material = CertificateService().load_signing_material(
        certificate_ref=str(cert_path),
        private_key_ref=str(key_path),
        passphrase_ref="s3cret",
    )

    assert material.private_key.key_size == 2048


def test_load_pkcs12_bundle_with_env_passphrase(tmp_path, monkeypatch):
    cert, key = generate_test_certificate()
    bundle = pkcs12.serialize_key_and_certificates(
        b"signer",
        key,
        cert,
        None,
        serialization.BestAvailableEncryption(b"bundle-pass"),
    )
    bundle_path = tmp_path / "signer.p12"
    bundle_path.write_bytes(bundle)
    monkeypatch.setenv("TEST_SIGNING_PASS", "bundle-pass")

    material = CertificateService().load_signing_material(
        certificate_ref=str(bundle_path),
        passphrase_ref="$TEST_SIGNING_PASS",
    )

    assert material.certificate.serial_number == cert.serial_number


def test_missing_certificate_file(tmp_path):
    with pytest.raises(CertificateNotFoundError):
        CertificateService().load_signing_material(certificate_ref=str(tmp_path / "missing.pem"))


def test_missing_key_file(tmp_path):
    cert, _ = generate_test_certificate()
    cert_path = tmp_path / "signer.pem"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))

    with pytest.raises(CertificateNotFoundError):
        CertificateService().load_signing_material(certificate_ref=str(cert_path))


def test_garbage_certificate(tmp_path):
    cert_path = tmp_path / "signer.pem"
    cert_path.write_bytes(b"not a certificate")

    with pytest.raises(CertificateLoadError):
        CertificateService().load_signing_material(certificate_ref=str(cert_path))


def test_unset_environment_reference(monkeypatch):
    monkeypatch.delenv("TEST_MISSING_CERT", raising=False)
    with pytest.raises(CertificateLoadError):
        CertificateService().load_signing_material(certificate_ref="$TEST_MISSING_CERT")


def test_unconfigured_certificate(monkeypatch):
    monkeypatch.setattr(settings, "SIGNING_CERTIFICATE_PATH", None)
    with pytest.raises(CertificateNotFoundError):
        CertificateService().load_signing_material()


def test_x509_overrides_from_settings(monkeypatch):
    cert, key = generate_test_certificate()
    monkeypatch.setattr(settings, "X509_ISSUER_NAME", "CN=Override CA")
    monkeypatch.setattr(settings, "X509_SERIAL_NUMBER", "42")

    material = CertificateService().build_material(cert, key)

    assert material.issuer_name == "CN=Override CA"
    assert material.serial_number == "42"
    assert material.subject_name == format_name(cert.subject)
