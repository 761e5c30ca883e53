"""
Certificate Service

Loads the signing certificate and private key used for signed (v1.1)
documents. Key material lives on the filesystem and is referenced from
configuration, never stored in the database.
"""
import os
import base64
import hashlib
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from einvoice.core.config import settings
from einvoice.core.errors import SigningError


class CertificateError(SigningError):
    """Base exception for certificate operations."""
    pass


class CertificateNotFoundError(CertificateError):
    """Certificate or key file not found."""
    pass


class CertificateLoadError(CertificateError):
    """Error loading certificate or key from filesystem."""
    pass


# Attribute labels used in X509SubjectName / X509IssuerName.
_NAME_LABELS = {
    NameOID.COMMON_NAME: "CN",
    NameOID.COUNTRY_NAME: "C",
    NameOID.ORGANIZATION_NAME: "O",
    NameOID.ORGANIZATIONAL_UNIT_NAME: "OU",
    NameOID.LOCALITY_NAME: "L",
    NameOID.STATE_OR_PROVINCE_NAME: "ST",
    NameOID.SERIAL_NUMBER: "SERIALNUMBER",
    NameOID.EMAIL_ADDRESS: "E",
}


def format_name(name: x509.Name) -> str:
    """Render a distinguished name as ``CN=..., O=..., C=...`` in certificate order."""
    parts = []
    for attribute in name:
        label = _NAME_LABELS.get(attribute.oid, f"OID.{attribute.oid.dotted_string}")
        parts.append(f"{label}={attribute.value}")
    return ", ".join(parts)


@dataclass
class SigningMaterial:
    """Certificate, key and the X509 metadata embedded in signatures."""
    certificate: x509.Certificate
    private_key: Any
    subject_name: str
    issuer_name: str
    serial_number: str
    certificate_base64: str
    fingerprint: str
    valid_to: datetime

    @property
    def certificate_der(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.DER)


class CertificateService:
    """
    Service for loading signing material.

    Supports:
    - PKCS#12 bundles (.p12/.pfx) holding certificate and key
    - PEM certificate with a separate PEM key file (explicit path, or the
      certificate path with a ``.key`` suffix)
    - ``$ENV_VAR`` indirection for paths and passphrases
    """

    def load_signing_material(
        self,
        certificate_ref: Optional[str] = None,
        private_key_ref: Optional[str] = None,
        passphrase_ref: Optional[str] = None,
    ) -> SigningMaterial:
        """
        Load certificate and private key for signing.

        Missing arguments fall back to the SIGNING_* settings.

        Raises:
            CertificateNotFoundError: A referenced file does not exist
            CertificateLoadError: The files cannot be parsed
        """
        certificate_ref = certificate_ref or settings.SIGNING_CERTIFICATE_PATH
        private_key_ref = private_key_ref or settings.SIGNING_PRIVATE_KEY_PATH
        passphrase_ref = passphrase_ref or settings.SIGNING_KEY_PASSPHRASE

        if not certificate_ref:
            raise CertificateNotFoundError("Signing certificate is not configured")

        certificate_path = self._resolve_ref(certificate_ref)
        passphrase = self._resolve_ref(passphrase_ref) if passphrase_ref else None
        password = passphrase.encode() if passphrase else None

        cert_bytes = self._read_file(certificate_path)

        try:
            private_key, certificate, _ = pkcs12.load_key_and_certificates(
                cert_bytes, password, backend=default_backend()
            )
        except ValueError:
            certificate, private_key = self._load_pem_pair(
                cert_bytes, certificate_path, private_key_ref, password
            )

        if certificate is None or private_key is None:
            raise CertificateLoadError(f"Bundle {certificate_path} does not contain a certificate and key")
        if not isinstance(private_key, rsa.RSAPrivateKey):
            raise CertificateLoadError("Signing key must be an RSA private key")

        return self.build_material(certificate, private_key)

    def build_material(self, certificate: x509.Certificate, private_key: Any) -> SigningMaterial:
        """Extract the X509 metadata, honouring X509_* overrides from settings."""
        der = certificate.public_bytes(serialization.Encoding.DER)
        return SigningMaterial(
            certificate=certificate,
            private_key=private_key,
            subject_name=settings.X509_SUBJECT_NAME or format_name(certificate.subject),
            issuer_name=settings.X509_ISSUER_NAME or format_name(certificate.issuer),
            serial_number=settings.X509_SERIAL_NUMBER or str(certificate.serial_number),
            certificate_base64=base64.b64encode(der).decode("ascii"),
            fingerprint=hashlib.sha256(der).hexdigest(),
            valid_to=certificate.not_valid_after_utc,
        )

    def _load_pem_pair(
        self,
        cert_bytes: bytes,
        certificate_path: str,
        private_key_ref: Optional[str],
        password: Optional[bytes],
    ):
        try:
            certificate = x509.load_pem_x509_certificate(cert_bytes, backend=default_backend())
        except ValueError as e:
            raise CertificateLoadError(f"Failed to load certificate in PEM format: {str(e)}")

        if private_key_ref:
            key_path = self._resolve_ref(private_key_ref)
        else:
            key_path = str(Path(certificate_path).with_suffix('.key'))
        key_bytes = self._read_file(key_path)

        try:
            private_key = serialization.load_pem_private_key(
                key_bytes, password=password, backend=default_backend()
            )
        except (ValueError, TypeError) as e:
            raise CertificateLoadError(f"Failed to load private key: {str(e)}")
        return certificate, private_key

    def _read_file(self, path: str) -> bytes:
        if not os.path.exists(path):
            raise CertificateNotFoundError(f"File not found: {path}")
        try:
            with open(path, 'rb') as f:
                return f.read()
        except OSError as e:
            raise CertificateLoadError(f"Cannot read {path}: {str(e)}")

    def _resolve_ref(self, ref: str) -> str:
        """Resolve ``$ENV_VAR`` references; anything else is used verbatim."""
        if ref.startswith('$'):
            env_var = ref[1:]
            value = os.getenv(env_var)
            if not value:
                raise CertificateLoadError(f"Environment variable {env_var} not set")
            return value
        return ref
