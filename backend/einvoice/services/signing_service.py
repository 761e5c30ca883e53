"""
Document Signing Service

Produces the enveloped XAdES-style signature for canonical JSON invoices
(schema version 1.1). The signature is expressed in the authority's UBL
JSON flavour and made of two fragments:

- ``Signature``: the reference to the signature block
- ``UBLExtensions``: the signature itself, embedding the document digest,
  the signed-properties digest, the RSA-SHA256 signature value and the
  signing certificate
"""
import copy
import hashlib
import json
from base64 import b64encode
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from einvoice.core.errors import SigningError
from einvoice.services.certificate_service import CertificateService, SigningMaterial

SIGNED_SCHEMA_VERSION = "1.1"

DIGEST_ALGORITHM = "http://www.w3.org/2001/04/xmlenc#sha256"
SIGNATURE_ALGORITHM = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"
SIGNED_PROPERTIES_TYPE = "http://uri.etsi.org/01903/v1.3.2#SignedProperties"
ENVELOPED_XADES = "urn:oasis:names:specification:ubl:dsig:enveloped:xades"
SIGNATURE_ID = "urn:oasis:names:specification:ubl:signature:Invoice"
SIGNATURE_INFORMATION_ID = "urn:oasis:names:specification:ubl:signature:1"
SIGNED_PROPERTIES_ID = "id-xades-signed-props"

SIGNATURE_KEYS = ("UBLExtensions", "Signature")


def minify(document: Any) -> str:
    """Compact, key-order-preserving JSON used for hashing and signing."""
    return json.dumps(document, separators=(",", ":"), ensure_ascii=False)


def sha256_base64(data: bytes) -> str:
    return b64encode(hashlib.sha256(data).digest()).decode("ascii")


def strip_signature(document: dict) -> dict:
    """Return a copy of ``document`` without signature fragments."""
    unsigned = copy.deepcopy(document)
    for invoice in unsigned.get("Invoice", []):
        for key in SIGNATURE_KEYS:
            invoice.pop(key, None)
    return unsigned


@dataclass
class SignatureBlocks:
    """Fragments attached to ``Invoice[0]`` of a signed document."""
    signature: list
    ubl_extensions: list
    document_digest: str
    signed_properties_digest: str
    certificate_digest: str
    signature_value: str
    signing_time: str

    def attach(self, document: dict) -> dict:
        """Return a copy of ``document`` carrying both fragments."""
        signed = copy.deepcopy(document)
        invoice = signed["Invoice"][0]
        invoice["UBLExtensions"] = self.ubl_extensions
        invoice["Signature"] = self.signature
        return signed


class DocumentSigner:
    """
    Signs canonical documents with one certificate and RSA key.

    Note: the document passed to ``sign`` must not already carry the
    signature fragments; use ``strip_signature`` first.
    """

    def __init__(self, material: SigningMaterial):
        self.material = material

    @classmethod
    def from_settings(cls, cert_service: Optional[CertificateService] = None) -> "DocumentSigner":
        """Build a signer from the SIGNING_* settings."""
        cert_service = cert_service or CertificateService()
        return cls(cert_service.load_signing_material())

    def sign(self, document: dict, signing_time: Optional[datetime] = None) -> SignatureBlocks:
        """
        Sign the minified ``document``.

        Raises:
            SigningError: If the key cannot sign or the document cannot be
                serialized
        """
        try:
            minified = minify(document).encode("utf-8")
            document_digest = sha256_base64(minified)
            certificate_digest = sha256_base64(self.material.certificate_der)

            signature_value = b64encode(self.material.private_key.sign(
                minified,
                padding.PKCS1v15(),
                hashes.SHA256(),
            )).decode("ascii")

            signing_time = (signing_time or datetime.now(timezone.utc)).strftime("%Y-%m-%dT%H:%M:%SZ")
            signed_properties = self._signed_properties(signing_time, certificate_digest)
            signed_properties_digest = sha256_base64(minify(signed_properties).encode("utf-8"))
        except SigningError:
            raise
        except Exception as e:
            raise SigningError(f"Failed to sign document: {str(e)}")

        return SignatureBlocks(
            signature=[{
                "ID": [{"_": SIGNATURE_ID}],
                "SignatureMethod": [{"_": ENVELOPED_XADES}],
            }],
            ubl_extensions=self._extensions(
                document_digest, signed_properties, signed_properties_digest, signature_value
            ),
            document_digest=document_digest,
            signed_properties_digest=signed_properties_digest,
            certificate_digest=certificate_digest,
            signature_value=signature_value,
            signing_time=signing_time,
        )

    def _signed_properties(self, signing_time: str, certificate_digest: str) -> dict:
        return {
            "Target": "signature",
            "SignedProperties": [{
                "Id": SIGNED_PROPERTIES_ID,
                "SignedSignatureProperties": [{
                    "SigningTime": [{"_": signing_time}],
                    "SigningCertificate": [{
                        "Cert": [{
                            "CertDigest": [{
                                "DigestMethod": [{"_": "", "Algorithm": DIGEST_ALGORITHM}],
                                "DigestValue": [{"_": certificate_digest}],
                            }],
                            "IssuerSerial": [{
                                "X509IssuerName": [{"_": self.material.issuer_name}],
                                "X509SerialNumber": [{"_": self.material.serial_number}],
                            }],
                        }],
                    }],
                }],
            }],
        }

    def _extensions(
        self,
        document_digest: str,
        signed_properties: dict,
        signed_properties_digest: str,
        signature_value: str,
    ) -> list:
        material = self.material
        signature = {
            "Id": "signature",
            "SignedInfo": [{
                "SignatureMethod": [{"_": "", "Algorithm": SIGNATURE_ALGORITHM}],
                "Reference": [
                    {
                        "Id": "id-doc-signed-data",
                        "URI": "",
                        "DigestMethod": [{"_": "", "Algorithm": DIGEST_ALGORITHM}],
                        "DigestValue": [{"_": document_digest}],
                    },
                    {
                        "Id": SIGNED_PROPERTIES_ID,
                        "Type": SIGNED_PROPERTIES_TYPE,
                        "URI": f"#{SIGNED_PROPERTIES_ID}",
                        "DigestMethod": [{"_": "", "Algorithm": DIGEST_ALGORITHM}],
                        "DigestValue": [{"_": signed_properties_digest}],
                    },
                ],
            }],
            "SignatureValue": [{"_": signature_value}],
            "KeyInfo": [{
                "X509Data": [{
                    "X509Certificate": [{"_": material.certificate_base64}],
                    "X509SubjectName": [{"_": material.subject_name}],
                    "X509IssuerSerial": [{
                        "X509IssuerName": [{"_": material.issuer_name}],
                        "X509SerialNumber": [{"_": material.serial_number}],
                    }],
                }],
            }],
            "Object": [{
                "QualifyingProperties": [signed_properties],
            }],
        }

        return [{
            "UBLExtension": [{
                "ExtensionURI": [{"_": ENVELOPED_XADES}],
                "ExtensionContent": [{
                    "UBLDocumentSignatures": [{
                        "SignatureInformation": [{
                            "ID": [{"_": SIGNATURE_INFORMATION_ID}],
                            "ReferencedSignatureID": [{"_": SIGNATURE_ID}],
                            "Signature": [signature],
                        }],
                    }],
                }],
            }],
        }]
