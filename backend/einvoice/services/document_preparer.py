"""
Document Preparer

Turns a canonical document into the transport envelope sent to the
submission endpoint:

    {"format": "JSON", "documentHash": <sha256 hex>,
     "codeNumber": <document number>, "document": <base64 JSON>}

Signing happens here, only for the schema version that requires it. The
hash and the base64 payload are computed over the final JSON, signature
included.
"""
import base64
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from einvoice.core.errors import PreparationError, SigningError
from einvoice.services.logging import einvoice_logger
from einvoice.services.signing_service import (
    SIGNED_SCHEMA_VERSION,
    DocumentSigner,
    minify,
    strip_signature,
)

logger = logging.getLogger(__name__)


@dataclass
class SubmissionEnvelope:
    format: str
    document_hash: str
    code_number: str
    document: str

    def to_dict(self) -> dict:
        return {
            "format": self.format,
            "documentHash": self.document_hash,
            "codeNumber": self.code_number,
            "document": self.document,
        }


@dataclass
class PreparedDocument:
    """One envelope plus the local bookkeeping needed to track it."""
    envelope: SubmissionEnvelope
    document_number: str
    file_path: Optional[str] = None
    file_name: Optional[str] = None

    def decode(self) -> dict:
        """Decode the envelope payload back into the canonical document."""
        return json.loads(base64.b64decode(self.envelope.document).decode("utf-8"))


def document_number_of(document: Any) -> Optional[str]:
    """Locate ``Invoice[0].ID[0]._`` in a canonical document."""
    try:
        number = document["Invoice"][0]["ID"][0]["_"]
    except (KeyError, IndexError, TypeError):
        return None
    if number is None or number == "":
        return None
    return str(number)


class DocumentPreparer:
    """
    Builds submission envelopes.

    The signer is only needed for signed schema versions; preparing an
    unsigned document never touches key material.
    """

    def __init__(self, signer: Optional[DocumentSigner] = None):
        self.signer = signer

    def prepare(
        self,
        canonical_document: dict,
        schema_version: str = "1.0",
        file_path: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> PreparedDocument:
        """
        Prepare one canonical document for submission.

        Raises:
            PreparationError: The document number cannot be located
            SigningError: A signed version was requested and signing failed
        """
        document_number = document_number_of(canonical_document)
        if document_number is None:
            raise PreparationError("Invoice number not found in the document")

        document = strip_signature(canonical_document)
        try:
            document["Invoice"][0]["InvoiceTypeCode"][0]["listVersionID"] = schema_version
        except (KeyError, IndexError, TypeError):
            raise PreparationError(
                "Invoice type code not found in the document",
                details={"invoice_number": document_number},
            )

        if schema_version == SIGNED_SCHEMA_VERSION:
            document = self._sign(document, document_number)

        payload = minify(document)
        envelope = SubmissionEnvelope(
            format="JSON",
            document_hash=hashlib.sha256(payload.encode("utf-8")).hexdigest(),
            code_number=document_number,
            document=base64.b64encode(payload.encode("utf-8")).decode("ascii"),
        )
        logger.debug(f"Prepared document {document_number} (schema version {schema_version})")

        return PreparedDocument(
            envelope=envelope,
            document_number=document_number,
            file_path=file_path,
            file_name=file_name,
        )

    def _sign(self, document: dict, document_number: str) -> dict:
        if self.signer is None:
            error = SigningError(
                f"Schema version {SIGNED_SCHEMA_VERSION} requires signing material, none is configured"
            )
            einvoice_logger.signing_failed(document_number, error.message)
            raise error
        try:
            blocks = self.signer.sign(document)
        except SigningError as e:
            einvoice_logger.signing_failed(document_number, e.message)
            raise
        return blocks.attach(document)
