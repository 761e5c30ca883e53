"""
Error taxonomy for the submission pipeline.

Every failure the pipeline reports carries a stable ``code`` and either a
developer ``details`` payload or parsed guidance, so callers can always
render a structured response:

- MappingError, SigningError, PreparationError: fatal for the document,
  never retried
- RateLimitExceeded: raised only when a retry ceiling is configured
- NetworkError, RequestTimeout: transient, surfaced to the caller
- InvalidResponseShape: the authority broke its response contract
- ValidationRejected: business rejection, carries parsed ValidationErrors
- AuthorityError: any other non-2xx answer from the authority
"""
from typing import Any, Optional


class EInvoiceError(Exception):
    """Base error with a stable code and optional details payload."""

    code = "EINVOICE_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Any] = None,
        code: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details
        if code:
            self.code = code

    def to_dict(self) -> dict:
        result = {"code": self.code, "message": self.message}
        if self.details is not None:
            result["details"] = self.details
        return result


class MappingError(EInvoiceError):
    """The internal document cannot be turned into a canonical document."""
    code = "MAPPING_ERROR"


class SigningError(EInvoiceError):
    """Key or certificate failure while producing the signature block."""
    code = "SIGNING_ERROR"


class PreparationError(EInvoiceError):
    """The canonical document cannot be wrapped into an envelope."""
    code = "PREPARATION_ERROR"


class RateLimitExceeded(EInvoiceError):
    code = "RATE_LIMITED"

    def __init__(self, message: str, retry_after: Optional[float] = None, details: Optional[Any] = None):
        super().__init__(message, details=details)
        self.retry_after = retry_after


class NetworkError(EInvoiceError):
    code = "NETWORK_ERROR"


class RequestTimeout(EInvoiceError):
    code = "TIMEOUT"


class InvalidResponseShape(EInvoiceError):
    code = "INVALID_RESPONSE"


class AuthorityError(EInvoiceError):
    """Non-2xx response from the authority (other than 429)."""

    code = "AUTHORITY_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message, details=details, code=code)
        self.status_code = status_code

    def to_dict(self) -> dict:
        result = super().to_dict()
        result["status_code"] = self.status_code
        return result


class DocumentNotFoundError(AuthorityError):
    code = "DOCUMENT_NOT_FOUND"


class ValidationRejected(EInvoiceError):
    """The authority rejected a document; ``errors`` holds parsed guidance."""

    code = "VALIDATION_REJECTED"

    def __init__(self, message: str, errors: list, invoice_number: Optional[str] = None):
        super().__init__(message)
        self.errors = errors
        self.invoice_number = invoice_number

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "invoiceNumber": self.invoice_number,
            "errors": [error.to_dict() for error in self.errors],
        }


class PreValidationFailed(EInvoiceError):
    """At least one document of the batch failed checks before submission."""
    code = "PRE_SUBMISSION_VALIDATION_FAILED"


class DuplicateSubmission(EInvoiceError):
    code = "DUPLICATE_SUBMISSION"
