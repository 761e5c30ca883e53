"""
Structured Logging Service

Provides submission-aware structured logging for key events:
- Batch pre-validation failed / sent / accepted / rejected / errored
- Submission status polled / promoted to Completed
- Document cancelled
- Rate limit backoff
- Signing failures

Each log entry includes:
- entity_type (submission, document, system)
- entity_id (submission uid or document uuid)
- severity (INFO/WARN/ERROR)
"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Any
from uuid import UUID
from enum import Enum


class LogSeverity(str, Enum):
    """Log severity levels."""
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogEntityType(str, Enum):
    """Entity types for structured logging."""
    SUBMISSION = "submission"
    DOCUMENT = "document"
    SYSTEM = "system"


class StructuredLogger:
    """
    Structured logging service for e-invoice submission events.

    Logs are emitted as one JSON object per line so they can be shipped
    to any log aggregator without a custom parser.
    """

    def __init__(self, logger_name: str = "einvoice"):
        self.logger = logging.getLogger(logger_name)
        self._ensure_handler()

    def _ensure_handler(self):
        """Ensure logger has a proper handler configured."""
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter('%(message)s'))
            self.logger.addHandler(handler)
            self.logger.setLevel(logging.INFO)

    def _serialize(self, value: Any) -> Any:
        """Serialize UUID and datetime values to strings."""
        if isinstance(value, UUID):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def _create_log_entry(
        self,
        event: str,
        severity: LogSeverity,
        entity_type: LogEntityType,
        entity_id: Optional[str] = None,
        message: Optional[str] = None,
        **extra
    ) -> dict:
        """Create a structured log entry."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "severity": severity.value,
            "entity_type": entity_type.value,
        }

        if entity_id:
            entry["entity_id"] = str(entity_id)
        if message:
            entry["message"] = message

        for key, value in extra.items():
            entry[key] = self._serialize(value)

        return entry

    def _log(self, entry: dict, severity: LogSeverity):
        """Emit the log entry at the appropriate level."""
        log_str = json.dumps(entry, default=str)
        if severity == LogSeverity.ERROR:
            self.logger.error(log_str)
        elif severity == LogSeverity.WARN:
            self.logger.warning(log_str)
        else:
            self.logger.info(log_str)

    # Submission events
    def submission_prevalidation_failed(self, document_count: int, failed_count: int, failures: list):
        """Log a batch aborted before submission."""
        entry = self._create_log_entry(
            event="submission.prevalidation_failed",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.SUBMISSION,
            message=f"{failed_count} of {document_count} document(s) failed pre-submission validation",
            document_count=document_count,
            failed_count=failed_count,
            failures=failures,
        )
        self._log(entry, LogSeverity.WARN)

    def submission_sent(self, document_count: int, invoice_numbers: list[str]):
        """Log a batch handed to the submission endpoint."""
        entry = self._create_log_entry(
            event="submission.sent",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.SUBMISSION,
            message=f"Submitting {document_count} document(s)",
            document_count=document_count,
            invoice_numbers=invoice_numbers,
        )
        self._log(entry, LogSeverity.INFO)

    def submission_accepted(self, submission_uid: str, accepted_count: int, rejected_count: int = 0):
        """Log a batch the authority accepted for validation."""
        entry = self._create_log_entry(
            event="submission.accepted",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.SUBMISSION,
            entity_id=submission_uid,
            message=f"Submission accepted: {accepted_count} document(s)",
            accepted_count=accepted_count,
            rejected_count=rejected_count,
        )
        self._log(entry, LogSeverity.INFO)

    def submission_rejected(self, invoice_number: Optional[str], error_codes: list[str]):
        """Log a document rejected by the authority."""
        entry = self._create_log_entry(
            event="submission.rejected",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.DOCUMENT,
            entity_id=invoice_number,
            message=f"Document rejected: {invoice_number}",
            error_codes=error_codes,
        )
        self._log(entry, LogSeverity.WARN)

    def submission_error(self, error_code: str, error_message: str, invoice_numbers: Optional[list[str]] = None):
        """Log a batch that failed without a verdict from the authority."""
        entry = self._create_log_entry(
            event="submission.error",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.SUBMISSION,
            message=f"Submission failed: {error_message}",
            error_code=error_code,
            invoice_numbers=invoice_numbers or [],
        )
        self._log(entry, LogSeverity.ERROR)

    # Status events
    def status_polled(self, submission_uid: str, status: str, from_cache: bool = False):
        """Log the outcome of a status poll."""
        entry = self._create_log_entry(
            event="status.polled",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.SUBMISSION,
            entity_id=submission_uid,
            message=f"Submission {submission_uid} status: {status}",
            status=status,
            from_cache=from_cache,
        )
        self._log(entry, LogSeverity.INFO)

    def status_completed(self, promoted_count: int, cutoff: datetime):
        """Log Valid records promoted to Completed."""
        entry = self._create_log_entry(
            event="status.completed",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.SYSTEM,
            message=f"Promoted {promoted_count} record(s) to Completed",
            promoted_count=promoted_count,
            cutoff=cutoff,
        )
        self._log(entry, LogSeverity.INFO)

    def document_cancelled(self, document_uuid: str, reason: str):
        """Log a document cancellation."""
        entry = self._create_log_entry(
            event="document.cancelled",
            severity=LogSeverity.INFO,
            entity_type=LogEntityType.DOCUMENT,
            entity_id=document_uuid,
            message=f"Document cancelled: {document_uuid}",
            reason=reason,
        )
        self._log(entry, LogSeverity.INFO)

    # System events
    def rate_limit_backoff(self, endpoint: str, delay_seconds: float, attempt: int):
        """Log a 429 response and the backoff applied."""
        entry = self._create_log_entry(
            event="system.rate_limit_backoff",
            severity=LogSeverity.WARN,
            entity_type=LogEntityType.SYSTEM,
            message=f"Rate limited on {endpoint}, retrying in {delay_seconds:.2f}s",
            endpoint=endpoint,
            delay_seconds=round(delay_seconds, 3),
            attempt=attempt,
        )
        self._log(entry, LogSeverity.WARN)

    def signing_failed(self, invoice_number: Optional[str], error_message: str):
        """Log a signing failure."""
        entry = self._create_log_entry(
            event="system.signing_failed",
            severity=LogSeverity.ERROR,
            entity_type=LogEntityType.DOCUMENT,
            entity_id=invoice_number,
            message=f"Signing failed: {error_message}",
        )
        self._log(entry, LogSeverity.ERROR)


# Global logger instance
einvoice_logger = StructuredLogger()
