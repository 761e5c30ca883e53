"""
Submission Record Models

Tracks one submitted e-invoice file through the authority's validation
lifecycle.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import String, DateTime, Text, func, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from typing import Optional

from einvoice.core.database import Base


class SubmissionStatus(str, enum.Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SUBMITTED = "Submitted"
    VALID = "Valid"
    INVALID = "Invalid"
    PARTIALLY_VALID = "PartiallyValid"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"
    FAILED = "Failed"


# Once a record reaches one of these the poller stops asking the authority.
TERMINAL_STATUSES = frozenset({
    SubmissionStatus.VALID.value,
    SubmissionStatus.INVALID.value,
    SubmissionStatus.PARTIALLY_VALID.value,
    SubmissionStatus.CANCELLED.value,
    SubmissionStatus.COMPLETED.value,
})

# Statuses that block a second submission of the same file.
IN_FLIGHT_STATUSES = frozenset({
    SubmissionStatus.PROCESSING.value,
    SubmissionStatus.SUBMITTED.value,
})


class SubmissionRecord(Base):
    """
    Submission record, at most one per physical file.

    Status Flow:
    - Pending: File known, not yet submitted
    - Processing: Submission attempt in flight
    - Submitted: Accepted for validation by the authority
    - Valid / Invalid / PartiallyValid: Verdict from the authority
    - Completed: Valid for longer than the cancellation window (72h)
    - Cancelled: Cancelled by the issuer
    - Rejected: Rejected on submission, never previously recorded
    - Failed: Technical failure on the first attempt
    """
    __tablename__ = "submission_records"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Source file
    file_path: Mapped[str] = mapped_column(String(1024), nullable=False, unique=True)
    file_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Authority identifiers
    document_uuid: Mapped[Optional[str]] = mapped_column("uuid", String(64), nullable=True)
    submission_uid: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    long_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubmissionStatus.PENDING.value
    )

    # Last failure reported for this file
    error_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_details: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)

    date_submitted: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    date_cancelled: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        Index('ix_submission_records_submission_uid', 'submission_uid'),
        Index('ix_submission_records_uuid', 'uuid'),
        Index('ix_submission_records_invoice_number', 'invoice_number'),
        Index('ix_submission_records_status', 'status'),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self) -> str:
        return f"<SubmissionRecord {self.file_path} {self.status}>"
