"""
Submission Schemas

Pydantic schemas for the submission API.
"""
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

SCHEMA_VERSIONS = ("1.0", "1.1")


class SubmissionDocumentRequest(BaseModel):
    """One internal document plus the file it came from."""
    document: dict[str, Any] = Field(..., description="Internal document (header, supplier, buyer, items, ...)")
    file_path: Optional[str] = Field(None, description="Source file; defaults to the document number")
    file_name: Optional[str] = None


class SubmissionRequest(BaseModel):
    documents: list[SubmissionDocumentRequest] = Field(..., min_length=1)
    schema_version: Optional[str] = Field(None, description="1.0 (unsigned) or 1.1 (signed)")

    @field_validator('schema_version')
    @classmethod
    def validate_schema_version(cls, v):
        if v is not None and v not in SCHEMA_VERSIONS:
            raise ValueError(f"schema_version must be one of {list(SCHEMA_VERSIONS)}")
        return v


class AcceptedDocumentResponse(BaseModel):
    invoice_number: str
    uuid: Optional[str] = None
    file_path: str


class SubmissionResponse(BaseModel):
    state: str
    success: bool
    submission_uid: Optional[str] = None
    accepted_documents: list[AcceptedDocumentResponse] = []
    rejected_documents: list[dict[str, Any]] = []


class PollDocumentResponse(BaseModel):
    uuid: Optional[str] = None
    invoice_number: Optional[str] = None
    status: str
    long_id: Optional[str] = None


class SubmissionStatusResponse(BaseModel):
    submission_uid: str
    status: str
    long_id: Optional[str] = None
    from_cache: bool = False
    implicit: bool = False
    documents: list[PollDocumentResponse] = []


class ExistingSubmissionResponse(BaseModel):
    invoice_number: str
    exists: bool
    blocked: bool
    status: Optional[str] = None
    submission_uid: Optional[str] = None
    uuid: Optional[str] = None
    date_submitted: Optional[datetime] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=300)


class CancelResponse(BaseModel):
    uuid: str
    status: str
    invoice_number: Optional[str] = None
    long_id: Optional[str] = None
    date_cancelled: datetime
    reason: str
    records_updated: int


class TinValidationResponse(BaseModel):
    tin: str
    id_type: str
    id_value: str
    valid: bool
    error: Optional[dict[str, Any]] = None
