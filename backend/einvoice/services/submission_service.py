"""
Submission Orchestrator

Drives one batch of prepared documents through the submission state
machine:

    Idle -> PreValidating -> Aborted
                          -> Submitting -> Accepted | Rejected | Error

Rules:
- Pre-validation covers every document before anything is sent; a single
  failing document aborts the whole batch
- Records are keyed by file path (the document number when no file is
  attached) and move to Processing while the request is in flight
- A failed submission never downgrades a record that already had a status;
  only first-time records are marked Failed or Rejected
- Accepted documents are marked Submitted and get a background status poll
"""
import enum
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from einvoice.core.config import settings
from einvoice.core.errors import (
    AuthorityError,
    DuplicateSubmission,
    EInvoiceError,
    InvalidResponseShape,
    NetworkError,
    PreValidationFailed,
    RateLimitExceeded,
    RequestTimeout,
    ValidationRejected,
)
from einvoice.integrations.myinvois.client import MyInvoisClient
from einvoice.models.submission import IN_FLIGHT_STATUSES, SubmissionRecord, SubmissionStatus
from einvoice.repositories.submission_repository import SubmissionRepository
from einvoice.services.document_preparer import DocumentPreparer, PreparedDocument
from einvoice.services.logging import einvoice_logger
from einvoice.services.mapping import map_documents
from einvoice.services.signing_service import SIGNED_SCHEMA_VERSION, DocumentSigner
from einvoice.services.status_poller import PollScheduler
from einvoice.services.validation_errors import ValidationErrorParser, validation_error_parser

logger = logging.getLogger(__name__)

BATCH_MAX_DOCUMENTS = 100
BATCH_MAX_BYTES = 5 * 1024 * 1024

# Customs SST registration number, e.g. W10-1808-32000059
SST_PATTERN = re.compile(r"^W\d{2}-\d{4}-\d{8}$", re.IGNORECASE)
SUPPORTING_ID_TYPES = ("BRN", "NRIC", "PASSPORT", "ARMY")

BUYER_TIN_INVALID_MESSAGE = "Buyer TIN is invalid. Use the TIN search to find the correct TIN."

SUBMISSION_FAILURES = (NetworkError, RequestTimeout, AuthorityError, InvalidResponseShape, RateLimitExceeded)


class BatchState(str, enum.Enum):
    IDLE = "Idle"
    PRE_VALIDATING = "PreValidating"
    ABORTED = "Aborted"
    SUBMITTING = "Submitting"
    ACCEPTED = "Accepted"
    REJECTED = "Rejected"
    ERROR = "Error"


@dataclass
class AcceptedDocument:
    invoice_number: str
    document_uuid: Optional[str]
    file_path: str

    def to_dict(self) -> dict:
        return {
            "invoiceNumber": self.invoice_number,
            "uuid": self.document_uuid,
            "filePath": self.file_path,
        }


class SubmissionOutcome:
    """Result of one batch submission."""

    def __init__(
        self,
        state: BatchState,
        submission_uid: Optional[str] = None,
        accepted: Optional[list[AcceptedDocument]] = None,
        rejected: Optional[list[ValidationRejected]] = None,
        error: Optional[EInvoiceError] = None,
    ):
        self.state = state
        self.submission_uid = submission_uid
        self.accepted = accepted or []
        self.rejected = rejected or []
        self.error = error

    @property
    def success(self) -> bool:
        return self.state == BatchState.ACCEPTED

    def to_dict(self) -> dict:
        result = {
            "state": self.state.value,
            "success": self.success,
            "submissionUid": self.submission_uid,
            "acceptedDocuments": [doc.to_dict() for doc in self.accepted],
            "rejectedDocuments": [rejection.to_dict() for rejection in self.rejected],
        }
        if self.error is not None:
            result["error"] = self.error.to_dict()
        return result


def _identifications(invoice: dict, party_key: str) -> dict[str, str]:
    """schemeID -> value for a party's PartyIdentification entries."""
    values = {}
    try:
        identifications = invoice[party_key][0]["Party"][0].get("PartyIdentification") or []
    except (KeyError, IndexError, TypeError, AttributeError):
        return values
    for identification in identifications:
        try:
            node = identification["ID"][0]
        except (KeyError, IndexError, TypeError):
            continue
        scheme = node.get("schemeID")
        value = str(node.get("_") or "").strip()
        if scheme and scheme not in values:
            values[scheme] = value
    return values


def _provided(value: Optional[str]) -> bool:
    return bool(value) and value.upper() != "NA"


def _take(documents: list[PreparedDocument], matches) -> Optional[PreparedDocument]:
    """Remove and return the first document satisfying ``matches``."""
    for index, document in enumerate(documents):
        if matches(document):
            return documents.pop(index)
    return None


def _already_cancelled(error: AuthorityError) -> bool:
    text = f"{error.message} {error.details or ''}".lower()
    return "already cancelled" in text or "already canceled" in text


class SubmissionService:
    """
    Submits prepared documents and keeps submission records in step.

    The caller owns the client; the service commits its own record writes.
    """

    def __init__(
        self,
        db: AsyncSession,
        client: MyInvoisClient,
        scheduler: Optional[PollScheduler] = None,
        preparer: Optional[DocumentPreparer] = None,
        parser: Optional[ValidationErrorParser] = None,
    ):
        self.db = db
        self.client = client
        self.scheduler = scheduler
        self.parser = parser or validation_error_parser
        self.repository = SubmissionRepository(db)
        self.state = BatchState.IDLE
        self._preparer = preparer
        self._preparers: dict[str, DocumentPreparer] = {}

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _get_preparer(self, schema_version: str) -> DocumentPreparer:
        if self._preparer is not None:
            return self._preparer
        if schema_version not in self._preparers:
            signer = None
            if schema_version == SIGNED_SCHEMA_VERSION and settings.signing_configured:
                signer = DocumentSigner.from_settings()
            self._preparers[schema_version] = DocumentPreparer(signer)
        return self._preparers[schema_version]

    def prepare_document(
        self,
        document: Any,
        schema_version: Optional[str] = None,
        file_path: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> PreparedDocument:
        """Map one internal document and wrap it into an envelope."""
        schema_version = schema_version or settings.SCHEMA_VERSION
        canonical = map_documents([document], schema_version)
        return self._get_preparer(schema_version).prepare(
            canonical, schema_version, file_path=file_path, file_name=file_name
        )

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    @staticmethod
    def record_key(document: PreparedDocument) -> str:
        return document.file_path or document.document_number

    async def submit(self, documents: list[PreparedDocument]) -> SubmissionOutcome:
        """Run one batch through pre-validation and submission."""
        self.state = BatchState.PRE_VALIDATING
        failures = await self.pre_validate(documents)
        if failures:
            self.state = BatchState.ABORTED
            error = PreValidationFailed(
                f"{len(failures)} document(s) failed pre-submission validation. Submission aborted.",
                details=failures,
            )
            einvoice_logger.submission_prevalidation_failed(len(documents), len(failures), failures)
            return SubmissionOutcome(self.state, error=error)

        invoice_numbers = [doc.document_number for doc in documents]
        previous = await self._mark_processing(documents)

        self.state = BatchState.SUBMITTING
        einvoice_logger.submission_sent(len(documents), invoice_numbers)
        try:
            response = await self.client.submit_documents([doc.envelope.to_dict() for doc in documents])
            submission_uid, accepted_items, rejected_items = self._partition(response)
        except SUBMISSION_FAILURES as e:
            self.state = BatchState.ERROR
            await self._restore(documents, previous, e)
            einvoice_logger.submission_error(e.code, e.message, invoice_numbers)
            return SubmissionOutcome(self.state, error=e)

        # Documents not yet matched to a response item, in batch order
        pending = list(documents)
        accepted = []
        rejected = []
        unmatched = []
        now = datetime.now(timezone.utc)

        for item in accepted_items:
            number = str(item.get("invoiceCodeNumber") or item.get("codeNumber") or "")
            document = _take(pending, lambda doc: doc.document_number == number)
            if document is None:
                logger.warning(f"Accepted document {number} does not belong to this batch")
                continue
            key = self.record_key(document)
            await self.repository.upsert(
                key,
                status=SubmissionStatus.SUBMITTED.value,
                document_uuid=item.get("uuid"),
                submission_uid=submission_uid,
                date_submitted=now,
                error_code=None,
                error_details=None,
            )
            accepted.append(AcceptedDocument(number, item.get("uuid"), key))

        for item in rejected_items:
            rejection = self.parser.to_rejection(item)
            rejected.append(rejection)
            einvoice_logger.submission_rejected(
                rejection.invoice_number, [error.error_type for error in rejection.errors]
            )
            document = await self._match_rejection(item, rejection, pending)
            if document is None:
                unmatched.append((item, rejection))
                continue
            await self._record_rejection(document, item, rejection, previous)

        # A rejection carrying neither number nor known uuid belongs to the
        # only document left over
        if len(unmatched) == 1 and len(pending) == 1:
            item, rejection = unmatched[0]
            document = pending.pop()
            if rejection.invoice_number is None:
                rejection.invoice_number = document.document_number
            await self._record_rejection(document, item, rejection, previous)
        elif unmatched:
            logger.warning(f"Submission {submission_uid} returned {len(unmatched)} rejection(s) matching no document")

        if pending:
            logger.warning(
                f"Submission {submission_uid} did not report on {[d.document_number for d in pending]}"
            )
            await self._restore(pending, previous, InvalidResponseShape(
                "Document missing from the submission response"
            ))

        await self.db.commit()

        if accepted:
            self.state = BatchState.ACCEPTED
            einvoice_logger.submission_accepted(submission_uid, len(accepted), len(rejected))
            if self.scheduler is not None and submission_uid:
                self.scheduler.schedule(submission_uid)
        else:
            self.state = BatchState.REJECTED

        return SubmissionOutcome(
            self.state,
            submission_uid=submission_uid,
            accepted=accepted,
            rejected=rejected,
        )

    async def pre_validate(self, documents: list[PreparedDocument]) -> list[dict]:
        """
        Check every document of the batch; returns one failure entry per
        failing document (empty when the batch may be sent).
        """
        if not documents:
            return [{
                "index": None,
                "invoiceNumber": None,
                "errors": [{"code": "EMPTY_BATCH", "message": "No documents to submit"}],
            }]

        total_bytes = sum(len(doc.envelope.document) for doc in documents)
        if len(documents) > BATCH_MAX_DOCUMENTS or total_bytes > BATCH_MAX_BYTES:
            return [{
                "index": None,
                "invoiceNumber": None,
                "errors": [{
                    "code": "BATCH_LIMIT_EXCEEDED",
                    "message": (
                        f"A submission may hold at most {BATCH_MAX_DOCUMENTS} documents and "
                        f"{BATCH_MAX_BYTES // (1024 * 1024)} MB "
                        f"(got {len(documents)} documents, {total_bytes} bytes)"
                    ),
                }],
            }]

        configured_tin = self.client.tin if settings.ENFORCE_SUPPLIER_TIN_MATCH else None
        failures = []
        seen_keys = set()

        for index, document in enumerate(documents):
            errors = []
            key = self.record_key(document)
            if key in seen_keys:
                errors.append(DuplicateSubmission(
                    f"Document {document.document_number} appears more than once in this batch ({key})"
                ).to_dict())
            seen_keys.add(key)
            try:
                invoice = document.decode()["Invoice"][0]
            except (ValueError, KeyError, IndexError, TypeError):
                failures.append({
                    "index": index,
                    "invoiceNumber": document.document_number,
                    "errors": [{"code": "INVALID_JSON", "message": "Unable to parse JSON document for validation"}],
                })
                continue

            buyer = _identifications(invoice, "AccountingCustomerParty")

            sst = buyer.get("SST")
            if _provided(sst) and not SST_PATTERN.match(sst):
                errors.append({
                    "code": "CF406",
                    "field": "Buyer.SST",
                    "message": "Enter valid SST registration number - BUYER",
                    "value": sst,
                })

            if settings.PREVALIDATE_BUYER_TIN:
                error = await self._check_buyer_tin(buyer)
                if error:
                    errors.append(error)

            if configured_tin:
                supplier_tin = _identifications(invoice, "AccountingSupplierParty").get("TIN")
                if supplier_tin and supplier_tin != configured_tin:
                    errors.append({
                        "code": "TIN_MISMATCH",
                        "field": "Supplier.TIN",
                        "message": f"Document TIN {supplier_tin} does not match the authenticated TIN {configured_tin}",
                        "value": supplier_tin,
                    })

            existing = await self.repository.get_by_file_path(key)
            if existing is not None and existing.status in IN_FLIGHT_STATUSES:
                submitted = existing.date_submitted.isoformat() if existing.date_submitted else "an earlier attempt"
                duplicate = DuplicateSubmission(
                    f"Document {document.document_number} was already submitted ({submitted})"
                ).to_dict()
                duplicate["status"] = existing.status
                errors.append(duplicate)

            if errors:
                failures.append({
                    "index": index,
                    "invoiceNumber": document.document_number,
                    "errors": errors,
                })

        return failures

    async def _check_buyer_tin(self, buyer: dict[str, str]) -> Optional[dict]:
        tin = buyer.get("TIN")
        if not _provided(tin):
            return None
        id_type = next((t for t in SUPPORTING_ID_TYPES if _provided(buyer.get(t))), None)
        if id_type is None:
            return None

        try:
            await self.client.validate_taxpayer_tin(tin, id_type, buyer[id_type])
        except EInvoiceError as e:
            return {
                "code": "ERR406",
                "field": "Buyer.TIN",
                "message": BUYER_TIN_INVALID_MESSAGE,
                "value": tin,
                "details": {"code": e.code, "message": e.message},
            }
        return None

    def _partition(self, response: Any) -> tuple[Optional[str], list[dict], list[dict]]:
        if not isinstance(response, dict):
            raise InvalidResponseShape(
                "The submission response was empty or not a JSON object",
                details={"response": response},
            )

        accepted = response.get("acceptedDocuments")
        rejected = response.get("rejectedDocuments")
        if accepted is None and rejected is None:
            raise InvalidResponseShape(
                "The submission response has neither acceptedDocuments nor rejectedDocuments",
                details={"response": response},
            )
        accepted = accepted or []
        rejected = rejected or []
        if not isinstance(accepted, list) or not isinstance(rejected, list):
            raise InvalidResponseShape(
                "acceptedDocuments and rejectedDocuments must be lists",
                details={"response": response},
            )
        if not accepted and not rejected:
            raise InvalidResponseShape(
                "The submission response did not report on any document",
                details={"response": response},
            )

        submission_uid = response.get("submissionUid") or response.get("submissionUID")
        if accepted and not submission_uid:
            raise InvalidResponseShape(
                "Documents were accepted but no submissionUid was returned",
                details={"response": response},
            )
        return submission_uid, accepted, rejected

    async def _match_rejection(
        self,
        item: dict,
        rejection: ValidationRejected,
        pending: list[PreparedDocument],
    ) -> Optional[PreparedDocument]:
        """Find the batch document a rejection refers to, by number then by uuid."""
        number = str(rejection.invoice_number or "")
        if number:
            document = _take(pending, lambda doc: doc.document_number == number)
            if document is not None:
                return document

        uuid = item.get("uuid")
        if uuid:
            keys = {record.file_path for record in await self.repository.list_by_document_uuid(uuid)}
            return _take(pending, lambda doc: self.record_key(doc) in keys)
        return None

    async def _record_rejection(
        self,
        document: PreparedDocument,
        item: dict,
        rejection: ValidationRejected,
        previous: dict[str, Optional[str]],
    ) -> None:
        key = self.record_key(document)
        error = item.get("error")
        error_code = error.get("code") if isinstance(error, dict) else None
        fields = {
            "error_code": error_code or rejection.code,
            "error_details": rejection.to_dict(),
        }
        if previous[key] is None:
            fields["status"] = SubmissionStatus.REJECTED.value
        else:
            # Known state is kept; a rejection does not overwrite it
            fields["status"] = previous[key]
        await self.repository.upsert(key, **fields)

    async def _mark_processing(self, documents: list[PreparedDocument]) -> dict[str, Optional[str]]:
        """Move every record of the batch to Processing; returns their previous statuses."""
        previous = {}
        for document in documents:
            key = self.record_key(document)
            existing = await self.repository.get_by_file_path(key)
            previous[key] = existing.status if existing is not None else None
            await self.repository.upsert(
                key,
                file_name=document.file_name,
                invoice_number=document.document_number,
                status=SubmissionStatus.PROCESSING.value,
            )
        await self.db.commit()
        return previous

    async def _restore(
        self,
        documents: list[PreparedDocument],
        previous: dict[str, Optional[str]],
        error: EInvoiceError,
    ) -> None:
        for document in documents:
            key = self.record_key(document)
            if previous.get(key) is None:
                await self.repository.upsert(
                    key,
                    status=SubmissionStatus.FAILED.value,
                    error_code=error.code,
                    error_details=error.to_dict(),
                )
            else:
                await self.repository.upsert(key, status=previous[key])
        await self.db.commit()

    # ------------------------------------------------------------------
    # Cancellation and lookups
    # ------------------------------------------------------------------

    async def cancel_document(self, document_uuid: str, reason: Optional[str] = None) -> dict:
        """
        Cancel a document with the authority and mark its records Cancelled.

        Raises:
            DocumentNotFoundError: The authority does not know the document
            AuthorityError: The authority refused the cancellation
        """
        details = await self.client.get_document_details(document_uuid)
        reason = reason or "NA"

        if str(details.get("status") or "").lower() != "cancelled":
            try:
                await self.client.cancel_document(document_uuid, reason)
            except AuthorityError as e:
                if not _already_cancelled(e):
                    raise
                logger.info(f"Document {document_uuid} was already cancelled")

        now = datetime.now(timezone.utc)
        records = await self.repository.list_by_document_uuid(document_uuid)
        for record in records:
            # Cancellation is confirmed by the authority, so it applies to
            # terminal records too
            record.status = SubmissionStatus.CANCELLED.value
            record.date_cancelled = now
            record.cancellation_reason = reason
        await self.db.commit()

        einvoice_logger.document_cancelled(document_uuid, reason)
        return {
            "uuid": document_uuid,
            "status": SubmissionStatus.CANCELLED.value,
            "invoiceNumber": details.get("internalId"),
            "longId": details.get("longId") or details.get("longID"),
            "dateCancelled": now.isoformat(),
            "reason": reason,
            "recordsUpdated": len(records),
        }

    async def check_existing_submission(self, invoice_number: str) -> dict:
        """Report whether ``invoice_number`` is known and blocks a resubmission."""
        record: Optional[SubmissionRecord] = await self.repository.find_by_invoice_number(invoice_number)
        if record is None:
            return {"invoiceNumber": invoice_number, "exists": False, "blocked": False}
        return {
            "invoiceNumber": invoice_number,
            "exists": True,
            "blocked": record.status in IN_FLIGHT_STATUSES,
            "status": record.status,
            "submissionUid": record.submission_uid,
            "uuid": record.document_uuid,
            "dateSubmitted": record.date_submitted.isoformat() if record.date_submitted else None,
        }
