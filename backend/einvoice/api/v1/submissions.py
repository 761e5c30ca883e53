"""
Submission API Endpoints

Thin HTTP surface over the submission pipeline:
- Submit a batch of internal documents
- Poll a submission's status
- Look up an invoice number
- Fetch and cancel documents
- Validate a taxpayer TIN
"""
import logging

from fastapi import APIRouter, HTTPException, Query, status

from einvoice.api.v1.deps import Client, DbSession, Scheduler, raise_http_error
from einvoice.core.errors import AuthorityError, EInvoiceError
from einvoice.integrations.myinvois.client import TIN_ID_TYPES
from einvoice.schemas.submission import (
    AcceptedDocumentResponse,
    CancelRequest,
    CancelResponse,
    ExistingSubmissionResponse,
    SubmissionRequest,
    SubmissionResponse,
    SubmissionStatusResponse,
    TinValidationResponse,
)
from einvoice.services.status_poller import StatusPoller
from einvoice.services.submission_service import BatchState, SubmissionService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/submissions", response_model=SubmissionResponse)
async def submit_documents(
    request: SubmissionRequest,
    db: DbSession,
    client: Client,
    scheduler: Scheduler,
):
    """
    Map, prepare and submit a batch of documents.

    The whole batch is refused (422) when any document cannot be mapped or
    fails pre-submission checks; nothing is sent in that case.
    """
    service = SubmissionService(db, client, scheduler=scheduler)

    prepared = []
    for index, item in enumerate(request.documents):
        try:
            prepared.append(service.prepare_document(
                item.document,
                schema_version=request.schema_version,
                file_path=item.file_path,
                file_name=item.file_name,
            ))
        except EInvoiceError as e:
            logger.warning(f"Document {index} of batch could not be prepared: {e.code} {e.message}")
            detail = e.to_dict()
            detail["index"] = index
            raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=detail)

    outcome = await service.submit(prepared)
    if outcome.state in (BatchState.ABORTED, BatchState.ERROR):
        raise_http_error(outcome.error)

    return SubmissionResponse(
        state=outcome.state.value,
        success=outcome.success,
        submission_uid=outcome.submission_uid,
        accepted_documents=[
            AcceptedDocumentResponse(
                invoice_number=doc.invoice_number,
                uuid=doc.document_uuid,
                file_path=doc.file_path,
            )
            for doc in outcome.accepted
        ],
        rejected_documents=[rejection.to_dict() for rejection in outcome.rejected],
    )


@router.get("/submissions/check/{invoice_number}", response_model=ExistingSubmissionResponse)
async def check_existing_submission(invoice_number: str, db: DbSession, client: Client):
    result = await SubmissionService(db, client).check_existing_submission(invoice_number)
    return ExistingSubmissionResponse(
        invoice_number=result["invoiceNumber"],
        exists=result["exists"],
        blocked=result["blocked"],
        status=result.get("status"),
        submission_uid=result.get("submissionUid"),
        uuid=result.get("uuid"),
        date_submitted=result.get("dateSubmitted"),
    )


@router.get("/submissions/{submission_uid}/status", response_model=SubmissionStatusResponse)
async def get_submission_status(submission_uid: str, db: DbSession, client: Client):
    try:
        result = await StatusPoller(db, client).poll(submission_uid)
    except EInvoiceError as e:
        raise_http_error(e)

    return SubmissionStatusResponse(
        submission_uid=result.submission_uid,
        status=result.status,
        long_id=result.long_id,
        from_cache=result.from_cache,
        implicit=result.implicit,
        documents=[
            {
                "uuid": doc["uuid"],
                "invoice_number": doc["invoiceNumber"],
                "status": doc["status"],
                "long_id": doc["longId"],
            }
            for doc in result.documents
        ],
    )


@router.get("/documents/{document_uuid}/details")
async def get_document_details(document_uuid: str, client: Client):
    try:
        return await client.get_document_details(document_uuid)
    except EInvoiceError as e:
        raise_http_error(e)


@router.post("/documents/{document_uuid}/cancel", response_model=CancelResponse)
async def cancel_document(
    document_uuid: str,
    request: CancelRequest,
    db: DbSession,
    client: Client,
):
    try:
        result = await SubmissionService(db, client).cancel_document(document_uuid, request.reason)
    except EInvoiceError as e:
        raise_http_error(e)

    return CancelResponse(
        uuid=result["uuid"],
        status=result["status"],
        invoice_number=result["invoiceNumber"],
        long_id=result["longId"],
        date_cancelled=result["dateCancelled"],
        reason=result["reason"],
        records_updated=result["recordsUpdated"],
    )


@router.get("/taxpayers/{tin}/validate", response_model=TinValidationResponse)
async def validate_taxpayer_tin(
    tin: str,
    client: Client,
    id_type: str = Query(..., description="One of NRIC, BRN, PASSPORT, ARMY"),
    id_value: str = Query(..., min_length=1),
):
    if id_type not in TIN_ID_TYPES:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={
                "code": "INVALID_PARAMETER",
                "message": f"Invalid ID type. Must be one of: {', '.join(TIN_ID_TYPES)}",
            },
        )

    try:
        await client.validate_taxpayer_tin(tin, id_type, id_value)
    except AuthorityError as e:
        # The authority answers 400/404 for a TIN that does not match the id
        if e.status_code in (400, 404):
            return TinValidationResponse(
                tin=tin, id_type=id_type, id_value=id_value, valid=False, error=e.to_dict()
            )
        raise_http_error(e)
    except EInvoiceError as e:
        raise_http_error(e)

    return TinValidationResponse(tin=tin, id_type=id_type, id_value=id_value, valid=True)
