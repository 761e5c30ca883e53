"""
Tests for the submission API endpoints.

Runs the FastAPI app in-process with the database session, MyInvois client
and poll scheduler replaced by test doubles.
"""
import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from einvoice.api.v1.deps import get_myinvois_client, get_poll_scheduler
from einvoice.core.database import get_db
from einvoice.main import app
from einvoice.models.submission import SubmissionRecord, SubmissionStatus

SUBMISSIONS_PATH = "/api/v1.0/documentsubmissions"


class RecordingScheduler:
    pending = 0

    def __init__(self):
        self.scheduled = []

    def schedule(self, submission_uid: str) -> None:
        self.scheduled.append(submission_uid)


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest_asyncio.fixture
async def api(db_session, myinvois_client, authority, scheduler):
    """HTTP client for the app with dependencies overridden."""
    async def override_get_db():
        yield db_session

    authority.on("GET", "/api/v1.0/taxpayer/validate/C98765432109", lambda request: httpx.Response(200))
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_myinvois_client] = lambda: myinvois_client
    app.dependency_overrides[get_poll_scheduler] = lambda: scheduler

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


async def _add_record(db_session, **fields) -> SubmissionRecord:
    record = SubmissionRecord(**fields)
    db_session.add(record)
    await db_session.commit()
    return record


@pytest.mark.asyncio
async def test_submit_documents(api, authority, scheduler, minimal_document):
    authority.on("POST", SUBMISSIONS_PATH, lambda request: httpx.Response(202, json={
        "submissionUid": "SUB1",
        "acceptedDocuments": [{"uuid": "DOC1", "invoiceCodeNumber": "INV001"}],
        "rejectedDocuments": [],
    }))

    response = await api.post("/api/v1/submissions", json={
        "documents": [{"document": minimal_document, "file_path": "/in/inv001.xlsx"}],
        "schema_version": "1.0",
    })

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "Accepted"
    assert body["success"] is True
    assert body["submission_uid"] == "SUB1"
    assert body["accepted_documents"] == [
        {"invoice_number": "INV001", "uuid": "DOC1", "file_path": "/in/inv001.xlsx"}
    ]
    assert scheduler.scheduled == ["SUB1"]


@pytest.mark.asyncio
async def test_submit_rejected_document(api, authority, minimal_document):
    authority.on("POST", SUBMISSIONS_PATH, lambda request: httpx.Response(202, json={
        "acceptedDocuments": [],
        "rejectedDocuments": [{
            "invoiceCodeNumber": "INV001",
            "error": {"code": "CF321", "message": "Issue date is outside the allowed window"},
        }],
    }))

    response = await api.post("/api/v1/submissions", json={"documents": [{"document": minimal_document}]})

    assert response.status_code == 200
    body = response.json()
    assert body["state"] == "Rejected"
    assert body["success"] is False
    assert body["rejected_documents"][0]["invoiceNumber"] == "INV001"
    assert body["rejected_documents"][0]["errors"][0]["errorType"] == "CF321"


@pytest.mark.asyncio
async def test_submit_unmappable_document(api, authority, minimal_document):
    broken = dict(minimal_document, header=dict(minimal_document["header"], invoiceNo=""))

    response = await api.post("/api/v1/submissions", json={
        "documents": [{"document": minimal_document}, {"document": broken}],
    })

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["code"] == "MAPPING_ERROR"
    assert detail["index"] == 1
    assert authority.calls_to(SUBMISSIONS_PATH) == []


@pytest.mark.asyncio
async def test_submit_pre_validation_failure(api, authority, minimal_document):
    minimal_document["buyer"]["identifications"].append({"schemeId": "SST", "id": "not-an-sst"})

    response = await api.post("/api/v1/submissions", json={"documents": [{"document": minimal_document}]})

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["code"] == "PRE_SUBMISSION_VALIDATION_FAILED"
    assert detail["details"][0]["errors"][0]["code"] == "CF406"
    assert authority.calls_to(SUBMISSIONS_PATH) == []


@pytest.mark.asyncio
async def test_submit_network_failure(api, authority, minimal_document):
    def unreachable(request):
        raise httpx.ConnectError("unreachable", request=request)

    authority.on("POST", SUBMISSIONS_PATH, unreachable)

    response = await api.post("/api/v1/submissions", json={"documents": [{"document": minimal_document}]})

    assert response.status_code == 502
    assert response.json()["detail"]["code"] == "NETWORK_ERROR"


@pytest.mark.asyncio
async def test_submit_request_validation(api, minimal_document):
    response = await api.post("/api/v1/submissions", json={"documents": []})
    assert response.status_code == 422

    response = await api.post("/api/v1/submissions", json={
        "documents": [{"document": minimal_document}],
        "schema_version": "2.0",
    })
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_submission_status(api, authority, db_session):
    await _add_record(
        db_session, file_path="/in/1.xlsx", invoice_number="INV001",
        document_uuid="DOC1", submission_uid="SUB1", status=SubmissionStatus.SUBMITTED.value,
    )
    authority.on("GET", f"{SUBMISSIONS_PATH}/SUB1", lambda request: httpx.Response(200, json={
        "overallStatus": "Valid",
        "documentSummary": [{"uuid": "DOC1", "internalId": "INV001", "status": "Valid", "longId": "L1"}],
    }))

    response = await api.get("/api/v1/submissions/SUB1/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "Valid"
    assert body["long_id"] == "L1"
    assert body["documents"] == [{"uuid": "DOC1", "invoice_number": "INV001", "status": "Valid", "long_id": "L1"}]


@pytest.mark.asyncio
async def test_submission_status_rate_limited(api, authority, myinvois_client):
    myinvois_client.max_retries = 0
    authority.on("GET", f"{SUBMISSIONS_PATH}/SUB1", lambda request: httpx.Response(429))

    response = await api.get("/api/v1/submissions/SUB1/status")

    assert response.status_code == 429
    assert response.json()["detail"]["code"] == "RATE_LIMITED"


@pytest.mark.asyncio
async def test_check_existing_submission(api, db_session):
    await _add_record(
        db_session, file_path="/in/1.xlsx", invoice_number="INV001",
        submission_uid="SUB1", status=SubmissionStatus.PROCESSING.value,
    )

    response = await api.get("/api/v1/submissions/check/INV001")

    assert response.status_code == 200
    body = response.json()
    assert body["exists"] is True
    assert body["blocked"] is True
    assert body["status"] == "Processing"


@pytest.mark.asyncio
async def test_document_details_not_found(api):
    response = await api.get("/api/v1/documents/MISSING/details")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "NotFound"


@pytest.mark.asyncio
async def test_cancel_document(api, authority, db_session):
    await _add_record(
        db_session, file_path="/in/1.xlsx", invoice_number="INV001",
        document_uuid="DOC1", status=SubmissionStatus.VALID.value,
    )
    authority.on("GET", "/api/v1.0/documents/DOC1/details", lambda request: httpx.Response(
        200, json={"uuid": "DOC1", "status": "Valid", "internalId": "INV001"}
    ))
    authority.on("PUT", "/api/v1.0/documents/state/DOC1/state", lambda request: httpx.Response(200, json={}))

    response = await api.post("/api/v1/documents/DOC1/cancel", json={"reason": "Wrong amount"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "Cancelled"
    assert body["reason"] == "Wrong amount"
    assert body["records_updated"] == 1


@pytest.mark.asyncio
async def test_validate_taxpayer_tin(api):
    response = await api.get(
        "/api/v1/taxpayers/C98765432109/validate",
        params={"id_type": "BRN", "id_value": "200801012345"},
    )

    assert response.status_code == 200
    assert response.json()["valid"] is True


@pytest.mark.asyncio
async def test_validate_taxpayer_tin_mismatch(api, authority):
    authority.on("GET", "/api/v1.0/taxpayer/validate/C1", lambda request: httpx.Response(
        400, json={"error": {"code": "BadArgument", "message": "TIN does not match"}}
    ))

    response = await api.get("/api/v1/taxpayers/C1/validate", params={"id_type": "NRIC", "id_value": "9001"})

    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is False
    assert body["error"]["message"] == "TIN does not match"


@pytest.mark.asyncio
async def test_validate_taxpayer_tin_invalid_id_type(api, authority):
    response = await api.get("/api/v1/taxpayers/C1/validate", params={"id_type": "LICENSE", "id_value": "1"})

    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "INVALID_PARAMETER"
    assert authority.requests == []


@pytest.mark.asyncio
async def test_client_unavailable_without_lifespan(db_session):
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/api/v1/documents/DOC1/details")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "CLIENT_UNAVAILABLE"
