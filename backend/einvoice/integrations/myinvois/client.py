"""
MyInvois API client.

Wraps the authority's e-invoicing REST API behind a rate-limited
``httpx.AsyncClient``:

- Every call waits for its endpoint's slot in the shared limiter registry
- 429 responses are retried with the server's Retry-After hint (or the
  endpoint's interval), exponential growth capped at 60s, plus jitter
- Timeouts and connection failures surface as RequestTimeout / NetworkError
  and are never retried here
- Any other non-2xx response raises AuthorityError with a readable message

Security:
- Never logs client secrets or access tokens
"""
import asyncio
import logging
import time
from typing import Any, Optional

import httpx

from einvoice.core.config import settings
from einvoice.core.errors import (
    AuthorityError,
    DocumentNotFoundError,
    NetworkError,
    RateLimitExceeded,
    RequestTimeout,
)
from einvoice.core.rate_limit import (
    RateLimiterRegistry,
    Sleep,
    backoff_delay,
    parse_retry_after,
    rate_limiters,
)
from einvoice.services.logging import einvoice_logger

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1.0"
TOKEN_PATH = "/connect/token"
TOKEN_SCOPE = "InvoicingAPI"
# Refresh tokens this long before the authority expires them
TOKEN_EXPIRY_MARGIN_SECONDS = 60

TIN_ID_TYPES = ("NRIC", "BRN", "PASSPORT", "ARMY")

# Readable messages for the authority's error codes
AUTHORITY_ERROR_MESSAGES = {
    "DS302": "This document has already been submitted. Please check the document status in the MyInvois portal.",
    "CF321": "Document issue date is invalid. Documents must be submitted within 7 days of issuance.",
    "CF364": "Invalid item classification code. Please ensure all items have valid classification codes.",
    "CF401": "Tax calculation error. Please verify all tax amounts and calculations in your document.",
    "CF402": "Currency error. Please check that all monetary values use the correct currency code.",
    "CF403": "Invalid tax code. Please verify the tax codes used in your document.",
    "CF404": "Invalid identification. Please check all party identification numbers (TIN, BRN, etc.).",
    "CF405": "Invalid party information. Please verify supplier/customer details are complete and valid.",
    "AUTH001": "Authentication failure. The access token may have expired.",
    "AUTH003": "Unauthorized access. The taxpayer is not allowed to submit this document.",
    "VALIDATION_ERROR": "Document validation failed. Please review the document and correct all errors.",
    "DUPLICATE_SUBMISSION": "This document has already been submitted or is being processed.",
    "E-INVOICE-TIN-VALIDATION-PARTY-VALIDATION": "TIN validation failed. The document TIN doesn't match the authenticated TIN.",
    "INVALID_PARAMETER": "Invalid parameters provided. Please check your document formatting.",
    "TIN_MISMATCH": "The Tax Identification Number (TIN) in the document does not match the TIN of the authenticated taxpayer.",
    "SYSTEM_ERROR": "The MyInvois system is currently experiencing technical issues. Please try again later.",
}

STATUS_MESSAGES = {
    400: "Invalid document data provided.",
    401: "Authentication failed or unauthorized access.",
    403: "Authentication failed or unauthorized access.",
    404: "The requested resource was not found.",
    422: "Duplicate or unprocessable submission.",
    500: "MyInvois internal server error.",
}


def _json(response: httpx.Response) -> Optional[Any]:
    """Parsed JSON body, or None when the body is empty or not JSON."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return None


class MyInvoisClient:
    """
    Client for the MyInvois document submission API.

    Handles:
    - Access token retrieval (client credentials, on behalf of a TIN)
    - Document submission, submission status and document details
    - Document cancellation
    - Taxpayer TIN validation
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        tin: Optional[str] = None,
        access_token: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        limiters: Optional[RateLimiterRegistry] = None,
        sleep: Optional[Sleep] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Authority base URL (defaults to the configured environment)
            access_token: Pre-issued token; skips the token endpoint
            max_retries: Ceiling on 429 retries (defaults to
                settings.MYINVOIS_MAX_RETRIES, None means unbounded)
            limiters: Limiter registry (defaults to the process-wide one)
            sleep: Awaitable used for backoff waits
            transport: Custom httpx transport
        """
        self.base_url = (base_url or settings.myinvois_base_url).rstrip("/")
        self.client_id = client_id or settings.MYINVOIS_CLIENT_ID
        self.client_secret = client_secret or settings.MYINVOIS_CLIENT_SECRET
        self.tin = tin or settings.MYINVOIS_TIN
        self.max_retries = max_retries if max_retries is not None else settings.MYINVOIS_MAX_RETRIES
        self.limiters = limiters or rate_limiters

        self._access_token = access_token
        self._token_expires_at: Optional[float] = None
        self._sleep = sleep or asyncio.sleep

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            timeout=timeout or settings.MYINVOIS_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(self, endpoint: str, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send one request through the endpoint's limiter.

        Retries 429 responses; everything else is returned or raised as is.
        """
        limiter = self.limiters.get(endpoint)
        attempt = 0

        while True:
            await limiter.acquire()
            try:
                response = await self.client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                logger.error(f"MyInvois {endpoint} timed out: {e}")
                raise RequestTimeout(
                    f"Request to MyInvois timed out ({endpoint})",
                    details={"endpoint": endpoint},
                )
            except httpx.TransportError as e:
                logger.error(f"MyInvois {endpoint} network error: {e}")
                raise NetworkError(
                    "No response received from MyInvois. Please check the network connection.",
                    details={"endpoint": endpoint, "error": str(e)},
                )

            if response.status_code != 429:
                return response

            retry_after = parse_retry_after(response.headers)
            base_delay = retry_after if retry_after is not None else limiter.min_interval
            if self.max_retries is not None and attempt >= self.max_retries:
                raise RateLimitExceeded(
                    f"Rate limit on {endpoint} still exceeded after {attempt} retries",
                    retry_after=retry_after,
                    details={"endpoint": endpoint},
                )

            delay = backoff_delay(base_delay, attempt)
            einvoice_logger.rate_limit_backoff(endpoint, delay, attempt)
            await self._sleep(delay)
            attempt += 1

    async def _authorized_request(self, endpoint: str, method: str, path: str, **kwargs) -> httpx.Response:
        token = await self.get_access_token()
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {token}"
        response = await self._request(endpoint, method, path, headers=headers, **kwargs)
        if response.status_code == 401:
            # Force a fresh token on the next call
            self._token_expires_at = 0.0
        return response

    def _handle_error(self, response: httpx.Response, context: str) -> None:
        """
        Raise AuthorityError for a non-2xx response.

        The error code comes from the body when present (``code`` or
        ``error.code``), else ``HTTP_ERROR_<status>``.
        """
        body = _json(response)
        error = {}
        if isinstance(body, dict):
            error = body.get("error") if isinstance(body.get("error"), dict) else body

        status_code = response.status_code
        code = error.get("code") or error.get("errorCode")
        body_message = error.get("message") or (body.get("message") if isinstance(body, dict) else None)
        details = error.get("details") or body

        if code in AUTHORITY_ERROR_MESSAGES:
            message = AUTHORITY_ERROR_MESSAGES[code]
        elif body_message:
            message = str(body_message)
        else:
            message = STATUS_MESSAGES.get(status_code, f"MyInvois API returned HTTP status {status_code}")

        logger.error(f"MyInvois API error in {context}: status={status_code}, code={code}")

        error_class = DocumentNotFoundError if status_code == 404 else AuthorityError
        raise error_class(
            message=message,
            status_code=status_code,
            code=code or f"HTTP_ERROR_{status_code}",
            details=details,
        )

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        """Return a valid access token, fetching a new one when needed."""
        if self._access_token and (
            self._token_expires_at is None or time.monotonic() < self._token_expires_at
        ):
            return self._access_token

        if not self.client_id or not self.client_secret:
            raise AuthorityError(
                "MyInvois client credentials not configured",
                code="AUTH001",
            )

        headers = {}
        if self.tin:
            headers["onbehalfof"] = self.tin

        response = await self._request(
            "login",
            "POST",
            TOKEN_PATH,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
                "scope": TOKEN_SCOPE,
            },
            headers=headers,
        )
        if response.status_code != 200:
            self._handle_error(response, "get_access_token")

        body = _json(response) or {}
        token = body.get("access_token")
        if not token:
            raise AuthorityError("Token response did not contain an access token", code="AUTH001")

        expires_in = float(body.get("expires_in") or 3600)
        self._access_token = token
        self._token_expires_at = time.monotonic() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
        logger.info("Obtained MyInvois access token")
        return token

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    async def submit_documents(self, documents: list[dict]) -> Optional[Any]:
        """
        Submit a batch of envelopes.

        Returns the parsed response body (None when the body is empty); the
        caller validates its shape.
        """
        response = await self._authorized_request(
            "submit_documents",
            "POST",
            f"{API_PREFIX}/documentsubmissions",
            json={"documents": documents},
        )
        if response.status_code not in (200, 201, 202):
            self._handle_error(response, "submit_documents")
        return _json(response)

    async def get_submission(self, submission_uid: str, page_no: int = 1, page_size: int = 100) -> Optional[Any]:
        """Fetch a submission's status; None when a 2xx body is not JSON."""
        response = await self._authorized_request(
            "get_submission",
            "GET",
            f"{API_PREFIX}/documentsubmissions/{submission_uid}",
            params={"pageNo": page_no, "pageSize": page_size},
        )
        if not response.is_success:
            self._handle_error(response, "get_submission")
        return _json(response)

    async def get_document_details(self, document_uuid: str) -> dict:
        response = await self._authorized_request(
            "get_document_details",
            "GET",
            f"{API_PREFIX}/documents/{document_uuid}/details",
        )
        if not response.is_success:
            self._handle_error(response, "get_document_details")
        return _json(response) or {}

    async def cancel_document(self, document_uuid: str, reason: Optional[str] = None) -> Optional[Any]:
        response = await self._authorized_request(
            "cancel_document",
            "PUT",
            f"{API_PREFIX}/documents/state/{document_uuid}/state",
            json={"status": "cancelled", "reason": reason or "NA"},
        )
        if not response.is_success:
            self._handle_error(response, "cancel_document")
        return _json(response)

    # ------------------------------------------------------------------
    # Taxpayers
    # ------------------------------------------------------------------

    async def validate_taxpayer_tin(self, tin: str, id_type: str, id_value: str) -> bool:
        """
        Validate a taxpayer TIN against a supporting identifier.

        Returns True on a 200 answer. Raises ValueError for an unknown id
        type and AuthorityError when the authority refuses the pair.
        """
        if id_type not in TIN_ID_TYPES:
            raise ValueError(f"Invalid ID type. Must be one of: {', '.join(TIN_ID_TYPES)}")
        if not tin or not id_value:
            raise ValueError("TIN and ID value are required")

        response = await self._authorized_request(
            "validate_tin",
            "GET",
            f"{API_PREFIX}/taxpayer/validate/{tin}",
            params={"idType": id_type, "idValue": id_value},
        )
        if response.status_code != 200:
            self._handle_error(response, "validate_taxpayer_tin")
        return True
