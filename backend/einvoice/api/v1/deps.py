from typing import Annotated, NoReturn, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from einvoice.core.database import get_db
from einvoice.core.errors import (
    AuthorityError,
    DocumentNotFoundError,
    EInvoiceError,
    InvalidResponseShape,
    MappingError,
    NetworkError,
    PreparationError,
    PreValidationFailed,
    RateLimitExceeded,
    RequestTimeout,
    SigningError,
)
from einvoice.integrations.myinvois.client import MyInvoisClient
from einvoice.services.status_poller import PollScheduler


def get_myinvois_client(request: Request) -> MyInvoisClient:
    """Client created in the application lifespan."""
    client = getattr(request.app.state, "myinvois_client", None)
    if client is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "CLIENT_UNAVAILABLE", "message": "MyInvois client is not initialised"},
        )
    return client


def get_poll_scheduler(request: Request) -> Optional[PollScheduler]:
    return getattr(request.app.state, "poll_scheduler", None)


DbSession = Annotated[AsyncSession, Depends(get_db)]
Client = Annotated[MyInvoisClient, Depends(get_myinvois_client)]
Scheduler = Annotated[Optional[PollScheduler], Depends(get_poll_scheduler)]


def http_status_for(error: EInvoiceError) -> int:
    if isinstance(error, DocumentNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, RateLimitExceeded):
        return status.HTTP_429_TOO_MANY_REQUESTS
    if isinstance(error, RequestTimeout):
        return status.HTTP_504_GATEWAY_TIMEOUT
    if isinstance(error, (NetworkError, InvalidResponseShape)):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(error, AuthorityError):
        if error.status_code and 400 <= error.status_code < 500 and error.status_code != 401:
            return error.status_code
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(error, (MappingError, PreparationError, PreValidationFailed)):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(error, SigningError):
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    return status.HTTP_400_BAD_REQUEST


def raise_http_error(error: EInvoiceError) -> NoReturn:
    """Translate a pipeline error into an HTTPException with a structured detail."""
    raise HTTPException(status_code=http_status_for(error), detail=error.to_dict())
