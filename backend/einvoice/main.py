import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, APIRouter, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import configure_mappers

from einvoice.core.config import settings
from einvoice.core.database import engine, async_session_maker
from einvoice.core.errors import EInvoiceError
from einvoice.api.v1 import submissions
from einvoice.api.v1.deps import http_status_for
from einvoice.integrations.myinvois.client import MyInvoisClient
from einvoice.services.status_poller import PollScheduler, run_completion_sweeper

logger = logging.getLogger(__name__)


def verify_orm_mappings() -> None:
    """Verify SQLAlchemy ORM mappings at startup so misconfiguration fails fast."""
    from einvoice.models import SubmissionRecord  # noqa: F401

    configure_mappers()
    logger.info("ORM mapper configuration verified successfully")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan events.

    Startup:
    - Verify ORM mappings
    - Create the shared MyInvois client and the poll scheduler
    - Start the Valid -> Completed sweeper

    Shutdown:
    - Stop the sweeper, cancel pending polls, close the client
    """
    try:
        verify_orm_mappings()
    except Exception as e:
        logger.critical(f"ORM mapper configuration failed: {e}")
        raise RuntimeError(f"Application cannot start: ORM mapping error - {e}") from e

    client = MyInvoisClient()
    scheduler = PollScheduler(async_session_maker, client)
    sweeper = asyncio.create_task(run_completion_sweeper(async_session_maker))

    app.state.myinvois_client = client
    app.state.poll_scheduler = scheduler
    logger.info(
        f"MyInvois client ready ({settings.MYINVOIS_ENVIRONMENT}, {settings.myinvois_api_url}), "
        f"schema version {settings.SCHEMA_VERSION}"
    )

    yield

    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)
    await scheduler.shutdown()
    await client.close()
    logger.info("Application shutdown complete")


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# CORS middleware - must be added FIRST to ensure headers on all responses including errors
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(EInvoiceError)
async def einvoice_exception_handler(request: Request, exc: EInvoiceError):
    """Pipeline errors that escape a route still answer with their structured form."""
    logger.error(f"Unhandled pipeline error on {request.url.path}: {exc.code} {exc.message}")
    return JSONResponse(status_code=http_status_for(exc), content={"detail": exc.to_dict()})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler to ensure JSON responses with proper CORS headers.

    Note: HTTPException is handled by FastAPI's default handler and will
    not reach this handler, preserving intended status codes.
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": {"code": "INTERNAL_ERROR", "message": "Internal server error"},
        },
    )

# API v1 router
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(submissions.router, tags=["submissions"])

app.include_router(api_v1_router)


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Verifies database connectivity and reports the configured MyInvois
    environment and pending background polls.
    """
    health = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "database": {"status": "unknown", "message": None},
            "myinvois": {
                "status": "configured" if settings.MYINVOIS_CLIENT_ID else "unconfigured",
                "environment": settings.MYINVOIS_ENVIRONMENT,
                "api_url": settings.myinvois_api_url,
            },
            "background_tasks": {
                "status": "healthy",
                "pending_polls": getattr(getattr(app.state, "poll_scheduler", None), "pending", 0),
            },
        },
    }

    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        health["components"]["database"]["status"] = "healthy"
        health["components"]["database"]["message"] = "Connected"
    except (SQLAlchemyError, OSError) as e:
        health["status"] = "unhealthy"
        health["components"]["database"]["status"] = "unhealthy"
        health["components"]["database"]["message"] = str(e)
        return JSONResponse(status_code=503, content=health)

    return health
