"""
Submission Status Poller

Reconciles local submission records with the authority's view of a
submission:

- ``StatusPoller.poll`` runs one status query (or none, when every local
  record is already terminal) and writes the result back
- ``PollScheduler`` runs the first poll of a fresh submission in the
  background, after the authority's minimum poll interval
- ``promote_completed`` / ``run_completion_sweeper`` move Valid records
  past the cancellation window to Completed

Polling errors are logged and raised to the caller; nothing here retries
a failed poll inline.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from einvoice.core.config import settings
from einvoice.core.errors import EInvoiceError
from einvoice.integrations.myinvois.client import MyInvoisClient
from einvoice.models.submission import SubmissionRecord, SubmissionStatus, TERMINAL_STATUSES
from einvoice.repositories.submission_repository import SubmissionRepository
from einvoice.services.logging import einvoice_logger

logger = logging.getLogger(__name__)

# Authority wording -> local status. In-progress maps to Submitted so a
# poll never moves a record backwards.
REMOTE_STATUS_MAP = {
    "valid": SubmissionStatus.VALID.value,
    "invalid": SubmissionStatus.INVALID.value,
    "partiallyvalid": SubmissionStatus.PARTIALLY_VALID.value,
    "inprogress": SubmissionStatus.SUBMITTED.value,
    "submitted": SubmissionStatus.SUBMITTED.value,
    "processing": SubmissionStatus.SUBMITTED.value,
    "cancelled": SubmissionStatus.CANCELLED.value,
    "canceled": SubmissionStatus.CANCELLED.value,
}


def normalize_remote_status(value: Any) -> Optional[str]:
    """Map free-text authority status ("Partially Valid", "in progress") to the local enum."""
    if value is None:
        return None
    key = "".join(str(value).split()).replace("_", "").replace("-", "").lower()
    if not key:
        return None
    return REMOTE_STATUS_MAP.get(key, SubmissionStatus.SUBMITTED.value)


def _overall_of(records: list[SubmissionRecord]) -> str:
    statuses = {record.status for record in records}
    if len(statuses) == 1:
        return statuses.pop()
    if SubmissionStatus.VALID.value in statuses and SubmissionStatus.INVALID.value in statuses:
        return SubmissionStatus.PARTIALLY_VALID.value
    return records[0].status


@dataclass
class PollResult:
    submission_uid: str
    status: str
    long_id: Optional[str] = None
    from_cache: bool = False
    # True when a 2xx answer had no usable body and Valid was assumed
    implicit: bool = False
    documents: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "submissionUid": self.submission_uid,
            "status": self.status,
            "longId": self.long_id,
            "fromCache": self.from_cache,
            "implicit": self.implicit,
            "documents": self.documents,
        }


class StatusPoller:
    """Runs status queries for one submission and persists the outcome."""

    def __init__(self, db: AsyncSession, client: MyInvoisClient):
        self.db = db
        self.client = client
        self.repository = SubmissionRepository(db)

    async def poll(self, submission_uid: str) -> PollResult:
        """
        Query the authority for ``submission_uid`` and update local records.

        Returns the stored status without a remote call when every local
        record of the submission is terminal.

        Raises:
            EInvoiceError: The status query failed (logged, not retried)
        """
        records = await self.repository.list_by_submission_uid(submission_uid)

        if records and all(record.status in TERMINAL_STATUSES for record in records):
            status = _overall_of(records)
            long_id = next((r.long_id for r in records if r.long_id), None)
            einvoice_logger.status_polled(submission_uid, status, from_cache=True)
            return PollResult(submission_uid, status, long_id=long_id, from_cache=True)

        try:
            body = await self.client.get_submission(submission_uid)
        except EInvoiceError as e:
            logger.error(f"Status poll for submission {submission_uid} failed: {e.code} {e.message}")
            raise

        overall = None
        if isinstance(body, dict):
            overall = normalize_remote_status(body.get("overallStatus") or body.get("status"))

        if overall is None:
            # Heuristic: the authority sometimes answers 2xx without the
            # documented body. Treated as Valid, not a guaranteed contract.
            logger.warning(
                f"Submission {submission_uid} status response had no status, assuming Valid"
            )
            for record in records:
                await self.repository.set_status(record, SubmissionStatus.VALID.value)
            await self.db.commit()
            einvoice_logger.status_polled(submission_uid, SubmissionStatus.VALID.value)
            return PollResult(submission_uid, SubmissionStatus.VALID.value, implicit=True)

        documents = self._documents_of(body)
        updated_ids = set()
        summaries = []
        long_id = None

        for document in documents:
            document_uuid = document.get("uuid")
            status = normalize_remote_status(document.get("status")) or overall
            document_long_id = document.get("longId") or document.get("longID")
            long_id = long_id or document_long_id
            summaries.append({
                "uuid": document_uuid,
                "invoiceNumber": document.get("internalId") or document.get("invoiceCodeNumber"),
                "status": status,
                "longId": document_long_id,
            })
            if not document_uuid:
                continue
            for record in await self.repository.list_by_document_uuid(document_uuid):
                updated_ids.add(record.id)
                fields = {"long_id": document_long_id} if document_long_id else {}
                await self.repository.set_status(record, status, **fields)

        for record in records:
            if record.id not in updated_ids:
                await self.repository.set_status(record, overall)

        await self.db.commit()
        einvoice_logger.status_polled(submission_uid, overall)
        return PollResult(submission_uid, overall, long_id=long_id, documents=summaries)

    def _documents_of(self, body: dict) -> list[dict]:
        for key in ("documentSummary", "result", "documents"):
            documents = body.get(key)
            if isinstance(documents, list):
                return [d for d in documents if isinstance(d, dict)]
        return []


class PollScheduler:
    """
    Schedules the first status poll of a submission in the background.

    Each poll opens its own database session, so it outlives the request
    that scheduled it.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        client: MyInvoisClient,
        delay: Optional[float] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.session_factory = session_factory
        self.client = client
        self.delay = settings.POLL_INITIAL_DELAY_SECONDS if delay is None else delay
        self._sleep = sleep or asyncio.sleep
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def schedule(self, submission_uid: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(submission_uid))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"Scheduled status poll for submission {submission_uid} in {self.delay}s")
        return task

    async def _run(self, submission_uid: str) -> Optional[PollResult]:
        await self._sleep(self.delay)
        try:
            async with self.session_factory() as db:
                return await StatusPoller(db, self.client).poll(submission_uid)
        except EInvoiceError as e:
            logger.warning(f"Scheduled poll for {submission_uid} failed: {e.code} {e.message}")
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Scheduled poll for {submission_uid} could not update records: {e}")
        return None

    async def shutdown(self) -> None:
        """Cancel polls that have not run yet."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


async def promote_completed(
    db: AsyncSession,
    now: Optional[datetime] = None,
    threshold_hours: Optional[int] = None,
) -> int:
    """Promote Valid records older than the completion threshold to Completed."""
    now = now or datetime.now(timezone.utc)
    hours = settings.COMPLETION_THRESHOLD_HOURS if threshold_hours is None else threshold_hours
    cutoff = now - timedelta(hours=hours)

    promoted = await SubmissionRepository(db).promote_valid_to_completed(cutoff)
    await db.commit()
    if promoted:
        einvoice_logger.status_completed(promoted, cutoff)
    return promoted


async def run_completion_sweeper(
    session_factory: async_sessionmaker,
    interval: Optional[float] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> None:
    """
    Run ``promote_completed`` forever, every ``interval`` seconds.

    A failed sweep is logged and retried on the next tick; only
    cancellation stops the loop.
    """
    interval = settings.COMPLETION_SWEEP_INTERVAL_SECONDS if interval is None else interval
    sleep = sleep or asyncio.sleep
    while True:
        try:
            async with session_factory() as db:
                await promote_completed(db)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Completion sweep failed: {e}")
        except Exception:
            logger.exception("Completion sweep failed unexpectedly")
        await sleep(interval)
