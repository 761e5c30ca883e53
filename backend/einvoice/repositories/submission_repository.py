from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from einvoice.models.submission import SubmissionRecord, SubmissionStatus


class SubmissionRepository:
    """
    Data access for submission records.

    Writers never commit; the calling service owns the transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_file_path(self, file_path: str) -> Optional[SubmissionRecord]:
        result = await self.db.execute(
            select(SubmissionRecord).where(SubmissionRecord.file_path == file_path)
        )
        return result.scalar_one_or_none()

    async def list_by_submission_uid(self, submission_uid: str) -> list[SubmissionRecord]:
        result = await self.db.execute(
            select(SubmissionRecord)
            .where(SubmissionRecord.submission_uid == submission_uid)
            .order_by(SubmissionRecord.created_at)
        )
        return list(result.scalars().all())

    async def list_by_document_uuid(self, document_uuid: str) -> list[SubmissionRecord]:
        result = await self.db.execute(
            select(SubmissionRecord).where(SubmissionRecord.document_uuid == document_uuid)
        )
        return list(result.scalars().all())

    async def find_by_invoice_number(self, invoice_number: str) -> Optional[SubmissionRecord]:
        """Most recently updated record for an invoice number."""
        result = await self.db.execute(
            select(SubmissionRecord)
            .where(SubmissionRecord.invoice_number == invoice_number)
            .order_by(SubmissionRecord.updated_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def upsert(self, file_path: str, **fields) -> SubmissionRecord:
        """Create the record for ``file_path`` or update the existing one."""
        record = await self.get_by_file_path(file_path)
        if record is None:
            record = SubmissionRecord(file_path=file_path)
            self.db.add(record)
        for name, value in fields.items():
            setattr(record, name, value)
        await self.db.flush()
        return record

    async def set_status(self, record: SubmissionRecord, status: str, **fields) -> bool:
        """
        Move ``record`` to ``status``.

        Terminal records are left untouched; returns False in that case.
        """
        if record.is_terminal:
            return False
        record.status = status
        for name, value in fields.items():
            setattr(record, name, value)
        await self.db.flush()
        return True

    async def promote_valid_to_completed(self, cutoff: datetime) -> int:
        """Mark Valid records submitted before ``cutoff`` as Completed."""
        if cutoff.tzinfo is None:
            cutoff = cutoff.replace(tzinfo=timezone.utc)
        result = await self.db.execute(
            update(SubmissionRecord)
            .where(SubmissionRecord.status == SubmissionStatus.VALID.value)
            .where(SubmissionRecord.date_submitted.is_not(None))
            .where(SubmissionRecord.date_submitted < cutoff)
            .values(status=SubmissionStatus.COMPLETED.value, updated_at=datetime.now(timezone.utc))
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0
