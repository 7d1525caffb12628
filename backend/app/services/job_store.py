"""Report export job store.

The report_exports table is the single source of truth for job state.
Producers only enqueue and read; every status transition goes through the
conditional updates below so two workers can never both claim a job or
overwrite each other's terminal state.
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional, Union

from sqlalchemy import select, update, desc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import settings
from app.models.base import utcnow
from app.models.report_export import (
    ReportExport,
    STATUS_PENDING,
    STATUS_IN_PROGRESS,
    STATUS_SUCCEEDED,
    STATUS_FAILED,
    TERMINAL_STATUSES,
)
from app.schemas.report_export import validate_params

logger = logging.getLogger(__name__)

JobId = Union[uuid.UUID, str]

# Matches the column size the API exposes
MAX_ERROR_MESSAGE_LENGTH = 2000

# Candidates tried per claim before giving up until the next poll
_CLAIM_ATTEMPTS = 5


def _as_uuid(job_id: JobId) -> uuid.UUID:
    return job_id if isinstance(job_id, uuid.UUID) else uuid.UUID(str(job_id))


class ReportExportStore:
    """Async access to the report_exports table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    async def enqueue(self, job_type: str, params: Optional[dict] = None) -> uuid.UUID:
        """Create a pending job and return its id.

        Params for registered job types are validated here so malformed
        requests fail before they reach the queue.
        """
        normalized = validate_params(job_type, params)
        async with self._session_factory() as db:
            job = ReportExport(type=job_type, params=normalized, status=STATUS_PENDING)
            db.add(job)
            await db.commit()
            logger.info(f"Enqueued report export {job.id} (type={job_type})")
            return job.id

    async def get_by_id(self, job_id: JobId) -> Optional[ReportExport]:
        async with self._session_factory() as db:
            return await db.get(ReportExport, _as_uuid(job_id))

    async def list_recent(
        self, status: Optional[str] = None, limit: int = 20, offset: int = 0
    ) -> list[ReportExport]:
        query = select(ReportExport).order_by(desc(ReportExport.created_at)).limit(limit).offset(offset)
        if status:
            query = query.where(ReportExport.status == status)
        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    @staticmethod
    async def _start(db: AsyncSession, job_id: uuid.UUID) -> bool:
        """pending -> in_progress, only if the row is still pending."""
        result = await db.execute(
            update(ReportExport)
            .where(ReportExport.id == job_id, ReportExport.status == STATUS_PENDING)
            .values(
                status=STATUS_IN_PROGRESS,
                started_at=utcnow(),
                finished_at=None,
                attempt_count=ReportExport.attempt_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_in_progress(self, job_id: JobId) -> bool:
        """Transition a pending job to in_progress. False if it was not pending."""
        async with self._session_factory() as db:
            started = await self._start(db, _as_uuid(job_id))
            await db.commit()
            return started

    async def claim_next_pending(self) -> Optional[ReportExport]:
        """Atomically claim the oldest pending job.

        The candidate is read with FOR UPDATE SKIP LOCKED (a no-op on SQLite)
        and claimed with a conditional update. A worker that loses the race
        moves on to the next candidate.
        """
        async with self._session_factory() as db:
            for _ in range(_CLAIM_ATTEMPTS):
                result = await db.execute(
                    select(ReportExport.id)
                    .where(ReportExport.status == STATUS_PENDING)
                    .order_by(ReportExport.created_at, ReportExport.id)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                job_id = result.scalar_one_or_none()
                if job_id is None:
                    return None

                claimed = await self._start(db, job_id)
                await db.commit()
                if claimed:
                    return await db.get(ReportExport, job_id)
                logger.debug(f"Report export {job_id} was claimed by another worker")
        return None

    async def mark_succeeded(
        self,
        job_id: JobId,
        result_url: str,
        *,
        result_path: Optional[str] = None,
        row_count: Optional[int] = None,
        attempt: Optional[int] = None,
    ) -> bool:
        """in_progress -> succeeded. A job never succeeds without a result URL.

        With `attempt`, the write only lands if the job is still on that claim.
        """
        if not result_url:
            raise ValueError("result_url is required to mark a job succeeded")
        conditions = [ReportExport.id == _as_uuid(job_id), ReportExport.status == STATUS_IN_PROGRESS]
        if attempt is not None:
            conditions.append(ReportExport.attempt_count == attempt)
        async with self._session_factory() as db:
            result = await db.execute(
                update(ReportExport)
                .where(*conditions)
                .values(
                    status=STATUS_SUCCEEDED,
                    result_url=result_url,
                    result_path=result_path,
                    row_count=row_count,
                    error_message=None,
                    finished_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            logger.warning(f"Report export {job_id} was no longer in progress on this attempt, success not recorded")
            return False
        return True

    async def mark_failed(
        self,
        job_id: JobId,
        error_message: str,
        *,
        attempt: Optional[int] = None,
    ) -> bool:
        """Move a non-terminal job to failed with the given message.

        With `attempt`, a worker whose claim was reset by the janitor and
        re-claimed by another worker cannot fail the newer attempt.
        """
        message = (error_message or "").strip() or "Unknown error"
        conditions = [ReportExport.id == _as_uuid(job_id), ReportExport.status.not_in(TERMINAL_STATUSES)]
        if attempt is not None:
            conditions.append(ReportExport.attempt_count == attempt)
        async with self._session_factory() as db:
            result = await db.execute(
                update(ReportExport)
                .where(*conditions)
                .values(
                    status=STATUS_FAILED,
                    error_message=message[:MAX_ERROR_MESSAGE_LENGTH],
                    result_url=None,
                    finished_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount != 1:
            logger.warning(f"Report export {job_id} already terminal or re-claimed, failure not recorded")
            return False
        return True

    async def recover_stale_jobs(
        self,
        stale_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> int:
        """Reset or fail jobs stuck in 'in_progress' past the stale threshold.

        Jobs under `max_attempts` go back to pending for another claim;
        the rest are failed. Returns the number of jobs touched.
        """
        stale_minutes = stale_minutes if stale_minutes is not None else settings.REPORTS_STALE_JOB_MINUTES
        max_attempts = max_attempts if max_attempts is not None else settings.REPORTS_MAX_ATTEMPTS
        cutoff = utcnow() - timedelta(minutes=stale_minutes)

        async with self._session_factory() as db:
            result = await db.execute(
                select(ReportExport).where(
                    ReportExport.status == STATUS_IN_PROGRESS,
                    ReportExport.started_at < cutoff,
                )
                .with_for_update(skip_locked=True)
            )
            stale_jobs = result.scalars().all()
            for job in stale_jobs:
                if job.attempt_count < max_attempts:
                    job.status = STATUS_PENDING
                    job.started_at = None
                    logger.warning(
                        f"Reset stale report export {job.id} to pending "
                        f"(attempt {job.attempt_count}/{max_attempts})"
                    )
                else:
                    job.status = STATUS_FAILED
                    job.error_message = (
                        f"Abandoned: in progress for >{stale_minutes} minutes "
                        f"after {job.attempt_count} attempt(s)"
                    )
                    job.result_url = None
                    job.finished_at = utcnow()
                    logger.warning(f"Failed stale report export {job.id} after {job.attempt_count} attempt(s)")
            if stale_jobs:
                await db.commit()
                logger.info(f"Recovered {len(stale_jobs)} stale report export(s)")
            return len(stale_jobs)
