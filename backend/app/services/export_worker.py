"""Background report export worker.

Polls the report_exports table for 'pending' jobs and processes them one at
a time: claim, build rows, stream CSV to a temp file, upload, sign, record.
Runs as an asyncio task within the FastAPI process, or as its own process
via `python -m app.worker` when more than one worker is deployed.
"""
import asyncio
import logging
import traceback
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from app.config import settings
from app.models.report_export import ReportExport
from app.schemas.report_export import AttendanceExportParams
from app.services.csv_streamer import (
    ATTENDANCE_HEADERS,
    build_remote_path,
    temporary_export_file,
    write_csv,
)
from app.services.file_storage import ReportStorage, get_report_storage
from app.services.job_store import ReportExportStore
from app.services.row_resolver import build_attendance_rows

logger = logging.getLogger(__name__)


class UnknownJobTypeError(ValueError):
    """Raised for a job type with no registered handler. Never retried."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__("Unknown job type")


class JobTimeoutError(Exception):
    """Raised when a handler runs past REPORTS_JOB_TIMEOUT_SECONDS."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"Export timed out after {seconds:g}s")


def safe_error_message(e: Exception, fallback: str = "Export failed") -> str:
    """Extract a meaningful error message from an exception.

    Some exceptions produce an empty str(e). This helper falls back to the
    exception class name.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


@dataclass
class ExportResult:
    result_url: str
    result_path: str
    row_count: int


@dataclass
class ExportContext:
    """Collaborators handed to every job handler."""
    store: ReportExportStore
    storage: ReportStorage


JobHandler = Callable[[ReportExport, ExportContext], Awaitable[ExportResult]]

# Job handler registry - add new report types here
JOB_HANDLERS: dict[str, JobHandler] = {}


def register_job_handler(job_type: str):
    """Decorator to register a job handler function."""
    def decorator(func: JobHandler) -> JobHandler:
        JOB_HANDLERS[job_type] = func
        return func
    return decorator


async def process_job(job: ReportExport, context: ExportContext) -> ExportResult:
    """Dispatch job to the appropriate handler."""
    handler = JOB_HANDLERS.get(job.type)
    if not handler:
        raise UnknownJobTypeError(job.type)
    return await handler(job, context)


async def _mark_failed(store: ReportExportStore, job_id, message: str, claim: Optional[int] = None) -> None:
    # Retry so a transient DB error doesn't leave the job stuck in progress
    for retry in range(3):
        try:
            await store.mark_failed(job_id, message, attempt=claim)
            return
        except Exception as db_err:
            logger.error(
                f"Failed to mark report export {job_id} as failed "
                f"(attempt {retry + 1}/3): {db_err}"
            )
            if retry < 2:
                await asyncio.sleep(1)


async def run_once(store: ReportExportStore, storage: ReportStorage) -> bool:
    """Claim and process a single job. Returns False when the queue is empty.

    Job failures are recorded on the job and never raised. A handler running
    past REPORTS_JOB_TIMEOUT_SECONDS is cancelled and the job failed. Terminal
    writes carry the claimed attempt so a re-claimed job is left to its new owner.
    """
    job = await store.claim_next_pending()
    if job is None:
        return False

    logger.info(f"Processing report export {job.id} (type={job.type}, attempt={job.attempt_count})")
    timeout = settings.REPORTS_JOB_TIMEOUT_SECONDS
    try:
        try:
            result = await asyncio.wait_for(
                process_job(job, ExportContext(store=store, storage=storage)),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise JobTimeoutError(timeout) from e
        recorded = await store.mark_succeeded(
            job.id,
            result.result_url,
            result_path=result.result_path,
            row_count=result.row_count,
            attempt=job.attempt_count,
        )
        if recorded:
            logger.info(f"Report export {job.id} completed ({result.row_count} rows), url={result.result_url}")
    except Exception as e:
        logger.error(f"Report export {job.id} failed: {e}")
        logger.error(traceback.format_exc())
        await _mark_failed(store, job.id, safe_error_message(e), claim=job.attempt_count)
    return True


async def _idle_wait(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to `seconds`, waking early on shutdown. True if stopping."""
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
        return True
    except asyncio.TimeoutError:
        return False


async def worker_loop(
    store: Optional[ReportExportStore] = None,
    storage: Optional[ReportStorage] = None,
    poll_interval: Optional[float] = None,
    stop_event: Optional[asyncio.Event] = None,
):
    """Main worker loop.

    Processes jobs back to back while the queue has work. On an empty queue
    it runs the stale-job janitor, then waits `poll_interval` seconds
    (REPORTS_WORKER_POLL_MS by default). Exits when `stop_event` is set.
    """
    if store is None:
        from app.database import async_session
        store = ReportExportStore(async_session)
    storage = storage or get_report_storage()
    interval = poll_interval if poll_interval is not None else settings.REPORTS_WORKER_POLL_MS / 1000
    stop_event = stop_event or asyncio.Event()

    logger.info(f"Report export worker started (poll every {interval:g}s)")
    while not stop_event.is_set():
        try:
            if await run_once(store, storage):
                continue
            await store.recover_stale_jobs()
        except Exception as e:
            logger.error(f"Worker loop error: {e}")

        if await _idle_wait(stop_event, interval):
            break
    logger.info("Report export worker stopped")


# ── Job Handlers ─────────────────────────────────────────────────

@register_job_handler("attendance")
async def handle_attendance(job: ReportExport, context: ExportContext) -> ExportResult:
    """Export attendance records with student and class names as CSV."""
    params = AttendanceExportParams.model_validate(job.params or {})
    headers = params.headers or ATTENDANCE_HEADERS

    async with context.store.session_factory() as db:
        rows = await build_attendance_rows(db, params)

    remote_path = build_remote_path(job.type, job.id)
    async with temporary_export_file(prefix=f"{job.type}-") as tmp_path:
        row_count = await write_csv(tmp_path, headers, rows)
        await context.storage.upload(tmp_path, remote_path)

    result_url = await context.storage.create_signed_url(remote_path)
    return ExportResult(result_url=result_url, result_path=remote_path, row_count=row_count)
