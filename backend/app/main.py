"""FastAPI application entry point."""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.config import settings
from app.database import engine, get_db
from app.models import Base

logger = logging.getLogger(__name__)

# Seconds to let the worker finish its current job on shutdown
WORKER_STOP_TIMEOUT = 30


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, start background worker."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    from app.database import async_session
    from app.services.export_worker import worker_loop
    from app.services.job_store import ReportExportStore

    # Recover any exports stuck in "in_progress" from a previous crash
    store = ReportExportStore(async_session)
    await store.recover_stale_jobs()

    stop_event = asyncio.Event()
    worker_task = None
    if settings.RUN_WORKER_IN_PROCESS:
        worker_task = asyncio.create_task(worker_loop(store=store, stop_event=stop_event))

    yield

    # Cleanup: let the current job finish its step, then stop polling
    stop_event.set()
    if worker_task is not None:
        try:
            await asyncio.wait_for(worker_task, timeout=WORKER_STOP_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning("Report export worker did not stop in time, cancelling")
            worker_task.cancel()
            # The job's session must close before the engine goes away
            with contextlib.suppress(asyncio.CancelledError):
                await worker_task
    await engine.dispose()


app = FastAPI(
    title="Report Export API",
    version="1.0.0",
    description="Asynchronous report exports: enqueue, poll, download.",
    lifespan=lifespan,
)

# CORS
origins = [o.strip() for o in settings.CORS_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/api/health")
async def health_check():
    """Verify API and database connectivity."""
    try:
        async for db in get_db():
            await db.execute(text("SELECT 1"))
            return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": str(e)}


# Register routers
from app.routes.report_exports import router as report_exports_router
app.include_router(report_exports_router)
