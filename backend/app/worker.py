"""Standalone report export worker process.

Usage:
    python -m app.worker

Set RUN_WORKER_IN_PROCESS=false on the API when running workers this way.
Claims are atomic, so several worker processes may run side by side.
"""
import asyncio
import logging
import signal
import sys

from app.config import settings
from app.database import async_session, engine
from app.services.export_worker import worker_loop
from app.services.job_store import ReportExportStore


def setup_logging() -> None:
    """Configure console logging for the worker process."""
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Suppress noisy loggers
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("google").setLevel(logging.WARNING)


async def run() -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    store = ReportExportStore(async_session)
    try:
        await store.recover_stale_jobs()
        await worker_loop(store=store, stop_event=stop_event)
    finally:
        await engine.dispose()


def main() -> None:
    setup_logging()
    asyncio.run(run())


if __name__ == "__main__":
    main()
