"""Incremental CSV writing to a scoped temporary file.

Rows are formatted one line at a time into a small buffer. Once the buffer
reaches CSV_WRITE_CHUNK_BYTES it is handed to the file and the producer
awaits that write before formatting more rows, so memory stays bounded by
one chunk regardless of the row count.
"""
import csv
import io
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Sequence

import aiofiles

from app.config import settings

logger = logging.getLogger(__name__)

ATTENDANCE_HEADERS = [
    "student_id",
    "student_name",
    "class_id",
    "class_name",
    "date",
    "status",
    "notes",
]


@asynccontextmanager
async def temporary_export_file(prefix: str = "export-") -> AsyncIterator[Path]:
    """Yield a fresh temp file path; the file is removed on every exit path."""
    tmp_dir = settings.EXPORT_TMP_DIR or None
    if tmp_dir:
        Path(tmp_dir).mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=prefix, suffix=".csv", dir=tmp_dir)
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove temp export file {path}: {e}")


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)


async def write_csv(
    path: Path,
    headers: Sequence[str],
    rows: Iterable[Any],
    *,
    chunk_bytes: int | None = None,
) -> int:
    """Write a header line and one fully quoted line per row.

    `rows` yields objects exposing an attribute per header name. Embedded
    quotes are doubled. Returns the number of data lines written.
    """
    limit = chunk_bytes or settings.CSV_WRITE_CHUNK_BYTES
    buffer = io.StringIO()
    # Header names are plain identifiers, data cells are always quoted
    header_writer = csv.writer(buffer, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    row_writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    count = 0

    async with aiofiles.open(path, "w", encoding="utf-8", newline="") as f:
        header_writer.writerow(headers)
        for row in rows:
            row_writer.writerow([_cell(getattr(row, h)) for h in headers])
            count += 1
            if buffer.tell() >= limit:
                await f.write(buffer.getvalue())
                buffer.seek(0)
                buffer.truncate(0)
        if buffer.tell():
            await f.write(buffer.getvalue())
        await f.flush()

    return count


def build_remote_path(job_type: str, job_id=None, now: datetime | None = None) -> str:
    """Storage path for an export: reports/<type>_<timestamp>_<id8>.csv.

    The first 8 hex digits of the job id keep two exports of the same type
    started in the same millisecond apart.
    """
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    # ISO-8601 UTC with ':' and '.' replaced so the name is safe in any store
    stamp = now.strftime("%Y-%m-%dT%H-%M-%S") + f"-{now.microsecond // 1000:03d}Z"
    if job_id is None:
        return f"reports/{job_type}_{stamp}.csv"
    suffix = str(job_id).replace("-", "")[:8]
    return f"reports/{job_type}_{stamp}_{suffix}.csv"
