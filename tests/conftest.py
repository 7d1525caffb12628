"""Shared fixtures: a throwaway SQLite database, local blob storage, seed helpers."""

from __future__ import annotations

import datetime
import os
import tempfile

# Settings are read at import time, so point them somewhere harmless first
_SCRATCH = tempfile.mkdtemp(prefix="report-exports-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SCRATCH}/app.db")
os.environ.setdefault("FILE_STORAGE_PATH", os.path.join(_SCRATCH, "uploads"))
os.environ.setdefault("RUN_WORKER_IN_PROCESS", "false")

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from app.config import settings  # noqa: E402
from app.models import Attendance, Base, Profile, SchoolClass  # noqa: E402
from app.services.file_storage import LocalReportStorage  # noqa: E402
from app.services.job_store import ReportExportStore  # noqa: E402


class StatementRecorder:
    """Collects every SQL statement sent to the database."""

    def __init__(self) -> None:
        self.statements: list[str] = []

    def __call__(self, conn, cursor, statement, parameters, context, executemany) -> None:
        self.statements.append(" ".join(statement.split()))

    def clear(self) -> None:
        self.statements.clear()

    def selects_from(self, table: str) -> list[str]:
        return [s for s in self.statements if s.upper().startswith("SELECT") and f"FROM {table}" in s]

    @property
    def writes(self) -> list[str]:
        return [s for s in self.statements if s.split(" ", 1)[0].upper() in ("INSERT", "UPDATE", "DELETE")]


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sql_log(engine) -> StatementRecorder:
    recorder = StatementRecorder()
    event.listen(engine.sync_engine, "before_cursor_execute", recorder)
    yield recorder
    event.remove(engine.sync_engine, "before_cursor_execute", recorder)


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> ReportExportStore:
    return ReportExportStore(session_factory)


@pytest.fixture
def storage(tmp_path) -> LocalReportStorage:
    return LocalReportStorage(
        base_path=str(tmp_path / "blobs"),
        bucket="reports",
        secret="test-secret",
        public_base_url="http://test",
    )


@pytest.fixture
def export_tmp_dir(tmp_path, monkeypatch):
    """Route temp CSV files into a directory the test can inspect."""
    path = tmp_path / "export-tmp"
    path.mkdir()
    monkeypatch.setattr(settings, "EXPORT_TMP_DIR", str(path))
    return path


@pytest.fixture
def seed_school(session_factory):
    """Insert classes, students and attendance rows.

    attendance rows are (id, date, status, notes, class_id, student_id).
    """

    async def _seed(*, classes=(), students=(), attendance=()) -> None:
        async with session_factory() as db:
            for class_id, name, year_id, course_id in classes:
                db.add(SchoolClass(id=class_id, name=name, academic_year_id=year_id, course_id=course_id))
            for student_id, full_name in students:
                db.add(Profile(id=student_id, full_name=full_name))
            for row_id, day, status, notes, class_id, student_id in attendance:
                db.add(
                    Attendance(
                        id=row_id,
                        date=datetime.date.fromisoformat(day),
                        status=status,
                        notes=notes,
                        class_id=class_id,
                        student_id=student_id,
                    )
                )
            await db.commit()

    return _seed
