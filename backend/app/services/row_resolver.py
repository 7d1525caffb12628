"""Attendance row fetching and batched name resolution.

Fact rows carry only student/class ids. Names are resolved with one IN
query per entity type over the distinct ids, so lookup cost is two queries
whether the export has one row or ten thousand.
"""
import datetime
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.school import Attendance, Profile, SchoolClass
from app.schemas.report_export import AttendanceExportParams, AttendanceFilters

logger = logging.getLogger(__name__)


@dataclass
class ResolvedRow:
    """One attendance fact with display names in place of raw ids."""
    id: str
    date: datetime.date
    status: str
    notes: str
    student_id: str
    student_name: str
    class_id: str
    class_name: str


async def resolve_class_ids(db: AsyncSession, filters: AttendanceFilters) -> Optional[set[str]]:
    """Resolve academicYearId / courseId into class ids.

    Returns None when neither filter is set. With both set, only classes
    matching both qualify.
    """
    class_ids: Optional[set[str]] = None
    if filters.academic_year_id:
        result = await db.execute(
            select(SchoolClass.id).where(SchoolClass.academic_year_id == filters.academic_year_id)
        )
        class_ids = set(result.scalars().all())
    if filters.course_id:
        result = await db.execute(
            select(SchoolClass.id).where(SchoolClass.course_id == filters.course_id)
        )
        course_class_ids = set(result.scalars().all())
        class_ids = course_class_ids if class_ids is None else class_ids & course_class_ids
    return class_ids


async def fetch_attendance_rows(
    db: AsyncSession, filters: AttendanceFilters, limit: int
) -> list[Attendance]:
    """Fetch raw attendance rows matching the filters, newest first."""
    class_ids = await resolve_class_ids(db, filters)
    if class_ids is not None and not class_ids:
        # Indirect filter matched no class, so nothing can match
        return []

    query = select(Attendance).order_by(Attendance.date.desc(), Attendance.id)
    if filters.date_from:
        query = query.where(Attendance.date >= filters.date_from)
    if filters.date_to:
        query = query.where(Attendance.date <= filters.date_to)
    if filters.class_id:
        query = query.where(Attendance.class_id == filters.class_id)
    if class_ids is not None:
        query = query.where(Attendance.class_id.in_(sorted(class_ids)))
    query = query.limit(limit)

    result = await db.execute(query)
    return list(result.scalars().all())


async def _lookup_names(db: AsyncSession, id_column, name_column, ids: set[str]) -> dict[str, str]:
    if not ids:
        return {}
    result = await db.execute(select(id_column, name_column).where(id_column.in_(sorted(ids))))
    return {row_id: name or "" for row_id, name in result.all()}


async def resolve_rows(db: AsyncSession, rows: Iterable[Attendance]) -> list[ResolvedRow]:
    """Project raw rows into ResolvedRow using one batched lookup per entity."""
    rows = list(rows)
    student_ids = {r.student_id for r in rows if r.student_id}
    class_ids = {r.class_id for r in rows if r.class_id}

    student_names = await _lookup_names(db, Profile.id, Profile.full_name, student_ids)
    class_names = await _lookup_names(db, SchoolClass.id, SchoolClass.name, class_ids)

    return [
        ResolvedRow(
            id=r.id,
            date=r.date,
            status=r.status,
            notes=r.notes or "",
            student_id=r.student_id or "",
            student_name=student_names.get(r.student_id, ""),
            class_id=r.class_id or "",
            class_name=class_names.get(r.class_id, ""),
        )
        for r in rows
    ]


async def build_attendance_rows(db: AsyncSession, params: AttendanceExportParams) -> list[ResolvedRow]:
    """Fetch and resolve the rows for one attendance export."""
    rows = await fetch_attendance_rows(db, params.filters, params.limit)
    logger.info(f"Fetched {len(rows)} attendance row(s) (limit={params.limit})")
    return await resolve_rows(db, rows)
