"""Source tables read by the export worker.

Owned by the school admin application; the worker only queries them.
"""
import datetime
from sqlalchemy import String, Text, Date
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base


class Attendance(Base):
    __tablename__ = "attendance"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    # 'present' | 'absent' | 'late' | 'excused'
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    class_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    student_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)


class Profile(Base):
    """User profile; students are looked up here by id."""
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)


class SchoolClass(Base):
    __tablename__ = "classes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    academic_year_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    course_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
