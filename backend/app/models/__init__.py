"""Import all models so SQLAlchemy metadata knows about them."""
from app.models.base import Base
from app.models.report_export import ReportExport
from app.models.school import Attendance, Profile, SchoolClass

__all__ = [
    "Base",
    "ReportExport",
    "Attendance", "Profile", "SchoolClass",
]
