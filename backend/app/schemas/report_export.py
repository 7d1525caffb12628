"""Report export request/response schemas and per-type job params."""
import uuid
from typing import Optional
from datetime import date, datetime
from pydantic import Field, field_validator, model_validator
from app.config import clamp_row_limit
from app.schemas.base import CamelModel, CamelORMModel
from app.services.csv_streamer import ATTENDANCE_HEADERS


class AttendanceFilters(CamelModel):
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    class_id: Optional[str] = None
    academic_year_id: Optional[str] = None
    course_id: Optional[str] = None

    @model_validator(mode="after")
    def check_date_range(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("dateFrom must not be after dateTo")
        return self


class AttendanceExportParams(CamelModel):
    """Params for type='attendance'. Unknown keys (e.g. requestedAt) are ignored."""
    filters: AttendanceFilters = Field(default_factory=AttendanceFilters)
    limit: int = Field(default_factory=lambda: clamp_row_limit(None))
    headers: Optional[list[str]] = None

    @field_validator("limit", mode="before")
    @classmethod
    def clamp_limit(cls, v):
        return clamp_row_limit(v)

    @field_validator("headers")
    @classmethod
    def check_headers(cls, v):
        if v is None:
            return v
        if not v:
            raise ValueError("headers must not be empty")
        unknown = [h for h in v if h not in ATTENDANCE_HEADERS]
        if unknown:
            raise ValueError(f"Unknown attendance columns: {', '.join(unknown)}")
        return v


# Params model per job type, validated at enqueue time
PARAMS_MODELS = {
    "attendance": AttendanceExportParams,
}


def validate_params(job_type: str, params: Optional[dict]) -> dict:
    """Normalize params for a registered job type.

    Raises pydantic.ValidationError on malformed params. Params for
    unregistered types are stored as given; the worker fails those jobs.
    """
    model = PARAMS_MODELS.get(job_type)
    if model is None:
        return dict(params or {})
    return model.model_validate(params or {}).model_dump(mode="json", by_alias=True)


class ReportExportCreate(CamelModel):
    type: str = Field(min_length=1, max_length=50)
    params: dict = {}


class ReportExportResponse(CamelORMModel):
    id: uuid.UUID
    type: str
    status: str
    params: dict
    attempt_count: int = 0
    result_url: Optional[str] = None
    result_path: Optional[str] = None
    row_count: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
