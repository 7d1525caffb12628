from __future__ import annotations

import pytest
from pydantic import ValidationError

from app.config import MIN_SIGNED_URL_TTL, clamp_row_limit, clamp_ttl, settings
from app.schemas.report_export import AttendanceExportParams, validate_params
from app.services.csv_streamer import ATTENDANCE_HEADERS


def test_clamp_row_limit_bounds() -> None:
    assert clamp_row_limit(None) == settings.REPORTS_ROW_LIMIT
    assert clamp_row_limit(5) == settings.REPORTS_ROW_LIMIT_MIN
    assert clamp_row_limit(500) == 500
    assert clamp_row_limit(1_000_000) == settings.REPORTS_ROW_LIMIT_MAX


def test_clamp_ttl_has_floor_and_default() -> None:
    assert clamp_ttl() == max(MIN_SIGNED_URL_TTL, settings.REPORTS_STORAGE_SIGNED_EXPIRES)
    assert clamp_ttl(1) == 60
    assert clamp_ttl(0) == 60
    assert clamp_ttl(7200) == 7200


def test_attendance_params_accept_camel_case_filters() -> None:
    params = AttendanceExportParams.model_validate(
        {"filters": {"dateFrom": "2024-01-01", "dateTo": "2024-01-31", "classId": "C1"}, "limit": 500}
    )

    assert params.filters.class_id == "C1"
    assert params.filters.date_from.isoformat() == "2024-01-01"
    assert params.limit == 500
    assert params.headers is None


def test_attendance_params_default_limit_and_ignore_extra_keys() -> None:
    params = AttendanceExportParams.model_validate({"requestedAt": "2024-01-01T00:00:00Z", "rowCount": 3000})

    assert params.limit == clamp_row_limit(None)
    assert params.filters.date_from is None


def test_attendance_params_reject_inverted_date_range() -> None:
    with pytest.raises(ValidationError):
        AttendanceExportParams.model_validate({"filters": {"dateFrom": "2024-02-01", "dateTo": "2024-01-01"}})


def test_attendance_params_reject_unknown_headers() -> None:
    with pytest.raises(ValidationError):
        AttendanceExportParams.model_validate({"headers": ["student_id", "password"]})


def test_validate_params_normalizes_registered_types() -> None:
    normalized = validate_params("attendance", {"filters": {"date_from": "2024-01-01"}, "limit": 5})

    assert normalized["filters"]["dateFrom"] == "2024-01-01"
    assert normalized["limit"] == settings.REPORTS_ROW_LIMIT_MIN
    assert AttendanceExportParams.model_validate(normalized).filters.date_from.isoformat() == "2024-01-01"


def test_validate_params_passes_through_unregistered_types() -> None:
    assert validate_params("unknown_report", {"anything": 1}) == {"anything": 1}
    assert validate_params("unknown_report", None) == {}


def test_default_headers_cover_resolved_columns() -> None:
    assert ATTENDANCE_HEADERS == ["student_id", "student_name", "class_id", "class_name", "date", "status", "notes"]
