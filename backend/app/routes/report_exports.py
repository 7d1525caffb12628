"""Report exports API - submit exports, poll status, download signed files."""
from uuid import UUID
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse
from pydantic import ValidationError

from app.database import async_session
from app.schemas.report_export import ReportExportCreate, ReportExportResponse
from app.services.file_storage import LocalReportStorage, StorageError, get_report_storage
from app.services.job_store import ReportExportStore

router = APIRouter(prefix="/api/report-exports", tags=["report-exports"])


def get_store() -> ReportExportStore:
    """FastAPI dependency for the job store."""
    return ReportExportStore(async_session)


@router.post("", response_model=ReportExportResponse, status_code=201)
async def submit_export(
    body: ReportExportCreate,
    store: ReportExportStore = Depends(get_store),
):
    """Enqueue a report export. Poll GET /{id} for the result."""
    try:
        job_id = await store.enqueue(body.type, body.params)
    except ValidationError as e:
        raise HTTPException(422, e.errors(include_url=False, include_context=False))
    return await store.get_by_id(job_id)


@router.get("", response_model=list[ReportExportResponse])
async def list_exports(
    status: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    store: ReportExportStore = Depends(get_store),
):
    """List recent exports, optionally filtered by status."""
    return await store.list_recent(status=status, limit=limit, offset=offset)


@router.get("/files/{remote_path:path}")
async def download_export(
    remote_path: str,
    expires: int = Query(...),
    signature: str = Query(...),
):
    """Serve an archived export from local storage via a signed URL."""
    storage = get_report_storage()
    if not isinstance(storage, LocalReportStorage):
        raise HTTPException(404, "Local file serving is disabled")
    if not storage.verify_signature(remote_path, expires, signature):
        raise HTTPException(403, "Invalid or expired signature")
    try:
        path = storage.object_path(remote_path)
    except StorageError:
        raise HTTPException(404, "File not found")
    if not path.is_file():
        raise HTTPException(404, "File not found")
    return FileResponse(path, media_type="text/csv", filename=path.name)


@router.get("/{job_id}", response_model=ReportExportResponse)
async def get_export(job_id: UUID, store: ReportExportStore = Depends(get_store)):
    """Get export status and, once finished, its result URL or error."""
    job = await store.get_by_id(job_id)
    if not job:
        raise HTTPException(404, "Report export not found")
    return job
