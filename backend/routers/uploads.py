import json
import logging
import os

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from authentication.deps import get_current_user
from db.deps import get_db
from models.uploads import ExcelUpload
from services.ingestion.progress import UnknownJobError, UploadJob, progress_broadcaster
from services.ingestion_queue import enqueue_upload

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
ALLOWED_EXTENSIONS = (".xlsx", ".xls")

router = APIRouter(
    prefix="/uploads",
    tags=["uploads"],
    dependencies=[Depends(get_current_user)],
)


def _serialize_upload(upload: ExcelUpload) -> dict:
    return {
        "id": upload.id,
        "jobId": upload.job_id,
        "kind": upload.kind,
        "fileName": upload.file_name,
        "uploadedBy": upload.uploaded_by,
        "status": upload.status,
        "totalRows": upload.total_rows,
        "gemCount": upload.gem_count,
        "nonGemCount": upload.non_gem_count,
        "failedCount": upload.failed_count,
        "newCount": upload.new_count,
        "duplicateCount": upload.duplicate_count,
        "corrigendumCount": upload.corrigendum_count,
        "message": upload.message,
        "uploadedAt": upload.uploaded_at.isoformat() if upload.uploaded_at else None,
        "processedAt": upload.processed_at.isoformat() if upload.processed_at else None,
    }


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event, default=str)}\n\n"


@router.post("")
async def upload_workbook(
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    name = file.filename or ""
    if not name.lower().endswith(ALLOWED_EXTENSIONS):
        raise HTTPException(status_code=400, detail="Only .xlsx or .xls files are supported.")

    contents = await file.read()
    if not contents:
        raise HTTPException(status_code=400, detail="Empty file.")
    if len(contents) > MAX_UPLOAD_BYTES:
        raise HTTPException(status_code=413, detail="File is too large.")

    job = UploadJob(kind="upload", file_name=name, uploaded_by=current_user.username)
    upload = ExcelUpload(
        job_id=job.job_id,
        kind=job.kind,
        file_name=name,
        uploaded_by=current_user.username,
        status=job.status,
    )
    db.add(upload)
    db.commit()
    db.refresh(upload)

    job.upload_id = upload.id
    enqueue_upload(job, contents)

    logger.info("UPLOAD: file=%s bytes=%s job=%s by=%s", name, len(contents), job.job_id, current_user.username)
    return {"jobId": job.job_id, "uploadId": upload.id, "status": job.status}


@router.get("")
def list_uploads(
    kind: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    query = db.query(ExcelUpload)
    if kind:
        query = query.filter(ExcelUpload.kind == kind.strip().lower())
    uploads = query.order_by(ExcelUpload.uploaded_at.desc(), ExcelUpload.id.desc()).limit(limit).all()
    return {"items": [_serialize_upload(u) for u in uploads]}


@router.get("/jobs/{job_id}")
def get_job(job_id: str):
    snapshot = progress_broadcaster.latest(job_id)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return snapshot.to_event()


@router.get("/jobs/{job_id}/events")
async def job_events(job_id: str):
    async def event_stream():
        try:
            async for snapshot in progress_broadcaster.stream(job_id):
                yield _sse(snapshot.to_event())
        except UnknownJobError:
            yield _sse({"type": "error", "jobId": job_id, "message": "Unknown or expired job"})

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
