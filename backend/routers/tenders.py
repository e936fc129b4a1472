import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session, selectinload

from authentication.deps import get_current_user, require_admin
from db.deps import get_db
from models.schemas import OVERRIDE_REASONS, OverridePayload, ReanalyzeTextPayload
from models.tenders import Tender
from models.uploads import ExcelUpload
from services.ingestion.errors import ClassificationError
from services.ingestion.progress import UploadJob
from services.ingestion.records import SOURCES, Status
from services.ingestion_queue import enqueue_reanalysis
from services.reanalysis import clear_override, mark_missed, reanalyze_with_text, set_override
from services.tender_repository import effective_status_filter, latest_tenders_query, tender_stats

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/tenders",
    tags=["tenders"],
    dependencies=[Depends(get_current_user)],
)


def _iso(value):
    return value.isoformat() if value is not None else None


def _number(value):
    return float(value) if value is not None else None


def _serialize_change(change) -> dict:
    return {
        "fieldName": change.field_name,
        "oldValue": change.old_value,
        "newValue": change.new_value,
        "detectedAt": _iso(change.detected_at),
    }


def _serialize_tender(tender: Tender, include_changes: bool = False) -> dict:
    item = {
        "id": tender.id,
        "externalId": tender.external_id,
        "source": tender.source,
        "title": tender.title,
        "department": tender.department,
        "organization": tender.organization,
        "location": tender.location,
        "similarCategory": tender.similar_category,
        "estimatedValue": _number(tender.estimated_value),
        "emdAmount": _number(tender.emd_amount),
        "turnoverRequirement": _number(tender.turnover_requirement),
        "publishDate": _iso(tender.publish_date),
        "submissionDeadline": _iso(tender.submission_deadline),
        "openingDate": _iso(tender.opening_date),
        "eligibilityCriteria": tender.eligibility_criteria,
        "checklist": tender.checklist,
        "matchPercentage": tender.match_percentage,
        "status": tender.status,
        "effectiveStatus": tender.effective_status,
        "tags": tender.tags or [],
        "isMsmeExempted": tender.is_msme_exempted,
        "isStartupExempted": tender.is_startup_exempted,
        "notRelevantKeyword": tender.not_relevant_keyword,
        "isMissed": tender.is_missed,
        "previousStatus": tender.previous_status,
        "missedAt": _iso(tender.missed_at),
        "isManualOverride": tender.is_manual_override,
        "overrideStatus": tender.override_status,
        "overrideReason": tender.override_reason,
        "overrideComment": tender.override_comment,
        "overrideBy": tender.override_by,
        "overrideAt": _iso(tender.override_at),
        "previousOverrideStatus": tender.previous_override_status,
        "previousOverrideReason": tender.previous_override_reason,
        "previousOverrideComment": tender.previous_override_comment,
        "isCorrigendum": tender.is_corrigendum,
        "originalTenderId": tender.original_tender_id,
        "isLatest": tender.is_latest,
        "uploadId": tender.upload_id,
        "createdAt": _iso(tender.created_at),
    }
    if include_changes:
        item["changes"] = [_serialize_change(c) for c in tender.changes]
    return item


def _get_tender(db: Session, tender_id: int) -> Tender:
    tender = db.get(Tender, tender_id)
    if tender is None:
        raise HTTPException(status_code=404, detail="Tender not found")
    return tender


@router.get("")
def list_tenders(
    status: str | None = Query(None),
    source: str | None = Query(None),
    missed: bool | None = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    query = latest_tenders_query(db)
    if status:
        if status not in {s.value for s in Status}:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        query = query.filter(effective_status_filter(status))
    if source:
        source = source.strip().lower()
        if source not in SOURCES:
            raise HTTPException(status_code=400, detail=f"Unknown source: {source}")
        query = query.filter(Tender.source == source)
    if missed is not None:
        query = query.filter(Tender.is_missed.is_(missed))

    total = query.count()
    tenders = (
        query.order_by(Tender.match_percentage.desc(), Tender.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return {"total": total, "items": [_serialize_tender(t) for t in tenders]}


@router.get("/corrigendum")
def list_corrigendum_tenders(
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    tenders = (
        latest_tenders_query(db)
        .filter(Tender.is_corrigendum.is_(True))
        .options(selectinload(Tender.changes))
        .order_by(Tender.id.desc())
        .limit(limit)
        .all()
    )
    return {"items": [_serialize_tender(t, include_changes=True) for t in tenders]}


@router.get("/stats")
def get_tender_stats(db: Session = Depends(get_db)):
    return tender_stats(db)


@router.get("/override-reasons")
def list_override_reasons():
    return {"items": list(OVERRIDE_REASONS)}


@router.post("/reanalyze")
def start_reanalysis(
    db: Session = Depends(get_db),
    admin=Depends(require_admin),
):
    job = UploadJob(kind="reanalyze", file_name="reanalysis", uploaded_by=admin.username)
    upload = ExcelUpload(
        job_id=job.job_id,
        kind=job.kind,
        file_name=job.file_name,
        uploaded_by=admin.username,
        status=job.status,
    )
    db.add(upload)
    db.commit()
    job.upload_id = upload.id
    enqueue_reanalysis(job)
    return {"jobId": job.job_id, "status": job.status}


@router.post("/mark-missed")
def mark_missed_tenders(
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    marked = mark_missed(db)
    db.commit()
    return {"marked": marked}


@router.get("/{tender_id}")
def get_tender(tender_id: int, db: Session = Depends(get_db)):
    return _serialize_tender(_get_tender(db, tender_id), include_changes=True)


@router.post("/{tender_id}/override")
def override_tender(
    tender_id: int,
    payload: OverridePayload,
    db: Session = Depends(get_db),
    current_user=Depends(get_current_user),
):
    if payload.override_reason not in OVERRIDE_REASONS:
        raise HTTPException(status_code=400, detail="Unknown override reason")
    tender = _get_tender(db, tender_id)
    set_override(
        tender,
        status=payload.override_status,
        reason=payload.override_reason,
        comment=payload.override_comment,
        user=current_user.username,
    )
    db.commit()
    logger.info("Tender %s overridden to %s by %s", tender_id, payload.override_status, current_user.username)
    return _serialize_tender(tender)


@router.delete("/{tender_id}/override")
def remove_override(tender_id: int, db: Session = Depends(get_db)):
    tender = _get_tender(db, tender_id)
    if not tender.is_manual_override:
        raise HTTPException(status_code=409, detail="Tender has no manual override")
    try:
        clear_override(db, tender)
    except ClassificationError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(exc))
    db.commit()
    return _serialize_tender(tender)


@router.post("/{tender_id}/reanalyze-text")
def reanalyze_tender_text(
    tender_id: int,
    payload: ReanalyzeTextPayload,
    db: Session = Depends(get_db),
):
    tender = _get_tender(db, tender_id)
    try:
        reanalyze_with_text(db, tender, payload.text)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except ClassificationError as exc:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(exc))
    db.commit()
    return _serialize_tender(tender)
