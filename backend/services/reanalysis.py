import logging
import time
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.session import SessionLocal
from models.tenders import Tender
from services.criteria_service import load_criteria_snapshot
from services.ingestion.classifier import classify, validate_criteria
from services.ingestion.errors import IngestionError
from services.ingestion.pipeline import PUBLISH_EVERY
from services.ingestion.progress import (
    COMPLETE,
    ERROR,
    RUNNING,
    LatencyTracker,
    ProgressBroadcaster,
    UploadJob,
    progress_broadcaster,
)
from services.ingestion.records import Status
from services.tender_repository import (
    apply_classification,
    classification_changed,
    latest_tenders_query,
    tender_to_record,
    write_upload_result,
)

logger = logging.getLogger(__name__)

MISSABLE_STATUSES = (Status.ELIGIBLE.value, Status.MANUAL_REVIEW.value)


def reclassify(db: Session, tender: Tender, criteria=None) -> bool:
    """Classify ``tender`` again in place. Returns True when the stored result changed."""
    if criteria is None:
        criteria = validate_criteria(load_criteria_snapshot(db))
    result = classify(tender_to_record(tender), criteria)
    changed = classification_changed(tender, result)
    if changed:
        apply_classification(tender, result)
    return changed


def reanalyze_with_text(db: Session, tender: Tender, extracted_text: str) -> Tender:
    extra = (extracted_text or "").strip()
    if not extra:
        raise ValueError("Extracted text is empty")
    existing = (tender.eligibility_criteria or "").strip()
    tender.eligibility_criteria = f"{existing}\n\n{extra}" if existing else extra
    reclassify(db, tender)
    db.flush()
    logger.info("Tender %s re-analyzed from document text: status=%s", tender.id, tender.status)
    return tender


def set_override(
    tender: Tender,
    status: str,
    reason: str,
    comment: str | None,
    user: str | None,
) -> Tender:
    tender.is_manual_override = True
    tender.override_status = status
    tender.override_reason = reason
    tender.override_comment = comment
    tender.override_by = user
    tender.override_at = datetime.utcnow()
    return tender


def clear_override(db: Session, tender: Tender) -> Tender:
    tender.is_manual_override = False
    tender.override_status = None
    tender.override_reason = None
    tender.override_comment = None
    tender.override_by = None
    tender.override_at = None
    reclassify(db, tender)
    db.flush()
    return tender


def mark_missed(db: Session, now: datetime | None = None) -> int:
    """Flag latest tenders still worth pursuing whose submission deadline has passed."""
    now = now or datetime.now()
    candidates = (
        latest_tenders_query(db)
        .filter(Tender.is_missed.is_(False))
        .filter(Tender.submission_deadline.isnot(None))
        .filter(Tender.submission_deadline < now)
        .all()
    )
    marked = 0
    for tender in candidates:
        effective = tender.effective_status
        if effective not in MISSABLE_STATUSES:
            continue
        tender.previous_status = effective
        tender.is_missed = True
        tender.missed_at = now
        marked += 1
    db.flush()
    if marked:
        logger.info("Marked %d tenders as missed", marked)
    return marked


def run_reanalysis(
    job: UploadJob,
    session_factory=SessionLocal,
    broadcaster: ProgressBroadcaster = progress_broadcaster,
    publish_every: int = PUBLISH_EVERY,
) -> UploadJob:
    """Re-classify every latest tender with fresh criteria. Overridden tenders are left alone."""
    if job.job_id not in broadcaster:
        broadcaster.open(job)
    job.status = RUNNING
    broadcaster.publish(job.job_id, job.snapshot())
    db = session_factory()
    try:
        try:
            criteria = validate_criteria(load_criteria_snapshot(db, use_cache=False))
            tender_ids = [tid for (tid,) in latest_tenders_query(db).with_entities(Tender.id).order_by(Tender.id)]
        except SQLAlchemyError as exc:
            raise IngestionError(f"Storage is unreachable: {exc}") from exc

        job.total_rows = len(tender_ids)
        job.current_sheet = "tenders"
        broadcaster.publish(job.job_id, job.snapshot())

        latency = LatencyTracker()
        for tender_id in tender_ids:
            started = time.monotonic()
            try:
                tender = db.get(Tender, tender_id)
                if tender is None or not tender.is_latest or tender.is_manual_override:
                    job.skipped_count += 1
                elif reclassify(db, tender, criteria):
                    db.commit()
                    job.updated_count += 1
                job.processed_rows += 1
            except SQLAlchemyError as exc:
                db.rollback()
                job.failed_count += 1
                logger.warning("Re-analysis of tender %s failed: %s", tender_id, exc)
            latency.record(time.monotonic() - started)
            done = job.processed_rows + job.failed_count
            job.estimated_time_remaining = latency.eta(job.total_rows - done)
            if done % max(1, publish_every) == 0:
                broadcaster.publish(job.job_id, job.snapshot())

        job.status = COMPLETE
        job.estimated_time_remaining = 0
    except IngestionError as exc:
        logger.error("REANALYZE failed: job=%s error=%s", job.job_id, exc)
        job.status = ERROR
        job.message = str(exc)
    except Exception as exc:
        logger.exception("REANALYZE crashed: job=%s", job.job_id)
        job.status = ERROR
        job.message = f"Unexpected error: {exc}"
    finally:
        try:
            write_upload_result(db, job)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("REANALYZE could not record result: job=%s error=%s", job.job_id, exc)
        db.close()

    broadcaster.publish(job.job_id, job.snapshot())
    logger.info(
        "REANALYZE %s: job=%s total=%s updated=%s skipped=%s failed=%s",
        job.status,
        job.job_id,
        job.total_rows,
        job.updated_count,
        job.skipped_count,
        job.failed_count,
    )
    return job
