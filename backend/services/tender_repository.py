import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import and_, func, or_, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from db.session import SessionLocal
from models.tenders import CorrigendumChange, Tender
from models.uploads import ExcelUpload
from services.criteria_service import load_criteria_snapshot
from services.ingestion.errors import StorageError
from services.ingestion.records import (
    ClassificationResult,
    CompanyCriteria,
    FieldChange,
    Status,
    StoredTender,
    TenderRecord,
)
from services.ingestion.store import TenderStore

logger = logging.getLogger(__name__)

RECORD_COLUMNS = (
    "external_id",
    "source",
    "title",
    "department",
    "organization",
    "location",
    "similar_category",
    "estimated_value",
    "emd_amount",
    "turnover_requirement",
    "publish_date",
    "submission_deadline",
    "opening_date",
    "eligibility_criteria",
    "checklist",
    "msme_exemption_flag",
    "startup_exemption_flag",
    "raw_data",
)


def _decimal(value) -> Decimal | None:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def tender_to_record(tender: Tender) -> TenderRecord:
    return TenderRecord(
        external_id=tender.external_id,
        source=tender.source,
        title=tender.title or "",
        department=tender.department,
        organization=tender.organization,
        location=tender.location,
        similar_category=tender.similar_category,
        estimated_value=_decimal(tender.estimated_value),
        emd_amount=_decimal(tender.emd_amount),
        turnover_requirement=_decimal(tender.turnover_requirement),
        publish_date=tender.publish_date,
        submission_deadline=tender.submission_deadline,
        opening_date=tender.opening_date,
        eligibility_criteria=tender.eligibility_criteria,
        checklist=tender.checklist,
        msme_exemption_flag=bool(tender.msme_exemption_flag),
        startup_exemption_flag=bool(tender.startup_exemption_flag),
        raw_data=tender.raw_data or {},
    )


def to_stored(tender: Tender) -> StoredTender:
    return StoredTender(
        id=tender.id,
        record=tender_to_record(tender),
        is_manual_override=bool(tender.is_manual_override),
        override_status=tender.override_status,
        override_reason=tender.override_reason,
        override_comment=tender.override_comment,
    )


def apply_classification(tender: Tender, result: ClassificationResult) -> None:
    tender.match_percentage = result.match_percentage
    tender.status = result.status.value
    tender.tags = list(result.tags)
    tender.is_msme_exempted = result.is_msme_exempted
    tender.is_startup_exempted = result.is_startup_exempted
    tender.not_relevant_keyword = result.not_relevant_keyword


def classification_changed(tender: Tender, result: ClassificationResult) -> bool:
    return (
        tender.match_percentage != result.match_percentage
        or tender.status != result.status.value
        or list(tender.tags or []) != list(result.tags)
        or bool(tender.is_msme_exempted) != result.is_msme_exempted
        or bool(tender.is_startup_exempted) != result.is_startup_exempted
        or tender.not_relevant_keyword != result.not_relevant_keyword
    )


def build_tender(record: TenderRecord, result: ClassificationResult, upload_id: int | None) -> Tender:
    tender = Tender(upload_id=upload_id, is_latest=True)
    for name in RECORD_COLUMNS:
        setattr(tender, name, getattr(record, name))
    apply_classification(tender, result)
    return tender


def latest_tenders_query(db: Session):
    return db.query(Tender).filter(Tender.is_latest.is_(True))


def effective_status_filter(status: str):
    return or_(
        and_(Tender.is_manual_override.is_(True), Tender.override_status == status),
        and_(Tender.is_manual_override.isnot(True), Tender.status == status),
    )


def tender_stats(db: Session, now: datetime | None = None) -> dict:
    """Dashboard counters over the latest tender versions. Uploads are counted from UTC midnight."""
    now = now or datetime.now(timezone.utc)
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    latest = latest_tenders_query(db)
    return {
        "total": latest.count(),
        "fullMatch": latest.filter(Tender.match_percentage == 100).count(),
        "pendingAnalysis": latest.filter(effective_status_filter(Status.UNABLE_TO_ANALYZE.value)).count(),
        "notEligible": latest.filter(effective_status_filter(Status.NOT_ELIGIBLE.value)).count(),
        "todayUploads": (
            db.query(ExcelUpload)
            .filter(ExcelUpload.kind == "upload", ExcelUpload.uploaded_at >= midnight)
            .count()
        ),
    }


def write_upload_result(db: Session, job) -> None:
    if job.upload_id is None:
        return
    upload = db.get(ExcelUpload, job.upload_id)
    if upload is None:
        logger.warning("Upload record %s disappeared before job %s finished", job.upload_id, job.job_id)
        return
    upload.status = job.status
    upload.total_rows = job.total_rows
    upload.gem_count = job.gem_count
    upload.non_gem_count = job.non_gem_count
    upload.failed_count = job.failed_count
    upload.new_count = job.new_count
    upload.duplicate_count = job.duplicate_count
    upload.corrigendum_count = job.corrigendum_count
    upload.message = job.message
    upload.processed_at = func.now()


class SqlTenderStore(TenderStore):
    """TenderStore over one SQLAlchemy session, committing after every record."""

    def __init__(self, session_factory=SessionLocal):
        self._session_factory = session_factory
        self._db: Session | None = None

    @property
    def db(self) -> Session:
        if self._db is None:
            self._db = self._session_factory()
        return self._db

    @contextmanager
    def _guard(self, action: str):
        try:
            yield
        except SQLAlchemyError as exc:
            try:
                self.db.rollback()
            except SQLAlchemyError:
                logger.warning("Rollback failed after %s error", action)
            raise StorageError(f"{action} failed: {exc.__class__.__name__}: {exc}") from exc

    def ping(self) -> None:
        with self._guard("Storage ping"):
            self.db.execute(text("SELECT 1"))

    def load_criteria(self) -> CompanyCriteria:
        with self._guard("Criteria load"):
            return load_criteria_snapshot(self.db)

    def find_latest(self, key: tuple[str, str]) -> StoredTender | None:
        external_id, source = key
        with self._guard("Tender lookup"):
            tender = (
                latest_tenders_query(self.db)
                .filter(Tender.external_id == external_id, Tender.source == source)
                .order_by(Tender.id.desc())
                .first()
            )
            return to_stored(tender) if tender is not None else None

    def save_new(self, record, result, upload_id) -> StoredTender:
        with self._guard("Tender insert"):
            tender = build_tender(record, result, upload_id)
            self.db.add(tender)
            self.db.commit()
            return to_stored(tender)

    def save_corrigendum(
        self,
        record: TenderRecord,
        result: ClassificationResult,
        prior: StoredTender,
        changes: tuple[FieldChange, ...],
        upload_id: int | None,
    ) -> StoredTender:
        external_id, source = record.key
        with self._guard("Corrigendum insert"):
            (
                self.db.query(Tender)
                .filter(
                    Tender.external_id == external_id,
                    Tender.source == source,
                    Tender.is_latest.is_(True),
                )
                .update({Tender.is_latest: False}, synchronize_session=False)
            )
            tender = build_tender(record, result, upload_id)
            tender.is_corrigendum = True
            tender.original_tender_id = prior.id
            if prior.is_manual_override:
                tender.previous_override_status = prior.override_status
                tender.previous_override_reason = prior.override_reason
                tender.previous_override_comment = prior.override_comment
            tender.changes = [
                CorrigendumChange(
                    original_tender_id=prior.id,
                    position=position,
                    field_name=change.field_name,
                    old_value=change.old_value,
                    new_value=change.new_value,
                )
                for position, change in enumerate(changes)
            ]
            self.db.add(tender)
            self.db.commit()
            return to_stored(tender)

    def finish_upload(self, job) -> None:
        with self._guard("Upload record update"):
            write_upload_result(self.db, job)
            self.db.commit()

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None
