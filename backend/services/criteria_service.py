import logging
import os
import threading
import time
from decimal import Decimal

from sqlalchemy import func
from sqlalchemy.orm import Session

from models.criteria import CompanyCriteriaRow, NegativeKeyword
from services.ingestion.classifier import PROJECT_TYPE_KEYWORDS
from services.ingestion.records import DEFAULT_PROJECT_TYPES, CompanyCriteria

logger = logging.getLogger(__name__)

ELIGIBLE_THRESHOLD = int(os.getenv("ELIGIBLE_THRESHOLD", "70"))
REVIEW_THRESHOLD = int(os.getenv("REVIEW_THRESHOLD", "40"))
DEFAULT_TURNOVER_CR = Decimal("4")

_CACHE_TTL_SECONDS = float(os.getenv("CRITERIA_CACHE_TTL_SECONDS", "60"))
_criteria_cache_lock = threading.Lock()
_criteria_cache: dict[str, tuple[float, CompanyCriteria]] = {}


class DuplicateKeywordError(ValueError):
    pass


def invalidate_criteria_cache() -> None:
    with _criteria_cache_lock:
        _criteria_cache.clear()


def get_criteria_row(db: Session) -> CompanyCriteriaRow | None:
    return db.query(CompanyCriteriaRow).order_by(CompanyCriteriaRow.id).first()


def load_criteria_snapshot(db: Session, use_cache: bool = True) -> CompanyCriteria:
    """Frozen criteria for one job: stored turnover/project types plus every negative keyword."""
    now = time.time()
    if use_cache:
        with _criteria_cache_lock:
            cached = _criteria_cache.get("current")
            if cached and cached[0] > now:
                return cached[1]

    row = get_criteria_row(db)
    keywords = [k for (k,) in db.query(NegativeKeyword.keyword).order_by(NegativeKeyword.id).all()]
    if row is None:
        turnover = DEFAULT_TURNOVER_CR
        project_types = DEFAULT_PROJECT_TYPES
    else:
        turnover = Decimal(str(row.turnover_cr)) if row.turnover_cr is not None else DEFAULT_TURNOVER_CR
        project_types = row.project_types or DEFAULT_PROJECT_TYPES

    snapshot = CompanyCriteria(
        turnover_cr=turnover,
        project_types=frozenset(project_types),
        negative_keywords=tuple(keywords),
        eligible_threshold=ELIGIBLE_THRESHOLD,
        review_threshold=REVIEW_THRESHOLD,
    )
    with _criteria_cache_lock:
        _criteria_cache["current"] = (now + _CACHE_TTL_SECONDS, snapshot)
    return snapshot


def save_criteria(
    db: Session,
    turnover_cr: Decimal,
    project_types: list[str],
    updated_by: str | None = None,
) -> CompanyCriteriaRow:
    known = {name.lower(): name for name in PROJECT_TYPE_KEYWORDS}
    cleaned = []
    for name in project_types:
        name = (name or "").strip()
        if not name:
            continue
        # a type without keywords can never match a detected tag
        if name.lower() not in known:
            raise ValueError(f"Unknown project type: {name}")
        name = known[name.lower()]
        if name not in cleaned:
            cleaned.append(name)
    if not cleaned:
        raise ValueError("At least one project type is required")

    row = get_criteria_row(db)
    if row is None:
        row = CompanyCriteriaRow(id=1)
        db.add(row)
    row.turnover_cr = turnover_cr
    row.project_types = cleaned
    row.updated_by = updated_by
    row.updated_at = func.now()
    db.flush()
    invalidate_criteria_cache()
    logger.info("Company criteria updated by %s: turnover=%s types=%s", updated_by, turnover_cr, cleaned)
    return row


def list_negative_keywords(db: Session) -> list[NegativeKeyword]:
    return db.query(NegativeKeyword).order_by(NegativeKeyword.keyword).all()


def add_negative_keyword(
    db: Session,
    keyword: str,
    description: str | None = None,
    created_by: str | None = None,
) -> NegativeKeyword:
    cleaned = (keyword or "").strip().lower()
    if not cleaned:
        raise ValueError("Keyword is required")
    exists = db.query(NegativeKeyword.id).filter(func.lower(NegativeKeyword.keyword) == cleaned).first()
    if exists:
        raise DuplicateKeywordError(f"Keyword '{cleaned}' already exists")

    item = NegativeKeyword(keyword=cleaned, description=description, created_by=created_by)
    db.add(item)
    db.flush()
    invalidate_criteria_cache()
    return item


def delete_negative_keyword(db: Session, keyword_id: int) -> bool:
    item = db.get(NegativeKeyword, keyword_id)
    if item is None:
        return False
    db.delete(item)
    db.flush()
    invalidate_criteria_cache()
    return True
