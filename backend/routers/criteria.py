from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from authentication.deps import get_current_user, require_admin
from db.deps import get_db
from models.schemas import CriteriaPayload, NegativeKeywordPayload
from services.criteria_service import (
    DuplicateKeywordError,
    add_negative_keyword,
    delete_negative_keyword,
    get_criteria_row,
    invalidate_criteria_cache,
    list_negative_keywords,
    load_criteria_snapshot,
    save_criteria,
)
from services.ingestion.classifier import PROJECT_TYPE_KEYWORDS

router = APIRouter(
    prefix="/criteria",
    tags=["criteria"],
    dependencies=[Depends(get_current_user)],
)


def _serialize_keyword(item) -> dict:
    return {
        "id": item.id,
        "keyword": item.keyword,
        "description": item.description,
        "createdBy": item.created_by,
        "createdAt": item.created_at.isoformat() if item.created_at else None,
    }


@router.get("")
def get_criteria(db: Session = Depends(get_db)):
    snapshot = load_criteria_snapshot(db, use_cache=False)
    row = get_criteria_row(db)
    return {
        "turnoverCr": float(snapshot.turnover_cr),
        "projectTypes": sorted(snapshot.project_types),
        "availableProjectTypes": list(PROJECT_TYPE_KEYWORDS),
        "eligibleThreshold": snapshot.eligible_threshold,
        "reviewThreshold": snapshot.review_threshold,
        "updatedBy": row.updated_by if row else None,
        "updatedAt": row.updated_at.isoformat() if row and row.updated_at else None,
    }


@router.put("")
def update_criteria(
    payload: CriteriaPayload,
    db: Session = Depends(get_db),
    admin=Depends(require_admin),
):
    try:
        save_criteria(db, payload.turnover_cr, payload.project_types, updated_by=admin.username)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    db.commit()
    invalidate_criteria_cache()
    return get_criteria(db)


@router.get("/negative-keywords")
def get_negative_keywords(db: Session = Depends(get_db)):
    return {"items": [_serialize_keyword(k) for k in list_negative_keywords(db)]}


@router.post("/negative-keywords", status_code=201)
def create_negative_keyword(
    payload: NegativeKeywordPayload,
    db: Session = Depends(get_db),
    admin=Depends(require_admin),
):
    try:
        item = add_negative_keyword(db, payload.keyword, payload.description, created_by=admin.username)
    except DuplicateKeywordError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    db.commit()
    invalidate_criteria_cache()
    return _serialize_keyword(item)


@router.delete("/negative-keywords/{keyword_id}")
def remove_negative_keyword(
    keyword_id: int,
    db: Session = Depends(get_db),
    _=Depends(require_admin),
):
    if not delete_negative_keyword(db, keyword_id):
        raise HTTPException(status_code=404, detail="Keyword not found")
    db.commit()
    invalidate_criteria_cache()
    return {"deleted": True, "id": keyword_id}
