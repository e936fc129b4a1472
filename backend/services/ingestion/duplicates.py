from datetime import date, datetime
from decimal import Decimal
from typing import Any

from services.ingestion.records import FieldChange, Resolution, ResolutionKind, TenderRecord

# (record attribute, reported field name), compared in this order.
# The order is kept on the stored change rows.
TRACKED_FIELDS = (
    ("title", "title"),
    ("department", "department"),
    ("organization", "organization"),
    ("estimated_value", "estimatedValue"),
    ("emd_amount", "emdAmount"),
    ("turnover_requirement", "turnoverRequirement"),
    ("publish_date", "publishDate"),
    ("submission_deadline", "submissionDeadline"),
    ("opening_date", "openingDate"),
    ("eligibility_criteria", "eligibilityCriteria"),
    ("checklist", "checklist"),
)
TRACKED_FIELD_NAMES = tuple(name for _, name in TRACKED_FIELDS)


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    return str(value)


def _differs(old: Any, new: Any) -> bool:
    if old is None or new is None:
        return (old is None) != (new is None)
    return old != new


def diff_records(prior: TenderRecord, new: TenderRecord) -> tuple[FieldChange, ...]:
    changes = []
    for attr, name in TRACKED_FIELDS:
        old_value = getattr(prior, attr)
        new_value = getattr(new, attr)
        if _differs(old_value, new_value):
            changes.append(FieldChange(name, format_value(old_value), format_value(new_value)))
    return tuple(changes)


def resolve(new: TenderRecord, prior: TenderRecord | None) -> Resolution:
    """Decide whether ``new`` is a first sighting, a re-upload or a corrigendum of ``prior``."""
    if prior is None:
        return Resolution(ResolutionKind.NEW)
    changes = diff_records(prior, new)
    if not changes:
        return Resolution(ResolutionKind.DUPLICATE)
    return Resolution(ResolutionKind.CORRIGENDUM, changes)
