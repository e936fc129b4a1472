from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

GEM = "gem"
NON_GEM = "non_gem"
SOURCES = (GEM, NON_GEM)


class Status(str, Enum):
    ELIGIBLE = "eligible"
    NOT_ELIGIBLE = "not_eligible"
    NOT_RELEVANT = "not_relevant"
    MANUAL_REVIEW = "manual_review"
    UNABLE_TO_ANALYZE = "unable_to_analyze"


class ResolutionKind(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"
    CORRIGENDUM = "corrigendum"


DEFAULT_PROJECT_TYPES = ("Software", "Website", "Mobile", "IT Projects", "Manpower Deployment")


@dataclass(frozen=True)
class CompanyCriteria:
    """Immutable view of the eligibility policy, taken once per job."""

    turnover_cr: Decimal = Decimal("4")
    project_types: frozenset[str] = frozenset(DEFAULT_PROJECT_TYPES)
    negative_keywords: tuple[str, ...] = ()
    eligible_threshold: int = 70
    review_threshold: int = 40


@dataclass(frozen=True)
class RawRow:
    sheet_row: int  # 1-based, header is row 1
    cells: dict[str, Any]
    values: tuple[Any, ...] = ()


@dataclass(frozen=True)
class TenderRecord:
    external_id: str
    source: str
    title: str
    department: str | None = None
    organization: str | None = None
    location: str | None = None
    similar_category: str | None = None
    estimated_value: Decimal | None = None
    emd_amount: Decimal | None = None
    turnover_requirement: Decimal | None = None
    publish_date: datetime | None = None
    submission_deadline: datetime | None = None
    opening_date: datetime | None = None
    eligibility_criteria: str | None = None
    checklist: str | None = None
    msme_exemption_flag: bool = False
    startup_exemption_flag: bool = False
    raw_data: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.external_id, self.source)

    def with_changes(self, **changes) -> "TenderRecord":
        return replace(self, **changes)


@dataclass(frozen=True)
class ParseError:
    row: int
    reason: str


@dataclass(frozen=True)
class ParseResult:
    record: TenderRecord | None = None
    error: ParseError | None = None

    @property
    def ok(self) -> bool:
        return self.record is not None


@dataclass(frozen=True)
class ClassificationResult:
    match_percentage: int
    status: Status
    tags: tuple[str, ...] = ()
    is_msme_exempted: bool = False
    is_startup_exempted: bool = False
    turnover_required: Decimal | None = None
    not_relevant_keyword: str | None = None


@dataclass(frozen=True)
class FieldChange:
    field_name: str
    old_value: str
    new_value: str


@dataclass(frozen=True)
class Resolution:
    kind: ResolutionKind
    changes: tuple[FieldChange, ...] = ()


@dataclass(frozen=True)
class StoredTender:
    """A persisted version of a tender as seen by the resolver."""

    id: int
    record: TenderRecord
    is_manual_override: bool = False
    override_status: str | None = None
    override_reason: str | None = None
    override_comment: str | None = None
