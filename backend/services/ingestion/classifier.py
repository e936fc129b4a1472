"""
Rule-based eligibility scoring for tender records.

Everything here is a pure function of ``(record, criteria)``: the same inputs
always give the same percentage, status and tags.

Score components (max 100):
    turnover  50  exempt=50, no requirement=35, met=35..50 by headroom, unmet=0
    tags      40  share of detected tags the company works in
    sector    10  no out-of-sector terms (civil, construction, ...)
"""

import re
from functools import lru_cache
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from services.ingestion.errors import ClassificationError
from services.ingestion.records import ClassificationResult, CompanyCriteria, Status, TenderRecord

PROJECT_TYPE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Software": ("software", "application", "app development", "programming", "coding", "erp", "crm", "portal"),
    "Website": (
        "website",
        "web portal",
        "web development",
        "web application",
        "web design",
        "wordpress",
        "e-commerce",
        "ecommerce",
    ),
    "Mobile": ("mobile", "android", "ios", "mobile app", "smartphone", "tablet"),
    "IT Projects": (
        "it project",
        "information technology",
        "ict",
        "digitization",
        "digitisation",
        "automation",
        "computerization",
        "ites",
        "it/ites",
        "it services",
    ),
    "Manpower Deployment": (
        "manpower",
        "staff",
        "personnel",
        "outsourcing",
        "deployment",
        "recruitment",
        "human resource",
    ),
    "Consulting": ("consulting", "consultancy", "advisory", "assessment"),
    "Maintenance": ("maintenance", "amc", "annual maintenance", "support services"),
    "Cloud Services": ("cloud", "aws", "azure", "hosting", "server", "datacenter", "data center"),
    "Data Analytics": (
        "analytics",
        "business intelligence",
        "dashboard",
        "reporting",
        "machine learning",
        "artificial intelligence",
    ),
    "Cybersecurity": ("cyber", "cybersecurity", "firewall", "encryption", "ssl", "vapt", "penetration"),
}

OUT_OF_SECTOR_TERMS = (
    "civil",
    "construction",
    "building",
    "road",
    "bridge",
    "medical",
    "pharmaceutical",
    "electrical",
    "mechanical",
)

MSME_EXEMPTION_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"msme\s*(are|is)?\s*exempt(ed)?",
        r"exempt(ed|ion)?\s*(for|to)?\s*msme",
        r"relaxation\s*(for|to)?\s*msme",
        r"msme\s*relaxation",
        r"waiver\s*(for|to)?\s*msme",
        r"turnover\s*(requirement|criteria)?\s*(is\s*)?(exempt(ed)?|waived|relaxed|not\s*applicable)\s*(for|to)?\s*msme",
        r"prior\s*turnover\s*(is\s*)?(exempt(ed)?|waived|not\s*required)",
        r"turnover\s*criteria\s*(is\s*)?(relaxed|waived|exempted)",
    )
]

STARTUP_EXEMPTION_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"startups?\s*(are|is)?\s*exempt(ed)?",
        r"exempt(ed|ion)?\s*(for|to)?\s*startup",
        r"relaxation\s*(for|to)?\s*startup",
        r"startup\s*relaxation",
        r"dpiit\s*registered\s*startup",
        r"recogni[sz]ed\s*startup",
        r"turnover\s*(requirement|criteria)?\s*(is\s*)?(exempt(ed)?|waived|relaxed|not\s*applicable)\s*(for|to)?\s*startup",
    )
]

NO_EXEMPTION_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"no\s*exemption",
        r"exemption\s*not\s*(allowed|applicable)",
        r"no\s*relaxation",
        r"relaxation\s*not\s*allowed",
        r"strictly\s*required",
    )
]

_CRORE_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"turnover[^.]*?(?:rs\.?|inr|₹)?\s*(\d+(?:\.\d+)?)\s*(?:crores?|cr\b)",
        r"(?:rs\.?|inr|₹)\s*(\d+(?:\.\d+)?)\s*(?:crores?|cr\b)",
        r"(?:at\s*least|minimum|min\.?)\s*(?:rs\.?\s*)?(\d+(?:\.\d+)?)\s*(?:crores?|cr\b)",
    )
]

_LAKH_PATTERNS = [
    re.compile(p, re.I)
    for p in (
        r"turnover[^.]*?(?:rs\.?|inr|₹)?\s*(\d+(?:\.\d+)?)\s*(?:lakhs?|lacs?)",
        r"(?:rs\.?|inr|₹)\s*(\d+(?:\.\d+)?)\s*(?:lakhs?|lacs?)",
    )
]

TURNOVER_WEIGHT = 50
TURNOVER_BASE = 35
TAG_WEIGHT = 40
SECTOR_WEIGHT = 10
NOT_ELIGIBLE_CAP = 40


@lru_cache(maxsize=512)
def _keyword_pattern(keyword: str) -> re.Pattern:
    return re.compile(r"(?<![a-z0-9])" + re.escape(keyword.lower()) + r"(?![a-z0-9])")


_TAG_PATTERNS = {
    tag: [_keyword_pattern(k) for k in keywords] for tag, keywords in PROJECT_TYPE_KEYWORDS.items()
}
_SECTOR_PATTERNS = [_keyword_pattern(term) for term in OUT_OF_SECTOR_TERMS]


def validate_criteria(criteria: CompanyCriteria) -> CompanyCriteria:
    try:
        turnover = Decimal(criteria.turnover_cr)
    except (InvalidOperation, TypeError, ValueError):
        raise ClassificationError(f"Company turnover is not a number: {criteria.turnover_cr!r}")
    if not turnover.is_finite() or turnover < 0:
        raise ClassificationError(f"Company turnover must be a non-negative number, got {turnover}")
    if not criteria.project_types or not all(
        isinstance(p, str) and p.strip() for p in criteria.project_types
    ):
        raise ClassificationError("Project types must be a non-empty list of names")
    if not all(isinstance(k, str) and k.strip() for k in criteria.negative_keywords):
        raise ClassificationError("Negative keywords must be non-empty strings")
    if not 0 <= criteria.review_threshold <= criteria.eligible_threshold <= 100:
        raise ClassificationError(
            f"Thresholds out of order: review={criteria.review_threshold} eligible={criteria.eligible_threshold}"
        )
    return criteria


def analysis_text(record: TenderRecord) -> str:
    parts = (record.title, record.eligibility_criteria, record.checklist, record.similar_category)
    return " ".join(p for p in parts if p).lower()


def detect_tags(text: str) -> tuple[str, ...]:
    if not text:
        return ()
    found = [tag for tag, patterns in _TAG_PATTERNS.items() if any(p.search(text) for p in patterns)]
    return tuple(sorted(found))


def find_negative_keyword(text: str, negative_keywords) -> str | None:
    if not text:
        return None
    for keyword in negative_keywords:
        if _keyword_pattern(keyword.strip()).search(text):
            return keyword
    return None


def _matches_any(text: str, patterns) -> bool:
    return any(p.search(text) for p in patterns)


def detect_exemptions(text: str) -> tuple[bool, bool]:
    """(msme, startup) exemption stated in free text."""
    if not text or _matches_any(text, NO_EXEMPTION_PATTERNS):
        return False, False
    return _matches_any(text, MSME_EXEMPTION_PATTERNS), _matches_any(text, STARTUP_EXEMPTION_PATTERNS)


def extract_turnover_requirement(text: str) -> Decimal | None:
    """Turnover requirement in crores stated in free text, if any."""
    if not text:
        return None
    for pattern in _CRORE_PATTERNS:
        match = pattern.search(text)
        if match:
            amount = Decimal(match.group(1))
            if 0 < amount < 10000:
                return amount
    for pattern in _LAKH_PATTERNS:
        match = pattern.search(text)
        if match:
            amount = Decimal(match.group(1))
            if amount > 0:
                return amount / Decimal(100)
    return None


def turnover_score(exempt: bool, required: Decimal | None, company: Decimal) -> float:
    if exempt:
        return float(TURNOVER_WEIGHT)
    if required is None:
        return float(TURNOVER_BASE)
    if required > company:
        return 0.0
    if company <= 0:
        return float(TURNOVER_BASE)
    headroom = min(Decimal(1), (company - required) / company)
    return TURNOVER_BASE + (TURNOVER_WEIGHT - TURNOVER_BASE) * float(headroom)


def tag_score(tags, project_types) -> float:
    if not tags:
        return 0.0
    overlap = len(set(tags) & set(project_types))
    return TAG_WEIGHT * overlap / len(tags)


def _round_percentage(value: float) -> int:
    rounded = Decimal(repr(value)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    return max(0, min(100, int(rounded)))


def classify(record: TenderRecord, criteria: CompanyCriteria) -> ClassificationResult:
    text = analysis_text(record)
    tags = detect_tags(text)
    overlapping = set(tags) & set(criteria.project_types)

    negative = find_negative_keyword(text, criteria.negative_keywords)
    if negative is not None and not overlapping:
        return ClassificationResult(
            match_percentage=0,
            status=Status.NOT_RELEVANT,
            tags=tags,
            not_relevant_keyword=negative,
        )

    text_msme, text_startup = detect_exemptions(text)
    is_msme = record.msme_exemption_flag or text_msme
    is_startup = record.startup_exemption_flag or text_startup
    exempt = is_msme or is_startup

    required = record.turnover_requirement
    if required is None:
        required = extract_turnover_requirement(text)
    company = Decimal(criteria.turnover_cr)
    turnover_failed = not exempt and required is not None and required > company

    eligibility_text = (record.eligibility_criteria or "").strip()
    if not eligibility_text and required is None and not tags:
        return ClassificationResult(
            match_percentage=0,
            status=Status.UNABLE_TO_ANALYZE,
            is_msme_exempted=is_msme,
            is_startup_exempted=is_startup,
        )

    sector_ok = not any(p.search(text) for p in _SECTOR_PATTERNS)
    score = (
        turnover_score(exempt, required, company)
        + tag_score(tags, criteria.project_types)
        + (SECTOR_WEIGHT if sector_ok else 0)
    )
    percentage = _round_percentage(score)

    if turnover_failed:
        status = Status.NOT_ELIGIBLE
        percentage = min(percentage, NOT_ELIGIBLE_CAP)
    elif percentage >= criteria.eligible_threshold:
        status = Status.ELIGIBLE
    elif percentage >= criteria.review_threshold:
        status = Status.MANUAL_REVIEW
    else:
        status = Status.NOT_ELIGIBLE

    return ClassificationResult(
        match_percentage=percentage,
        status=status,
        tags=tags,
        is_msme_exempted=is_msme,
        is_startup_exempted=is_startup,
        turnover_required=required,
    )
