import numbers
import re
from abc import ABC
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import pandas as pd

from services.ingestion.records import GEM, NON_GEM, ParseError, ParseResult, RawRow, TenderRecord

BLANK_MARKERS = {"", "na", "n/a", "nil", "none", "nan", "-", "--"}
TRUTHY_FLAGS = {"yes", "y", "true", "1", "exempted", "applicable"}

_MONEY_QUANT = Decimal("0.01")
_TURNOVER_QUANT = Decimal("0.0001")
_EXCEL_EPOCH = datetime(1899, 12, 30)
_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")
_DIGIT_RE = re.compile(r"\d")
_CURRENCY_RE = re.compile(r"(?i)(₹|rs\.?|inr|/-|,|\s)")
_CRORE_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:crores?|cr\b\.?)")
_LAKH_RE = re.compile(r"(\d+(?:\.\d+)?)\s*(?:lakhs?|lacs?|l\b)")

# normalized header aliases for the documented export layout
COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "external_id": ("t247id", "tenderid", "bidnumber", "bidno", "tenderno", "tendernumber"),
    "reference_no": ("referenceno", "refno"),
    "title": ("title", "tendertitle", "tenderbrief", "brief", "subject", "workdescription"),
    "department": ("department", "dept", "ministry"),
    "organization": ("organization", "organisation", "buyerorganization", "buyer", "org"),
    "location": ("location", "state"),
    "estimated_value": ("estimatedvalue", "tendervalue", "estimatedcost", "value"),
    "emd_amount": ("emd", "emdamount", "earnestmoney", "earnestmoneydeposit"),
    "turnover_requirement": (
        "turnover",
        "turnoverrequirement",
        "annualturnover",
        "minturnover",
        "minimumaverageannualturnoverofthebidder",
    ),
    "publish_date": ("publishdate", "publishedon", "bidstartdate", "publicationdate"),
    "submission_deadline": (
        "submissiondeadline",
        "deadline",
        "duedate",
        "bidenddate",
        "closingdate",
        "lastdate",
        "bidsubmissionenddate",
    ),
    "opening_date": ("openingdate", "bidopeningdate"),
    "eligibility_criteria": (
        "eligibilitycriteria",
        "eligibility",
        "qualification",
        "qualifyingcriteria",
        "prequalificationcriteria",
    ),
    "checklist": ("checklist", "requireddocuments", "documentlist"),
    "msme_exemption": ("msmeexemption", "msmeexempted", "msme"),
    "startup_exemption": ("startupexemption", "startupexempted", "startup"),
    "similar_category": ("similarcategory",),
}


class _CellError(ValueError):
    pass


def normalize_header(name: Any) -> str:
    return re.sub(r"[^a-z0-9]", "", str(name).lower())


def column_index(letters: str) -> int:
    """Zero-based index of a spreadsheet column letter (``"AU"`` -> 46)."""
    index = 0
    for char in letters.upper():
        index = index * 26 + (ord(char) - ord("A") + 1)
    return index - 1


def is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in BLANK_MARKERS
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def json_safe(value: Any):
    if is_blank(value) and not isinstance(value, str):
        return None
    if isinstance(value, float) and value in (float("inf"), float("-inf")):
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if hasattr(value, "item"):
        return value.item()
    return value


def clean_json_row(row: dict) -> dict:
    return {str(k): json_safe(v) for k, v in row.items()}


def _text(value: Any) -> str | None:
    if is_blank(value):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    text = str(value).strip()
    return text or None


def _amount(value: Any, label: str) -> Decimal | None:
    if is_blank(value):
        return None
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        number = Decimal(str(value))
    else:
        cleaned = _CURRENCY_RE.sub("", str(value))
        try:
            number = Decimal(cleaned)
        except InvalidOperation:
            raise _CellError(f"{label} is not a number: {value!r}")
    if not number.is_finite():
        raise _CellError(f"{label} is not a number: {value!r}")
    return number.quantize(_MONEY_QUANT)


def _turnover(value: Any, default_unit: str) -> Decimal | None:
    """Turnover in crores. Units in the cell win over the sheet default."""
    if is_blank(value):
        return None
    divisor = Decimal(100) if default_unit == "lakh" else Decimal(1)
    if isinstance(value, numbers.Real) and not isinstance(value, bool):
        number = Decimal(str(value)) / divisor
    else:
        text = str(value).lower().replace(",", "")
        crore = _CRORE_RE.search(text)
        lakh = _LAKH_RE.search(text)
        try:
            if crore:
                number = Decimal(crore.group(1))
            elif lakh:
                number = Decimal(lakh.group(1)) / Decimal(100)
            else:
                number = Decimal(_CURRENCY_RE.sub("", text)) / divisor
        except InvalidOperation:
            raise _CellError(f"turnover requirement is not a number: {value!r}")
    if not number.is_finite() or number < 0:
        raise _CellError(f"turnover requirement is not a number: {value!r}")
    return number.quantize(_TURNOVER_QUANT)


def _date(value: Any, label: str) -> datetime | None:
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        parsed = pd.Timestamp(value).to_pydatetime()
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, numbers.Real) and not isinstance(value, bool):
        try:
            parsed = _EXCEL_EPOCH + timedelta(days=float(value))
        except OverflowError:
            raise _CellError(f"{label} is not a date: {value!r}")
    else:
        text = str(value).strip()
        # relative words like "now" or "today" would parse to the current time
        if not _DIGIT_RE.search(text):
            raise _CellError(f"{label} is not a date: {value!r}")
        try:
            if _ISO_DATE_RE.match(text):
                stamp = pd.to_datetime(text)
            else:
                stamp = pd.to_datetime(text, dayfirst=True)
        except (ValueError, TypeError, OverflowError):
            raise _CellError(f"{label} is not a date: {value!r}")
        if pd.isna(stamp):
            raise _CellError(f"{label} is not a date: {value!r}")
        parsed = stamp.to_pydatetime()
    return parsed.replace(tzinfo=None)


def _flag(value: Any) -> bool:
    if is_blank(value):
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, numbers.Real):
        return value == 1
    return str(value).strip().lower() in TRUTHY_FLAGS


class BaseRowParser(ABC):
    sheet_type: str = ""
    turnover_unit: str = "crore"
    # field -> column letter used when no header alias is present
    positional_columns: dict[str, str] = {}

    def parse(self, raw: RawRow) -> ParseResult:
        cells = {normalize_header(k): v for k, v in raw.cells.items()}

        def field(name: str) -> Any:
            aliases = COLUMN_ALIASES[name]
            for alias in aliases:
                value = cells.get(alias)
                if not is_blank(value):
                    return value
            if any(alias in cells for alias in aliases):
                return None
            letter = self.positional_columns.get(name)
            if letter is not None:
                position = column_index(letter)
                if position < len(raw.values):
                    return raw.values[position]
            return None

        external_id = _text(field("external_id")) or _text(field("reference_no"))
        if external_id is None:
            return self._fail(raw, "missing tender id")
        title = _text(field("title"))
        if title is None:
            return self._fail(raw, "missing title")

        try:
            record = TenderRecord(
                external_id=external_id,
                source=self.sheet_type,
                title=title,
                department=_text(field("department")),
                organization=_text(field("organization")),
                location=_text(field("location")),
                similar_category=_text(field("similar_category")),
                estimated_value=_amount(field("estimated_value"), "estimated value"),
                emd_amount=_amount(field("emd_amount"), "EMD amount"),
                turnover_requirement=_turnover(field("turnover_requirement"), self.turnover_unit),
                publish_date=_date(field("publish_date"), "publish date"),
                submission_deadline=_date(field("submission_deadline"), "submission deadline"),
                opening_date=_date(field("opening_date"), "opening date"),
                eligibility_criteria=_text(field("eligibility_criteria")),
                checklist=_text(field("checklist")),
                msme_exemption_flag=_flag(field("msme_exemption")),
                startup_exemption_flag=_flag(field("startup_exemption")),
                raw_data=clean_json_row(raw.cells),
            )
        except _CellError as exc:
            return self._fail(raw, str(exc))
        return ParseResult(record=record)

    def _fail(self, raw: RawRow, reason: str) -> ParseResult:
        return ParseResult(error=ParseError(row=raw.sheet_row, reason=reason))


class GemRowParser(BaseRowParser):
    sheet_type = GEM
    turnover_unit = "lakh"
    positional_columns = {
        "msme_exemption": "K",
        "startup_exemption": "L",
        "turnover_requirement": "S",
        "similar_category": "X",
        "eligibility_criteria": "AU",
    }


class NonGemRowParser(BaseRowParser):
    sheet_type = NON_GEM
    turnover_unit = "crore"
    positional_columns = {
        "eligibility_criteria": "N",
    }


PARSER_REGISTRY: dict[str, BaseRowParser] = {
    GEM: GemRowParser(),
    NON_GEM: NonGemRowParser(),
}


def parse_row(raw: RawRow, sheet_type: str) -> ParseResult:
    parser = PARSER_REGISTRY.get(sheet_type)
    if parser is None:
        return ParseResult(error=ParseError(row=raw.sheet_row, reason=f"unknown sheet type {sheet_type!r}"))
    return parser.parse(raw)
