import os
import tempfile
from datetime import datetime, timedelta
from io import BytesIO

import pandas as pd
import pytest

_DB_DIR = tempfile.mkdtemp(prefix="tender-intake-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/test.db"
os.environ["USE_LOCAL_AUTH"] = "1"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["INGEST_RETRY_BASE_DELAY"] = "0"
os.environ["CRITERIA_CACHE_TTL_SECONDS"] = "0"

from db.base import Base  # noqa: E402
from db.session import SessionLocal, engine  # noqa: E402
from authentication import models as auth_models  # noqa: E402,F401
from models import criteria as criteria_models  # noqa: E402,F401
from models import tenders as tender_models  # noqa: E402,F401
from models import uploads as upload_models  # noqa: E402,F401
from services.criteria_service import invalidate_criteria_cache  # noqa: E402
from services.ingestion.errors import StorageError  # noqa: E402
from services.ingestion.records import CompanyCriteria, StoredTender  # noqa: E402
from services.ingestion.store import TenderStore  # noqa: E402


class InMemoryStore(TenderStore):
    """TenderStore double with switchable failures."""

    def __init__(self, criteria: CompanyCriteria | None = None):
        self.criteria = criteria or CompanyCriteria()
        self.rows: list[dict] = []
        self.fail_next_writes = 0
        self.fail_keys: set[tuple[str, str]] = set()
        self.ping_ok = True
        self.pings = 0
        self.finished = []

    def ping(self) -> None:
        self.pings += 1
        if not self.ping_ok:
            raise StorageError("connection refused")

    def load_criteria(self) -> CompanyCriteria:
        return self.criteria

    def find_latest(self, key):
        for row in reversed(self.rows):
            if row["stored"].record.key == key and row["is_latest"]:
                return row["stored"]
        return None

    def _check_write(self, record) -> None:
        if record.key in self.fail_keys:
            raise StorageError(f"write rejected for {record.external_id}")
        if self.fail_next_writes:
            self.fail_next_writes -= 1
            raise StorageError("deadlock detected")

    def _append(self, record, result, upload_id, **extra) -> StoredTender:
        stored = StoredTender(id=len(self.rows) + 1, record=record)
        self.rows.append(
            {
                "stored": stored,
                "result": result,
                "upload_id": upload_id,
                "is_latest": True,
                "is_corrigendum": False,
                "original_id": None,
                "changes": (),
                "previous_override": None,
                **extra,
            }
        )
        return stored

    def save_new(self, record, result, upload_id):
        self._check_write(record)
        return self._append(record, result, upload_id)

    def save_corrigendum(self, record, result, prior, changes, upload_id):
        self._check_write(record)
        for row in self.rows:
            if row["stored"].record.key == record.key:
                row["is_latest"] = False
        previous = None
        if prior.is_manual_override:
            previous = (prior.override_status, prior.override_reason, prior.override_comment)
        return self._append(
            record,
            result,
            upload_id,
            is_corrigendum=True,
            original_id=prior.id,
            changes=changes,
            previous_override=previous,
        )

    def finish_upload(self, job) -> None:
        self.finished.append(job.snapshot())

    def latest(self) -> list[dict]:
        return [r for r in self.rows if r["is_latest"]]


def build_workbook(sheets: dict[str, list[dict]]) -> bytes:
    buffer = BytesIO()
    with pd.ExcelWriter(buffer, engine="openpyxl") as writer:
        for name, rows in sheets.items():
            pd.DataFrame(rows).to_excel(writer, sheet_name=name, index=False)
    return buffer.getvalue()


BASE_DEADLINE = datetime(2030, 1, 1, 17, 0)


def make_gem_row(index: int, **overrides) -> dict:
    row = {
        "Bid Number": f"GEM/2025/B/{index:05d}",
        "Title": f"Development of web portal and mobile app for district {index}",
        "Department": "Department of Information Technology",
        "Organization": "State e-Governance Society",
        "Estimated Value": 2500000 + index,
        "EMD Amount": 50000,
        "Turnover": 100,
        "Bid End Date": BASE_DEADLINE + timedelta(days=index),
        "Eligibility Criteria": "Bidder must have average annual turnover of Rs 1 crore in the last 3 years",
    }
    row.update(overrides)
    return row


def make_non_gem_row(index: int, **overrides) -> dict:
    row = {
        "Tender ID": f"2025_NIC_{index:05d}",
        "Tender Title": f"Annual maintenance of data center servers, lot {index}",
        "Organisation": "National Informatics Centre",
        "Tender Value": "Rs. 12,50,000",
        "EMD": 25000,
        "Turnover": 2,
        "Closing Date": BASE_DEADLINE + timedelta(days=index),
        "Eligibility": "Minimum turnover of INR 2 crore. Startups are exempted from prior turnover.",
    }
    row.update(overrides)
    return row


@pytest.fixture
def memory_store():
    return InMemoryStore()


@pytest.fixture(autouse=True)
def _fresh_criteria_cache():
    invalidate_criteria_cache()
    yield
    invalidate_criteria_cache()


@pytest.fixture
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(reset_db):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
