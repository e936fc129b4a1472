"""
Runs one spreadsheet upload end to end.

Rows flow through parse -> resolve against the prior version -> classify ->
persist, one at a time and in file order. Row-level problems are counted and
skipped; only job-level faults (unreadable workbook, unreachable storage,
malformed criteria) end the job in ``error``.
"""

import logging
import os
import re
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Callable

import pandas as pd

from services.ingestion.classifier import classify, validate_criteria
from services.ingestion.duplicates import resolve
from services.ingestion.errors import IngestionError, RecordStorageError, StorageError
from services.ingestion.locks import KeyedLock, tender_identity_lock
from services.ingestion.progress import (
    COMPLETE,
    ERROR,
    RUNNING,
    LatencyTracker,
    ProgressBroadcaster,
    UploadJob,
    progress_broadcaster,
)
from services.ingestion.records import (
    GEM,
    NON_GEM,
    CompanyCriteria,
    RawRow,
    ResolutionKind,
    StoredTender,
    TenderRecord,
)
from services.ingestion.row_parser import is_blank, parse_row
from services.ingestion.store import TenderStore

logger = logging.getLogger(__name__)

PUBLISH_EVERY = int(os.getenv("INGEST_PUBLISH_EVERY", "5"))
WRITE_ATTEMPTS = int(os.getenv("INGEST_WRITE_ATTEMPTS", "3"))
RETRY_BASE_DELAY = float(os.getenv("INGEST_RETRY_BASE_DELAY", "0.2"))


@dataclass(frozen=True)
class Sheet:
    name: str
    sheet_type: str
    rows: list[RawRow]


@dataclass(frozen=True)
class IngestionSummary:
    job_id: str
    status: str
    total_rows: int
    processed_rows: int
    gem_count: int
    non_gem_count: int
    failed_count: int
    new_count: int
    duplicate_count: int
    corrigendum_count: int
    message: str | None = None

    @classmethod
    def from_job(cls, job: UploadJob) -> "IngestionSummary":
        return cls(
            job_id=job.job_id,
            status=job.status,
            total_rows=job.total_rows,
            processed_rows=job.processed_rows,
            gem_count=job.gem_count,
            non_gem_count=job.non_gem_count,
            failed_count=job.failed_count,
            new_count=job.new_count,
            duplicate_count=job.duplicate_count,
            corrigendum_count=job.corrigendum_count,
            message=job.message,
        )


def detect_sheet_type(sheet_name: str) -> str:
    normalized = re.sub(r"[^a-z0-9]", "", str(sheet_name).lower())
    if "gem" in normalized and "non" not in normalized:
        return GEM
    return NON_GEM


def _frame_rows(frame: pd.DataFrame) -> list[RawRow]:
    headers = [str(c) for c in frame.columns]
    rows = []
    for offset, values in enumerate(frame.itertuples(index=False, name=None)):
        if all(is_blank(v) for v in values):
            continue
        rows.append(RawRow(sheet_row=offset + 2, cells=dict(zip(headers, values)), values=tuple(values)))
    return rows


def load_workbook_sheets(content: bytes) -> list[Sheet]:
    """GEM sheets first, then Non-GEM, each group in workbook order. Blank rows are dropped."""
    if not content:
        raise IngestionError("Workbook is empty")
    try:
        frames = pd.read_excel(BytesIO(content), sheet_name=None, dtype=object)
    except Exception as exc:
        raise IngestionError(f"Could not read workbook: {exc}") from exc

    sheets = [Sheet(str(name), detect_sheet_type(name), _frame_rows(frame)) for name, frame in frames.items()]
    return [s for s in sheets if s.sheet_type == GEM] + [s for s in sheets if s.sheet_type == NON_GEM]


class IngestionPipeline:
    def __init__(
        self,
        store: TenderStore,
        broadcaster: ProgressBroadcaster = progress_broadcaster,
        *,
        publish_every: int = PUBLISH_EVERY,
        max_attempts: int = WRITE_ATTEMPTS,
        base_delay: float = RETRY_BASE_DELAY,
        identity_lock: KeyedLock = tender_identity_lock,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.publish_every = max(1, publish_every)
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.identity_lock = identity_lock
        self._sleep = sleep
        self._clock = clock

    def run(self, job: UploadJob, content: bytes) -> IngestionSummary:
        """Process ``content`` for ``job``. Never raises; failures end up on the job."""
        if job.job_id not in self.broadcaster:
            self.broadcaster.open(job)
        job.status = RUNNING
        self._publish(job)
        logger.info("INGEST start: job=%s file=%s", job.job_id, job.file_name)

        try:
            self._run(job, content)
            job.status = COMPLETE
            job.estimated_time_remaining = 0
        except IngestionError as exc:
            logger.error("INGEST failed: job=%s error=%s", job.job_id, exc)
            job.status = ERROR
            job.message = str(exc)
        except Exception as exc:
            logger.exception("INGEST crashed: job=%s", job.job_id)
            job.status = ERROR
            job.message = f"Unexpected error: {exc}"

        self._finish_upload(job)
        self._publish(job)
        logger.info(
            "INGEST %s: job=%s total=%s processed=%s new=%s duplicate=%s corrigendum=%s failed=%s",
            job.status,
            job.job_id,
            job.total_rows,
            job.processed_rows,
            job.new_count,
            job.duplicate_count,
            job.corrigendum_count,
            job.failed_count,
        )
        return IngestionSummary.from_job(job)

    def _run(self, job: UploadJob, content: bytes) -> None:
        sheets = load_workbook_sheets(content)
        self._probe("Storage is unreachable")
        criteria = validate_criteria(self.store.load_criteria())

        job.total_rows = sum(len(s.rows) for s in sheets)
        self._publish(job)

        batch: dict[tuple[str, str], StoredTender] = {}
        latency = LatencyTracker()
        for sheet in sheets:
            job.current_sheet = sheet.name
            self._publish(job)
            for raw in sheet.rows:
                started = self._clock()
                self._process_row(job, raw, sheet, criteria, batch)
                latency.record(self._clock() - started)
                done = job.processed_rows + job.failed_count
                job.estimated_time_remaining = latency.eta(job.total_rows - done)
                if done % self.publish_every == 0:
                    self._publish(job)

    def _process_row(
        self,
        job: UploadJob,
        raw: RawRow,
        sheet: Sheet,
        criteria: CompanyCriteria,
        batch: dict[tuple[str, str], StoredTender],
    ) -> None:
        parsed = parse_row(raw, sheet.sheet_type)
        if not parsed.ok:
            job.failed_count += 1
            logger.warning("Row %d on sheet %r skipped: %s", raw.sheet_row, sheet.name, parsed.error.reason)
            return

        record = parsed.record
        try:
            with self.identity_lock.hold(record.key):
                kind = self._with_retry(
                    lambda: self._resolve_and_persist(record, criteria, batch, job.upload_id),
                    f"Row {raw.sheet_row} on sheet {sheet.name!r}",
                )
        except RecordStorageError as exc:
            job.failed_count += 1
            logger.warning("%s", exc)
            self._probe("Storage became unreachable")
            return

        job.processed_rows += 1
        if record.source == GEM:
            job.gem_count += 1
        else:
            job.non_gem_count += 1
        if kind is ResolutionKind.NEW:
            job.new_count += 1
        elif kind is ResolutionKind.CORRIGENDUM:
            job.corrigendum_count += 1
        else:
            job.duplicate_count += 1

    def _resolve_and_persist(
        self,
        record: TenderRecord,
        criteria: CompanyCriteria,
        batch: dict[tuple[str, str], StoredTender],
        upload_id: int | None,
    ) -> ResolutionKind:
        prior = batch.get(record.key)
        if prior is None:
            prior = self.store.find_latest(record.key)
        resolution = resolve(record, prior.record if prior else None)
        if resolution.kind is ResolutionKind.DUPLICATE:
            return resolution.kind

        result = classify(record, criteria)
        if resolution.kind is ResolutionKind.NEW:
            stored = self.store.save_new(record, result, upload_id)
        else:
            stored = self.store.save_corrigendum(record, result, prior, resolution.changes, upload_id)
        batch[record.key] = stored
        return resolution.kind

    def _with_retry(self, operation, description: str):
        for attempt in range(1, self.max_attempts + 1):
            try:
                return operation()
            except StorageError as exc:
                if attempt == self.max_attempts:
                    raise RecordStorageError(
                        f"{description} failed after {attempt} attempts: {exc}"
                    ) from exc
                delay = self.base_delay * (2 ** (attempt - 1))
                logger.warning(
                    "%s: attempt %d/%d failed: %s. Retrying in %.1fs.",
                    description,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)

    def _probe(self, message: str) -> None:
        try:
            self.store.ping()
        except StorageError as exc:
            raise StorageError(f"{message}: {exc}") from exc

    def _finish_upload(self, job: UploadJob) -> None:
        try:
            self._with_retry(lambda: self.store.finish_upload(job), "Upload record update")
        except StorageError as exc:
            logger.error("INGEST could not record result: job=%s error=%s", job.job_id, exc)
            if job.status == COMPLETE:
                job.status = ERROR
                job.message = str(exc)

    def _publish(self, job: UploadJob) -> None:
        self.broadcaster.publish(job.job_id, job.snapshot())
