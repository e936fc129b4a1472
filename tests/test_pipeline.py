import threading
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import BASE_DEADLINE, InMemoryStore, build_workbook, make_gem_row, make_non_gem_row
from db.session import SessionLocal
from models.tenders import CorrigendumChange, Tender
from services.ingestion.locks import KeyedLock
from services.ingestion.pipeline import IngestionPipeline, detect_sheet_type, load_workbook_sheets
from services.ingestion.progress import COMPLETE, ERROR, ProgressBroadcaster, UploadJob
from services.ingestion.records import GEM, NON_GEM, CompanyCriteria
from services.reanalysis import set_override
from services.tender_repository import SqlTenderStore


class RecordingBroadcaster(ProgressBroadcaster):
    def __init__(self):
        super().__init__()
        self.published = []

    def publish(self, job_id, snapshot):
        self.published.append(snapshot)
        return super().publish(job_id, snapshot)


def run(store, content, broadcaster=None, **kwargs):
    broadcaster = broadcaster or RecordingBroadcaster()
    sleeps = []
    pipeline = IngestionPipeline(store, broadcaster, sleep=sleeps.append, **kwargs)
    job = UploadJob(file_name="tenders.xlsx")
    summary = pipeline.run(job, content)
    return summary, job, broadcaster, sleeps


def scenario_sheets(
    gem_shift: dict[int, int] | None = None,
    non_gem_shift: dict[int, int] | None = None,
) -> dict:
    """100 GEM rows (two without a title) and 50 Non-GEM rows; shifts move deadlines by N days."""
    gem_shift = gem_shift or {}
    non_gem_shift = non_gem_shift or {}
    gem_rows = []
    for i in range(100):
        overrides = {}
        if i in (17, 61):
            overrides["Title"] = None
        if i in gem_shift:
            overrides["Bid End Date"] = BASE_DEADLINE + timedelta(days=i + gem_shift[i])
        gem_rows.append(make_gem_row(i, **overrides))
    non_gem_rows = []
    for i in range(50):
        overrides = {}
        if i in non_gem_shift:
            overrides["Closing Date"] = BASE_DEADLINE + timedelta(days=i + non_gem_shift[i])
        non_gem_rows.append(make_non_gem_row(i, **overrides))
    return {"GEM": gem_rows, "Non GEM": non_gem_rows}


@pytest.mark.parametrize(
    "name, expected",
    [("GEM Tenders", GEM), ("GeM-Bids 2025", GEM), ("Non GEM", NON_GEM), ("NonGem", NON_GEM), ("CPPP", NON_GEM)],
)
def test_sheet_type_detection(name, expected):
    assert detect_sheet_type(name) == expected


def test_gem_sheets_come_first_and_blank_rows_are_dropped():
    content = build_workbook(
        {
            "Non GEM": [make_non_gem_row(1)],
            "GEM Part 1": [make_gem_row(1), {k: None for k in make_gem_row(2)}, make_gem_row(3)],
            "GEM Part 2": [make_gem_row(4)],
        }
    )
    sheets = load_workbook_sheets(content)
    assert [s.name for s in sheets] == ["GEM Part 1", "GEM Part 2", "Non GEM"]
    assert [len(s.rows) for s in sheets] == [2, 1, 1]
    # spreadsheet row numbers keep the gap left by the blank row
    assert [r.sheet_row for r in sheets[0].rows] == [2, 4]


def test_upload_scenarios(memory_store):
    first, job, _, _ = run(memory_store, build_workbook(scenario_sheets()))
    assert first.status == COMPLETE
    assert (first.total_rows, first.new_count, first.failed_count) == (150, 148, 2)
    assert (first.gem_count, first.non_gem_count) == (98, 50)

    again, _, _, _ = run(memory_store, build_workbook(scenario_sheets()))
    assert (again.new_count, again.duplicate_count, again.corrigendum_count) == (0, 148, 0)
    assert (again.gem_count, again.non_gem_count) == (98, 50)
    assert len(memory_store.rows) == 148

    third, _, _, _ = run(
        memory_store,
        build_workbook(scenario_sheets({i: 7 for i in (3, 40, 77)}, {i: 7 for i in (20, 49)})),
    )
    assert (third.new_count, third.duplicate_count, third.corrigendum_count) == (0, 143, 5)

    corrigenda = [r for r in memory_store.rows if r["is_corrigendum"]]
    assert len(corrigenda) == 5
    for row in corrigenda:
        assert len(row["changes"]) == 1
        assert row["changes"][0].field_name == "submissionDeadline"
    assert len(memory_store.latest()) == 148


def test_partial_failure_keeps_going(memory_store):
    rows = [make_gem_row(i) for i in range(6)]
    rows[2]["Bid End Date"] = "not a date"
    memory_store.fail_keys.add(("GEM/2025/B/00004", GEM))

    summary, job, _, sleeps = run(memory_store, build_workbook({"GEM": rows}), base_delay=0.2)

    assert summary.status == COMPLETE
    assert summary.processed_rows == 4
    assert summary.failed_count == 2
    assert summary.processed_rows + summary.failed_count == summary.total_rows
    assert sleeps == [0.2, 0.4]


def test_transient_write_errors_are_retried(memory_store):
    memory_store.fail_next_writes = 2
    summary, _, _, sleeps = run(memory_store, build_workbook({"GEM": [make_gem_row(1)]}), base_delay=0.5)
    assert summary.new_count == 1
    assert summary.failed_count == 0
    assert sleeps == [0.5, 1.0]


def test_outage_after_exhausted_retries_is_fatal(memory_store):
    memory_store.fail_keys.add(("GEM/2025/B/00001", GEM))
    original_ping = memory_store.ping

    def ping():
        if memory_store.pings >= 1:
            memory_store.ping_ok = False
        original_ping()

    memory_store.ping = ping
    summary, _, broadcaster, _ = run(memory_store, build_workbook({"GEM": [make_gem_row(1), make_gem_row(2)]}))

    assert summary.status == ERROR
    assert "Storage became unreachable" in summary.message
    assert broadcaster.published[-1].to_event()["type"] == "error"


def test_unreadable_workbook_is_fatal(memory_store):
    summary, job, broadcaster, _ = run(memory_store, b"this is not a spreadsheet")
    assert summary.status == ERROR
    assert summary.message.startswith("Could not read workbook")
    assert broadcaster.latest(job.job_id).message == summary.message
    assert memory_store.finished[-1].status == ERROR


def test_unreachable_storage_at_start_is_fatal(memory_store):
    memory_store.ping_ok = False
    summary, _, _, _ = run(memory_store, build_workbook({"GEM": [make_gem_row(1)]}))
    assert summary.status == ERROR
    assert "Storage is unreachable" in summary.message
    assert memory_store.rows == []


def test_malformed_criteria_are_fatal():
    store = InMemoryStore(CompanyCriteria(turnover_cr=Decimal("-5")))
    summary, _, _, _ = run(store, build_workbook({"GEM": [make_gem_row(1)]}))
    assert summary.status == ERROR
    assert "turnover" in summary.message.lower()


def test_repeated_id_in_one_batch(memory_store):
    rows = [make_gem_row(1), make_gem_row(1), make_gem_row(1, **{"EMD Amount": 75000})]
    summary, _, _, _ = run(memory_store, build_workbook({"GEM": rows}))

    assert (summary.new_count, summary.duplicate_count, summary.corrigendum_count) == (1, 1, 1)
    first, second = memory_store.rows
    assert first["is_latest"] is False
    assert second["is_latest"] is True
    assert second["original_id"] == first["stored"].id
    assert [c.field_name for c in second["changes"]] == ["emdAmount"]


def test_progress_is_monotonic_and_ends_terminal(memory_store):
    rows = [make_gem_row(i) for i in range(12)]
    rows[5]["Title"] = None
    content = build_workbook({"GEM": rows, "Non GEM": [make_non_gem_row(i) for i in range(8)]})

    summary, job, broadcaster, _ = run(memory_store, content, publish_every=3)
    published = broadcaster.published

    done = [s.processed_rows + s.failed_count for s in published]
    assert done == sorted(done)
    assert published[-1].status == COMPLETE
    assert published[-1].processed_rows + published[-1].failed_count == published[-1].total_rows == 20
    assert {s.current_sheet for s in published if s.current_sheet} == {"GEM", "Non GEM"}
    assert (summary.gem_count, summary.non_gem_count) == (11, 8)
    assert all(not s.is_terminal for s in published[:-1])


def test_classification_is_stored_with_each_row(memory_store):
    run(memory_store, build_workbook({"GEM": [make_gem_row(1)], "Non GEM": [make_non_gem_row(1)]}))
    gem, non_gem = memory_store.rows
    assert gem["result"].status.value == "eligible"
    assert gem["stored"].record.turnover_requirement == Decimal("1.0000")
    assert non_gem["result"].is_startup_exempted is True


def test_corrigendum_keeps_override_as_provenance_only(db_session):
    workbook = build_workbook({"GEM": [make_gem_row(1)]})
    store = SqlTenderStore(SessionLocal)
    try:
        summary, _, _, _ = run(store, workbook)
        assert summary.new_count == 1

        original = db_session.query(Tender).one()
        set_override(original, "not_relevant", "Already applied", "handled offline", "admin")
        db_session.commit()

        changed = make_gem_row(1, **{"Bid End Date": BASE_DEADLINE + timedelta(days=30)})
        summary, _, _, _ = run(store, build_workbook({"GEM": [changed]}))
        assert summary.corrigendum_count == 1
    finally:
        store.close()

    db_session.expire_all()
    versions = db_session.query(Tender).order_by(Tender.id).all()
    assert len(versions) == 2
    old, new = versions
    assert old.is_latest is False
    assert new.is_latest is True
    assert new.is_corrigendum is True
    assert new.original_tender_id == old.id
    assert new.is_manual_override is False
    assert new.effective_status == new.status
    assert new.previous_override_status == "not_relevant"
    assert new.previous_override_reason == "Already applied"
    assert new.previous_override_comment == "handled offline"

    change = db_session.query(CorrigendumChange).one()
    assert change.tender_id == new.id
    assert change.field_name == "submissionDeadline"
    assert change.new_value == (BASE_DEADLINE + timedelta(days=31)).isoformat()


def test_unchanged_reupload_writes_nothing(db_session):
    workbook = build_workbook({"GEM": [make_gem_row(i) for i in range(3)]})
    store = SqlTenderStore(SessionLocal)
    try:
        run(store, workbook)
        summary, _, _, _ = run(store, workbook)
    finally:
        store.close()
    assert summary.duplicate_count == 3
    assert db_session.query(Tender).count() == 3


def test_identity_lock_serializes_same_key_only():
    lock = KeyedLock()
    order = []
    entered = threading.Event()

    def worker():
        with lock.hold(("GEM/1", GEM)):
            order.append("worker")

    with lock.hold(("GEM/1", GEM)):
        with lock.hold(("GEM/2", GEM)):
            assert len(lock) == 2
        thread = threading.Thread(target=lambda: (entered.set(), worker()))
        thread.start()
        entered.wait(1)
        order.append("main")
    thread.join(2)

    assert order == ["main", "worker"]
    assert len(lock) == 0
