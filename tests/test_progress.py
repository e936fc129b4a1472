import asyncio
import threading

import pytest

from services.ingestion.progress import (
    COMPLETE,
    ERROR,
    RUNNING,
    LatencyTracker,
    ProgressBroadcaster,
    UnknownJobError,
    UploadJob,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def broadcaster(clock):
    return ProgressBroadcaster(retention_seconds=60, idle_ttl_seconds=600, clock=clock)


def finish(broadcaster, job, status=COMPLETE):
    job.status = status
    broadcaster.publish(job.job_id, job.snapshot())


def test_snapshot_event_shape():
    job = UploadJob(file_name="tenders.xlsx", total_rows=10, processed_rows=4, current_sheet="GEM")
    event = job.snapshot().to_event()
    assert event["type"] == "progress"
    assert event["jobId"] == job.job_id
    assert event["processedRows"] == 4
    assert event["currentSheet"] == "GEM"
    assert "message" not in event

    job.status = ERROR
    job.message = "Could not read workbook"
    event = job.snapshot().to_event()
    assert event["type"] == "error"
    assert event["message"] == "Could not read workbook"


def test_latest_value_wins(broadcaster):
    job = UploadJob()
    broadcaster.open(job)
    for processed in (1, 2, 3):
        job.processed_rows = processed
        broadcaster.publish(job.job_id, job.snapshot())
    assert broadcaster.latest(job.job_id).processed_rows == 3


def test_terminal_snapshot_is_sticky(broadcaster):
    job = UploadJob()
    broadcaster.open(job)
    finish(broadcaster, job)

    job.status = RUNNING
    assert broadcaster.publish(job.job_id, job.snapshot()) is False
    assert broadcaster.latest(job.job_id).status == COMPLETE


def test_publish_to_unknown_job_is_ignored(broadcaster):
    assert broadcaster.publish("missing", UploadJob(job_id="missing").snapshot()) is False


def test_late_subscriber_gets_the_terminal_event(broadcaster):
    job = UploadJob(total_rows=2)
    broadcaster.open(job)
    job.processed_rows = 2
    finish(broadcaster, job)

    events = list(broadcaster.subscribe(job.job_id))
    assert [e.status for e in events] == [COMPLETE]
    assert events[0].processed_rows == 2


def test_subscriber_follows_a_running_job(broadcaster):
    job = UploadJob(total_rows=3)
    broadcaster.open(job)
    stream = broadcaster.subscribe(job.job_id, timeout=5)
    received = [next(stream)]
    started = threading.Event()

    def worker():
        started.wait(5)
        job.status = RUNNING
        for processed in range(1, 4):
            job.processed_rows = processed
            broadcaster.publish(job.job_id, job.snapshot())
        finish(broadcaster, job)

    thread = threading.Thread(target=worker)
    thread.start()
    started.set()
    received.extend(stream)
    thread.join(5)

    assert received[-1].status == COMPLETE
    processed = [s.processed_rows for s in received]
    assert processed == sorted(processed)
    assert processed[-1] == 3


def test_subscribe_to_unknown_job_raises(broadcaster):
    with pytest.raises(UnknownJobError):
        broadcaster.subscribe("nope")


def test_async_stream_ends_after_terminal(broadcaster):
    job = UploadJob()
    broadcaster.open(job)

    async def collect():
        events = []
        async for snapshot in broadcaster.stream(job.job_id, poll_interval=0.01):
            events.append(snapshot)
            if len(events) == 1:
                job.processed_rows = 1
                finish(broadcaster, job, ERROR)
        return events

    events = asyncio.run(collect())
    assert [e.event_type for e in events] == ["progress", "error"]


def test_delivered_job_is_evicted_after_retention(broadcaster, clock):
    job = UploadJob()
    broadcaster.open(job)
    finish(broadcaster, job)
    list(broadcaster.subscribe(job.job_id))

    clock.now += 59
    assert broadcaster.sweep() == []
    clock.now += 2
    assert broadcaster.sweep() == [job.job_id]
    assert broadcaster.latest(job.job_id) is None


def test_unwatched_job_is_kept_until_idle_ttl(broadcaster, clock):
    job = UploadJob()
    broadcaster.open(job)
    finish(broadcaster, job)

    clock.now += 300
    assert job.job_id in broadcaster
    broadcaster.sweep()
    assert job.job_id in broadcaster

    clock.now += 301
    assert broadcaster.sweep() == [job.job_id]


def test_running_jobs_are_never_evicted(broadcaster, clock):
    job = UploadJob()
    broadcaster.open(job)
    clock.now += 10_000
    assert broadcaster.sweep() == []


def test_attached_subscriber_blocks_eviction(broadcaster, clock):
    job = UploadJob()
    broadcaster.open(job)
    stream = broadcaster.subscribe(job.job_id, timeout=0.01)
    next(stream)
    finish(broadcaster, job)

    clock.now += 10_000
    assert broadcaster.sweep() == []
    stream.close()
    assert broadcaster.sweep() == [job.job_id]


def test_eta_uses_moving_average():
    tracker = LatencyTracker(window=2)
    assert tracker.eta(10) is None
    for seconds in (10.0, 1.0, 3.0):
        tracker.record(seconds)
    assert tracker.average == 2.0
    assert tracker.eta(5) == 10.0
