"""
In-memory progress channels for running ingestion and re-analysis jobs.

Workers publish snapshots; HTTP subscribers read them. Only the latest
snapshot per job is kept, and a terminal snapshot (complete/error) can no
longer be replaced once published.
"""

import asyncio
import logging
import os
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

logger = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
COMPLETE = "complete"
ERROR = "error"
TERMINAL_STATES = (COMPLETE, ERROR)

RETENTION_SECONDS = float(os.getenv("PROGRESS_RETENTION_SECONDS", "60"))
IDLE_TTL_SECONDS = float(os.getenv("PROGRESS_IDLE_TTL_SECONDS", "600"))
ETA_WINDOW = 50


class UnknownJobError(KeyError):
    pass


@dataclass(frozen=True)
class ProgressSnapshot:
    job_id: str
    kind: str
    status: str
    file_name: str | None = None
    total_rows: int = 0
    processed_rows: int = 0
    gem_count: int = 0
    non_gem_count: int = 0
    failed_count: int = 0
    new_count: int = 0
    duplicate_count: int = 0
    corrigendum_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    current_sheet: str | None = None
    estimated_time_remaining: float | None = None
    message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @property
    def event_type(self) -> str:
        return self.status if self.is_terminal else "progress"

    def to_event(self) -> dict[str, Any]:
        event = {
            "type": self.event_type,
            "jobId": self.job_id,
            "kind": self.kind,
            "status": self.status,
            "fileName": self.file_name,
            "gemCount": self.gem_count,
            "nonGemCount": self.non_gem_count,
            "failedCount": self.failed_count,
            "newCount": self.new_count,
            "duplicateCount": self.duplicate_count,
            "corrigendumCount": self.corrigendum_count,
            "updatedCount": self.updated_count,
            "skippedCount": self.skipped_count,
            "totalRows": self.total_rows,
            "currentSheet": self.current_sheet,
            "processedRows": self.processed_rows,
            "estimatedTimeRemaining": self.estimated_time_remaining,
        }
        if self.message:
            event["message"] = self.message
        return event


@dataclass
class UploadJob:
    """Mutable job state owned by the worker that runs it."""

    kind: str = "upload"
    file_name: str | None = None
    upload_id: int | None = None
    uploaded_by: str | None = None
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: str = QUEUED
    total_rows: int = 0
    processed_rows: int = 0
    gem_count: int = 0
    non_gem_count: int = 0
    failed_count: int = 0
    new_count: int = 0
    duplicate_count: int = 0
    corrigendum_count: int = 0
    updated_count: int = 0
    skipped_count: int = 0
    current_sheet: str | None = None
    estimated_time_remaining: float | None = None
    message: str | None = None

    def snapshot(self) -> ProgressSnapshot:
        return ProgressSnapshot(
            job_id=self.job_id,
            kind=self.kind,
            status=self.status,
            file_name=self.file_name,
            total_rows=self.total_rows,
            processed_rows=self.processed_rows,
            gem_count=self.gem_count,
            non_gem_count=self.non_gem_count,
            failed_count=self.failed_count,
            new_count=self.new_count,
            duplicate_count=self.duplicate_count,
            corrigendum_count=self.corrigendum_count,
            updated_count=self.updated_count,
            skipped_count=self.skipped_count,
            current_sheet=self.current_sheet,
            estimated_time_remaining=self.estimated_time_remaining,
            message=self.message,
        )


class LatencyTracker:
    """Moving average of per-row latency over the last ``window`` rows."""

    def __init__(self, window: int = ETA_WINDOW):
        self._samples: deque[float] = deque(maxlen=window)

    def record(self, seconds: float) -> None:
        self._samples.append(max(0.0, seconds))

    @property
    def average(self) -> float | None:
        if not self._samples:
            return None
        return sum(self._samples) / len(self._samples)

    def eta(self, remaining_rows: int) -> float | None:
        average = self.average
        if average is None:
            return None
        return round(max(0, remaining_rows) * average, 1)


class ProgressChannel:
    def __init__(self, snapshot: ProgressSnapshot, opened_at: float):
        self.job_id = snapshot.job_id
        self.snapshot = snapshot
        self.version = 0
        self.condition = threading.Condition()
        self.subscribers = 0
        self.opened_at = opened_at
        self.terminal_at: float | None = None
        self.delivered_at: float | None = None

    def read(self) -> tuple[ProgressSnapshot, int]:
        with self.condition:
            return self.snapshot, self.version


class ProgressBroadcaster:
    def __init__(
        self,
        retention_seconds: float = RETENTION_SECONDS,
        idle_ttl_seconds: float = IDLE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = retention_seconds
        self.idle_ttl_seconds = idle_ttl_seconds
        self._clock = clock
        self._channels: dict[str, ProgressChannel] = {}
        self._lock = threading.Lock()

    def open(self, job: UploadJob) -> ProgressChannel:
        self.sweep()
        channel = ProgressChannel(job.snapshot(), self._clock())
        with self._lock:
            self._channels[job.job_id] = channel
        logger.info("Progress channel opened for %s job %s", job.kind, job.job_id)
        return channel

    def publish(self, job_id: str, snapshot: ProgressSnapshot) -> bool:
        """Replace the stored snapshot. Returns False when the job is unknown or already finished."""
        with self._lock:
            channel = self._channels.get(job_id)
        if channel is None:
            return False
        with channel.condition:
            if channel.snapshot.is_terminal:
                return False
            channel.snapshot = snapshot
            channel.version += 1
            if snapshot.is_terminal:
                channel.terminal_at = self._clock()
            channel.condition.notify_all()
        return True

    def latest(self, job_id: str) -> ProgressSnapshot | None:
        self.sweep()
        with self._lock:
            channel = self._channels.get(job_id)
        if channel is None:
            return None
        return channel.read()[0]

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._channels

    def _channel(self, job_id: str) -> ProgressChannel:
        self.sweep()
        with self._lock:
            channel = self._channels.get(job_id)
        if channel is None:
            raise UnknownJobError(job_id)
        return channel

    def _attach(self, channel: ProgressChannel) -> None:
        with channel.condition:
            channel.subscribers += 1

    def _detach(self, channel: ProgressChannel, delivered_terminal: bool) -> None:
        with channel.condition:
            channel.subscribers -= 1
            if delivered_terminal and channel.delivered_at is None:
                channel.delivered_at = self._clock()

    def subscribe(self, job_id: str, timeout: float | None = None) -> Iterator[ProgressSnapshot]:
        """
        Yield the last snapshot, then each newer one, ending after the terminal snapshot.

        Raises UnknownJobError right away for jobs that were never opened or
        have been evicted. ``timeout`` bounds each wait for a new version.
        """
        channel = self._channel(job_id)
        return self._follow(channel, timeout)

    def _follow(self, channel: ProgressChannel, timeout: float | None) -> Iterator[ProgressSnapshot]:
        self._attach(channel)
        delivered = False
        seen = -1
        try:
            while True:
                with channel.condition:
                    if not channel.condition.wait_for(lambda: channel.version != seen, timeout=timeout):
                        return
                    snapshot, seen = channel.snapshot, channel.version
                yield snapshot
                if snapshot.is_terminal:
                    delivered = True
                    return
        finally:
            self._detach(channel, delivered)

    async def stream(self, job_id: str, poll_interval: float = 0.25):
        """Async counterpart of ``subscribe`` that polls instead of blocking."""
        channel = self._channel(job_id)
        self._attach(channel)
        delivered = False
        seen = -1
        try:
            while True:
                snapshot, version = channel.read()
                if version != seen:
                    seen = version
                    yield snapshot
                    if snapshot.is_terminal:
                        delivered = True
                        return
                await asyncio.sleep(poll_interval)
        finally:
            self._detach(channel, delivered)

    def sweep(self) -> list[str]:
        now = self._clock()
        evicted = []
        with self._lock:
            for job_id, channel in list(self._channels.items()):
                with channel.condition:
                    if channel.terminal_at is None or channel.subscribers:
                        continue
                    if channel.delivered_at is not None:
                        expired = now - channel.delivered_at >= self.retention_seconds
                    else:
                        expired = now - channel.terminal_at >= self.idle_ttl_seconds
                if expired:
                    del self._channels[job_id]
                    evicted.append(job_id)
        if evicted:
            logger.info("Evicted %d finished progress channels", len(evicted))
        return evicted


progress_broadcaster = ProgressBroadcaster()
