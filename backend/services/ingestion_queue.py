"""
Background worker queue for upload ingestion and re-analysis jobs.

Each job runs start to finish on one worker thread; progress goes out
through the shared progress broadcaster.
"""

import logging
import os
import queue
import threading

from services.ingestion.pipeline import IngestionPipeline
from services.ingestion.progress import UploadJob, progress_broadcaster
from services.reanalysis import run_reanalysis
from services.tender_repository import SqlTenderStore

logger = logging.getLogger(__name__)

ingestion_queue: queue.Queue = queue.Queue()

active_workers: dict[str, threading.Thread] = {}
worker_shutdown = threading.Event()

MAX_WORKERS = int(os.getenv("INGEST_WORKERS", "2"))


class IngestionTask:
    def __init__(self, job: UploadJob, content: bytes):
        self.job = job
        self.content = content

    def run(self) -> None:
        store = SqlTenderStore()
        try:
            IngestionPipeline(store).run(self.job, self.content)
        finally:
            store.close()


class ReanalysisTask:
    def __init__(self, job: UploadJob):
        self.job = job

    def run(self) -> None:
        run_reanalysis(self.job)


def ingestion_worker(worker_id: int) -> None:
    logger.info("Ingestion worker %s started", worker_id)

    while not worker_shutdown.is_set():
        try:
            task = ingestion_queue.get(timeout=1)
        except queue.Empty:
            continue

        if task is None:
            ingestion_queue.task_done()
            if worker_shutdown.is_set():
                break
            continue

        logger.info("Worker %s picked up %s job %s", worker_id, task.job.kind, task.job.job_id)
        try:
            task.run()
        except Exception:
            # jobs record their own failures
            logger.exception("Worker %s failed on job %s", worker_id, task.job.job_id)
        finally:
            ingestion_queue.task_done()

    logger.info("Ingestion worker %s stopped", worker_id)


def start_workers(num_workers: int = MAX_WORKERS) -> None:
    worker_shutdown.clear()
    for i in range(num_workers):
        worker_id = f"worker_{i + 1}"
        thread = active_workers.get(worker_id)
        if thread is not None and thread.is_alive():
            continue
        thread = threading.Thread(
            target=ingestion_worker,
            args=(i + 1,),
            name=f"IngestionWorker-{i + 1}",
            daemon=True,
        )
        thread.start()
        active_workers[worker_id] = thread
    logger.info("Ingestion queue started with %d workers", num_workers)


def stop_workers() -> None:
    logger.info("Stopping ingestion workers...")
    worker_shutdown.set()
    for _ in range(len(active_workers)):
        ingestion_queue.put(None)

    for worker_id, thread in active_workers.items():
        thread.join(timeout=5)
        if thread.is_alive():
            logger.warning("Worker %s did not stop gracefully", worker_id)

    active_workers.clear()
    logger.info("All ingestion workers stopped")


def enqueue_upload(job: UploadJob, content: bytes) -> str:
    progress_broadcaster.open(job)
    ingestion_queue.put(IngestionTask(job, content))
    logger.info("Enqueued upload job %s: file %s", job.job_id, job.file_name)
    return job.job_id


def enqueue_reanalysis(job: UploadJob) -> str:
    progress_broadcaster.open(job)
    ingestion_queue.put(ReanalysisTask(job))
    logger.info("Enqueued re-analysis job %s", job.job_id)
    return job.job_id


def get_queue_status() -> dict:
    return {
        "queue_size": ingestion_queue.qsize(),
        "active_workers": len([w for w in active_workers.values() if w.is_alive()]),
        "total_workers": len(active_workers),
        "is_running": not worker_shutdown.is_set(),
    }
