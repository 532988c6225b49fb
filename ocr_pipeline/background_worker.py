"""
Background Job Worker
=====================
Drives OCR jobs forward on background threads.

Architecture:
    - Each job gets its own worker thread
    - A worker calls ``advance`` on the state machine; while the outcome
      is WAITING (batch still running) it sleeps and ticks again
    - Failures are recorded on the job by the state machine; the worker
      just stops
    - On startup ``recover_jobs`` re-spawns workers for pending and
      running jobs, which resume from their persisted step

Usage:
    spawn_worker(job_id, machine)
    recover_jobs(machine)
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from . import database as db
from .errors import PipelineError
from .models import JobStatus, JobType, StepOutcome
from .state_machine import PipelineStateMachine
from .steps import JobStep

logger = logging.getLogger(__name__)

# ─── Active Worker Registry ──────────────────────────────────────────────────

_active_workers: dict[str, "BackgroundJobWorker"] = {}
_workers_lock = threading.Lock()


def get_worker(job_id: str) -> Optional["BackgroundJobWorker"]:
    """Get the active worker for a job, if any."""
    with _workers_lock:
        return _active_workers.get(job_id)


def list_workers() -> list[str]:
    with _workers_lock:
        return list(_active_workers)


def spawn_worker(
    job_id: str,
    machine: PipelineStateMachine,
    retry_from: Optional[JobStep] = None,
    retry: bool = False,
    poll_interval: Optional[float] = None,
) -> Optional[threading.Thread]:
    """
    Spawn a background worker thread for a job.

    Args:
        job_id: Job to drive.
        machine: State machine bound to the stores.
        retry_from: Rewind to this step before the first tick.
        retry: Start with ``retry_job`` instead of ``advance``.
        poll_interval: Seconds between ticks while waiting on the batch.

    Returns:
        The spawned Thread, or None if the job already has a worker.
    """
    worker = BackgroundJobWorker(job_id, machine, poll_interval)
    with _workers_lock:
        if job_id in _active_workers:
            logger.info(f"Job {job_id}: Worker already running, not spawning another")
            return None
        _active_workers[job_id] = worker

    thread = threading.Thread(
        target=worker.run,
        kwargs={"retry_from": retry_from, "retry": retry},
        daemon=True,
        name=f"ocr-worker-job-{job_id}",
    )
    thread.start()

    logger.info(
        f"Spawned worker thread for job {job_id}"
        + (f", retry_from={retry_from.value}" if retry_from else "")
    )
    return thread


def stop_worker(job_id: str, timeout: float = 10.0) -> bool:
    """
    Ask a job's worker to stop and wait for it to exit.

    A worker in the middle of a step finishes that step first.

    Returns:
        True if no worker is left running for the job.
    """
    worker = get_worker(job_id)
    if worker is None:
        return True
    logger.info(f"Job {job_id}: Stopping worker")
    worker.request_stop()
    stopped = worker.wait_finished(timeout)
    if not stopped:
        logger.warning(f"Job {job_id}: Worker still busy after {timeout}s")
    return stopped


def recover_jobs(machine: PipelineStateMachine) -> list[str]:
    """Re-spawn workers for OCR jobs left pending or running."""
    recovered = []
    rows = db.list_jobs_by_status(
        [JobStatus.PENDING.value, JobStatus.RUNNING.value], db_path=machine.db_path
    )
    for row in rows:
        if row["job_type"] != JobType.OCR.value:
            continue
        if spawn_worker(row["id"], machine) is not None:
            recovered.append(row["id"])
    if recovered:
        logger.info(f"Recovered {len(recovered)} unfinished job(s)")
    return recovered


class BackgroundJobWorker:
    """
    Ticks one job's state machine until it completes, fails, or is
    asked to stop.
    """

    def __init__(
        self,
        job_id: str,
        machine: PipelineStateMachine,
        poll_interval: Optional[float] = None,
    ):
        self.job_id = job_id
        self.machine = machine
        self.poll_interval = (
            machine.config.poll_interval_seconds
            if poll_interval is None else poll_interval
        )
        self._stop_event = threading.Event()
        self._finished_event = threading.Event()
        self.last_outcome: Optional[StepOutcome] = None

    def request_stop(self):
        """Signal the worker to stop after the current tick."""
        self._stop_event.set()

    def wait_finished(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker has left the registry."""
        return self._finished_event.wait(timeout)

    def run(self, retry_from: Optional[JobStep] = None, retry: bool = False):
        """Main entry point. Runs in a background thread."""
        with _workers_lock:
            _active_workers[self.job_id] = self

        try:
            self._run_internal(retry_from, retry)
        finally:
            with _workers_lock:
                if _active_workers.get(self.job_id) is self:
                    del _active_workers[self.job_id]
            self._finished_event.set()

    # ─── Tick Loop ────────────────────────────────────────────────────────

    def _run_internal(self, retry_from: Optional[JobStep], retry: bool):
        try:
            if retry_from is not None:
                outcome = self.machine.retry_from_step(self.job_id, retry_from)
            elif retry:
                outcome = self.machine.retry_job(self.job_id)
            else:
                outcome = self.machine.advance(self.job_id)

            while outcome == StepOutcome.WAITING:
                self.last_outcome = outcome
                if self._stop_event.wait(self.poll_interval):
                    logger.info(f"Job {self.job_id}: Worker stopped while waiting")
                    return
                outcome = self.machine.advance(self.job_id)

            self.last_outcome = outcome
            logger.info(f"Job {self.job_id}: Worker finished ({outcome.value})")

        except PipelineError as e:
            # Already recorded on the job by the state machine
            logger.error(f"Job {self.job_id}: Worker stopped — {e}")
        except Exception:
            logger.exception(f"Job {self.job_id}: Worker crashed")
