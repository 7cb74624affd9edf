"""Admission control and lifecycle for update jobs.

``JobManager`` is the single owner of the single-flight slot: at most one job
may be ``queued`` or ``running`` at any time. The slot is reserved under
``self._lock`` before any process is spawned, so two concurrent triggers can
never both reach the pipeline runner.
"""

from __future__ import annotations

import dataclasses
import logging
import subprocess
import threading
import time
from typing import Any, Dict, List, Mapping, Optional

from updater.errors import (
    AlreadyInProgressError,
    JobNotFoundError,
    JobStoreError,
    PipelineSpawnError,
)
from updater.job_models import (
    STATE_CANCELLED,
    STATE_FAILED,
    STATE_QUEUED,
    STATE_RUNNING,
    STATE_SUCCEEDED,
    Job,
    JobSummary,
    is_valid_job_id,
    utcnow_iso,
)
from updater.job_store import JobStore
from updater.pipeline_runner import PipelineOutcome, PipelineRunner


class JobManager:
    """Orchestrate update jobs with lock-protected state."""

    def __init__(
        self,
        *,
        store: JobStore,
        runner: PipelineRunner,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._store = store
        self._runner = runner
        self._log = logger or logging.getLogger("updater.jobs")

        self._jobs: Dict[str, Job] = {}
        self._cancel_flags: Dict[str, threading.Event] = {}
        self._done: Dict[str, threading.Event] = {}
        self._active_job_id: Optional[str] = None
        self._last_id = 0
        self._lock = threading.Lock()

        self._recover()

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def runner(self) -> PipelineRunner:
        return self._runner

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def try_start_job(self, options: Optional[Mapping[str, Any]] = None) -> Job:
        """Admit a new job or report the one already in flight.

        Returns a snapshot of the new job once its pipeline has been spawned
        (``running``) or has failed to spawn (``failed``).

        Raises:
            InvalidOptionsError: options cannot be mapped to the pipeline env.
            AlreadyInProgressError: another job holds the single-flight slot.
            JobStoreError: the job ledger could not be written.
        """
        normalized = self._runner.validate_options(options)

        with self._lock:
            active = self._active_job_locked()
            if active is not None:
                raise AlreadyInProgressError(dataclasses.replace(active))

            job_id = self._next_id_locked()
            job = Job(
                id=job_id,
                log_path=str(self._store.log_path(job_id)),
                state=STATE_QUEUED,
                started_at=utcnow_iso(),
                options=normalized,
            )
            try:
                self._store.create_log(job_id)
                self._store.save_meta(job)
            except JobStoreError:
                self._log.exception("Could not create ledger entry for job %s", job_id)
                raise
            self._jobs[job_id] = job
            self._cancel_flags[job_id] = threading.Event()
            self._done[job_id] = threading.Event()
            self._active_job_id = job_id

        self._log.info("Admitted update job %s options=%s", job_id, sorted(normalized))
        spawned = threading.Event()
        worker = threading.Thread(
            target=self._run_job,
            args=(job_id, spawned),
            name=f"update-job-{job_id}",
            daemon=True,
        )
        worker.start()
        spawned.wait()
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Job:
        """Return a snapshot of one job."""
        key = str(job_id or "").strip()
        if not is_valid_job_id(key):
            raise JobNotFoundError(key)
        with self._lock:
            job = self._jobs.get(key)
            if job is not None:
                return dataclasses.replace(job)
        job = self._store.load_meta(key)
        if job is None:
            raise JobNotFoundError(key)
        return job

    def list_jobs(self) -> List[JobSummary]:
        """Return job summaries, most recent first, without log content."""
        entries = self._store.list()
        with self._lock:
            live = {job_id: job.state for job_id, job in self._jobs.items()}
        summaries = []
        for entry in entries:
            state = live.get(entry.id)
            if state is None:
                persisted = self._store.load_meta(entry.id)
                state = persisted.state if persisted is not None else None
            summaries.append(
                JobSummary(
                    id=entry.id,
                    size_bytes=entry.size_bytes,
                    updated_at=entry.updated_at,
                    state=state,
                )
            )
        return summaries

    def active_job(self) -> Optional[Job]:
        with self._lock:
            active = self._active_job_locked()
            return dataclasses.replace(active) if active is not None else None

    def cancel_job(self, job_id: str) -> Job:
        """Request cancellation; terminal jobs are returned unchanged."""
        job = self.get_job(job_id)
        if job.is_terminal:
            return job
        with self._lock:
            flag = self._cancel_flags.get(job.id)
            if flag is None:
                return dataclasses.replace(self._jobs.get(job.id, job))
            flag.set()
        self._log.info("Cancellation requested for job %s", job.id)
        return self.wait(job.id, timeout=self._runner.cancel_grace_s + 5.0)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until the job is terminal or ``timeout`` elapses."""
        job = self.get_job(job_id)
        with self._lock:
            done = self._done.get(job.id)
        if done is not None:
            done.wait(timeout)
        return self.get_job(job.id)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def _run_job(self, job_id: str, spawned: threading.Event) -> None:
        """Background worker owning the pipeline process of one job."""
        with self._lock:
            job = dataclasses.replace(self._jobs[job_id])
            cancel_event = self._cancel_flags[job_id]

        def _on_spawn(process: subprocess.Popen) -> None:
            self._transition(job_id, state=STATE_RUNNING, pid=process.pid)
            spawned.set()

        try:
            outcome = self._runner.run(job, cancel_event=cancel_event, on_spawn=_on_spawn)
        except PipelineSpawnError as exc:
            self._finish(
                job_id,
                state=STATE_FAILED,
                exit_code=exc.exit_code,
                message=f"{exc.message}: {exc.hint}",
            )
        except Exception as exc:
            self._log.exception("Unexpected failure supervising job %s", job_id)
            self._finish(job_id, state=STATE_FAILED, exit_code=None, message=f"Supervisor error: {exc}")
        else:
            self._finish_from_outcome(job_id, outcome)
        finally:
            spawned.set()

    def _finish_from_outcome(self, job_id: str, outcome: PipelineOutcome) -> None:
        if outcome.cancelled:
            state, message = STATE_CANCELLED, "Cancelled by operator."
        elif outcome.timed_out:
            state, message = STATE_FAILED, "Pipeline timed out and was terminated."
        elif outcome.succeeded:
            state, message = STATE_SUCCEEDED, "Update completed successfully."
        else:
            state, message = STATE_FAILED, f"Pipeline exited with code {outcome.exit_code}."
        self._finish(job_id, state=state, exit_code=outcome.exit_code, message=message)

    def _finish(self, job_id: str, *, state: str, exit_code: Optional[int], message: str) -> None:
        """Record the terminal state exactly once and release the slot."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return
            job.state = state
            job.exit_code = exit_code
            job.message = message
            job.ended_at = utcnow_iso()
            snapshot = dataclasses.replace(job)
            self._cancel_flags.pop(job_id, None)
            if self._active_job_id == job_id:
                self._active_job_id = None
        persisted = False
        try:
            self._store.save_meta(snapshot)
            persisted = True
        except JobStoreError:
            self._log.exception("Could not persist terminal state of job %s", job_id)
        if persisted:
            self._store.release(job_id)
        # Persisted terminal jobs are served from disk from here on.
        with self._lock:
            done = self._done.pop(job_id, None)
            if persisted:
                self._jobs.pop(job_id, None)
        if done is not None:
            done.set()
        log_fn = self._log.info if state == STATE_SUCCEEDED else self._log.warning
        log_fn("Update job %s finished state=%s exit_code=%s", job_id, state, exit_code)

    # ------------------------------------------------------------------
    # Internal state helpers
    # ------------------------------------------------------------------
    def _transition(self, job_id: str, **fields: Any) -> None:
        """Update non-terminal job fields and persist the snapshot."""
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return
            for key, value in fields.items():
                setattr(job, key, value)
            snapshot = dataclasses.replace(job)
        try:
            self._store.save_meta(snapshot)
        except JobStoreError:
            self._log.exception("Could not persist state of job %s", job_id)

    def _active_job_locked(self) -> Optional[Job]:
        """Return the job holding the single-flight slot, if any."""
        if not self._active_job_id:
            return None
        job = self._jobs.get(self._active_job_id)
        if job is None or job.is_terminal:
            self._active_job_id = None
            return None
        return job

    def _next_id_locked(self) -> str:
        """Allocate a strictly increasing, millisecond-derived job id."""
        candidate = int(time.time() * 1000)
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return str(candidate)

    def _recover(self) -> None:
        """Fail the persisted jobs a previous process left active.

        Terminal jobs stay on disk only; a recovered job is kept in memory
        only when its new state could not be written.
        """
        self._last_id = self._store.max_job_id()
        for job in self._store.iter_meta():
            if not job.is_active:
                continue
            self._log.warning(
                "Job %s was %s when the updater stopped; marking failed",
                job.id,
                job.state,
            )
            try:
                self._store.append(
                    job.id,
                    f"\n# Updater restarted at {utcnow_iso()} before this job finished.\n"
                    "\n---\nUpdate finished with code unknown\n",
                )
            except JobStoreError:
                self._log.exception("Could not annotate interrupted job %s", job.id)
            job.state = STATE_FAILED
            job.ended_at = utcnow_iso()
            job.message = "Interrupted by updater restart."
            try:
                self._store.save_meta(job)
            except JobStoreError:
                self._log.exception("Could not persist recovered job %s", job.id)
                self._jobs[job.id] = job
            self._store.release(job.id)


__all__ = ["JobManager"]
