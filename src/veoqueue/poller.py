from __future__ import annotations

import logging
import os
import uuid
from collections.abc import Iterator
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .app_logging import log_with_fields
from .config import PollerConfig
from .generation import RateLimitError, TransientError
from .models import JobRecord, JobStatus, OperationStatus, PollerStatus, RetryState, TrackerState
from .store import JobStore, PersistenceError
from .timers import TimerHandle, TimerQueue


class PollClient(Protocol):
    def poll_status(self, operation_name: str) -> OperationStatus: ...

    def download(self, artifact_ref: str) -> Iterator[bytes]: ...


@dataclass(slots=True)
class JobTracker:
    job_id: str
    operation_name: str
    state: TrackerState = TrackerState.POLLING
    local_polls: int = 0
    retry: RetryState = field(default_factory=RetryState)
    timer: TimerHandle | None = None
    future: Future[Path | None] | None = None


class CompletionPoller:
    """Drives PENDING jobs to DONE, one timer-scheduled step per remote call.

    Each job is tracked independently: a job waiting between polls or backing off
    after a rate limit holds a timer, never the loop, so other jobs keep moving.
    The poll and the download of a step run on ``executor``; the store is only
    written back on the loop thread.
    """

    def __init__(
        self,
        client: PollClient,
        store: JobStore,
        timers: TimerQueue,
        videos_dir: Path,
        config: PollerConfig,
        logger: logging.Logger,
        executor: Executor,
    ) -> None:
        self.client = client
        self.store = store
        self.timers = timers
        self.clock = timers.clock
        self.videos_dir = videos_dir
        self.config = config
        self.logger = logger
        self.executor = executor
        self.is_active = False
        self.trackers: dict[str, JobTracker] = {}
        self._timer: TimerHandle | None = None

    def start(self) -> TimerHandle:
        if self.is_active and self._timer is not None:
            return self._timer
        self.is_active = True
        log_with_fields(self.logger, logging.INFO, "poller_started", interval_seconds=self.config.interval_seconds)
        self.run_cycle()
        self._timer = self.timers.call_every(self.config.interval_seconds, self.run_cycle, "poller_cycle")
        return self._timer

    def stop(self) -> None:
        if not self.is_active:
            return
        self.is_active = False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for tracker in self.trackers.values():
            self._cancel(tracker)
        cancelled = len(self.trackers)
        self.trackers.clear()
        log_with_fields(self.logger, logging.INFO, "poller_stopped", cancelled_jobs=cancelled)

    def status(self) -> PollerStatus:
        return PollerStatus(
            is_active=self.is_active,
            tracked_jobs={job_id: tracker.state.value for job_id, tracker in self.trackers.items()},
        )

    def forget(self, job_id: str) -> None:
        tracker = self.trackers.pop(job_id, None)
        if tracker is not None:
            self._cancel(tracker)

    def retry_state(self, job_id: str) -> RetryState | None:
        tracker = self.trackers.get(job_id)
        return tracker.retry if tracker else None

    def run_cycle(self) -> None:
        try:
            pending = self.store.list_jobs_by_status(JobStatus.PENDING)
        except PersistenceError as exc:
            log_with_fields(self.logger, logging.ERROR, "poll_cycle_store_failed", error=str(exc))
            return
        if not pending:
            log_with_fields(self.logger, logging.INFO, "poll_cycle_idle")
            return

        started = 0
        for job in pending:
            if job.job_id in self.trackers:
                continue
            self._track(job)
            started += 1
        log_with_fields(
            self.logger,
            logging.INFO,
            "poll_cycle",
            pending=len(pending),
            started=started,
            already_tracked=len(pending) - started,
        )

    def _track(self, job: JobRecord) -> None:
        tracker = JobTracker(job_id=job.job_id, operation_name=job.operation_name)
        self.trackers[job.job_id] = tracker
        self._schedule(tracker, 0)

    def _schedule(self, tracker: JobTracker, delay: float) -> None:
        tracker.timer = self.timers.call_later(delay, lambda: self._step(tracker), f"poll_job:{tracker.job_id}")

    def _is_live(self, tracker: JobTracker) -> bool:
        return self.trackers.get(tracker.job_id) is tracker

    def _cancel(self, tracker: JobTracker) -> None:
        if tracker.timer is not None:
            tracker.timer.cancel()
            tracker.timer = None
        if tracker.future is not None:
            tracker.future.cancel()

    def _release(self, tracker: JobTracker) -> None:
        if self._is_live(tracker):
            del self.trackers[tracker.job_id]
        tracker.timer = None

    def _step(self, tracker: JobTracker) -> None:
        if not self._is_live(tracker):
            return
        tracker.state = TrackerState.POLLING
        tracker.timer = None
        tracker.retry.next_attempt_at = None
        job_id, operation_name = tracker.job_id, tracker.operation_name
        try:
            tracker.future = self.timers.run_in_executor(
                self.executor,
                lambda: self._advance(job_id, operation_name),
                lambda future: self._settle(tracker, future),
                f"poll_job:{job_id}",
            )
        except Exception as exc:
            self._fail(tracker, exc)

    def _advance(self, job_id: str, operation_name: str) -> Path | None:
        """Worker-side half of a step: one status poll, then the download once done."""
        status = self.client.poll_status(operation_name)
        if not status.done:
            return None
        if not status.artifact_ref:
            raise TransientError(f"operation {operation_name} completed without an artifact")
        return self._download(job_id, status.artifact_ref)

    def _download(self, job_id: str, artifact_ref: str) -> Path:
        self.videos_dir.mkdir(parents=True, exist_ok=True)
        target = self.videos_dir / f"{job_id}.mp4"
        partial = self.videos_dir / f".{job_id}.{uuid.uuid4().hex[:8]}.part"
        try:
            with partial.open("wb") as handle:
                for chunk in self.client.download(artifact_ref):
                    handle.write(chunk)
            os.replace(partial, target)
        finally:
            partial.unlink(missing_ok=True)
        return target

    def _settle(self, tracker: JobTracker, future: Future[Path | None]) -> None:
        tracker.future = None
        if future.cancelled():
            return
        live = self._is_live(tracker)
        try:
            file_path = future.result()
            if file_path is not None:
                # A download that finished after stop() or forget() is still recorded.
                self._complete(tracker, file_path)
            elif live:
                self._poll_again(tracker)
        except RateLimitError as exc:
            if live:
                self._back_off(tracker, exc)
        except Exception as exc:
            self._fail(tracker, exc)

    def _fail(self, tracker: JobTracker, exc: Exception) -> None:
        log_with_fields(
            self.logger,
            logging.WARNING,
            "job_poll_failed",
            job_id=tracker.job_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        self._release(tracker)

    def _poll_again(self, tracker: JobTracker) -> None:
        tracker.local_polls += 1
        if tracker.local_polls >= self.config.max_local_polls:
            log_with_fields(
                self.logger,
                logging.INFO,
                "job_still_running",
                job_id=tracker.job_id,
                local_polls=tracker.local_polls,
            )
            self._release(tracker)
            return
        self._schedule(tracker, self.config.poll_delay_seconds)

    def _complete(self, tracker: JobTracker, file_path: Path) -> None:
        tracker.state = TrackerState.DONE
        self._release(tracker)
        changed = self.store.update_status(tracker.job_id, JobStatus.DONE, str(file_path))
        if not changed:
            log_with_fields(self.logger, logging.WARNING, "job_completion_ignored", job_id=tracker.job_id)
            return
        self.store.add_event(tracker.job_id, "completed", {"file_path": str(file_path)})
        log_with_fields(
            self.logger,
            logging.INFO,
            "job_completed",
            job_id=tracker.job_id,
            file_path=str(file_path),
            retries=tracker.retry.retry_count,
        )

    def _back_off(self, tracker: JobTracker, exc: RateLimitError) -> None:
        retry = tracker.retry
        if retry.retry_count >= self.config.max_retries:
            log_with_fields(
                self.logger,
                logging.WARNING,
                "job_backoff_exhausted",
                job_id=tracker.job_id,
                retry_count=retry.retry_count,
                error=str(exc),
            )
            self._release(tracker)
            return
        delay = self.config.backoff_base_seconds * (2**retry.retry_count)
        retry.retry_count += 1
        retry.next_attempt_at = self.clock.monotonic() + delay
        tracker.state = TrackerState.BACKOFF
        tracker.local_polls = 0
        self._schedule(tracker, delay)
        log_with_fields(
            self.logger,
            logging.WARNING,
            "job_backoff_scheduled",
            job_id=tracker.job_id,
            retry_count=retry.retry_count,
            delay_seconds=delay,
            error=str(exc),
        )
