from __future__ import annotations

import logging
from collections import deque
from concurrent.futures import Executor, Future
from dataclasses import asdict
from datetime import datetime
from typing import Protocol

from .app_logging import log_with_fields
from .config import GenerationSettings
from .generation import RateLimitError
from .models import (
    EnqueueReceipt,
    JobRecord,
    JobStatus,
    PauseState,
    QueueEntry,
    QueueStatus,
    SubmissionReceipt,
)
from .pause_clock import QuotaResetClock
from .store import JobStore
from .timers import Clock, TimerHandle, TimerQueue
from .utils import new_job_id, to_iso


class SubmitClient(Protocol):
    def submit(self, prompt: str, settings: GenerationSettings | None = None) -> str: ...


class Submitter:
    """Submits one entry and records the resulting job only once the remote call succeeded.

    ``request`` is the remote half and is safe to run on a worker thread;
    ``record`` writes the store and belongs on the loop thread.
    """

    def __init__(
        self,
        client: SubmitClient,
        store: JobStore,
        settings: GenerationSettings,
        clock: Clock,
        logger: logging.Logger,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings
        self.clock = clock
        self.logger = logger

    def request(self, entry: QueueEntry) -> str:
        return self.client.submit(entry.prompt, self.settings)

    def record(self, entry: QueueEntry, operation_name: str) -> SubmissionReceipt:
        job = JobRecord(
            job_id=new_job_id(),
            shot_id=entry.entry_id,
            title=entry.title,
            operation_name=operation_name,
            status=JobStatus.PENDING,
            created_at=self.clock.now().isoformat(),
        )
        self.store.create_job(
            job,
            event_type="submitted",
            details={"operation_name": operation_name, "shot_id": entry.entry_id},
        )
        log_with_fields(
            self.logger,
            logging.INFO,
            "submit_ok",
            job_id=job.job_id,
            shot_id=entry.entry_id,
            operation_name=operation_name,
        )
        return SubmissionReceipt(job_id=job.job_id, title=entry.title, operation_name=operation_name)

    def submit(self, entry: QueueEntry) -> SubmissionReceipt:
        return self.record(entry, self.request(entry))


class AdmissionQueue:
    """In-memory FIFO released to the remote service one entry per tick.

    A rate-limited head entry stays queued and the queue pauses until the next
    quota reset; any other failure drops the head so it cannot block the rest.
    The remote call runs on ``executor``; ``is_processing`` stays set until its
    outcome has been applied back on the loop.
    """

    def __init__(
        self,
        submitter: Submitter,
        timers: TimerQueue,
        pause_clock: QuotaResetClock,
        interval_seconds: float,
        logger: logging.Logger,
        executor: Executor,
    ) -> None:
        self.submitter = submitter
        self.timers = timers
        self.clock = timers.clock
        self.pause_clock = pause_clock
        self.interval_seconds = interval_seconds
        self.logger = logger
        self.executor = executor
        self.entries: deque[QueueEntry] = deque()
        self.pause = PauseState()
        self.is_processing = False
        self.last_receipt: SubmissionReceipt | None = None
        self._timer: TimerHandle | None = None

    def enqueue(self, entry: QueueEntry) -> EnqueueReceipt:
        self.entries.append(entry)
        receipt = EnqueueReceipt(position=len(self.entries), queue_length=len(self.entries))
        log_with_fields(
            self.logger,
            logging.INFO,
            "entry_enqueued",
            shot_id=entry.entry_id,
            title=entry.title,
            position=receipt.position,
        )
        return receipt

    def start(self) -> TimerHandle:
        if self._timer is not None and self._timer.active:
            return self._timer
        self._timer = self.timers.call_every(self.interval_seconds, self.tick, "admission_tick", first_delay=0)
        log_with_fields(self.logger, logging.INFO, "queue_started", interval_seconds=self.interval_seconds)
        return self._timer

    def stop(self) -> None:
        if self._timer is None:
            return
        self._timer.cancel()
        self._timer = None
        log_with_fields(self.logger, logging.INFO, "queue_stopped", remaining=len(self.entries))

    @property
    def is_running(self) -> bool:
        return self._timer is not None and self._timer.active

    def _pause_active(self, now: datetime) -> bool:
        return (
            self.pause.is_paused
            and self.pause.paused_until is not None
            and now < self.pause.paused_until
        )

    def tick(self) -> Future[str] | None:
        """Start submitting the head entry; returns the in-flight call or ``None`` when skipped."""
        now = self.clock.now()
        if self.pause.is_paused and not self._pause_active(now):
            log_with_fields(self.logger, logging.INFO, "queue_resumed", paused_until=to_iso(self.pause.paused_until))
            self.pause = PauseState()
        if not self.entries or self.is_processing:
            return None
        if self.pause.is_paused:
            log_with_fields(
                self.logger,
                logging.INFO,
                "queue_paused_skip",
                paused_until=to_iso(self.pause.paused_until),
                queue_length=len(self.entries),
            )
            return None

        entry = self.entries[0]
        log_with_fields(self.logger, logging.INFO, "submit_started", shot_id=entry.entry_id, title=entry.title)
        self.is_processing = True
        try:
            return self.timers.run_in_executor(
                self.executor,
                lambda: self.submitter.request(entry),
                lambda future: self._apply(entry, future),
                f"submit:{entry.entry_id}",
            )
        except RuntimeError:
            self.is_processing = False
            raise

    def _apply(self, entry: QueueEntry, future: Future[str]) -> None:
        try:
            receipt = self.submitter.record(entry, future.result())
        except RateLimitError as exc:
            self.pause = PauseState(is_paused=True, paused_until=self.pause_clock.next_resume(self.clock.now()))
            log_with_fields(
                self.logger,
                logging.WARNING,
                "queue_paused_rate_limit",
                shot_id=entry.entry_id,
                paused_until=to_iso(self.pause.paused_until),
                error=str(exc),
            )
            return
        except Exception as exc:
            self._pop(entry)
            log_with_fields(
                self.logger,
                logging.ERROR,
                "entry_dropped",
                shot_id=entry.entry_id,
                title=entry.title,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        finally:
            self.is_processing = False

        self._pop(entry)
        self.last_receipt = receipt
        log_with_fields(
            self.logger,
            logging.INFO,
            "entry_submitted",
            job_id=receipt.job_id,
            shot_id=entry.entry_id,
            remaining=len(self.entries),
        )

    def _pop(self, entry: QueueEntry) -> None:
        if self.entries and self.entries[0] is entry:
            self.entries.popleft()

    def status(self) -> QueueStatus:
        paused = self._pause_active(self.clock.now())
        return QueueStatus(
            length=len(self.entries),
            is_processing=self.is_processing,
            is_paused=paused,
            paused_until=self.pause.paused_until if paused else None,
            head_preview=self.entries[0] if self.entries else None,
            is_running=self.is_running,
        )

    def status_dict(self) -> dict[str, object]:
        status = self.status()
        return {
            "length": status.length,
            "is_processing": status.is_processing,
            "is_paused": status.is_paused,
            "paused_until": to_iso(status.paused_until),
            "head_preview": asdict(status.head_preview) if status.head_preview else None,
            "is_running": status.is_running,
        }
