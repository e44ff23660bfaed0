from __future__ import annotations

import logging
from collections.abc import Iterable
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Any

import yaml

from .admission import AdmissionQueue, Submitter
from .app_logging import log_with_fields
from .config import AppConfig
from .generation import GenerationClient
from .models import EnqueueReceipt, PollerStatus, QueueEntry, QueueStatus
from .pause_clock import QuotaResetClock
from .poller import CompletionPoller
from .store import JobStore
from .timers import Clock, SystemClock, TimerHandle, TimerQueue
from .utils import move_non_destructive

INBOX_SUFFIXES = {".yaml", ".yml"}


class InboxFormatError(ValueError):
    pass


def parse_shots(raw: Any, source: str) -> list[QueueEntry]:
    if isinstance(raw, dict):
        raw = raw.get("shots")
    if not isinstance(raw, list):
        raise InboxFormatError(f"{source}: expected a list of shots or a `shots` list")
    entries: list[QueueEntry] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise InboxFormatError(f"{source}: shots[{idx}] must be a mapping")
        missing = [key for key in ("id", "title", "prompt") if not item.get(key)]
        if missing:
            raise InboxFormatError(f"{source}: shots[{idx}] missing {', '.join(missing)}")
        entries.append(QueueEntry(entry_id=str(item["id"]), title=str(item["title"]), prompt=str(item["prompt"])))
    return entries


def load_shots_file(path: Path) -> list[QueueEntry]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise InboxFormatError(f"{path.name}: invalid YAML: {exc}") from exc
    return parse_shots(raw, path.name)


class Scheduler:
    """Owns the admission queue, the completion poller and the timers driving both.

    Each actor gets its own executor, so a slow download never holds back a
    submission and the reverse.
    """

    def __init__(
        self,
        config: AppConfig,
        store: JobStore,
        client: GenerationClient,
        logger: logging.Logger,
        clock: Clock | None = None,
        submit_executor: Executor | None = None,
        poll_executor: Executor | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.client = client
        self.logger = logger
        self.clock = clock or SystemClock()
        self.timers = TimerQueue(self.clock, logger)
        self._owned_executors: list[ThreadPoolExecutor] = []
        if submit_executor is None:
            submit_executor = self._own(ThreadPoolExecutor(max_workers=1, thread_name_prefix="veoqueue-submit"))
        if poll_executor is None:
            poll_executor = self._own(
                ThreadPoolExecutor(max_workers=config.poller.max_workers, thread_name_prefix="veoqueue-poll")
            )
        submitter = Submitter(client, store, config.generation, self.clock, logger)
        self.queue = AdmissionQueue(
            submitter,
            self.timers,
            QuotaResetClock.from_config(config.quota),
            config.queue.interval_seconds,
            logger,
            submit_executor,
        )
        self.poller = CompletionPoller(
            client,
            store,
            self.timers,
            config.paths.videos,
            config.poller,
            logger,
            poll_executor,
        )
        self._inbox_timer: TimerHandle | None = None

    def _own(self, executor: ThreadPoolExecutor) -> ThreadPoolExecutor:
        self._owned_executors.append(executor)
        return executor

    def close(self) -> None:
        for executor in self._owned_executors:
            executor.shutdown(wait=False, cancel_futures=True)
        self._owned_executors.clear()

    # Control surface

    def enqueue(self, entry: QueueEntry) -> EnqueueReceipt:
        return self.queue.enqueue(entry)

    def enqueue_many(self, entries: Iterable[QueueEntry]) -> list[EnqueueReceipt]:
        return [self.queue.enqueue(entry) for entry in entries]

    def queue_status(self) -> QueueStatus:
        return self.queue.status()

    def start_queue(self) -> TimerHandle:
        if self._inbox_timer is None or not self._inbox_timer.active:
            self._inbox_timer = self.timers.call_every(
                self.config.queue.inbox_scan_seconds, self.ingest_inbox, "inbox_scan", first_delay=0
            )
        return self.queue.start()

    def stop_queue(self) -> None:
        if self._inbox_timer is not None:
            self._inbox_timer.cancel()
            self._inbox_timer = None
        self.queue.stop()

    def start_poller(self) -> TimerHandle:
        return self.poller.start()

    def stop_poller(self) -> None:
        self.poller.stop()

    def poller_status(self) -> PollerStatus:
        return self.poller.status()

    def delete_job(self, job_id: str) -> bool:
        self.poller.forget(job_id)
        removed = self.store.delete_job(job_id)
        log_with_fields(self.logger, logging.INFO, "job_deleted" if removed else "job_delete_missing", job_id=job_id)
        return removed

    # Inbox

    def ingest_inbox(self) -> int:
        """Enqueue every shots file in the inbox; a file is enqueued only once it is archived."""
        inbox = self.config.paths.inbox
        if not inbox.is_dir():
            return 0
        files = sorted(
            [path for path in inbox.iterdir() if path.is_file() and path.suffix.lower() in INBOX_SUFFIXES],
            key=lambda p: p.stat().st_mtime,
        )
        enqueued = 0
        for path in files:
            try:
                entries = load_shots_file(path)
            except (InboxFormatError, OSError) as exc:
                self._reject(path, exc)
                continue
            try:
                archived = move_non_destructive(path, self.config.paths.archive)
            except OSError as exc:
                log_with_fields(self.logger, logging.ERROR, "inbox_archive_failed", path=str(path), error=str(exc))
                continue
            self.enqueue_many(entries)
            enqueued += len(entries)
            log_with_fields(
                self.logger,
                logging.INFO,
                "inbox_file_ingested",
                path=str(path),
                archived_to=str(archived),
                entries=len(entries),
            )
        return enqueued

    def _reject(self, path: Path, exc: Exception) -> None:
        try:
            rejected = move_non_destructive(path, self.config.paths.archive, f"{path.name}.rejected")
        except OSError as move_exc:
            log_with_fields(
                self.logger,
                logging.ERROR,
                "inbox_archive_failed",
                path=str(path),
                error=str(move_exc),
            )
            return
        log_with_fields(
            self.logger,
            logging.ERROR,
            "inbox_file_rejected",
            path=str(path),
            archived_to=str(rejected),
            error=str(exc),
        )

    # Loop

    def run_pending(self) -> int:
        return self.timers.run_due()

    def run_forever(self) -> None:
        self.start_queue()
        self.start_poller()
        while True:
            self.run_pending()
            delay = self.timers.next_due_in()
            self.timers.wait(self.config.queue.inbox_scan_seconds if delay is None else delay)

    def run_once(self) -> None:
        """Submit at most one entry, then drive every pending job through one poll cycle."""
        self.ingest_inbox()
        self.queue.tick()
        while self.queue.is_processing:
            self.timers.wait(None)
            self.run_pending()
        self.poller.run_cycle()
        while True:
            self.run_pending()
            if not self.poller.trackers and not self.timers.in_flight:
                return
            self.timers.wait(self.timers.next_due_in())
