from __future__ import annotations

from concurrent.futures import Executor
from datetime import UTC, datetime
from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from fakes import FakeClock, FakeGenerationClient, HeldExecutor, InlineExecutor, logged_fields, quiet_logger
from veoqueue.admission import AdmissionQueue, Submitter
from veoqueue.config import GenerationSettings
from veoqueue.generation import FatalSubmissionError, RateLimitError
from veoqueue.models import JobStatus, QueueEntry, SubmissionReceipt
from veoqueue.pause_clock import QuotaResetClock
from veoqueue.store import JobStore
from veoqueue.timers import TimerQueue


def entry(index: int) -> QueueEntry:
    return QueueEntry(entry_id=f"shot-{index}", title=f"Shot {index}", prompt=f"prompt {index}")


class AdmissionQueueTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.store = JobStore(Path(self.temp_dir.name) / "veo.sqlite")
        self.store.init_schema()
        self.clock = FakeClock()
        self.logger = quiet_logger()
        self.client = FakeGenerationClient()
        self.timers = TimerQueue(self.clock, self.logger)
        self.queue = self.make_queue(self.store)

    def tearDown(self) -> None:
        self.store.close()
        self.temp_dir.cleanup()

    def make_queue(self, store: JobStore, executor: Executor | None = None) -> AdmissionQueue:
        submitter = Submitter(self.client, store, GenerationSettings(), self.clock, self.logger)
        return AdmissionQueue(
            submitter,
            self.timers,
            QuotaResetClock("America/Los_Angeles", 0, 0),
            120,
            self.logger,
            executor or InlineExecutor(),
        )

    def tick(self) -> SubmissionReceipt | None:
        self.queue.last_receipt = None
        started = self.queue.tick()
        self.timers.run_due()
        if started is None:
            return None
        return self.queue.last_receipt

    def test_enqueue_reports_position(self) -> None:
        receipts = [self.queue.enqueue(entry(i)) for i in range(1, 4)]
        self.assertEqual([r.position for r in receipts], [1, 2, 3])
        self.assertEqual(receipts[-1].queue_length, 3)
        self.assertEqual(self.queue.status().head_preview, entry(1))

    def test_tick_submits_one_entry(self) -> None:
        for i in range(1, 4):
            self.queue.enqueue(entry(i))

        receipt = self.tick()

        assert receipt is not None
        self.assertEqual(self.client.submitted, ["prompt 1"])
        status = self.queue.status()
        self.assertEqual(status.length, 2)
        self.assertFalse(status.is_processing)
        job = self.store.get_job(receipt.job_id)
        assert job is not None
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertEqual(job.shot_id, "shot-1")
        self.assertEqual(job.operation_name, "operations/op-1")
        self.assertEqual(self.store.list_events(receipt.job_id)[0]["event_type"], "submitted")

    def test_submission_in_flight_blocks_next_tick(self) -> None:
        held = HeldExecutor()
        self.queue = self.make_queue(self.store, held)
        self.queue.enqueue(entry(1))
        self.queue.enqueue(entry(2))

        self.assertIsNotNone(self.queue.tick())
        self.assertTrue(self.queue.status().is_processing)
        self.assertIsNone(self.queue.tick())
        self.assertEqual(len(held.held), 1)

        held.release()
        self.timers.run_due()
        self.assertEqual(self.client.submitted, ["prompt 1"])
        self.assertFalse(self.queue.status().is_processing)
        self.assertEqual(self.queue.status().length, 1)

    def test_submissions_follow_enqueue_order(self) -> None:
        for i in range(1, 6):
            self.queue.enqueue(entry(i))
        for _ in range(6):
            self.tick()
        self.assertEqual(self.client.submitted, [f"prompt {i}" for i in range(1, 6)])
        self.assertEqual(self.queue.status().length, 0)
        self.assertEqual(self.client.max_in_flight, 1)

    def test_empty_tick_is_noop(self) -> None:
        self.assertIsNone(self.queue.tick())
        self.assertEqual(self.client.submitted, [])

    def test_reentrant_tick_does_not_submit(self) -> None:
        self.queue.enqueue(entry(1))
        self.queue.enqueue(entry(2))
        nested: list[object] = []
        self.client.on_submit = lambda: nested.append(self.queue.tick())

        self.tick()

        self.assertEqual(nested, [None])
        self.assertEqual(self.client.submitted, ["prompt 1"])
        self.assertEqual(self.client.max_in_flight, 1)

    def test_rate_limit_pauses_and_keeps_head(self) -> None:
        for i in range(1, 4):
            self.queue.enqueue(entry(i))
        self.client.submit_errors = [RateLimitError("quota", status_code=429)]
        event_time = self.clock.now()

        with self.assertLogs(self.logger, level="WARNING") as captured:
            self.assertIsNone(self.tick())

        status = self.queue.status()
        self.assertTrue(status.is_paused)
        assert status.paused_until is not None
        self.assertGreater(status.paused_until, event_time)
        # 12:00 UTC on 2025-03-01 is 04:00 PST, so the next reset is 08:00 UTC tomorrow.
        self.assertEqual(status.paused_until, datetime(2025, 3, 2, 8, 0, tzinfo=UTC))
        self.assertEqual(status.length, 3)
        self.assertEqual(status.head_preview, entry(1))
        self.assertFalse(status.is_processing)
        self.assertEqual(self.store.list_jobs(), [])
        self.assertEqual(len(logged_fields(captured.records, "queue_paused_rate_limit")), 1)

    def test_paused_queue_waits_for_resume_time(self) -> None:
        self.queue.enqueue(entry(1))
        self.queue.enqueue(entry(2))
        self.client.submit_errors = [RateLimitError("quota", status_code=429)]
        self.tick()
        paused_until = self.queue.status().paused_until
        assert paused_until is not None

        self.clock.advance((paused_until - self.clock.now()).total_seconds() - 1)
        self.assertIsNone(self.tick())
        self.assertEqual(self.client.submitted, [])
        self.assertTrue(self.queue.status().is_paused)

        self.clock.advance(1)
        receipt = self.tick()

        assert receipt is not None
        self.assertEqual(self.client.submitted, ["prompt 1"])
        status = self.queue.status()
        self.assertFalse(status.is_paused)
        self.assertIsNone(status.paused_until)
        self.assertEqual(status.length, 1)

    def test_expired_pause_is_not_reported(self) -> None:
        self.queue.enqueue(entry(1))
        self.client.submit_errors = [RateLimitError("quota", status_code=429)]
        self.tick()
        paused_until = self.queue.status().paused_until
        assert paused_until is not None

        self.clock.advance((paused_until - self.clock.now()).total_seconds())

        status = self.queue.status()
        self.assertFalse(status.is_paused)
        self.assertIsNone(status.paused_until)
        self.assertEqual(self.queue.status_dict()["paused_until"], None)

    def test_other_errors_drop_the_head(self) -> None:
        self.queue.enqueue(entry(1))
        self.queue.enqueue(entry(2))
        self.client.submit_errors = [FatalSubmissionError("bad prompt", status_code=400)]

        with self.assertLogs(self.logger, level="ERROR") as captured:
            self.assertIsNone(self.tick())

        status = self.queue.status()
        self.assertEqual(status.length, 1)
        self.assertEqual(status.head_preview, entry(2))
        self.assertFalse(status.is_paused)
        self.assertEqual(self.store.list_jobs(), [])
        self.assertEqual(logged_fields(captured.records, "entry_dropped")[0]["shot_id"], "shot-1")

        self.tick()
        self.assertEqual(self.client.submitted, ["prompt 2"])

    def test_store_failure_after_submit_drops_head_and_keeps_ticking(self) -> None:
        broken = JobStore(Path(self.temp_dir.name) / "broken.sqlite")
        broken.init_schema()
        broken.close()
        self.queue = self.make_queue(broken)
        self.queue.enqueue(entry(1))
        self.queue.enqueue(entry(2))

        with self.assertLogs(self.logger, level="ERROR") as captured:
            self.tick()
            self.tick()

        self.assertEqual(self.client.submitted, ["prompt 1", "prompt 2"])
        dropped = logged_fields(captured.records, "entry_dropped")
        self.assertEqual([fields["error_type"] for fields in dropped], ["PersistenceError", "PersistenceError"])
        status = self.queue.status()
        self.assertEqual(status.length, 0)
        self.assertFalse(status.is_processing)

    def test_recording_a_submission_is_all_or_nothing(self) -> None:
        self.store.conn.execute("DROP TABLE job_events")
        self.queue.enqueue(entry(1))

        with self.assertLogs(self.logger, level="ERROR"):
            self.assertIsNone(self.tick())

        self.assertEqual(self.client.submitted, ["prompt 1"])
        self.assertEqual(self.store.list_jobs(), [])

    def test_start_is_idempotent_and_ticks_immediately(self) -> None:
        self.queue.enqueue(entry(1))
        self.queue.enqueue(entry(2))
        first = self.queue.start()
        second = self.queue.start()
        self.assertIs(first, second)
        self.assertEqual(self.timers.pending_count(), 1)

        self.timers.run_due()
        self.assertEqual(self.client.submitted, ["prompt 1"])

        self.clock.advance(119)
        self.timers.run_due()
        self.assertEqual(len(self.client.submitted), 1)
        self.clock.advance(1)
        self.timers.run_due()
        self.assertEqual(self.client.submitted, ["prompt 1", "prompt 2"])

    def test_stop_disarms_ticks(self) -> None:
        self.queue.enqueue(entry(1))
        self.queue.start()
        self.queue.stop()
        self.queue.stop()
        self.assertFalse(self.queue.status().is_running)
        self.clock.advance(600)
        self.timers.run_due()
        self.assertEqual(self.client.submitted, [])
        self.assertEqual(self.queue.status_dict()["head_preview"], {"entry_id": "shot-1", "title": "Shot 1", "prompt": "prompt 1"})

    def test_submitter_records_job_only_after_remote_success(self) -> None:
        submitter = Submitter(self.client, self.store, GenerationSettings(), self.clock, self.logger)
        receipt = submitter.submit(entry(1))
        self.assertEqual(receipt.operation_name, "operations/op-1")
        self.assertEqual([job.job_id for job in self.store.list_jobs()], [receipt.job_id])

        self.client.submit_errors = [FatalSubmissionError("bad prompt", status_code=400)]
        with self.assertRaises(FatalSubmissionError):
            submitter.submit(entry(2))
        self.assertEqual(len(self.store.list_jobs()), 1)


if __name__ == "__main__":
    unittest.main()
