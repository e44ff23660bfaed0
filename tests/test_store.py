from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from veoqueue.models import JobRecord, JobStatus
from veoqueue.store import JobStore, PersistenceError


def pending_job(job_id: str, created_at: str = "2025-03-01T12:00:00+00:00") -> JobRecord:
    return JobRecord(
        job_id=job_id,
        shot_id=f"shot-{job_id}",
        title=f"Shot {job_id}",
        operation_name=f"operations/{job_id}",
        status=JobStatus.PENDING,
        created_at=created_at,
    )


class JobStoreTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.store = JobStore(Path(self.temp_dir.name) / "veo.sqlite")
        self.store.init_schema()

    def tearDown(self) -> None:
        self.store.close()
        self.temp_dir.cleanup()

    def test_create_and_list_pending(self) -> None:
        self.store.create_job(pending_job("b", "2025-03-01T12:05:00+00:00"))
        self.store.create_job(pending_job("a", "2025-03-01T12:00:00+00:00"))
        job = self.store.get_job("a")
        assert job is not None
        self.assertEqual(job.status, JobStatus.PENDING)
        self.assertIsNone(job.file_path)
        self.assertEqual([j.job_id for j in self.store.list_jobs_by_status(JobStatus.PENDING)], ["a", "b"])
        self.assertEqual([j.job_id for j in self.store.list_jobs()], ["b", "a"])
        self.assertIsNone(self.store.get_job("missing"))

    def test_done_is_final(self) -> None:
        self.store.create_job(pending_job("a"))
        self.assertTrue(self.store.update_status("a", JobStatus.DONE, "/videos/a.mp4"))
        self.assertFalse(self.store.update_status("a", JobStatus.DONE, "/videos/other.mp4"))
        self.assertFalse(self.store.update_status("a", JobStatus.PENDING))

        job = self.store.get_job("a")
        assert job is not None
        self.assertEqual(job.status, JobStatus.DONE)
        self.assertEqual(job.file_path, "/videos/a.mp4")
        self.assertEqual(self.store.summary_counts(), {"PENDING": 0, "DONE": 1})

    def test_file_path_only_with_done(self) -> None:
        self.store.create_job(pending_job("a"))
        with self.assertRaises(ValueError):
            self.store.update_status("a", JobStatus.DONE)
        with self.assertRaises(ValueError):
            self.store.update_status("a", JobStatus.PENDING, "/videos/a.mp4")
        with self.assertRaises(ValueError):
            done = pending_job("b")
            done.file_path = "/videos/b.mp4"
            self.store.create_job(done)

    def test_delete_removes_job_and_events(self) -> None:
        self.store.create_job(pending_job("a"))
        self.store.add_event("a", "submitted", {"operation_name": "operations/a"})
        self.assertEqual(self.store.list_events("a")[0]["details"], {"operation_name": "operations/a"})
        self.assertTrue(self.store.delete_job("a"))
        self.assertFalse(self.store.delete_job("a"))
        self.assertEqual(self.store.list_events("a"), [])

    def test_duplicate_id_is_persistence_error(self) -> None:
        self.store.create_job(pending_job("a"))
        with self.assertRaises(PersistenceError):
            self.store.create_job(pending_job("a"))

    def test_create_with_event_is_one_transaction(self) -> None:
        self.store.create_job(pending_job("a"), event_type="submitted", details={"shot_id": "s1"})
        self.assertEqual(self.store.list_events("a")[0]["details"], {"shot_id": "s1"})

        self.store.conn.execute("DROP TABLE job_events")
        with self.assertRaises(PersistenceError):
            self.store.create_job(pending_job("b"), event_type="submitted")
        self.assertIsNone(self.store.get_job("b"))
        self.assertIsNotNone(self.store.get_job("a"))

    def test_closed_store_raises_persistence_error(self) -> None:
        self.store.close()
        with self.assertRaises(PersistenceError):
            self.store.list_jobs_by_status(JobStatus.PENDING)
        self.store = JobStore(Path(self.temp_dir.name) / "veo.sqlite")


if __name__ == "__main__":
    unittest.main()
