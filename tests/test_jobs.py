import threading
import unittest
from datetime import datetime, timedelta, timezone

from clinicsync.errors import JobNotFoundError
from clinicsync.jobs import JOB_COMPLETED, JOB_ERROR, JOB_IN_PROGRESS, JOB_PENDING, JobHandle, JobRegistry


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class JobRegistryTests(unittest.TestCase):
    def test_submit_runs_target_in_background(self) -> None:
        registry = JobRegistry()
        release = threading.Event()

        def target(handle: JobHandle) -> None:
            handle.set_total(10)
            release.wait(5)
            handle.advance(10, "done")
            handle.complete(result={"items": 10})

        job_id = registry.submit("demo", target)
        self.assertIn(registry.poll(job_id)["status"], {JOB_PENDING, JOB_IN_PROGRESS})
        release.set()
        job = registry.wait(job_id, timeout=5)
        self.assertEqual(job.status, JOB_COMPLETED)
        self.assertEqual(job.progress, 10)
        self.assertEqual(job.result, {"items": 10})
        self.assertIsNotNone(job.finished_at)

    def test_progress_is_monotonic_and_clamped(self) -> None:
        registry = JobRegistry()
        handle = registry.create("demo", total=10)
        handle.set_progress(5)
        handle.set_progress(3)
        self.assertEqual(registry.get(handle.job_id).progress, 5)
        handle.advance(50)
        self.assertEqual(registry.get(handle.job_id).progress, 10)

    def test_terminal_state_is_immutable(self) -> None:
        registry = JobRegistry()
        handle = registry.create("demo", total=4)
        handle.complete(result={"ok": True}, message="finished")
        handle.fail("too late")
        handle.set_message("ignored")
        job = registry.get(handle.job_id)
        self.assertEqual(job.status, JOB_COMPLETED)
        self.assertEqual(job.message, "finished")
        self.assertEqual(job.progress, 4)
        self.assertIsNone(job.error)

    def test_exception_marks_job_as_error(self) -> None:
        registry = JobRegistry()

        def target(handle: JobHandle) -> None:
            raise RuntimeError("boom")

        job = registry.wait(registry.submit("demo", target), timeout=5)
        self.assertEqual(job.status, JOB_ERROR)
        self.assertEqual(job.error, "RuntimeError: boom")

    def test_target_returning_without_final_state_completes(self) -> None:
        registry = JobRegistry()
        job = registry.wait(registry.submit("demo", lambda handle: None), timeout=5)
        self.assertEqual(job.status, JOB_COMPLETED)

    def test_unknown_job(self) -> None:
        registry = JobRegistry()
        with self.assertRaises(JobNotFoundError):
            registry.poll("missing")
        with self.assertRaises(JobNotFoundError):
            registry.cancel("missing")

    def test_terminal_jobs_expire_after_ttl(self) -> None:
        clock = FakeClock()
        registry = JobRegistry(ttl_seconds=60, clock=clock)
        finished = registry.create("demo")
        finished.complete()
        running = registry.create("demo")
        clock.now += timedelta(seconds=61)
        with self.assertRaises(JobNotFoundError):
            registry.poll(finished.job_id)
        self.assertEqual(registry.poll(running.job_id)["status"], JOB_PENDING)

    def test_cancel_sets_flag_seen_by_handle(self) -> None:
        registry = JobRegistry()
        handle = registry.create("demo")
        self.assertFalse(handle.cancelled)
        job = registry.cancel(handle.job_id)
        self.assertTrue(job.cancel_requested)
        self.assertTrue(handle.cancelled)

    def test_poll_payload_shape(self) -> None:
        registry = JobRegistry()
        handle = registry.create("sync", total=3, message="queued")
        payload = registry.poll(handle.job_id)
        self.assertEqual(payload["jobId"], handle.job_id)
        self.assertEqual(payload["kind"], "sync")
        self.assertEqual(payload["total"], 3)
        self.assertEqual(payload["message"], "queued")
        self.assertIsNone(payload["result"])
