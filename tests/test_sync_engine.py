import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from clinicsync.config_manager import ConfigManager
from clinicsync.errors import ConflictError, RemoteFetchError, SystemicError
from clinicsync.jobs import JOB_COMPLETED, JOB_ERROR, JobRegistry
from clinicsync.models import SYNC_ERROR, SYNC_RUNNING, SYNC_SUCCESS, RawEvent, RemoteSnapshot, SyncWindow, TriggerContext
from clinicsync.state_store import EventStore
from clinicsync.sync_engine import SyncController


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _raw(event_id: str, summary: str, description: str = "", day: int = 2) -> RawEvent:
    return RawEvent(
        calendar_id="cal-1",
        event_id=event_id,
        summary=summary,
        description=description,
        start=datetime(2026, 3, day, 10, 0, tzinfo=timezone.utc),
        end=datetime(2026, 3, day, 10, 30, tzinfo=timezone.utc),
    )


class FakeSource:
    def __init__(self, events: list[RawEvent]) -> None:
        self.events = events
        self.windows: list[SyncWindow] = []

    def fetch(self, window: SyncWindow) -> RemoteSnapshot:
        self.windows.append(window)
        return RemoteSnapshot(events=list(self.events), window=window, fetched_at=NOW)


class SyncControllerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(root / "config.yaml")
        self.store = EventStore(str(root / "state.db"))
        self.registry = JobRegistry()
        self.source = FakeSource(
            [
                _raw("evt-1", "Consulta Ana (40)"),
                _raw("evt-2", "Control Pedro", day=3),
                _raw("evt-3", "Clustoid 0,5 ml", day=4),
            ]
        )
        self.controller = SyncController(
            self.config_manager,
            self.store,
            self.registry,
            source=self.source,
            clock=lambda: NOW,
        )

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_run_once_inserts_and_finalizes_success(self) -> None:
        outcome = self.controller.run_once(TriggerContext(source="manual", user_id="u-1"))
        self.assertEqual(outcome.status, SYNC_SUCCESS)
        self.assertEqual(outcome.counts.inserted, 3)

        log = self.store.get_sync_log(outcome.log_id)
        self.assertEqual(log.status, SYNC_SUCCESS)
        self.assertEqual(log.inserted, 3)
        self.assertEqual(log.change_details.inserted, ["Consulta Ana (40)", "Control Pedro", "Clustoid 0,5 ml"])
        self.assertEqual(log.fetched_at, NOW)
        self.assertEqual(log.trigger_user_id, "u-1")

        job = self.registry.get(outcome.job_id)
        self.assertEqual(job.status, JOB_COMPLETED)
        self.assertEqual(job.progress, job.total)

    def test_window_comes_from_config(self) -> None:
        self.config_manager.update({"sync": {"start_date": "2026-01-01", "lookahead_days": 30}})
        self.controller.run_once()
        window = self.source.windows[0]
        self.assertEqual(window.start, datetime(2026, 1, 1, tzinfo=timezone.utc))
        self.assertEqual(window.end.date().isoformat(), "2026-04-14")

    def test_second_run_counts_unchanged_items_as_skipped(self) -> None:
        self.controller.run_once()
        outcome = self.controller.run_once()
        self.assertEqual((outcome.counts.inserted, outcome.counts.updated, outcome.counts.skipped), (0, 0, 3))

    def test_absent_event_is_excluded_on_next_run(self) -> None:
        self.controller.run_once()
        self.source.events = self.source.events[:2]
        outcome = self.controller.run_once()
        self.assertEqual(outcome.counts.excluded, 1)
        self.assertEqual(outcome.counts.to_dict()["changeDetails"]["excluded"], ["Clustoid 0,5 ml"])

    def test_start_returns_immediately_and_job_finishes(self) -> None:
        started = self.controller.start(TriggerContext(source="manual"))
        job = self.registry.wait(started.job_id, timeout=5)
        self.assertEqual(job.status, JOB_COMPLETED)
        self.assertEqual(job.result["inserted"], 3)
        log = self.store.get_sync_log(started.log_id)
        self.assertEqual(log.status, SYNC_SUCCESS)
        self.assertEqual(log.job_id, started.job_id)

    def test_failed_launch_releases_the_lock(self) -> None:
        with mock.patch.object(self.registry, "launch", side_effect=RuntimeError("can't start new thread")):
            with self.assertRaises(RuntimeError):
                self.controller.start(TriggerContext(source="manual"))
        self.assertIsNone(self.store.running_sync_log())
        log = self.store.list_sync_logs(limit=1)[0]
        self.assertEqual(log.status, SYNC_ERROR)
        self.assertEqual(log.error_message, "RuntimeError: can't start new thread")

        started = self.controller.start(TriggerContext(source="manual"))
        self.assertEqual(self.registry.wait(started.job_id, timeout=5).status, JOB_COMPLETED)

    def test_running_sync_rejects_a_second_start(self) -> None:
        self.store.create_sync_log(
            trigger=TriggerContext(source="manual"),
            job_id=None,
            window=None,
            now=NOW - timedelta(minutes=5),
            stale_after=timedelta(minutes=15),
        )
        with self.assertRaises(ConflictError):
            self.controller.start(TriggerContext(source="manual"))
        self.assertEqual(self.registry._jobs, {})

    def test_stale_lock_from_twenty_minutes_ago_is_ignored(self) -> None:
        stale = self.store.create_sync_log(
            trigger=TriggerContext(source="manual"),
            job_id=None,
            window=None,
            now=NOW - timedelta(minutes=20),
            stale_after=timedelta(minutes=15),
        )
        started = self.controller.start(TriggerContext(source="manual"))
        self.registry.wait(started.job_id, timeout=5)
        self.assertEqual(self.store.get_sync_log(started.log_id).status, SYNC_SUCCESS)
        self.assertEqual(self.store.get_sync_log(stale.id).status, SYNC_RUNNING)

    def test_fetch_failure_finalizes_error(self) -> None:
        failing = mock.Mock()
        failing.fetch.side_effect = RemoteFetchError("calendar down")
        controller = SyncController(self.config_manager, self.store, self.registry, source=failing, clock=lambda: NOW)
        outcome = controller.run_once()
        self.assertEqual(outcome.status, SYNC_ERROR)
        self.assertEqual(outcome.error_message, "RemoteFetchError: calendar down")
        log = self.store.get_sync_log(outcome.log_id)
        self.assertEqual(log.status, SYNC_ERROR)
        self.assertEqual(log.error_message, "RemoteFetchError: calendar down")
        self.assertEqual(self.registry.get(outcome.job_id).status, JOB_ERROR)

    def test_unexpected_fetch_exception_is_wrapped(self) -> None:
        failing = mock.Mock()
        failing.fetch.side_effect = OSError("network unreachable")
        controller = SyncController(self.config_manager, self.store, self.registry, source=failing, clock=lambda: NOW)
        outcome = controller.run_once()
        self.assertTrue(outcome.error_message.startswith("RemoteFetchError:"))

    def test_store_fault_keeps_partial_counts(self) -> None:
        original = self.store.apply_item
        calls = {"count": 0}

        def flaky(item):
            calls["count"] += 1
            if calls["count"] == 3:
                raise SystemicError("disk I/O error")
            return original(item)

        with mock.patch.object(self.store, "apply_item", side_effect=flaky):
            outcome = self.controller.run_once()
        self.assertEqual(outcome.status, SYNC_ERROR)
        self.assertEqual(outcome.counts.inserted, 2)
        log = self.store.get_sync_log(outcome.log_id)
        self.assertEqual(log.inserted, 2)
        self.assertEqual(log.error_message, "SystemicError: disk I/O error")

    def test_remote_source_is_built_from_config_when_not_injected(self) -> None:
        controller = SyncController(self.config_manager, self.store, self.registry, clock=lambda: NOW)
        with mock.patch("clinicsync.remote_source.build_remote_source", return_value=self.source) as build:
            outcome = controller.run_once()
        build.assert_called_once()
        self.assertEqual(outcome.status, SYNC_SUCCESS)
