import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

from clinicsync.classifier import Category
from clinicsync.config_manager import ConfigManager
from clinicsync.errors import SystemicError, WriteConflictError
from clinicsync.jobs import JOB_COMPLETED, JOB_ERROR, JobRegistry
from clinicsync.models import CalendarEvent, ChangeItem
from clinicsync.reclassify import ReclassificationRunner
from clinicsync.state_store import MODE_FORCE_ALL, MODE_PENDING_ONLY, EventStore


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _event(event_id: str, summary: str, **derived) -> CalendarEvent:
    start = derived.pop("start", datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))
    return CalendarEvent(
        calendar_id="cal-1",
        event_id=event_id,
        summary=summary,
        start=start,
        end=start + timedelta(minutes=30),
        **derived,
    )


class ReclassificationRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        root = Path(self.temp_dir.name)
        self.config_manager = ConfigManager(root / "config.yaml")
        self.store = EventStore(str(root / "state.db"))
        self.registry = JobRegistry()
        self.runner = ReclassificationRunner(self.config_manager, self.store, self.registry, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _seed(self, *events: CalendarEvent) -> None:
        items = [ChangeItem(kind="insert", event=event, summary=event.summary) for event in events]
        counts = self.store.apply_diff(items)
        self.assertEqual(counts.inserted, len(events))

    def test_pending_only_selects_incomplete_events(self) -> None:
        complete = [
            _event(
                f"evt-{index:03d}",
                "Control Pedro",
                category=Category.CONTROL.value,
                amount_expected=30000,
                attended=True,
            )
            for index in range(40)
        ]
        incomplete = [_event(f"evt-{index:03d}", "Consulta Ana (40)") for index in range(40, 100)]
        self._seed(*complete, *incomplete)

        self.assertEqual(self.runner.prepare(MODE_PENDING_ONLY), 60)
        job_id, total = self.runner.submit(MODE_PENDING_ONLY)
        self.assertEqual(total, 60)

        job = self.registry.wait(job_id, timeout=10)
        self.assertEqual(job.status, JOB_COMPLETED)
        self.assertEqual(job.total, 60)
        self.assertEqual(job.progress, 60)
        self.assertEqual(job.result["checked"], 60)
        self.assertEqual(job.result["reclassified"], 60)
        self.assertEqual(job.result["errors"], 0)
        self.assertEqual(job.result["fieldCounts"]["category"], 60)
        self.assertEqual(job.result["fieldCounts"]["amount_expected"], 60)

        filled = self.store.get_event("cal-1", "evt-099")
        self.assertEqual(filled.category, Category.CONSULTATION.value)
        self.assertEqual(filled.amount_expected, 40000)
        untouched = self.store.get_event("cal-1", "evt-000")
        self.assertEqual(untouched.category, Category.CONTROL.value)

    def test_future_events_do_not_count_as_missing_attendance(self) -> None:
        self._seed(
            _event(
                "evt-1",
                "Consulta Ana (40)",
                category=Category.CONSULTATION.value,
                amount_expected=40000,
                start=NOW + timedelta(days=3),
            )
        )
        self.assertEqual(self.runner.prepare(MODE_PENDING_ONLY), 0)

    def test_pending_only_never_overwrites_known_values(self) -> None:
        self._seed(_event("evt-1", "Consulta Ana (40)", category=Category.CONTROL.value))
        handle = self.registry.create("reclassify", total=1)
        result = self.runner.run_batch(MODE_PENDING_ONLY, handle)
        event = self.store.get_event("cal-1", "evt-1")
        self.assertEqual(event.category, Category.CONTROL.value)
        self.assertEqual(event.amount_expected, 40000)
        self.assertEqual(result.field_counts["amount_expected"], 1)
        self.assertNotIn("category", result.field_counts)

    def test_force_all_overwrites_manual_classification(self) -> None:
        self._seed(
            _event(
                "evt-1",
                "Consulta Ana (40)",
                category=Category.CONTROL.value,
                amount_expected=10000,
                attended=True,
                manual_override=True,
            )
        )
        job_id, total = self.runner.submit(MODE_FORCE_ALL)
        self.assertEqual(total, 1)
        self.assertEqual(self.registry.wait(job_id, timeout=5).status, JOB_COMPLETED)
        event = self.store.get_event("cal-1", "evt-1")
        self.assertEqual(event.category, Category.CONSULTATION.value)
        self.assertEqual(event.amount_expected, 40000)
        self.assertIsNone(event.attended)
        self.assertFalse(event.manual_override)

    def test_force_all_skips_excluded_events(self) -> None:
        self._seed(_event("evt-1", "Consulta Ana (40)", excluded=True))
        self.assertEqual(self.runner.prepare(MODE_FORCE_ALL), 0)

    def test_concurrent_writes_are_counted_as_stale(self) -> None:
        self._seed(_event("evt-1", "Consulta Ana (40)"), _event("evt-2", "Control Pedro"))
        handle = self.registry.create("reclassify", total=2)
        with mock.patch.object(self.store, "update_derived", side_effect=WriteConflictError("changed")):
            result = self.runner.run_batch(MODE_FORCE_ALL, handle)
        self.assertEqual(result.stale, 2)
        self.assertEqual(result.reclassified, 0)
        self.assertEqual(self.registry.get(handle.job_id).status, JOB_COMPLETED)

    def test_item_failures_are_counted_and_the_batch_continues(self) -> None:
        self._seed(_event("evt-1", "Consulta Ana (40)"), _event("evt-2", "Control Pedro"))
        handle = self.registry.create("reclassify", total=2)
        with mock.patch("clinicsync.reclassify.classify", side_effect=ValueError("bad text")):
            result = self.runner.run_batch(MODE_FORCE_ALL, handle)
        self.assertEqual(result.checked, 2)
        self.assertEqual(result.errors, 2)
        self.assertEqual(self.registry.get(handle.job_id).result["errors"], 2)

    def test_systemic_failure_marks_job_error(self) -> None:
        self._seed(_event("evt-1", "Consulta Ana (40)"))
        with mock.patch.object(self.store, "update_derived", side_effect=SystemicError("database is gone")):
            job_id, _ = self.runner.submit(MODE_FORCE_ALL)
            job = self.registry.wait(job_id, timeout=5)
        self.assertEqual(job.status, JOB_ERROR)
        self.assertEqual(job.error, "SystemicError: database is gone")

    def test_cancellation_completes_with_flag(self) -> None:
        self._seed(_event("evt-1", "Consulta Ana (40)"))
        handle = self.registry.create("reclassify", total=1)
        self.registry.cancel(handle.job_id)
        result = self.runner.run_batch(MODE_FORCE_ALL, handle)
        self.assertTrue(result.cancelled)
        job = self.registry.get(handle.job_id)
        self.assertEqual(job.status, JOB_COMPLETED)
        self.assertTrue(job.result["cancelled"])
        self.assertEqual(job.progress, 0)
