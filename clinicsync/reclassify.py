from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from clinicsync.classifier import classify, fill_missing
from clinicsync.config_manager import ConfigManager
from clinicsync.errors import SystemicError, ValidationError, WriteConflictError
from clinicsync.jobs import JobHandle, JobRegistry
from clinicsync.models import CalendarEvent, text_fingerprint, utc_now
from clinicsync.state_store import MODE_FORCE_ALL, MODE_PENDING_ONLY, EventStore


logger = logging.getLogger(__name__)

MODES = (MODE_PENDING_ONLY, MODE_FORCE_ALL)
JOB_KIND_BY_MODE = {MODE_PENDING_ONLY: "reclassify", MODE_FORCE_ALL: "reclassify_all"}


@dataclass
class ReclassifyResult:
    checked: int = 0
    reclassified: int = 0
    errors: int = 0
    stale: int = 0
    cancelled: bool = False
    field_counts: Counter = field(default_factory=Counter)

    def to_dict(self) -> dict[str, Any]:
        return {
            "checked": self.checked,
            "reclassified": self.reclassified,
            "errors": self.errors,
            "stale": self.stale,
            "cancelled": self.cancelled,
            "fieldCounts": dict(self.field_counts),
        }


def _check_mode(mode: str) -> str:
    if mode not in MODES:
        raise ValidationError(f"unknown reclassify mode: {mode!r}")
    return mode


class ReclassificationRunner:
    def __init__(
        self,
        config_manager: ConfigManager,
        event_store: EventStore,
        registry: JobRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.event_store = event_store
        self.registry = registry
        self._clock = clock

    def prepare(self, mode: str, now: datetime | None = None) -> int:
        config = self.config_manager.load()
        return self.event_store.count_for_reclassify(
            _check_mode(mode),
            config.reclassify.required_fields,
            now or self._clock(),
        )

    def submit(self, mode: str) -> tuple[str, int]:
        now = self._clock()
        total = self.prepare(mode, now)
        job_id = self.registry.submit(
            JOB_KIND_BY_MODE[mode],
            lambda handle: self.run_batch(mode, handle, now),
            total=total,
            message=f"Analizando 0/{total} eventos...",
        )
        logger.info("Reclassify job %s queued (%s, %d events)", job_id, mode, total)
        return job_id, total

    def _reclassify_one(self, mode: str, event: CalendarEvent, now: datetime) -> list[str]:
        current = event.derived()
        if mode == MODE_FORCE_ALL:
            updated = classify(event, None, now=now)
        else:
            updated = fill_missing(current, classify(event, current, now=now))
        changed = current.changed_fields(updated)
        if not changed:
            return []
        self.event_store.update_derived(
            event.key,
            updated,
            expected_updated_at=event.updated_at,
            classified_from=text_fingerprint(event.summary, event.description),
            manual_override=False if mode == MODE_FORCE_ALL else None,
        )
        return changed

    def run_batch(self, mode: str, handle: JobHandle, now: datetime | None = None) -> ReclassifyResult:
        """Walk the selection page by page and write back re-derived fields.

        Pending mode only fills gaps; force mode overwrites every derived field,
        manual overrides included.
        """
        _check_mode(mode)
        now = now or self._clock()
        config = self.config_manager.load()
        page_size = config.reclassify.page_size
        result = ReclassifyResult()
        after_key: tuple[str, str] | None = None

        while True:
            if handle.cancelled:
                result.cancelled = True
                break
            page = self.event_store.fetch_reclassify_page(
                mode,
                config.reclassify.required_fields,
                now,
                after_key=after_key,
                limit=page_size,
            )
            if not page:
                break
            for event in page:
                result.checked += 1
                try:
                    changed = self._reclassify_one(mode, event, now)
                except WriteConflictError as exc:
                    logger.info("Skipping %s/%s: %s", event.calendar_id, event.event_id, exc)
                    result.stale += 1
                    continue
                except SystemicError:
                    raise
                except Exception:
                    logger.exception("Failed to reclassify %s/%s", event.calendar_id, event.event_id)
                    result.errors += 1
                    continue
                if changed:
                    result.reclassified += 1
                    result.field_counts.update(changed)
            after_key = page[-1].key
            handle.advance(page_size, f"Analizando {result.checked}/{handle.total} eventos...")
            if len(page) < page_size:
                break

        handle.set_message("Guardando...")
        summary = f"{result.reclassified} de {result.checked} eventos reclasificados"
        if result.cancelled:
            summary = f"Cancelado: {summary}"
        handle.complete(result=result.to_dict(), message=summary)
        return result
