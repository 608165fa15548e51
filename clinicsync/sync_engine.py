from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable

from clinicsync import remote_source
from clinicsync.config_manager import ConfigManager
from clinicsync.errors import ClinicSyncError, RemoteFetchError
from clinicsync.jobs import JobHandle, JobRegistry
from clinicsync.models import (
    SYNC_ERROR,
    SYNC_SUCCESS,
    AppConfig,
    ApplyCounts,
    RemoteSnapshot,
    SyncWindow,
    TriggerContext,
    sync_window,
    utc_now,
)
from clinicsync.reconciler import diff
from clinicsync.state_store import EventStore


logger = logging.getLogger(__name__)

JOB_KIND_SYNC = "sync"
APPLY_PAGE_SIZE = 50


class SyncCancelled(ClinicSyncError):
    pass


@dataclass
class SyncStart:
    job_id: str
    log_id: int


@dataclass
class SyncOutcome:
    log_id: int
    job_id: str
    status: str
    counts: ApplyCounts = field(default_factory=ApplyCounts)
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = {"logId": self.log_id, "status": self.status, "errorMessage": self.error_message}
        payload.update(self.counts.to_dict())
        return payload


class SyncController:
    """Single-flight sync of the remote calendar into the event store.

    ``start`` returns as soon as the RUNNING log and the job exist; the work
    happens on a job thread. ``run_once`` runs the same pipeline inline.
    """

    def __init__(
        self,
        config_manager: ConfigManager,
        event_store: EventStore,
        registry: JobRegistry,
        source: remote_source.RemoteSource | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.config_manager = config_manager
        self.event_store = event_store
        self.registry = registry
        self._source = source
        self._clock = clock

    def _remote(self, config: AppConfig) -> remote_source.RemoteSource:
        if self._source is not None:
            return self._source
        return remote_source.build_remote_source(config.source)

    def _open_log(self, trigger: TriggerContext, window: SyncWindow | None) -> tuple[AppConfig, SyncWindow, int, str]:
        config = self.config_manager.load()
        now = self._clock()
        window = window or sync_window(now, config.sync)
        job_id = uuid.uuid4().hex
        log = self.event_store.create_sync_log(
            trigger=trigger,
            job_id=job_id,
            window=window,
            now=now,
            stale_after=timedelta(minutes=config.sync.stale_lock_minutes),
        )
        return config, window, log.id, job_id

    def start(self, trigger: TriggerContext, window: SyncWindow | None = None) -> SyncStart:
        """Open a RUNNING sync log and launch the job. Raises ``ConflictError`` while another sync holds the lock."""
        config, window, log_id, job_id = self._open_log(trigger, window)
        try:
            handle = self.registry.create(JOB_KIND_SYNC, message="Sincronización en cola", job_id=job_id)
            self.registry.launch(handle, lambda job: self._execute(config, window, log_id, job))
        except Exception as exc:
            self.event_store.finalize_sync_log(
                log_id,
                status=SYNC_ERROR,
                counts=ApplyCounts(),
                finished_at=self._clock(),
                error_message=f"{type(exc).__name__}: {exc}",
            )
            raise
        logger.info("Sync %s started by %s (job %s)", log_id, trigger.source, job_id)
        return SyncStart(job_id=job_id, log_id=log_id)

    def run_once(self, trigger: TriggerContext | None = None, window: SyncWindow | None = None) -> SyncOutcome:
        trigger = trigger or TriggerContext(source="manual")
        config, window, log_id, job_id = self._open_log(trigger, window)
        handle = self.registry.create(JOB_KIND_SYNC, message="Sincronización en curso", job_id=job_id)
        return self._execute(config, window, log_id, handle)

    def _fetch(self, config: AppConfig, window: SyncWindow) -> RemoteSnapshot:
        try:
            return self._remote(config).fetch(window)
        except RemoteFetchError:
            raise
        except Exception as exc:
            raise RemoteFetchError(f"{type(exc).__name__}: {exc}") from exc

    def _execute(self, config: AppConfig, window: SyncWindow, log_id: int, handle: JobHandle) -> SyncOutcome:
        counts = ApplyCounts()
        fetched_at: datetime | None = None
        try:
            handle.set_message("Descargando eventos")
            snapshot = self._fetch(config, window)
            fetched_at = snapshot.fetched_at

            handle.set_message("Comparando eventos")
            stored = self.event_store.load_snapshot(window, keys=[item.key for item in snapshot.events])
            result = diff(
                snapshot,
                stored,
                now=self._clock(),
                exclude_patterns=config.sync.exclude_patterns,
            )
            for invalid in result.invalid:
                logger.warning("Skipping remote item %s/%s: %s", invalid.calendar_id, invalid.event_id, invalid.reason)
            counts.skipped += len(result.invalid)

            items = result.items()
            considered = len(result.invalid) + result.unchanged
            handle.set_total(considered + len(items))
            handle.set_progress(considered)
            for offset in range(0, len(items), APPLY_PAGE_SIZE):
                if handle.cancelled:
                    raise SyncCancelled("cancelled")
                page = items[offset : offset + APPLY_PAGE_SIZE]
                self.event_store.apply_diff(page, counts)
                done = offset + len(page)
                handle.set_progress(considered + done, f"Aplicando cambios {done}/{len(items)}")
            counts.skipped += result.unchanged

            self.event_store.finalize_sync_log(
                log_id,
                status=SYNC_SUCCESS,
                counts=counts,
                finished_at=self._clock(),
                fetched_at=fetched_at,
            )
            outcome = SyncOutcome(log_id=log_id, job_id=handle.job_id, status=SYNC_SUCCESS, counts=counts)
            message = (
                f"Sincronización completa: {counts.inserted} nuevos, {counts.updated} actualizados, "
                f"{counts.excluded} excluidos, {counts.skipped} omitidos"
            )
            logger.info("Sync %s finished: %s", log_id, message)
            handle.complete(result=outcome.to_dict(), message=message)
            return outcome
        except Exception as exc:
            if isinstance(exc, SyncCancelled):
                error_message = "cancelled"
                logger.info("Sync %s cancelled", log_id)
            else:
                error_message = f"{type(exc).__name__}: {exc}"
                logger.exception("Sync %s failed", log_id)
            self.event_store.finalize_sync_log(
                log_id,
                status=SYNC_ERROR,
                counts=counts,
                finished_at=self._clock(),
                fetched_at=fetched_at,
                error_message=error_message,
            )
            outcome = SyncOutcome(
                log_id=log_id,
                job_id=handle.job_id,
                status=SYNC_ERROR,
                counts=counts,
                error_message=error_message,
            )
            handle.fail(error_message, result=outcome.to_dict())
            return outcome
