from __future__ import annotations

import logging
import os
from datetime import date, datetime
from typing import Any, Iterable, Union

from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel, Field

from clinicsync.classifier import (
    Category,
    classification_options,
    has_no_show,
    normalize_category,
    normalize_treatment_stage,
    parse_amount,
)
from clinicsync.config_manager import ConfigManager
from clinicsync.errors import ConflictError, EventNotFoundError, JobNotFoundError, ValidationError
from clinicsync.jobs import JobRegistry
from clinicsync.models import (
    DEFAULT_REQUIRED_FIELDS,
    DERIVED_FIELDS,
    CalendarEvent,
    DerivedFields,
    TriggerContext,
    date_to_datetime,
    utc_now,
)
from clinicsync.reclassify import ReclassificationRunner
from clinicsync.scheduler import SyncScheduler
from clinicsync.state_store import MODE_FORCE_ALL, MODE_PENDING_ONLY, EventStore
from clinicsync.sync_engine import SyncController


logger = logging.getLogger(__name__)

DAILY_EVENT_LIMIT = 5000


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ManualClassificationRequest(BaseModel):
    calendar_id: str = Field(min_length=1)
    event_id: str = Field(min_length=1)
    category: str | None = None
    treatment_stage: str | None = None
    dosage_value: float | None = None
    dosage_unit: str | None = None
    amount_expected: Union[int, str, None] = None
    amount_paid: Union[int, str, None] = None
    attended: bool | None = None
    control_included: bool | None = None
    is_home_visit: bool | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.event_store = EventStore(state_path)
        config = self.config_manager.load()
        self.registry = JobRegistry(ttl_seconds=config.jobs.ttl_seconds)
        self.sync_controller = SyncController(self.config_manager, self.event_store, self.registry)
        self.reclassifier = ReclassificationRunner(self.config_manager, self.event_store, self.registry)
        self.scheduler = SyncScheduler(self.sync_controller, self.config_manager)


def _trigger(source: str, user_id: str | None, user_label: str | None) -> TriggerContext:
    return TriggerContext(
        source=source,
        user_id=(user_id or "").strip() or None,
        label=(user_label or "").strip() or None,
    )


def build_manual_derived(request: ManualClassificationRequest, event_text: str) -> DerivedFields:
    """Validate a manual classification and turn it into derived fields."""
    category = normalize_category(request.category)
    if request.category and category is None:
        raise ValidationError(f"unknown category: {request.category!r}")
    stage = normalize_treatment_stage(request.treatment_stage)
    if request.treatment_stage and stage is None:
        raise ValidationError(f"unknown treatment stage: {request.treatment_stage!r}")
    attended = request.attended
    if has_no_show(event_text):
        if attended is True:
            raise ValidationError("event text reports a no-show; attended cannot be true")
        attended = False
    is_subcutaneous = category == Category.SUBCUTANEOUS
    return DerivedFields(
        category=category.value if category else None,
        treatment_stage=stage.value if stage and is_subcutaneous else None,
        dosage_value=request.dosage_value if is_subcutaneous else None,
        dosage_unit=(request.dosage_unit or None) if is_subcutaneous else None,
        amount_expected=parse_amount(request.amount_expected),
        amount_paid=parse_amount(request.amount_paid),
        attended=attended,
        control_included=request.control_included,
        is_home_visit=request.is_home_visit,
    )


def _missing_fields(missing: str | None) -> list[str]:
    if not missing:
        return list(DEFAULT_REQUIRED_FIELDS)
    names = [name.strip() for name in missing.split(",") if name.strip()]
    unknown = [name for name in names if name not in DERIVED_FIELDS]
    if unknown:
        raise HTTPException(status_code=400, detail=f"unknown fields: {', '.join(unknown)}")
    return names


def _parse_day(value: str | None, *, is_end: bool = False) -> datetime | None:
    if not value or not value.strip():
        return None
    try:
        day = date.fromisoformat(value.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid date: {value!r}") from exc
    return date_to_datetime(day, is_end=is_end)


def _category_filter(value: str | None) -> str | None:
    if not value:
        return None
    category = normalize_category(value)
    if category is None:
        raise HTTPException(status_code=400, detail=f"unknown category: {value!r}")
    return category.value


def group_events_by_day(events: Iterable[CalendarEvent]) -> list[dict[str, Any]]:
    """Bucket events by UTC start date, keeping their order."""
    days: dict[str, dict[str, Any]] = {}
    for event in events:
        if event.start is None:
            continue
        key = event.start.date().isoformat()
        bucket = days.setdefault(key, {"date": key, "total": 0, "amountExpected": 0, "amountPaid": 0, "events": []})
        bucket["total"] += 1
        bucket["amountExpected"] += event.amount_expected or 0
        bucket["amountPaid"] += event.amount_paid or 0
        bucket["events"].append(event.to_dict())
    return list(days.values())


def create_app() -> FastAPI:
    config_path = os.getenv("CLINICSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CLINICSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="clinicsync", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        app.state.context.config_manager.update(request.payload)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.post("/sync", status_code=202)
    def start_sync(
        x_user_id: str | None = Header(default=None),
        x_user_label: str | None = Header(default=None),
    ) -> dict[str, Any]:
        trigger = _trigger("manual", x_user_id, x_user_label)
        try:
            started = app.state.context.sync_controller.start(trigger)
        except ConflictError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        return {
            "jobId": started.job_id,
            "logId": started.log_id,
            "status": "accepted",
            "message": "Sincronización iniciada",
        }

    @app.get("/sync-logs")
    def sync_logs(limit: int = 20) -> dict[str, Any]:
        logs = app.state.context.event_store.list_sync_logs(limit=limit)
        return {"logs": [log.to_dict() for log in logs]}

    def _start_reclassify(mode: str) -> dict[str, Any]:
        job_id, total = app.state.context.reclassifier.submit(mode)
        return {"jobId": job_id, "status": "accepted", "totalEvents": total}

    @app.post("/reclassify", status_code=202)
    def reclassify_pending() -> dict[str, Any]:
        return _start_reclassify(MODE_PENDING_ONLY)

    @app.post("/reclassify-all", status_code=202)
    def reclassify_all() -> dict[str, Any]:
        return _start_reclassify(MODE_FORCE_ALL)

    @app.get("/jobs/{job_id}")
    def job_status(job_id: str) -> dict[str, Any]:
        try:
            return app.state.context.registry.poll(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/jobs/{job_id}/cancel")
    def cancel_job(job_id: str) -> dict[str, Any]:
        try:
            job = app.state.context.registry.cancel(job_id)
        except JobNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return job.to_dict()

    @app.get("/classification-options")
    def options() -> dict[str, list[str]]:
        return classification_options()

    @app.get("/calendars")
    def calendars() -> dict[str, Any]:
        return {"calendars": app.state.context.event_store.list_calendars()}

    def _list_events(
        calendar_ids: list[str],
        start: str | None,
        end: str | None,
        category: str | None,
        include_excluded: bool,
        limit: int,
        offset: int,
    ) -> dict[str, Any]:
        items, total = app.state.context.event_store.list_events(
            start=_parse_day(start),
            end=_parse_day(end, is_end=True),
            calendar_ids=calendar_ids,
            category=_category_filter(category),
            include_excluded=include_excluded,
            limit=limit,
            offset=offset,
        )
        return {
            "events": [event.to_dict() for event in items],
            "total": total,
            "limit": max(1, limit),
            "offset": max(0, offset),
        }

    @app.get("/calendars/{calendar_id:path}/events")
    def calendar_events(
        calendar_id: str,
        start: str | None = None,
        end: str | None = None,
        category: str | None = None,
        include_excluded: bool = False,
        limit: int = 500,
        offset: int = 0,
    ) -> dict[str, Any]:
        return _list_events([calendar_id], start, end, category, include_excluded, limit, offset)

    @app.get("/events")
    def events(
        start: str | None = None,
        end: str | None = None,
        calendar_id: str | None = None,
        category: str | None = None,
        include_excluded: bool = False,
        limit: int = 500,
        offset: int = 0,
    ) -> dict[str, Any]:
        return _list_events([calendar_id] if calendar_id else [], start, end, category, include_excluded, limit, offset)

    @app.get("/events/daily")
    def events_daily(
        start: str | None = None,
        end: str | None = None,
        calendar_id: str | None = None,
        include_excluded: bool = False,
    ) -> dict[str, Any]:
        items, _ = app.state.context.event_store.list_events(
            start=_parse_day(start),
            end=_parse_day(end, is_end=True),
            calendar_ids=[calendar_id] if calendar_id else [],
            include_excluded=include_excluded,
            limit=DAILY_EVENT_LIMIT,
        )
        return {"days": group_events_by_day(items)}

    @app.get("/events/summary")
    def events_summary(
        start: str | None = None,
        end: str | None = None,
        calendar_id: str | None = None,
        include_excluded: bool = False,
    ) -> dict[str, Any]:
        return app.state.context.event_store.aggregate_events(
            start=_parse_day(start),
            end=_parse_day(end, is_end=True),
            calendar_ids=[calendar_id] if calendar_id else [],
            include_excluded=include_excluded,
        )

    @app.get("/events/unclassified")
    def unclassified(
        limit: int = 50,
        offset: int = 0,
        missing: str | None = None,
        match: str = "any",
    ) -> dict[str, Any]:
        if match not in {"any", "all"}:
            raise HTTPException(status_code=400, detail="match must be 'any' or 'all'")
        items, total = app.state.context.event_store.list_unclassified(
            required_fields=_missing_fields(missing),
            now=utc_now(),
            match_all=match == "all",
            limit=limit,
            offset=offset,
        )
        return {
            "events": [event.to_dict() for event in items],
            "total": total,
            "limit": max(1, limit),
            "offset": max(0, offset),
        }

    @app.post("/events/classify")
    def classify_event(request: ManualClassificationRequest) -> dict[str, Any]:
        store = app.state.context.event_store
        event = store.get_event(request.calendar_id, request.event_id)
        if event is None:
            raise HTTPException(status_code=404, detail="event not found")
        try:
            derived = build_manual_derived(request, f"{event.summary} {event.description}")
            saved = store.set_manual_classification(event.key, derived)
        except ValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except EventNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        logger.info("Manual classification saved for %s/%s", *event.key)
        return {"message": "event classified", "event": saved.to_dict()}

    return app
