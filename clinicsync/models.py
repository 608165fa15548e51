from __future__ import annotations

import hashlib
import re
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any


SYNC_RUNNING = "RUNNING"
SYNC_SUCCESS = "SUCCESS"
SYNC_ERROR = "ERROR"

# Fields owned by the remote calendar; overwritten on every sync.
SOURCE_FIELDS = ("summary", "description", "location", "status", "event_type", "start", "end", "all_day")
# The subset the classifier reads.
CLASSIFICATION_SOURCE_FIELDS = ("summary", "description")
DERIVED_FIELDS = (
    "category",
    "treatment_stage",
    "dosage_value",
    "dosage_unit",
    "amount_expected",
    "amount_paid",
    "attended",
    "control_included",
    "is_home_visit",
)
DEFAULT_REQUIRED_FIELDS = ["category", "amount_expected", "attended"]
CHANGE_DETAILS_LIMIT = 20
SUMMARY_MAX_CHARS = 50
UNTITLED = "(sin título)"


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat(timespec="seconds")


def truncate_to_second(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).replace(microsecond=0)


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def text_fingerprint(summary: str | None, description: str | None) -> str:
    payload = f"{summary or ''}\n{description or ''}"
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()  # nosec B324


def short_summary(summary: str | None) -> str:
    text = re.sub(r"\s+", " ", str(summary or "")).strip()
    return text[:SUMMARY_MAX_CHARS] or UNTITLED


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_ids=[str(x).strip() for x in data.get("calendar_ids", []) or [] if str(x).strip()],
        )


@dataclass
class GoogleConfig:
    api_base: str = "https://www.googleapis.com/calendar/v3"
    access_token: str = ""
    calendar_ids: list[str] = field(default_factory=list)
    timeout_seconds: int = 30
    max_pages: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GoogleConfig":
        data = data or {}
        return cls(
            api_base=str(data.get("api_base", "")).strip().rstrip("/")
            or "https://www.googleapis.com/calendar/v3",
            access_token=str(data.get("access_token", "")).strip(),
            calendar_ids=[str(x).strip() for x in data.get("calendar_ids", []) or [] if str(x).strip()],
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            max_pages=max(1, int(data.get("max_pages", 100))),
        )


@dataclass
class SourceConfig:
    kind: str = "caldav"
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SourceConfig":
        data = data or {}
        kind = str(data.get("kind", "caldav")).strip().lower()
        if kind not in {"caldav", "google"}:
            kind = "caldav"
        return cls(
            kind=kind,
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            google=GoogleConfig.from_dict(data.get("google")),
        )


@dataclass
class SyncConfig:
    start_date: str = ""
    lookback_days: int = 30
    lookahead_days: int = 365
    timezone: str = "UTC"
    interval_seconds: int = 900
    stale_lock_minutes: int = 15
    exclude_patterns: list[str] = field(default_factory=list)
    scheduled: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            start_date=str(data.get("start_date", "") or "").strip(),
            lookback_days=max(0, int(data.get("lookback_days", 30))),
            lookahead_days=min(1095, max(1, int(data.get("lookahead_days", 365)))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            interval_seconds=max(30, int(data.get("interval_seconds", 900))),
            stale_lock_minutes=max(1, int(data.get("stale_lock_minutes", 15))),
            exclude_patterns=[str(x).strip() for x in data.get("exclude_patterns", []) or [] if str(x).strip()],
            scheduled=bool(data.get("scheduled", False)),
        )


@dataclass
class ReclassifyConfig:
    page_size: int = 50
    required_fields: list[str] = field(default_factory=lambda: list(DEFAULT_REQUIRED_FIELDS))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ReclassifyConfig":
        data = data or {}
        required = data.get("required_fields", DEFAULT_REQUIRED_FIELDS) or []
        cleaned = [str(x).strip() for x in required if str(x).strip() in DERIVED_FIELDS]
        return cls(
            page_size=min(1000, max(1, int(data.get("page_size", 50)))),
            required_fields=cleaned or list(DEFAULT_REQUIRED_FIELDS),
        )


@dataclass
class JobsConfig:
    ttl_seconds: int = 3600

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "JobsConfig":
        data = data or {}
        return cls(ttl_seconds=max(60, int(data.get("ttl_seconds", 3600))))


@dataclass
class AppConfig:
    source: SourceConfig = field(default_factory=SourceConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    reclassify: ReclassifyConfig = field(default_factory=ReclassifyConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            source=SourceConfig.from_dict(data.get("source")),
            sync=SyncConfig.from_dict(data.get("sync")),
            reclassify=ReclassifyConfig.from_dict(data.get("reclassify")),
            jobs=JobsConfig.from_dict(data.get("jobs")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class SyncWindow:
    start: datetime
    end: datetime

    def contains(self, value: datetime | None) -> bool:
        if value is None:
            return False
        moment = _ensure_tz(value)
        return self.start <= moment <= self.end

    def to_dict(self) -> dict[str, Any]:
        return {"start": serialize_datetime(self.start), "end": serialize_datetime(self.end)}


def sync_window(now: datetime, config: SyncConfig) -> SyncWindow:
    now_utc = _ensure_tz(now)
    configured: date | None = None
    if config.start_date:
        try:
            configured = date.fromisoformat(config.start_date)
        except ValueError:
            configured = None
    if configured is None:
        configured = now_utc.date() - timedelta(days=config.lookback_days)
    start = datetime.combine(configured, time.min, tzinfo=timezone.utc)
    end_date = now_utc.date() + timedelta(days=max(1, config.lookahead_days))
    end = datetime.combine(end_date, time.max, tzinfo=timezone.utc)
    return SyncWindow(start=start, end=end)


@dataclass
class TriggerContext:
    source: str = "manual"
    user_id: str | None = None
    label: str | None = None


@dataclass
class RawEvent:
    calendar_id: str
    event_id: str
    summary: str = ""
    description: str = ""
    location: str = ""
    status: str = "confirmed"
    event_type: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    remote_updated_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return (self.calendar_id, self.event_id)

    @property
    def cancelled(self) -> bool:
        return str(self.status or "").strip().lower() == "cancelled"


@dataclass
class DerivedFields:
    category: str | None = None
    treatment_stage: str | None = None
    dosage_value: float | None = None
    dosage_unit: str | None = None
    amount_expected: int | None = None
    amount_paid: int | None = None
    attended: bool | None = None
    control_included: bool | None = None
    is_home_visit: bool | None = None

    def changed_fields(self, other: "DerivedFields") -> list[str]:
        return [name for name in DERIVED_FIELDS if getattr(self, name) != getattr(other, name)]

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CalendarEvent:
    calendar_id: str
    event_id: str
    summary: str = ""
    description: str = ""
    location: str = ""
    status: str = "confirmed"
    event_type: str = ""
    start: datetime | None = None
    end: datetime | None = None
    all_day: bool = False
    remote_updated_at: datetime | None = None
    raw: dict[str, Any] = field(default_factory=dict)
    category: str | None = None
    treatment_stage: str | None = None
    dosage_value: float | None = None
    dosage_unit: str | None = None
    amount_expected: int | None = None
    amount_paid: int | None = None
    attended: bool | None = None
    control_included: bool | None = None
    is_home_visit: bool | None = None
    classified_from: str = ""
    manual_override: bool = False
    excluded: bool = False
    excluded_at: datetime | None = None
    updated_at: str = ""
    last_synced_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.calendar_id, self.event_id)

    @classmethod
    def from_raw(cls, raw_event: RawEvent) -> "CalendarEvent":
        return cls(
            calendar_id=raw_event.calendar_id,
            event_id=raw_event.event_id,
            summary=raw_event.summary,
            description=raw_event.description,
            location=raw_event.location,
            status=raw_event.status,
            event_type=raw_event.event_type,
            start=raw_event.start,
            end=raw_event.end,
            all_day=raw_event.all_day,
            remote_updated_at=raw_event.remote_updated_at,
            raw=dict(raw_event.raw),
        )

    def derived(self) -> DerivedFields:
        return DerivedFields(**{name: getattr(self, name) for name in DERIVED_FIELDS})

    def with_derived(self, derived: DerivedFields, **kwargs: Any) -> "CalendarEvent":
        values = {name: getattr(derived, name) for name in DERIVED_FIELDS}
        values.update(kwargs)
        return replace(self, **values)

    def with_source(self, raw_event: RawEvent) -> "CalendarEvent":
        return replace(
            self,
            summary=raw_event.summary,
            description=raw_event.description,
            location=raw_event.location,
            status=raw_event.status,
            event_type=raw_event.event_type,
            start=raw_event.start,
            end=raw_event.end,
            all_day=raw_event.all_day,
            remote_updated_at=raw_event.remote_updated_at,
            raw=dict(raw_event.raw),
        )

    def with_updates(self, **kwargs: Any) -> "CalendarEvent":
        return replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        payload = {item.name: getattr(self, item.name) for item in fields(self) if item.name != "raw"}
        for name in ("start", "end", "remote_updated_at", "excluded_at", "last_synced_at"):
            payload[name] = serialize_datetime(payload[name])
        return payload


@dataclass
class RemoteSnapshot:
    events: list[RawEvent]
    window: SyncWindow
    complete: bool = True
    calendar_ids: list[str] | None = None
    fetched_at: datetime = field(default_factory=utc_now)

    def covers_calendar(self, calendar_id: str) -> bool:
        return self.calendar_ids is None or calendar_id in self.calendar_ids


@dataclass
class ChangeItem:
    kind: str
    event: CalendarEvent
    summary: str
    changes: list[str] = field(default_factory=list)
    source_fields: list[str] = field(default_factory=list)
    expected_updated_at: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return self.event.key

    def to_detail(self) -> str | dict[str, Any]:
        if self.kind == "update" and self.changes:
            return {"summary": self.summary, "changes": list(self.changes)}
        return self.summary


@dataclass
class ChangeDetails:
    inserted: list[str] = field(default_factory=list)
    updated: list[str | dict[str, Any]] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)

    def record(self, item: ChangeItem) -> None:
        bucket = {"insert": self.inserted, "update": self.updated, "exclude": self.excluded}[item.kind]
        if len(bucket) < CHANGE_DETAILS_LIMIT:
            bucket.append(item.to_detail())

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": list(self.inserted),
            "updated": list(self.updated),
            "excluded": list(self.excluded),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ChangeDetails":
        data = data or {}
        return cls(
            inserted=[str(x) for x in data.get("inserted", []) or []],
            updated=list(data.get("updated", []) or []),
            excluded=[str(x) for x in data.get("excluded", []) or []],
        )


@dataclass
class ApplyCounts:
    inserted: int = 0
    updated: int = 0
    excluded: int = 0
    skipped: int = 0
    details: ChangeDetails = field(default_factory=ChangeDetails)

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "excluded": self.excluded,
            "skipped": self.skipped,
            "changeDetails": self.details.to_dict(),
        }


class TransactionSource(str, Enum):
    BANK = "bank"
    MERCADOPAGO = "mercadopago"
    DTE = "dte"


@dataclass(frozen=True)
class TransactionRef:
    """Reference to a row in one of several transaction tables.

    Serialized as ``"<source>:<id>"`` so the table is explicit instead of
    being inferred from the sign or magnitude of a shared integer.
    """

    source: TransactionSource
    raw_id: int

    @classmethod
    def parse(cls, value: str) -> "TransactionRef":
        text = str(value or "").strip()
        source_text, sep, id_text = text.partition(":")
        if not sep:
            raise ValueError(f"transaction reference must look like '<source>:<id>': {value!r}")
        try:
            source = TransactionSource(source_text.strip().lower())
        except ValueError as exc:
            raise ValueError(f"unknown transaction source: {source_text!r}") from exc
        if not id_text.strip().isdigit():
            raise ValueError(f"transaction id must be a positive integer: {id_text!r}")
        raw_id = int(id_text)
        if raw_id <= 0:
            raise ValueError(f"transaction id must be a positive integer: {id_text!r}")
        return cls(source=source, raw_id=raw_id)

    def format(self) -> str:
        return f"{self.source.value}:{self.raw_id}"


@dataclass
class SyncLog:
    id: int
    status: str
    started_at: datetime
    trigger_source: str
    finished_at: datetime | None = None
    fetched_at: datetime | None = None
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    excluded: int = 0
    change_details: ChangeDetails = field(default_factory=ChangeDetails)
    trigger_user_id: str | None = None
    trigger_label: str | None = None
    error_message: str | None = None
    job_id: str | None = None
    window_start: datetime | None = None
    window_end: datetime | None = None

    def is_stale(self, now: datetime, stale_after: timedelta) -> bool:
        return self.status == SYNC_RUNNING and _ensure_tz(now) - _ensure_tz(self.started_at) >= stale_after

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status,
            "startedAt": serialize_datetime(self.started_at),
            "finishedAt": serialize_datetime(self.finished_at),
            "fetchedAt": serialize_datetime(self.fetched_at),
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "excluded": self.excluded,
            "changeDetails": self.change_details.to_dict(),
            "triggerSource": self.trigger_source,
            "triggerUserId": self.trigger_user_id,
            "triggerLabel": self.trigger_label,
            "errorMessage": self.error_message,
            "jobId": self.job_id,
            "windowStart": serialize_datetime(self.window_start),
            "windowEnd": serialize_datetime(self.window_end),
        }
