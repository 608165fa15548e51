from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Protocol
from urllib.parse import quote

import caldav
import requests
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from clinicsync.errors import RemoteFetchError
from clinicsync.models import (
    CalDAVConfig,
    GoogleConfig,
    RawEvent,
    RemoteSnapshot,
    SourceConfig,
    SyncWindow,
    date_to_datetime,
    parse_iso_datetime,
    utc_now,
)


logger = logging.getLogger(__name__)

GOOGLE_PAGE_SIZE = 2500


class RemoteSource(Protocol):
    def fetch(self, window: SyncWindow) -> RemoteSnapshot:
        ...


def _coerce_datetime(value: Any, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value, is_end=is_end)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def parse_ical_event(calendar_id: str, raw_ical: str) -> RawEvent | None:
    """Turn one iCalendar resource into a ``RawEvent``; ``None`` if it holds no VEVENT."""
    calendar_obj = ICalendar.from_ical(raw_ical)
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return None

    uid = str(vevent.get("UID", "")).strip()
    recurrence = vevent.get("RECURRENCE-ID")
    if recurrence is not None:
        # Expanded occurrences share a UID; the instance start keeps them apart.
        instance = _coerce_datetime(vevent.decoded("RECURRENCE-ID"))
        if instance is not None:
            uid = f"{uid}_{instance.astimezone(timezone.utc).strftime('%Y%m%dT%H%M%SZ')}"
    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    start = _coerce_datetime(dtstart_raw, is_end=False)
    end = _coerce_datetime(dtend_raw, is_end=True)
    all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
    if start and end is None:
        end = start + timedelta(hours=1)
    last_modified = vevent.decoded("LAST-MODIFIED") if vevent.get("LAST-MODIFIED") is not None else None
    return RawEvent(
        calendar_id=calendar_id,
        event_id=uid,
        summary=str(vevent.get("SUMMARY", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        location=str(vevent.get("LOCATION", "")).strip(),
        status=str(vevent.get("STATUS", "CONFIRMED")).strip().lower() or "confirmed",
        event_type="",
        start=start,
        end=end,
        all_day=all_day,
        remote_updated_at=_coerce_datetime(last_modified),
        raw={"ical": raw_ical},
    )


class CalDAVSource:
    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._principal: Any = None

    def _connect(self) -> Any:
        if self._principal is not None:
            return self._principal
        if not self.config.base_url or not self.config.username:
            raise RemoteFetchError("CalDAV config is incomplete.")
        client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = client.principal()
        return self._principal

    def _calendars(self) -> list[Any]:
        calendars = list(self._connect().calendars())
        if not self.config.calendar_ids:
            return calendars
        wanted = {calendar_id.rstrip("/") for calendar_id in self.config.calendar_ids}
        selected = [calendar for calendar in calendars if str(calendar.url).rstrip("/") in wanted]
        missing = wanted - {str(calendar.url).rstrip("/") for calendar in selected}
        if missing:
            raise RemoteFetchError(f"Calendar not found: {', '.join(sorted(missing))}")
        return selected

    def fetch(self, window: SyncWindow) -> RemoteSnapshot:
        fetched_at = utc_now()
        events: list[RawEvent] = []
        calendar_ids: list[str] = []
        try:
            for calendar in self._calendars():
                calendar_id = str(calendar.url)
                calendar_ids.append(calendar_id)
                resources = calendar.search(start=window.start, end=window.end, event=True, expand=True)
                for resource in resources:
                    parsed = parse_ical_event(calendar_id, _decode_raw_ical(resource.data))
                    if parsed is not None:
                        events.append(parsed)
        except RemoteFetchError:
            raise
        except Exception as exc:
            raise RemoteFetchError(f"{type(exc).__name__}: {exc}") from exc
        logger.info("Fetched %d CalDAV events from %d calendars", len(events), len(calendar_ids))
        return RemoteSnapshot(
            events=events,
            window=window,
            complete=True,
            calendar_ids=calendar_ids,
            fetched_at=fetched_at,
        )


def _google_time(value: dict[str, Any] | None, is_end: bool = False) -> tuple[datetime | None, bool]:
    if not value:
        return None, False
    if value.get("dateTime"):
        return parse_iso_datetime(str(value["dateTime"])), False
    if value.get("date"):
        day = date.fromisoformat(str(value["date"]))
        return date_to_datetime(day, is_end=is_end), True
    return None, False


def parse_google_event(calendar_id: str, item: dict[str, Any]) -> RawEvent:
    start, all_day = _google_time(item.get("start"))
    end, _ = _google_time(item.get("end"), is_end=True)
    return RawEvent(
        calendar_id=calendar_id,
        event_id=str(item.get("id") or "").strip(),
        summary=str(item.get("summary") or "").strip(),
        description=str(item.get("description") or "").strip(),
        location=str(item.get("location") or "").strip(),
        status=str(item.get("status") or "confirmed").strip().lower(),
        event_type=str(item.get("eventType") or "").strip(),
        start=start,
        end=end,
        all_day=all_day,
        remote_updated_at=parse_iso_datetime(item.get("updated")),
        raw=dict(item),
    )


class GoogleCalendarSource:
    def __init__(self, config: GoogleConfig, session: requests.Session | None = None) -> None:
        self.config = config
        self.session = session or requests.Session()

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.config.access_token:
            headers["Authorization"] = f"Bearer {self.config.access_token}"
        return headers

    def _fetch_calendar(self, calendar_id: str, window: SyncWindow) -> tuple[list[RawEvent], bool]:
        url = f"{self.config.api_base}/calendars/{quote(calendar_id, safe='')}/events"
        params: dict[str, Any] = {
            "timeMin": window.start.isoformat(),
            "timeMax": window.end.isoformat(),
            "singleEvents": "true",
            "showDeleted": "true",
            "maxResults": GOOGLE_PAGE_SIZE,
        }
        events: list[RawEvent] = []
        for _ in range(self.config.max_pages):
            response = self.session.get(
                url,
                params=params,
                headers=self._headers(),
                timeout=self.config.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
            for item in payload.get("items", []) or []:
                events.append(parse_google_event(calendar_id, item))
            token = payload.get("nextPageToken")
            if not token:
                return events, True
            params["pageToken"] = token
        logger.warning("Calendar %s has more than %d pages; snapshot is partial", calendar_id, self.config.max_pages)
        return events, False

    def fetch(self, window: SyncWindow) -> RemoteSnapshot:
        if not self.config.calendar_ids:
            raise RemoteFetchError("No Google calendar ids configured.")
        fetched_at = utc_now()
        events: list[RawEvent] = []
        complete = True
        try:
            for calendar_id in self.config.calendar_ids:
                calendar_events, calendar_complete = self._fetch_calendar(calendar_id, window)
                events.extend(calendar_events)
                complete = complete and calendar_complete
        except (requests.RequestException, ValueError) as exc:
            raise RemoteFetchError(f"{type(exc).__name__}: {exc}") from exc
        logger.info("Fetched %d Google events from %d calendars", len(events), len(self.config.calendar_ids))
        return RemoteSnapshot(
            events=events,
            window=window,
            complete=complete,
            calendar_ids=list(self.config.calendar_ids),
            fetched_at=fetched_at,
        )


def build_remote_source(config: SourceConfig) -> RemoteSource:
    if config.kind == "google":
        return GoogleCalendarSource(config.google)
    return CalDAVSource(config.caldav)
