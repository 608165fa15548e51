from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

from clinicsync.classifier import Category
from clinicsync.errors import ConflictError, EventNotFoundError, SystemicError, WriteConflictError
from clinicsync.models import (
    DERIVED_FIELDS,
    SYNC_RUNNING,
    ApplyCounts,
    CalendarEvent,
    ChangeDetails,
    ChangeItem,
    DerivedFields,
    SyncLog,
    SyncWindow,
    TriggerContext,
    parse_iso_datetime,
    serialize_datetime,
    utc_now,
)


logger = logging.getLogger(__name__)

MODE_PENDING_ONLY = "pending_only"
MODE_FORCE_ALL = "force_all"
SUBCUTANEOUS_ONLY_FIELDS = {"treatment_stage", "dosage_value", "dosage_unit"}
BOOLEAN_FIELDS = {"attended", "control_included", "is_home_visit"}

EVENT_COLUMNS = (
    "calendar_id",
    "event_id",
    "summary",
    "description",
    "location",
    "status",
    "event_type",
    "start_at",
    "end_at",
    "all_day",
    "remote_updated_at",
    "raw_json",
    *DERIVED_FIELDS,
    "classified_from",
    "manual_override",
    "excluded",
    "excluded_at",
    "updated_at",
    "last_synced_at",
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _bool_or_none(value: Any) -> bool | None:
    if value is None:
        return None
    return bool(value)


def _int_or_none(value: bool | None) -> int | None:
    if value is None:
        return None
    return 1 if value else 0


def _event_params(event: CalendarEvent, updated_at: str) -> dict[str, Any]:
    params: dict[str, Any] = {
        "calendar_id": event.calendar_id,
        "event_id": event.event_id,
        "summary": event.summary or "",
        "description": event.description or "",
        "location": event.location or "",
        "status": event.status or "",
        "event_type": event.event_type or "",
        "start_at": serialize_datetime(event.start),
        "end_at": serialize_datetime(event.end),
        "all_day": 1 if event.all_day else 0,
        "remote_updated_at": serialize_datetime(event.remote_updated_at),
        "raw_json": json.dumps(event.raw or {}, ensure_ascii=False, default=str),
        "classified_from": event.classified_from or "",
        "manual_override": 1 if event.manual_override else 0,
        "excluded": 1 if event.excluded else 0,
        "excluded_at": serialize_datetime(event.excluded_at),
        "updated_at": updated_at,
        "last_synced_at": serialize_datetime(event.last_synced_at),
    }
    for name in DERIVED_FIELDS:
        value = getattr(event, name)
        params[name] = _int_or_none(value) if name in BOOLEAN_FIELDS else value
    return params


def _row_to_event(row: sqlite3.Row) -> CalendarEvent:
    try:
        raw = json.loads(row["raw_json"] or "{}")
    except ValueError:
        raw = {}
    derived = {
        name: _bool_or_none(row[name]) if name in BOOLEAN_FIELDS else row[name] for name in DERIVED_FIELDS
    }
    return CalendarEvent(
        calendar_id=str(row["calendar_id"]),
        event_id=str(row["event_id"]),
        summary=str(row["summary"] or ""),
        description=str(row["description"] or ""),
        location=str(row["location"] or ""),
        status=str(row["status"] or ""),
        event_type=str(row["event_type"] or ""),
        start=parse_iso_datetime(row["start_at"]),
        end=parse_iso_datetime(row["end_at"]),
        all_day=bool(row["all_day"]),
        remote_updated_at=parse_iso_datetime(row["remote_updated_at"]),
        raw=raw if isinstance(raw, dict) else {},
        classified_from=str(row["classified_from"] or ""),
        manual_override=bool(row["manual_override"]),
        excluded=bool(row["excluded"]),
        excluded_at=parse_iso_datetime(row["excluded_at"]),
        updated_at=str(row["updated_at"] or ""),
        last_synced_at=parse_iso_datetime(row["last_synced_at"]),
        **derived,
    )


def _row_to_log(row: sqlite3.Row) -> SyncLog:
    try:
        details = json.loads(row["change_details_json"] or "{}")
    except ValueError:
        details = {}
    return SyncLog(
        id=int(row["id"]),
        status=str(row["status"]),
        started_at=parse_iso_datetime(row["started_at"]) or utc_now(),
        trigger_source=str(row["trigger_source"] or ""),
        finished_at=parse_iso_datetime(row["finished_at"]),
        fetched_at=parse_iso_datetime(row["fetched_at"]),
        inserted=int(row["inserted"] or 0),
        updated=int(row["updated"] or 0),
        skipped=int(row["skipped"] or 0),
        excluded=int(row["excluded"] or 0),
        change_details=ChangeDetails.from_dict(details),
        trigger_user_id=row["trigger_user_id"],
        trigger_label=row["trigger_label"],
        error_message=row["error_message"],
        job_id=row["job_id"],
        window_start=parse_iso_datetime(row["window_start"]),
        window_end=parse_iso_datetime(row["window_end"]),
    )


def missing_fields_clause(
    required_fields: Iterable[str],
    now: datetime,
    *,
    match_all: bool = False,
) -> tuple[str, list[Any]]:
    """SQL predicate selecting events with incomplete derived fields.

    Subcutaneous-only fields count as missing only on subcutaneous rows and
    ``attended`` only once the event has started.
    """
    clauses: list[str] = []
    params: list[Any] = []
    for name in required_fields:
        if name not in DERIVED_FIELDS:
            continue
        if name == "category":
            clauses.append("(category IS NULL OR category = '')")
        elif name == "attended":
            clauses.append("(attended IS NULL AND start_at IS NOT NULL AND start_at <= ?)")
            params.append(serialize_datetime(now))
        elif name in SUBCUTANEOUS_ONLY_FIELDS:
            clauses.append(f"(category = ? AND {name} IS NULL)")
            params.append(Category.SUBCUTANEOUS.value)
        else:
            clauses.append(f"{name} IS NULL")
    if not clauses:
        return "0", []
    joiner = " AND " if match_all else " OR "
    return "(" + joiner.join(clauses) + ")", params


def event_filter_clause(
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    calendar_ids: Iterable[str] = (),
    category: str | None = None,
    include_excluded: bool = False,
) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if not include_excluded:
        clauses.append("excluded = 0")
    if start is not None:
        clauses.append("start_at >= ?")
        params.append(serialize_datetime(start))
    if end is not None:
        clauses.append("start_at <= ?")
        params.append(serialize_datetime(end))
    wanted = [calendar_id for calendar_id in calendar_ids if calendar_id]
    if wanted:
        clauses.append(f"calendar_id IN ({', '.join('?' for _ in wanted)})")
        params.extend(wanted)
    if category:
        clauses.append("category = ?")
        params.append(category)
    if not clauses:
        return "1 = 1", []
    return " AND ".join(clauses), params


def _amount_totals(row: sqlite3.Row) -> dict[str, Any]:
    # Unknown payments stay out of the collection rate instead of counting as 0.
    expected_with_paid = int(row["expected_with_paid"] or 0)
    amount_paid = int(row["amount_paid"] or 0)
    return {
        "events": int(row["events"] or 0),
        "amountExpected": int(row["amount_expected"] or 0),
        "amountPaid": amount_paid,
        "paidKnown": int(row["paid_known"] or 0),
        "paymentUnknown": int(row["payment_unknown"] or 0),
        "collectionRate": round(amount_paid / expected_with_paid, 4) if expected_with_paid else None,
    }


AGGREGATE_COLUMNS = """
    COUNT(*) AS events,
    COALESCE(SUM(amount_expected), 0) AS amount_expected,
    COALESCE(SUM(amount_paid), 0) AS amount_paid,
    COUNT(amount_paid) AS paid_known,
    SUM(CASE WHEN amount_expected IS NOT NULL AND amount_paid IS NULL THEN 1 ELSE 0 END) AS payment_unknown,
    COALESCE(SUM(CASE WHEN amount_paid IS NOT NULL THEN amount_expected END), 0) AS expected_with_paid
"""


class EventStore:
    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                if immediate:
                    conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS calendar_events (
            calendar_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            summary TEXT NOT NULL DEFAULT '',
            description TEXT NOT NULL DEFAULT '',
            location TEXT NOT NULL DEFAULT '',
            status TEXT NOT NULL DEFAULT '',
            event_type TEXT NOT NULL DEFAULT '',
            start_at TEXT,
            end_at TEXT,
            all_day INTEGER NOT NULL DEFAULT 0,
            remote_updated_at TEXT,
            raw_json TEXT NOT NULL DEFAULT '{}',
            category TEXT,
            treatment_stage TEXT,
            dosage_value REAL,
            dosage_unit TEXT,
            amount_expected INTEGER,
            amount_paid INTEGER,
            attended INTEGER,
            control_included INTEGER,
            is_home_visit INTEGER,
            classified_from TEXT NOT NULL DEFAULT '',
            manual_override INTEGER NOT NULL DEFAULT 0,
            excluded INTEGER NOT NULL DEFAULT 0,
            excluded_at TEXT,
            updated_at TEXT NOT NULL,
            last_synced_at TEXT,
            PRIMARY KEY (calendar_id, event_id)
        );

        CREATE INDEX IF NOT EXISTS idx_calendar_events_start ON calendar_events(start_at);

        CREATE TABLE IF NOT EXISTS sync_logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            status TEXT NOT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            fetched_at TEXT,
            inserted INTEGER NOT NULL DEFAULT 0,
            updated INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0,
            excluded INTEGER NOT NULL DEFAULT 0,
            change_details_json TEXT NOT NULL DEFAULT '{}',
            trigger_source TEXT NOT NULL,
            trigger_user_id TEXT,
            trigger_label TEXT,
            error_message TEXT,
            job_id TEXT,
            window_start TEXT,
            window_end TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_sync_logs_status ON sync_logs(status);
        """
        with self._lock:
            conn = self._connect()
            try:
                conn.executescript(schema_sql)
            finally:
                conn.close()

    # Sync logs

    def create_sync_log(
        self,
        *,
        trigger: TriggerContext,
        job_id: str | None,
        window: SyncWindow | None,
        now: datetime,
        stale_after: timedelta,
    ) -> SyncLog:
        """Insert a RUNNING log unless a fresh one already holds the lock.

        The check and the insert share one ``BEGIN IMMEDIATE`` transaction so
        two callers cannot both pass the check.
        """
        with self._transaction(immediate=True) as conn:
            rows = conn.execute("SELECT * FROM sync_logs WHERE status = ? ORDER BY id DESC", (SYNC_RUNNING,)).fetchall()
            for row in rows:
                running = _row_to_log(row)
                if not running.is_stale(now, stale_after):
                    raise ConflictError(
                        f"sync {running.id} has been running since {serialize_datetime(running.started_at)}",
                        running_log_id=running.id,
                    )
                logger.warning("Ignoring stale running sync log %s", running.id)
            cursor = conn.execute(
                """
                INSERT INTO sync_logs(
                    status, started_at, trigger_source, trigger_user_id, trigger_label,
                    job_id, window_start, window_end
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    SYNC_RUNNING,
                    serialize_datetime(now),
                    trigger.source,
                    trigger.user_id,
                    trigger.label,
                    job_id,
                    serialize_datetime(window.start) if window else None,
                    serialize_datetime(window.end) if window else None,
                ),
            )
            log_id = int(cursor.lastrowid)
        return self.get_sync_log(log_id)  # type: ignore[return-value]

    def finalize_sync_log(
        self,
        log_id: int,
        *,
        status: str,
        counts: ApplyCounts,
        finished_at: datetime | None = None,
        fetched_at: datetime | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Move a RUNNING log to its final status. Returns False if it was already final."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_logs
                SET status = ?, finished_at = ?, fetched_at = ?, inserted = ?, updated = ?,
                    skipped = ?, excluded = ?, change_details_json = ?, error_message = ?
                WHERE id = ? AND status = ?
                """,
                (
                    str(status),
                    serialize_datetime(finished_at or utc_now()),
                    serialize_datetime(fetched_at),
                    int(counts.inserted),
                    int(counts.updated),
                    int(counts.skipped),
                    int(counts.excluded),
                    json.dumps(counts.details.to_dict(), ensure_ascii=False),
                    error_message,
                    int(log_id),
                    SYNC_RUNNING,
                ),
            )
            return cursor.rowcount == 1

    def get_sync_log(self, log_id: int) -> SyncLog | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM sync_logs WHERE id = ?", (int(log_id),)).fetchone()
        return _row_to_log(row) if row else None

    def list_sync_logs(self, limit: int = 20) -> list[SyncLog]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?",
                (max(1, int(limit)),),
            ).fetchall()
        return [_row_to_log(row) for row in rows]

    def running_sync_log(self) -> SyncLog | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM sync_logs WHERE status = ? ORDER BY id DESC LIMIT 1",
                (SYNC_RUNNING,),
            ).fetchone()
        return _row_to_log(row) if row else None

    # Events

    def get_event(self, calendar_id: str, event_id: str) -> CalendarEvent | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM calendar_events WHERE calendar_id = ? AND event_id = ?",
                (calendar_id, event_id),
            ).fetchone()
        return _row_to_event(row) if row else None

    def load_snapshot(
        self,
        window: SyncWindow,
        keys: Iterable[tuple[str, str]] = (),
    ) -> list[CalendarEvent]:
        """Stored events dated inside ``window`` plus any of ``keys`` dated elsewhere."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM calendar_events
                WHERE start_at IS NOT NULL AND start_at >= ? AND start_at <= ?
                """,
                (serialize_datetime(window.start), serialize_datetime(window.end)),
            ).fetchall()
            events = {(str(row["calendar_id"]), str(row["event_id"])): _row_to_event(row) for row in rows}
            for calendar_id, event_id in keys:
                if (calendar_id, event_id) in events:
                    continue
                row = conn.execute(
                    "SELECT * FROM calendar_events WHERE calendar_id = ? AND event_id = ?",
                    (calendar_id, event_id),
                ).fetchone()
                if row is not None:
                    events[(calendar_id, event_id)] = _row_to_event(row)
        return list(events.values())

    def count_events(self, *, include_excluded: bool = False) -> int:
        where = "" if include_excluded else "WHERE excluded = 0"
        with self._transaction() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM calendar_events {where}").fetchone()
        return int(row["total"])

    def list_calendars(self) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT calendar_id,
                       SUM(CASE WHEN excluded = 0 THEN 1 ELSE 0 END) AS events,
                       SUM(CASE WHEN excluded = 1 THEN 1 ELSE 0 END) AS excluded,
                       MIN(start_at) AS first_start,
                       MAX(start_at) AS last_start
                FROM calendar_events
                GROUP BY calendar_id
                ORDER BY calendar_id
                """
            ).fetchall()
        return [
            {
                "calendarId": str(row["calendar_id"]),
                "events": int(row["events"] or 0),
                "excluded": int(row["excluded"] or 0),
                "firstEventAt": row["first_start"],
                "lastEventAt": row["last_start"],
            }
            for row in rows
        ]

    def list_events(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        calendar_ids: Iterable[str] = (),
        category: str | None = None,
        include_excluded: bool = False,
        limit: int = 500,
        offset: int = 0,
    ) -> tuple[list[CalendarEvent], int]:
        """Events ordered by start; soft-excluded rows only when asked for."""
        where, params = event_filter_clause(
            start=start,
            end=end,
            calendar_ids=calendar_ids,
            category=category,
            include_excluded=include_excluded,
        )
        with self._transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS total FROM calendar_events WHERE {where}", params).fetchone()
            rows = conn.execute(
                f"""
                SELECT * FROM calendar_events
                WHERE {where}
                ORDER BY start_at, calendar_id, event_id
                LIMIT ? OFFSET ?
                """,
                [*params, max(1, int(limit)), max(0, int(offset))],
            ).fetchall()
        return [_row_to_event(row) for row in rows], int(total["total"])

    def aggregate_events(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        calendar_ids: Iterable[str] = (),
        include_excluded: bool = False,
    ) -> dict[str, Any]:
        """Amount and attendance totals, overall, per category and per day.

        ``amountPaid`` sums known payments only; ``collectionRate`` divides it
        by the expected amount of the same rows.
        """
        where, params = event_filter_clause(
            start=start,
            end=end,
            calendar_ids=calendar_ids,
            include_excluded=include_excluded,
        )
        with self._transaction() as conn:
            totals_row = conn.execute(
                f"""
                SELECT {AGGREGATE_COLUMNS},
                       COUNT(DISTINCT substr(start_at, 1, 10)) AS days,
                       SUM(CASE WHEN attended = 1 THEN 1 ELSE 0 END) AS attended,
                       SUM(CASE WHEN attended = 0 THEN 1 ELSE 0 END) AS no_show
                FROM calendar_events WHERE {where}
                """,
                params,
            ).fetchone()
            category_rows = conn.execute(
                f"""
                SELECT category, {AGGREGATE_COLUMNS}
                FROM calendar_events WHERE {where}
                GROUP BY category
                ORDER BY events DESC, category
                """,
                params,
            ).fetchall()
            date_rows = conn.execute(
                f"""
                SELECT substr(start_at, 1, 10) AS day, {AGGREGATE_COLUMNS}
                FROM calendar_events WHERE {where} AND start_at IS NOT NULL
                GROUP BY day
                ORDER BY day DESC
                """,
                params,
            ).fetchall()

        totals = _amount_totals(totals_row)
        totals.update(
            days=int(totals_row["days"] or 0),
            attended=int(totals_row["attended"] or 0),
            noShow=int(totals_row["no_show"] or 0),
        )
        return {
            "totals": totals,
            "byCategory": [{"category": row["category"], **_amount_totals(row)} for row in category_rows],
            "byDate": [{"date": row["day"], **_amount_totals(row)} for row in date_rows],
        }

    def _apply_item(self, conn: sqlite3.Connection, item: ChangeItem, stamp: str) -> None:
        params = _event_params(item.event, stamp)
        if item.kind == "insert":
            columns = ", ".join(EVENT_COLUMNS)
            placeholders = ", ".join(f":{name}" for name in EVENT_COLUMNS)
            conn.execute(f"INSERT INTO calendar_events({columns}) VALUES ({placeholders})", params)
            return
        if item.kind == "exclude":
            assignments = "excluded = 1, excluded_at = :excluded_at, updated_at = :updated_at"
        else:
            assignments = ", ".join(
                f"{name} = :{name}" for name in EVENT_COLUMNS if name not in {"calendar_id", "event_id"}
            )
        where = "calendar_id = :calendar_id AND event_id = :event_id"
        if item.expected_updated_at is not None:
            where += " AND updated_at = :expected_updated_at"
            params["expected_updated_at"] = item.expected_updated_at
        cursor = conn.execute(f"UPDATE calendar_events SET {assignments} WHERE {where}", params)
        if cursor.rowcount != 1:
            raise WriteConflictError(f"{item.kind} of {item.key[0]}/{item.key[1]} lost a concurrent write")

    def apply_item(self, item: ChangeItem) -> str:
        """Write one change in its own transaction and return the new ``updated_at``."""
        stamp = _utc_now()
        try:
            with self._transaction() as conn:
                self._apply_item(conn, item, stamp)
        except sqlite3.IntegrityError as exc:
            raise WriteConflictError(f"{item.kind} of {item.key[0]}/{item.key[1]}: {exc}") from exc
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc).lower() or "busy" in str(exc).lower():
                raise WriteConflictError(f"{item.kind} of {item.key[0]}/{item.key[1]}: {exc}") from exc
            raise SystemicError(f"{type(exc).__name__}: {exc}") from exc
        except sqlite3.Error as exc:
            raise SystemicError(f"{type(exc).__name__}: {exc}") from exc
        return stamp

    def apply_diff(self, diff: Any, counts: ApplyCounts | None = None) -> ApplyCounts:
        """Apply inserts, updates and excludes, one transaction per item.

        Accepts a ``DiffResult`` or any iterable of ``ChangeItem``. Items that
        lose a concurrent write are counted as skipped; a store fault raises
        ``SystemicError`` and leaves ``counts`` reflecting what landed.
        """
        counts = counts if counts is not None else ApplyCounts()
        items = diff.items() if hasattr(diff, "items") else list(diff)
        for item in items:
            try:
                self.apply_item(item)
            except WriteConflictError as exc:
                logger.warning("Skipping change: %s", exc)
                counts.skipped += 1
                continue
            if item.kind == "insert":
                counts.inserted += 1
            elif item.kind == "update":
                counts.updated += 1
            else:
                counts.excluded += 1
            counts.details.record(item)
        return counts

    # Reclassification

    def _selection(self, mode: str, required_fields: Iterable[str], now: datetime) -> tuple[str, list[Any]]:
        if mode == MODE_FORCE_ALL:
            return "excluded = 0", []
        clause, params = missing_fields_clause(required_fields, now)
        return f"excluded = 0 AND {clause}", params

    def count_for_reclassify(self, mode: str, required_fields: Iterable[str], now: datetime) -> int:
        where, params = self._selection(mode, required_fields, now)
        with self._transaction() as conn:
            row = conn.execute(f"SELECT COUNT(*) AS total FROM calendar_events WHERE {where}", params).fetchone()
        return int(row["total"])

    def fetch_reclassify_page(
        self,
        mode: str,
        required_fields: Iterable[str],
        now: datetime,
        *,
        after_key: tuple[str, str] | None,
        limit: int,
    ) -> list[CalendarEvent]:
        where, params = self._selection(mode, required_fields, now)
        if after_key is not None:
            where += " AND (calendar_id > ? OR (calendar_id = ? AND event_id > ?))"
            params = [*params, after_key[0], after_key[0], after_key[1]]
        with self._transaction() as conn:
            rows = conn.execute(
                f"SELECT * FROM calendar_events WHERE {where} ORDER BY calendar_id, event_id LIMIT ?",
                [*params, max(1, int(limit))],
            ).fetchall()
        return [_row_to_event(row) for row in rows]

    def update_derived(
        self,
        key: tuple[str, str],
        derived: DerivedFields,
        *,
        expected_updated_at: str | None,
        classified_from: str | None = None,
        manual_override: bool | None = None,
    ) -> str:
        stamp = _utc_now()
        assignments = [f"{name} = ?" for name in DERIVED_FIELDS]
        params: list[Any] = [
            _int_or_none(getattr(derived, name)) if name in BOOLEAN_FIELDS else getattr(derived, name)
            for name in DERIVED_FIELDS
        ]
        assignments.append("updated_at = ?")
        params.append(stamp)
        if classified_from is not None:
            assignments.append("classified_from = ?")
            params.append(classified_from)
        if manual_override is not None:
            assignments.append("manual_override = ?")
            params.append(1 if manual_override else 0)
        where = "calendar_id = ? AND event_id = ?"
        params.extend([key[0], key[1]])
        if expected_updated_at is not None:
            where += " AND updated_at = ?"
            params.append(expected_updated_at)
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    f"UPDATE calendar_events SET {', '.join(assignments)} WHERE {where}",
                    params,
                )
                if cursor.rowcount != 1:
                    raise WriteConflictError(f"{key[0]}/{key[1]} changed since it was read")
        except sqlite3.OperationalError as exc:
            if "locked" in str(exc).lower() or "busy" in str(exc).lower():
                raise WriteConflictError(f"{key[0]}/{key[1]}: {exc}") from exc
            raise SystemicError(f"{type(exc).__name__}: {exc}") from exc
        except sqlite3.Error as exc:
            raise SystemicError(f"{type(exc).__name__}: {exc}") from exc
        return stamp

    def set_manual_classification(self, key: tuple[str, str], derived: DerivedFields) -> CalendarEvent:
        current = self.get_event(*key)
        if current is None:
            raise EventNotFoundError(f"event {key[0]}/{key[1]} not found")
        self.update_derived(key, derived, expected_updated_at=None, manual_override=True)
        return self.get_event(*key)  # type: ignore[return-value]

    def list_unclassified(
        self,
        *,
        required_fields: Iterable[str],
        now: datetime,
        match_all: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[CalendarEvent], int]:
        clause, params = missing_fields_clause(required_fields, now, match_all=match_all)
        where = f"excluded = 0 AND {clause}"
        with self._transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) AS total FROM calendar_events WHERE {where}", params).fetchone()
            rows = conn.execute(
                f"""
                SELECT * FROM calendar_events
                WHERE {where}
                ORDER BY start_at DESC, calendar_id, event_id
                LIMIT ? OFFSET ?
                """,
                [*params, max(1, int(limit)), max(0, int(offset))],
            ).fetchall()
        return [_row_to_event(row) for row in rows], int(total["total"])
