from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from clinicsync.classifier import classify, fold_text, has_no_show
from clinicsync.models import (
    CLASSIFICATION_SOURCE_FIELDS,
    SOURCE_FIELDS,
    CalendarEvent,
    ChangeItem,
    RawEvent,
    RemoteSnapshot,
    short_summary,
    text_fingerprint,
    truncate_to_second,
)


logger = logging.getLogger(__name__)

TEXT_FIELDS = {"summary", "description", "location", "status", "event_type"}
TIME_FIELDS = {"start", "end"}


@dataclass
class InvalidItem:
    reason: str
    calendar_id: str
    event_id: str


@dataclass
class DiffResult:
    inserts: list[ChangeItem] = field(default_factory=list)
    updates: list[ChangeItem] = field(default_factory=list)
    excludes: list[ChangeItem] = field(default_factory=list)
    invalid: list[InvalidItem] = field(default_factory=list)
    unchanged: int = 0

    @property
    def total(self) -> int:
        return len(self.inserts) + len(self.updates) + len(self.excludes)

    def items(self) -> list[ChangeItem]:
        return [*self.inserts, *self.updates, *self.excludes]


def _field_equal(name: str, left: object, right: object) -> bool:
    if name in TEXT_FIELDS:
        return str(left or "") == str(right or "")
    if name in TIME_FIELDS:
        return truncate_to_second(left) == truncate_to_second(right)  # type: ignore[arg-type]
    return bool(left) == bool(right) if name == "all_day" else left == right


def changed_source_fields(stored: CalendarEvent, remote: RawEvent) -> list[str]:
    return [name for name in SOURCE_FIELDS if not _field_equal(name, getattr(stored, name), getattr(remote, name))]


def compile_exclude_patterns(patterns: Iterable[str]) -> list[re.Pattern[str]]:
    compiled: list[re.Pattern[str]] = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(fold_text(pattern)))
        except re.error:
            logger.warning("Ignoring invalid exclude pattern %r", pattern)
    return compiled


def _is_excluded_remotely(item: RawEvent, patterns: list[re.Pattern[str]]) -> bool:
    if item.cancelled:
        return True
    if not patterns:
        return False
    text = f"{fold_text(item.summary)} {fold_text(item.description)}"
    return any(pattern.search(text) for pattern in patterns)


def _validate(item: RawEvent) -> str | None:
    if not str(item.calendar_id or "").strip():
        return "missing calendar_id"
    if not str(item.event_id or "").strip():
        return "missing event_id"
    return None


def _exclude_item(stored: CalendarEvent, now: datetime | None) -> ChangeItem:
    return ChangeItem(
        kind="exclude",
        event=stored.with_updates(excluded=True, excluded_at=now),
        summary=short_summary(stored.summary),
        expected_updated_at=stored.updated_at,
    )


def _insert_item(item: RawEvent, now: datetime | None) -> ChangeItem:
    event = CalendarEvent.from_raw(item)
    derived = classify(event, None, now=now)
    event = event.with_derived(
        derived,
        classified_from=text_fingerprint(event.summary, event.description),
        last_synced_at=now,
    )
    return ChangeItem(kind="insert", event=event, summary=short_summary(event.summary))


def _update_item(stored: CalendarEvent, item: RawEvent, now: datetime | None) -> ChangeItem | None:
    source_changes = changed_source_fields(stored, item)
    restored = stored.excluded
    if not source_changes and not restored:
        return None

    updated = stored.with_source(item).with_updates(excluded=False, excluded_at=None, last_synced_at=now)
    fingerprint = text_fingerprint(item.summary, item.description)
    text_changed = any(name in CLASSIFICATION_SOURCE_FIELDS for name in source_changes)
    derived_changes: list[str] = []
    if text_changed or fingerprint != stored.classified_from:
        derived = classify(updated, stored.derived(), now=now)
        derived_changes = stored.derived().changed_fields(derived)
        updated = updated.with_derived(derived, classified_from=fingerprint, manual_override=False)
        newly_no_show = has_no_show(f"{item.summary} {item.description}") and not has_no_show(
            f"{stored.summary} {stored.description}"
        )
        if newly_no_show and "attended" not in derived_changes:
            derived_changes.append("attended")

    # Text edits are only listed when they did not move any derived field;
    # otherwise the derived names say what the edit meant.
    changes = [name for name in source_changes if name not in CLASSIFICATION_SOURCE_FIELDS]
    if derived_changes:
        changes.extend(derived_changes)
    else:
        changes.extend(name for name in source_changes if name in CLASSIFICATION_SOURCE_FIELDS)
    if restored:
        changes.append("excluded")
    return ChangeItem(
        kind="update",
        event=updated,
        summary=short_summary(updated.summary),
        changes=changes,
        source_fields=source_changes,
        expected_updated_at=stored.updated_at,
    )


def diff(
    snapshot: RemoteSnapshot,
    stored: Iterable[CalendarEvent],
    *,
    now: datetime | None = None,
    exclude_patterns: Iterable[str] = (),
) -> DiffResult:
    """Compare a remote snapshot against stored events.

    Pure: nothing is written. Stored events outside ``snapshot.window`` are
    never excluded, and incomplete snapshots never exclude by absence.
    """
    result = DiffResult()
    stored_by_key = {event.key: event for event in stored}
    patterns = compile_exclude_patterns(exclude_patterns)
    seen: set[tuple[str, str]] = set()

    for item in snapshot.events:
        reason = _validate(item)
        if reason is not None:
            result.invalid.append(InvalidItem(reason, str(item.calendar_id or ""), str(item.event_id or "")))
            continue
        if item.key in seen:
            logger.debug("Duplicate remote item %s/%s ignored", *item.key)
            continue
        seen.add(item.key)
        current = stored_by_key.get(item.key)

        if _is_excluded_remotely(item, patterns):
            if current is not None and not current.excluded:
                result.excludes.append(_exclude_item(current, now))
            else:
                result.unchanged += 1
            continue

        if current is None:
            result.inserts.append(_insert_item(item, now))
            continue

        update = _update_item(current, item, now)
        if update is None:
            result.unchanged += 1
        else:
            result.updates.append(update)

    if snapshot.complete:
        for key, current in stored_by_key.items():
            if key in seen or current.excluded:
                continue
            if not snapshot.covers_calendar(current.calendar_id):
                continue
            if not snapshot.window.contains(current.start):
                continue
            result.excludes.append(_exclude_item(current, now))

    logger.debug(
        "Diff: %d inserts, %d updates, %d excludes, %d invalid, %d unchanged",
        len(result.inserts),
        len(result.updates),
        len(result.excludes),
        len(result.invalid),
        result.unchanged,
    )
    return result
