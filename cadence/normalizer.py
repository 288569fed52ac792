"""Provider-native payloads to the canonical event/task shape.

Google Calendar, Google Tasks, Microsoft Graph events and Microsoft To Do
tasks all pass through here. Every function is pure; the output of a
normalizer is itself a valid input, so normalizing twice is a no-op.
"""

from __future__ import annotations

import html
import re
from datetime import date, timezone
from typing import Any

from cadence.models import (
    Attendee,
    CanonicalEvent,
    CanonicalTask,
    EventTime,
    Provider,
    parse_iso_date,
    parse_iso_datetime,
)


BLOCK_PATTERN = re.compile(r"<(script|style)\b.*?</\1\s*>", re.DOTALL | re.IGNORECASE)
BREAK_PATTERN = re.compile(r"<br\s*/?>|</(p|div|li|tr|h[1-6])\s*>", re.IGNORECASE)
TAG_PATTERN = re.compile(r"</?[a-zA-Z!][^>]*>")
HORIZONTAL_SPACE = re.compile(r"[ \t\f\v\xa0]+")
BLANK_RUNS = re.compile(r"\n{3,}")


def strip_markup(text: str | None) -> str:
    if not text:
        return ""
    value = str(text).replace("\r\n", "\n").replace("\r", "\n")
    value = BLOCK_PATTERN.sub("", value)
    value = BREAK_PATTERN.sub("\n", value)
    value = TAG_PATTERN.sub("", value)
    value = html.unescape(value)
    lines = [HORIZONTAL_SPACE.sub(" ", line).strip() for line in value.split("\n")]
    return BLANK_RUNS.sub("\n\n", "\n".join(lines)).strip()


def _normalize_time(value: Any) -> EventTime:
    if not isinstance(value, dict):
        return EventTime()
    zone_label = str(value.get("timeZone") or "").strip()
    raw_date_time = value.get("dateTime")
    if raw_date_time:
        parsed = parse_iso_datetime(raw_date_time, zone_label or None)
        return EventTime(date_time=parsed.astimezone(timezone.utc), time_zone="UTC")
    raw_date = value.get("date")
    if raw_date:
        return EventTime(day=parse_iso_date(raw_date), time_zone=zone_label or "UTC")
    return EventTime()


def _attendees(raw_items: Any) -> list[Attendee]:
    attendees: list[Attendee] = []
    for item in raw_items or []:
        if not isinstance(item, dict):
            continue
        address = item.get("emailAddress") if isinstance(item.get("emailAddress"), dict) else {}
        email = str(item.get("email") or address.get("address") or "").strip()
        if not email:
            continue
        name = str(item.get("displayName") or address.get("name") or "").strip()
        attendees.append(Attendee(email=email, display_name=name))
    return attendees


def conference_link(raw: dict[str, Any]) -> str | None:
    for key in ("conferenceLink", "hangoutLink", "onlineMeetingUrl"):
        value = raw.get(key)
        if value:
            return str(value)
    conference = raw.get("conferenceData")
    if isinstance(conference, dict):
        for entry in conference.get("entryPoints") or []:
            if isinstance(entry, dict) and entry.get("entryPointType") == "video" and entry.get("uri"):
                return str(entry["uri"])
    meeting = raw.get("onlineMeeting")
    if isinstance(meeting, dict) and meeting.get("joinUrl"):
        return str(meeting["joinUrl"])
    return None


def _body_text(raw: dict[str, Any], *keys: str) -> str:
    # canonical input, already plain text
    if "isTask" in raw:
        return str(raw.get(keys[0]) or "")
    for key in keys:
        value = raw.get(key)
        if isinstance(value, dict):
            value = value.get("content")
        if value:
            return strip_markup(value)
    return ""


def _location(raw: dict[str, Any]) -> str:
    value = raw.get("location")
    if isinstance(value, dict):
        value = value.get("displayName")
    return str(value or "").strip()


def normalize_event(raw: dict[str, Any] | CanonicalEvent, source: str | None = None) -> CanonicalEvent:
    if isinstance(raw, CanonicalEvent):
        raw = raw.to_dict()
    tag = str(source or raw.get("source") or Provider.GOOGLE.value)
    start = _normalize_time(raw.get("start"))
    end = _normalize_time(raw.get("end"))
    start_at = start.instant()
    end_at = end.instant()
    if start_at is not None and (end_at is None or end_at < start_at):
        end = EventTime(date_time=start.date_time, day=start.day, time_zone=start.time_zone)
    return CanonicalEvent(
        id=str(raw.get("id", "")),
        title=str(raw.get("title") or raw.get("summary") or raw.get("subject") or "").strip(),
        description=_body_text(raw, "description", "body", "bodyPreview"),
        start=start,
        end=end,
        attendees=_attendees(raw.get("attendees")),
        conference_link=conference_link(raw),
        location=_location(raw),
        source=tag,
    )


def _task_due(raw: dict[str, Any]) -> date | None:
    due = raw.get("due")
    if due:
        return parse_iso_date(due)
    graph_due = raw.get("dueDateTime")
    if isinstance(graph_due, dict) and graph_due.get("dateTime"):
        parsed = parse_iso_datetime(graph_due["dateTime"], graph_due.get("timeZone"))
        return parsed.date() if parsed else None
    return None


def normalize_task(
    raw: dict[str, Any] | CanonicalTask,
    source: str | None = None,
    *,
    list_id: str = "",
    undated_display: date | None = None,
) -> CanonicalTask:
    """Normalize a task. Undated tasks are shown on ``undated_display`` without storing a due date."""
    if isinstance(raw, CanonicalTask):
        raw = raw.to_dict()
    due = _task_due(raw)
    display_date = due
    if display_date is None:
        shown = raw.get("start") if isinstance(raw.get("start"), dict) else {}
        display_date = parse_iso_date(shown.get("date")) or undated_display
    return CanonicalTask(
        id=str(raw.get("id", "")),
        title=str(raw.get("title", "") or "").strip(),
        notes=_body_text(raw, "notes", "body"),
        due=due,
        source=str(source or raw.get("source") or Provider.GOOGLE.value),
        list_id=str(raw.get("listId") or list_id or ""),
        display_date=display_date,
    )
