from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from cadence.errors import attempt
from cadence.fanout import gather_best_effort
from cadence.models import (
    CanonicalEvent,
    CanonicalTask,
    EventFilters,
    Provider,
    ProvidersConfig,
    serialize_datetime,
)
from cadence.normalizer import normalize_event, normalize_task
from cadence.providers import (
    CalendarProvider,
    EventChanges,
    ProviderHttpClient,
    TaskChanges,
    TaskProvider,
    within_due_window,
)


DEFAULT_TASK_LIST = "@default"
MAX_TASK_LISTS = 10


def _conference_request() -> dict[str, Any]:
    return {
        "createRequest": {
            "requestId": f"meet-{uuid.uuid4().hex[:16]}",
            "conferenceSolutionKey": {"type": "hangoutsMeet"},
        }
    }


def _time_payload(value: datetime, time_zone: str | None) -> dict[str, Any]:
    return {"dateTime": serialize_datetime(value), "timeZone": time_zone or "UTC"}


def _due_payload(changes: TaskChanges) -> str | None:
    if changes.due is None:
        return None
    return f"{changes.due.isoformat()}T00:00:00.000Z"


class GoogleCalendarAdapter(CalendarProvider):
    provider = Provider.GOOGLE

    def __init__(self, token: str, config: ProvidersConfig) -> None:
        self.config = config
        self.http = ProviderHttpClient(Provider.GOOGLE, token, config.timeout_seconds)
        self.events_url = f"{config.google_calendar_url}/calendars/primary/events"

    def _get_raw(self, event_id: str) -> dict[str, Any]:
        return self.http.request("GET", f"{self.events_url}/{event_id}", resource_id=event_id) or {}

    def get_event(self, event_id: str) -> CanonicalEvent:
        return normalize_event(self._get_raw(event_id), Provider.GOOGLE.value)

    def get_events(self, filters: EventFilters) -> list[CanonicalEvent]:
        params: dict[str, Any] = {
            "timeMin": serialize_datetime(filters.time_min or datetime.now(timezone.utc)),
            "maxResults": filters.max_results or self.config.default_max_results,
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if filters.time_max is not None:
            params["timeMax"] = serialize_datetime(filters.time_max)
        if filters.query:
            params["q"] = filters.query
        payload = self.http.request("GET", self.events_url, params=params) or {}
        return [
            normalize_event(item, Provider.GOOGLE.value)
            for item in payload.get("items", [])
            if isinstance(item, dict) and item.get("status") != "cancelled"
        ]

    def create_event(self, changes: EventChanges) -> CanonicalEvent:
        body: dict[str, Any] = {
            "summary": changes.summary or "",
            "description": changes.description or "",
            "start": _time_payload(changes.start, changes.time_zone),
            "end": _time_payload(changes.end, changes.time_zone),
            "attendees": [{"email": email} for email in changes.attendees or []],
            "conferenceData": _conference_request(),
        }
        payload = self.http.request(
            "POST",
            self.events_url,
            params={"conferenceDataVersion": 1, "sendUpdates": "all"},
            json=body,
        )
        return normalize_event(payload or {}, Provider.GOOGLE.value)

    def update_event(self, event_id: str, changes: EventChanges) -> CanonicalEvent:
        existing = attempt("google event lookup before update", self._get_raw, event_id).value
        params = {"conferenceDataVersion": 1, "sendUpdates": "all"}
        if existing:
            body = dict(existing)
            if changes.summary is not None:
                body["summary"] = changes.summary
            if changes.description is not None:
                body["description"] = changes.description
            if changes.start is not None:
                zone = changes.time_zone or (existing.get("start") or {}).get("timeZone")
                body["start"] = _time_payload(changes.start, zone)
            if changes.end is not None:
                zone = changes.time_zone or (existing.get("end") or {}).get("timeZone")
                body["end"] = _time_payload(changes.end, zone)
            if changes.attendees is not None:
                body["attendees"] = [{"email": email} for email in changes.attendees]
            conference = existing.get("conferenceData") or {}
            if not conference.get("entryPoints"):
                body["conferenceData"] = _conference_request()
            payload = self.http.request(
                "PUT", f"{self.events_url}/{event_id}", params=params, json=body, resource_id=event_id
            )
        else:
            # Existing event unreadable; send only the changed fields and let the provider decide.
            body = {}
            if changes.summary is not None:
                body["summary"] = changes.summary
            if changes.description is not None:
                body["description"] = changes.description
            if changes.start is not None:
                body["start"] = _time_payload(changes.start, changes.time_zone)
            if changes.end is not None:
                body["end"] = _time_payload(changes.end, changes.time_zone)
            if changes.attendees is not None:
                body["attendees"] = [{"email": email} for email in changes.attendees]
            payload = self.http.request(
                "PATCH", f"{self.events_url}/{event_id}", params=params, json=body, resource_id=event_id
            )
        return normalize_event(payload or {}, Provider.GOOGLE.value)

    def delete_event(self, event_id: str) -> CanonicalEvent | None:
        details = attempt("google event lookup before delete", self.get_event, event_id).value
        self.http.request(
            "DELETE",
            f"{self.events_url}/{event_id}",
            params={"sendUpdates": "all"},
            resource_id=event_id,
        )
        return details


class GoogleTasksAdapter(TaskProvider):
    provider = Provider.GOOGLE

    def __init__(self, token: str, config: ProvidersConfig) -> None:
        self.config = config
        self.http = ProviderHttpClient(Provider.GOOGLE, token, config.timeout_seconds)
        self.base_url = config.google_tasks_url

    def _task_url(self, task_id: str, list_id: str = "") -> str:
        return f"{self.base_url}/lists/{list_id or DEFAULT_TASK_LIST}/tasks/{task_id}"

    def _list_ids(self) -> list[str]:
        payload = self.http.request(
            "GET", f"{self.base_url}/users/@me/lists", params={"maxResults": MAX_TASK_LISTS}
        ) or {}
        return [str(item["id"]) for item in payload.get("items", []) if isinstance(item, dict) and item.get("id")]

    def _fetch_list(self, list_id: str, max_results: int) -> list[dict[str, Any]]:
        payload = self.http.request(
            "GET",
            f"{self.base_url}/lists/{list_id}/tasks",
            params={"showCompleted": "false", "maxResults": max_results},
        ) or {}
        items = [item for item in payload.get("items", []) if isinstance(item, dict)]
        for item in items:
            item["listId"] = list_id
        return items

    def get_tasks(self, filters: EventFilters) -> list[CanonicalTask]:
        list_ids = self._list_ids()
        if not list_ids:
            return []
        max_results = filters.max_results or self.config.default_max_results
        branches = {
            f"google task list {list_id}": (lambda list_id=list_id: self._fetch_list(list_id, max_results))
            for list_id in list_ids
        }
        outcomes = gather_best_effort(branches)
        undated_display = (filters.time_min or datetime.now(timezone.utc)).date()
        tasks: list[CanonicalTask] = []
        for outcome in outcomes.values():
            for item in outcome.value_or([]):
                if not item.get("title") or item.get("status") == "completed":
                    continue
                task = normalize_task(item, Provider.GOOGLE.value, undated_display=undated_display)
                if within_due_window(task.due, filters):
                    tasks.append(task)
        logger.debug("fetched {} google tasks from {} lists", len(tasks), len(list_ids))
        return tasks

    def get_task(self, task_id: str, list_id: str = "") -> CanonicalTask:
        payload = self.http.request("GET", self._task_url(task_id, list_id), resource_id=task_id) or {}
        return normalize_task(payload, Provider.GOOGLE.value, list_id=list_id or DEFAULT_TASK_LIST)

    def create_task(self, changes: TaskChanges, list_id: str = "") -> CanonicalTask:
        target_list = list_id or DEFAULT_TASK_LIST
        body: dict[str, Any] = {"title": changes.title or ""}
        if changes.notes:
            body["notes"] = changes.notes
        due = _due_payload(changes)
        if due:
            body["due"] = due
        payload = self.http.request("POST", f"{self.base_url}/lists/{target_list}/tasks", json=body)
        return normalize_task(payload or {}, Provider.GOOGLE.value, list_id=target_list)

    def update_task(self, task_id: str, changes: TaskChanges, list_id: str = "") -> CanonicalTask:
        # Tasks never fall back to a blind write: a missing task is a NotFoundError.
        self.http.request("GET", self._task_url(task_id, list_id), resource_id=task_id)
        body: dict[str, Any] = {}
        if changes.title is not None:
            body["title"] = changes.title
        if changes.notes is not None:
            body["notes"] = changes.notes
        if changes.clear_due:
            body["due"] = None
        elif changes.due is not None:
            body["due"] = _due_payload(changes)
        payload = self.http.request("PATCH", self._task_url(task_id, list_id), json=body, resource_id=task_id)
        return normalize_task(payload or {}, Provider.GOOGLE.value, list_id=list_id or DEFAULT_TASK_LIST)

    def delete_task(self, task_id: str, list_id: str = "") -> CanonicalTask | None:
        details = attempt("google task lookup before delete", self.get_task, task_id, list_id).value
        self.http.request("DELETE", self._task_url(task_id, list_id), resource_id=task_id)
        return details
