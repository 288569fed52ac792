from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from loguru import logger

from cadence.errors import NotFoundError, attempt
from cadence.fanout import gather_best_effort
from cadence.models import CanonicalEvent, CanonicalTask, EventFilters, Provider, ProvidersConfig
from cadence.normalizer import normalize_event, normalize_task
from cadence.providers import (
    CalendarProvider,
    EventChanges,
    ProviderHttpClient,
    TaskChanges,
    TaskProvider,
    within_due_window,
)


UTC_PREFERENCE = {"Prefer": 'outlook.timezone="UTC"'}


def _graph_time(value: datetime) -> dict[str, str]:
    utc_value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return {"dateTime": utc_value.isoformat(timespec="seconds"), "timeZone": "UTC"}


def _graph_attendees(emails: list[str]) -> list[dict[str, Any]]:
    return [{"emailAddress": {"address": email}, "type": "required"} for email in emails]


def _event_body(changes: EventChanges) -> dict[str, Any]:
    body: dict[str, Any] = {}
    if changes.summary is not None:
        body["subject"] = changes.summary
    if changes.description is not None:
        body["body"] = {"contentType": "text", "content": changes.description}
    if changes.start is not None:
        body["start"] = _graph_time(changes.start)
    if changes.end is not None:
        body["end"] = _graph_time(changes.end)
    if changes.attendees is not None:
        body["attendees"] = _graph_attendees(changes.attendees)
    return body


class OutlookCalendarAdapter(CalendarProvider):
    provider = Provider.OUTLOOK

    def __init__(self, token: str, config: ProvidersConfig) -> None:
        self.config = config
        self.http = ProviderHttpClient(Provider.OUTLOOK, token, config.timeout_seconds, UTC_PREFERENCE)
        self.base_url = config.graph_url

    def get_event(self, event_id: str) -> CanonicalEvent:
        payload = self.http.request("GET", f"{self.base_url}/me/events/{event_id}", resource_id=event_id)
        return normalize_event(payload or {}, Provider.OUTLOOK.value)

    def get_events(self, filters: EventFilters) -> list[CanonicalEvent]:
        time_min = (filters.time_min or datetime.now(timezone.utc)).astimezone(timezone.utc)
        clauses = [f"start/dateTime ge '{time_min.replace(tzinfo=None).isoformat(timespec='seconds')}'"]
        if filters.time_max is not None:
            time_max = filters.time_max.astimezone(timezone.utc).replace(tzinfo=None)
            clauses.append(f"start/dateTime le '{time_max.isoformat(timespec='seconds')}'")
        params = {
            "$top": filters.max_results or self.config.default_max_results,
            "$orderby": "start/dateTime",
            "$filter": " and ".join(clauses),
        }
        payload = self.http.request("GET", f"{self.base_url}/me/calendar/events", params=params) or {}
        events = [
            normalize_event(item, Provider.OUTLOOK.value)
            for item in payload.get("value", [])
            if isinstance(item, dict) and not item.get("isCancelled")
        ]
        if filters.query:
            needle = filters.query.casefold()
            events = [
                event
                for event in events
                if needle in event.title.casefold() or needle in event.description.casefold()
            ]
        return events

    def create_event(self, changes: EventChanges) -> CanonicalEvent:
        body = _event_body(changes)
        body.setdefault("subject", "")
        body.setdefault("attendees", [])
        payload = self.http.request("POST", f"{self.base_url}/me/events", json=body)
        return normalize_event(payload or {}, Provider.OUTLOOK.value)

    def update_event(self, event_id: str, changes: EventChanges) -> CanonicalEvent:
        existing = attempt("outlook event lookup before update", self.get_event, event_id).value
        if existing is None:
            logger.info("outlook event {} unreadable before update; sending patch anyway", event_id)
        payload = self.http.request(
            "PATCH", f"{self.base_url}/me/events/{event_id}", json=_event_body(changes), resource_id=event_id
        )
        return normalize_event(payload or {}, Provider.OUTLOOK.value)

    def delete_event(self, event_id: str) -> CanonicalEvent | None:
        details = attempt("outlook event lookup before delete", self.get_event, event_id).value
        self.http.request("DELETE", f"{self.base_url}/me/events/{event_id}", resource_id=event_id)
        return details


class OutlookTasksAdapter(TaskProvider):
    provider = Provider.OUTLOOK

    def __init__(self, token: str, config: ProvidersConfig) -> None:
        self.config = config
        self.http = ProviderHttpClient(Provider.OUTLOOK, token, config.timeout_seconds, UTC_PREFERENCE)
        self.base_url = config.graph_url

    def _lists(self) -> list[dict[str, Any]]:
        payload = self.http.request("GET", f"{self.base_url}/me/todo/lists") or {}
        return [item for item in payload.get("value", []) if isinstance(item, dict) and item.get("id")]

    def _default_list_id(self) -> str:
        lists = self._lists()
        if not lists:
            raise NotFoundError(Provider.OUTLOOK.value, "defaultList", "No task lists available")
        for item in lists:
            if item.get("wellknownListName") == "defaultList":
                return str(item["id"])
        return str(lists[0]["id"])

    def _task_url(self, task_id: str, list_id: str) -> str:
        return f"{self.base_url}/me/todo/lists/{list_id}/tasks/{task_id}"

    def _fetch_list(self, list_id: str, max_results: int) -> list[dict[str, Any]]:
        payload = self.http.request(
            "GET", f"{self.base_url}/me/todo/lists/{list_id}/tasks", params={"$top": max_results}
        ) or {}
        items = [item for item in payload.get("value", []) if isinstance(item, dict)]
        for item in items:
            item["listId"] = list_id
        return items

    def get_tasks(self, filters: EventFilters) -> list[CanonicalTask]:
        list_ids = [str(item["id"]) for item in self._lists()]
        if not list_ids:
            return []
        max_results = filters.max_results or self.config.default_max_results
        branches = {
            f"outlook task list {list_id}": (lambda list_id=list_id: self._fetch_list(list_id, max_results))
            for list_id in list_ids
        }
        undated_display = (filters.time_min or datetime.now(timezone.utc)).date()
        tasks: list[CanonicalTask] = []
        for outcome in gather_best_effort(branches).values():
            for item in outcome.value_or([]):
                if not item.get("title") or item.get("status") == "completed":
                    continue
                task = normalize_task(item, Provider.OUTLOOK.value, undated_display=undated_display)
                if within_due_window(task.due, filters):
                    tasks.append(task)
        logger.debug("fetched {} outlook tasks from {} lists", len(tasks), len(list_ids))
        return tasks

    def get_task(self, task_id: str, list_id: str = "") -> CanonicalTask:
        target_list = list_id or self._default_list_id()
        payload = self.http.request("GET", self._task_url(task_id, target_list), resource_id=task_id)
        return normalize_task(payload or {}, Provider.OUTLOOK.value, list_id=target_list)

    def _task_body(self, changes: TaskChanges) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if changes.title is not None:
            body["title"] = changes.title
        if changes.notes is not None:
            body["body"] = {"contentType": "text", "content": changes.notes}
        if changes.clear_due:
            body["dueDateTime"] = None
        elif changes.due is not None:
            body["dueDateTime"] = {"dateTime": f"{changes.due.isoformat()}T00:00:00", "timeZone": "UTC"}
        return body

    def create_task(self, changes: TaskChanges, list_id: str = "") -> CanonicalTask:
        target_list = list_id or self._default_list_id()
        body = self._task_body(changes)
        body.setdefault("title", "")
        payload = self.http.request("POST", f"{self.base_url}/me/todo/lists/{target_list}/tasks", json=body)
        return normalize_task(payload or {}, Provider.OUTLOOK.value, list_id=target_list)

    def update_task(self, task_id: str, changes: TaskChanges, list_id: str = "") -> CanonicalTask:
        target_list = list_id or self._default_list_id()
        self.http.request("GET", self._task_url(task_id, target_list), resource_id=task_id)
        body = self._task_body(changes)
        if not body:
            return self.get_task(task_id, target_list)
        payload = self.http.request("PATCH", self._task_url(task_id, target_list), json=body, resource_id=task_id)
        return normalize_task(payload or {}, Provider.OUTLOOK.value, list_id=target_list)

    def delete_task(self, task_id: str, list_id: str = "") -> CanonicalTask | None:
        target_list = list_id or self._default_list_id()
        details = attempt("outlook task lookup before delete", self.get_task, task_id, target_list).value
        self.http.request("DELETE", self._task_url(task_id, target_list), resource_id=task_id)
        return details
