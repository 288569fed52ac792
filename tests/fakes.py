from __future__ import annotations

import itertools
from datetime import datetime

from cadence.calendar_service import CalendarService
from cadence.errors import NotFoundError, ProviderError
from cadence.llm_client import Resolution
from cadence.models import (
    Attendee,
    CanonicalEvent,
    CanonicalTask,
    EventFilters,
    EventTime,
    Provider,
    ProviderCredentials,
    ProvidersConfig,
    ToolCall,
)
from cadence.providers import CalendarProvider, EventChanges, TaskChanges, TaskProvider


MUTATIONS = {"create_event", "update_event", "delete_event", "create_task", "update_task", "delete_task"}
_ids = itertools.count(1)


def make_event(
    event_id: str,
    start: datetime,
    end: datetime,
    title: str = "",
    source: str = "google",
    attendees: list[str] | None = None,
) -> CanonicalEvent:
    return CanonicalEvent(
        id=event_id,
        title=title or event_id,
        start=EventTime(date_time=start),
        end=EventTime(date_time=end),
        attendees=[Attendee(email=email) for email in attendees or []],
        source=source,
    )


def tool_call(name: str, call_id: str = "call_1", **arguments: object) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=dict(arguments))


def reply(message: str | None = None, *calls: ToolCall) -> Resolution:
    return Resolution(message=message, tool_calls=list(calls))


class FakeCalendar(CalendarProvider):
    def __init__(self, provider: Provider, events: list[CanonicalEvent] | None = None, fail: bool = False) -> None:
        self.provider = provider
        self.events = list(events or [])
        self.fail = fail
        self.calls: list[tuple[str, object]] = []

    def mutation_calls(self) -> list[tuple[str, object]]:
        return [call for call in self.calls if call[0] in MUTATIONS]

    def get_events(self, filters: EventFilters) -> list[CanonicalEvent]:
        self.calls.append(("get_events", filters))
        if self.fail:
            raise ProviderError(self.provider.value, 503, "service unavailable")
        return list(self.events)

    def get_event(self, event_id: str) -> CanonicalEvent:
        self.calls.append(("get_event", event_id))
        for event in self.events:
            if event.id == event_id:
                return event
        raise NotFoundError(self.provider.value, event_id)

    def create_event(self, changes: EventChanges) -> CanonicalEvent:
        self.calls.append(("create_event", changes))
        return CanonicalEvent(
            id=f"created-{next(_ids)}",
            title=changes.summary or "",
            start=EventTime(date_time=changes.start),
            end=EventTime(date_time=changes.end),
            attendees=[Attendee(email=email) for email in changes.attendees or []],
            source=self.provider.value,
        )

    def update_event(self, event_id: str, changes: EventChanges) -> CanonicalEvent:
        self.calls.append(("update_event", (event_id, changes)))
        current = self.get_event(event_id)
        return CanonicalEvent(
            id=event_id,
            title=changes.summary or current.title,
            start=EventTime(date_time=changes.start) if changes.start else current.start,
            end=EventTime(date_time=changes.end) if changes.end else current.end,
            source=self.provider.value,
        )

    def delete_event(self, event_id: str) -> CanonicalEvent | None:
        self.calls.append(("delete_event", event_id))
        for event in self.events:
            if event.id == event_id:
                return event
        return None


class FakeTasks(TaskProvider):
    def __init__(self, provider: Provider, tasks: list[CanonicalTask] | None = None, fail: bool = False) -> None:
        self.provider = provider
        self.tasks = list(tasks or [])
        self.fail = fail
        self.calls: list[tuple[str, object]] = []

    def mutation_calls(self) -> list[tuple[str, object]]:
        return [call for call in self.calls if call[0] in MUTATIONS]

    def get_tasks(self, filters: EventFilters) -> list[CanonicalTask]:
        self.calls.append(("get_tasks", filters))
        if self.fail:
            raise ProviderError(self.provider.value, 503, "service unavailable")
        return list(self.tasks)

    def get_task(self, task_id: str, list_id: str = "") -> CanonicalTask:
        self.calls.append(("get_task", task_id))
        for task in self.tasks:
            if task.id == task_id:
                return task
        raise NotFoundError(self.provider.value, task_id)

    def create_task(self, changes: TaskChanges, list_id: str = "") -> CanonicalTask:
        self.calls.append(("create_task", changes))
        return CanonicalTask(id=f"task-{next(_ids)}", title=changes.title or "", due=changes.due, source=self.provider.value)

    def update_task(self, task_id: str, changes: TaskChanges, list_id: str = "") -> CanonicalTask:
        self.calls.append(("update_task", (task_id, changes, list_id)))
        current = self.get_task(task_id)
        return CanonicalTask(id=task_id, title=changes.title or current.title, due=changes.due, source=self.provider.value)

    def delete_task(self, task_id: str, list_id: str = "") -> CanonicalTask | None:
        self.calls.append(("delete_task", (task_id, list_id)))
        for task in self.tasks:
            if task.id == task_id:
                return task
        return None


def build_service(
    google_events: list[CanonicalEvent] | None = None,
    outlook_events: list[CanonicalEvent] | None = None,
    google_tasks: list[CanonicalTask] | None = None,
    outlook_tasks: list[CanonicalTask] | None = None,
    credentials: ProviderCredentials | None = None,
    failing: set[str] | None = None,
) -> tuple[CalendarService, dict[str, FakeCalendar | FakeTasks]]:
    failing = failing or set()
    fakes: dict[str, FakeCalendar | FakeTasks] = {
        "google": FakeCalendar(Provider.GOOGLE, google_events, fail="google" in failing),
        "outlook": FakeCalendar(Provider.OUTLOOK, outlook_events, fail="outlook" in failing),
        "google_tasks": FakeTasks(Provider.GOOGLE, google_tasks, fail="google_tasks" in failing),
        "outlook_tasks": FakeTasks(Provider.OUTLOOK, outlook_tasks, fail="outlook_tasks" in failing),
    }
    service = CalendarService(
        credentials or ProviderCredentials(google="g-token"),
        ProvidersConfig(),
        calendar_adapters={Provider.GOOGLE: fakes["google"], Provider.OUTLOOK: fakes["outlook"]},
        task_adapters={Provider.GOOGLE: fakes["google_tasks"], Provider.OUTLOOK: fakes["outlook_tasks"]},
    )
    return service, fakes


def all_mutations(fakes: dict[str, FakeCalendar | FakeTasks]) -> list[tuple[str, object]]:
    calls: list[tuple[str, object]] = []
    for fake in fakes.values():
        calls.extend(fake.mutation_calls())
    return calls
