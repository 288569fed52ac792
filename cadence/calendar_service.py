from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable, Union

from loguru import logger

from cadence.errors import CredentialError, ValidationError
from cadence.fanout import gather_best_effort
from cadence.google_client import GoogleCalendarAdapter, GoogleTasksAdapter
from cadence.graph_client import OutlookCalendarAdapter, OutlookTasksAdapter
from cadence.models import (
    COMBINED,
    CanonicalEvent,
    CanonicalTask,
    EventFilters,
    Provider,
    ProviderCredentials,
    ProvidersConfig,
)
from cadence.providers import CalendarProvider, EventChanges, TaskChanges, TaskProvider


CalendarItem = Union[CanonicalEvent, CanonicalTask]

CALENDAR_ADAPTERS: dict[Provider, Callable[[str, ProvidersConfig], CalendarProvider]] = {
    Provider.GOOGLE: GoogleCalendarAdapter,
    Provider.OUTLOOK: OutlookCalendarAdapter,
}
TASK_ADAPTERS: dict[Provider, Callable[[str, ProvidersConfig], TaskProvider]] = {
    Provider.GOOGLE: GoogleTasksAdapter,
    Provider.OUTLOOK: OutlookTasksAdapter,
}

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(item: CalendarItem) -> datetime:
    return item.start_instant() or _EARLIEST


def _parse_provider(value: str) -> Provider:
    try:
        return Provider(str(value).strip().lower())
    except ValueError as exc:
        raise ValidationError(
            f"Unknown calendar '{value}'. Use google or outlook.", field="calendar"
        ) from exc


class CalendarService:
    """Fans reads out over the configured providers and routes each mutation to exactly one."""

    def __init__(
        self,
        credentials: ProviderCredentials,
        config: ProvidersConfig,
        calendar_adapters: dict[Provider, CalendarProvider] | None = None,
        task_adapters: dict[Provider, TaskProvider] | None = None,
    ) -> None:
        self.credentials = credentials
        self.config = config
        self._calendars: dict[Provider, CalendarProvider] = dict(calendar_adapters or {})
        self._tasks: dict[Provider, TaskProvider] = dict(task_adapters or {})

    def calendar(self, provider: Provider) -> CalendarProvider:
        if provider not in self._calendars:
            token = self.credentials.token_for(provider)
            self._calendars[provider] = CALENDAR_ADAPTERS[provider](token, self.config)
        return self._calendars[provider]

    def tasks(self, provider: Provider) -> TaskProvider:
        if provider not in self._tasks:
            token = self.credentials.token_for(provider)
            self._tasks[provider] = TASK_ADAPTERS[provider](token, self.config)
        return self._tasks[provider]

    def read_targets(self, target: str | None) -> list[Provider]:
        configured = self.credentials.configured()
        if not target or str(target).strip().lower() == COMBINED:
            if not configured:
                raise CredentialError(Provider.GOOGLE.value, "No calendar access token supplied")
            return configured
        return [_parse_provider(target)]

    def mutation_target(self, target: str | None) -> Provider:
        """Pick the single provider a mutation goes to. Never guessed when several are connected."""
        configured = self.credentials.configured()
        text = str(target or "").strip().lower()
        if text == COMBINED:
            raise ValidationError("Changes go to one calendar. Google or Outlook?", field="calendar")
        if text:
            provider = _parse_provider(text)
            if not self.credentials.token_for(provider):
                raise CredentialError(provider.value)
            return provider
        if len(configured) == 1:
            return configured[0]
        if not configured:
            raise CredentialError(Provider.GOOGLE.value, "No calendar access token supplied")
        raise ValidationError("Which calendar should I use, Google or Outlook?", field="calendar")

    def _merge(
        self,
        branches: dict[str, Callable[[], list[CalendarItem]]],
        primary_labels: set[str],
        combined: bool,
        max_results: int | None,
    ) -> list[CalendarItem]:
        merged: list[CalendarItem] = []
        for label, outcome in gather_best_effort(branches).items():
            if outcome.error is not None and not combined and label in primary_labels:
                raise outcome.error
            merged.extend(outcome.value_or([]))
        merged.sort(key=_sort_key)
        if max_results:
            return merged[:max_results]
        return merged

    def get_events(
        self,
        filters: EventFilters,
        target: str | None = None,
        include_tasks: bool = True,
    ) -> list[CalendarItem]:
        providers = self.read_targets(target)
        combined = len(providers) > 1
        branches: dict[str, Callable[[], list[CalendarItem]]] = {}
        primary_labels: set[str] = set()
        for provider in providers:
            label = f"{provider.value} events"
            branches[label] = lambda provider=provider: self.calendar(provider).get_events(filters)
            primary_labels.add(label)
            if include_tasks:
                branches[f"{provider.value} tasks"] = lambda provider=provider: self.tasks(provider).get_tasks(filters)
        items = self._merge(branches, primary_labels, combined, filters.max_results)
        logger.info(
            "read {} items from {} ({})",
            len(items),
            ",".join(provider.value for provider in providers),
            "combined" if combined else "single",
        )
        return items

    def get_tasks(self, filters: EventFilters, target: str | None = None) -> list[CalendarItem]:
        providers = self.read_targets(target)
        combined = len(providers) > 1
        branches: dict[str, Callable[[], list[CalendarItem]]] = {
            f"{provider.value} tasks": (lambda provider=provider: self.tasks(provider).get_tasks(filters))
            for provider in providers
        }
        return self._merge(branches, set(branches), combined, filters.max_results)

    def get_event(self, target: str | None, event_id: str) -> CanonicalEvent:
        return self.calendar(self.mutation_target(target)).get_event(event_id)

    def create_event(self, target: str | None, changes: EventChanges) -> CanonicalEvent:
        provider = self.mutation_target(target)
        logger.info("creating event on {}", provider.value)
        return self.calendar(provider).create_event(changes)

    def update_event(self, target: str | None, event_id: str, changes: EventChanges) -> CanonicalEvent:
        provider = self.mutation_target(target)
        logger.info("updating event {} on {}", event_id, provider.value)
        return self.calendar(provider).update_event(event_id, changes)

    def delete_event(self, target: str | None, event_id: str) -> CanonicalEvent | None:
        provider = self.mutation_target(target)
        logger.info("deleting event {} on {}", event_id, provider.value)
        return self.calendar(provider).delete_event(event_id)

    def get_task(self, target: str | None, task_id: str, list_id: str = "") -> CanonicalTask:
        return self.tasks(self.mutation_target(target)).get_task(task_id, list_id)

    def create_task(self, target: str | None, changes: TaskChanges, list_id: str = "") -> CanonicalTask:
        provider = self.mutation_target(target)
        logger.info("creating task on {}", provider.value)
        return self.tasks(provider).create_task(changes, list_id)

    def update_task(
        self, target: str | None, task_id: str, changes: TaskChanges, list_id: str = ""
    ) -> CanonicalTask:
        provider = self.mutation_target(target)
        logger.info("updating task {} on {}", task_id, provider.value)
        return self.tasks(provider).update_task(task_id, changes, list_id)

    def delete_task(self, target: str | None, task_id: str, list_id: str = "") -> CanonicalTask | None:
        provider = self.mutation_target(target)
        logger.info("deleting task {} on {}", task_id, provider.value)
        return self.tasks(provider).delete_task(task_id, list_id)
