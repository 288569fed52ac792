from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

import requests
from loguru import logger

from cadence.errors import CredentialError, NotFoundError, ProviderError
from cadence.models import CanonicalEvent, CanonicalTask, EventFilters, Provider


@dataclass
class EventChanges:
    """Fields to write on an event. ``None`` means keep what the provider already has."""

    summary: str | None = None
    description: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    time_zone: str | None = None
    attendees: list[str] | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.summary, self.description, self.start, self.end, self.attendees)
        )


@dataclass
class TaskChanges:
    title: str | None = None
    notes: str | None = None
    due: date | None = None
    clear_due: bool = False


class CalendarProvider:
    provider: Provider

    def get_events(self, filters: EventFilters) -> list[CanonicalEvent]:
        raise NotImplementedError

    def get_event(self, event_id: str) -> CanonicalEvent:
        raise NotImplementedError

    def create_event(self, changes: EventChanges) -> CanonicalEvent:
        raise NotImplementedError

    def update_event(self, event_id: str, changes: EventChanges) -> CanonicalEvent:
        raise NotImplementedError

    def delete_event(self, event_id: str) -> CanonicalEvent | None:
        raise NotImplementedError


class TaskProvider:
    provider: Provider

    def get_tasks(self, filters: EventFilters) -> list[CanonicalTask]:
        raise NotImplementedError

    def get_task(self, task_id: str, list_id: str = "") -> CanonicalTask:
        raise NotImplementedError

    def create_task(self, changes: TaskChanges, list_id: str = "") -> CanonicalTask:
        raise NotImplementedError

    def update_task(self, task_id: str, changes: TaskChanges, list_id: str = "") -> CanonicalTask:
        raise NotImplementedError

    def delete_task(self, task_id: str, list_id: str = "") -> CanonicalTask | None:
        raise NotImplementedError


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            message = error.get("message") or error.get("code")
            if message:
                return str(message)
        elif error:
            return str(payload.get("error_description") or error)
    text = (response.text or "").strip()
    return f"HTTP {response.status_code}: {text[:300]}" if text else f"HTTP {response.status_code}"


class ProviderHttpClient:
    """Single-shot bearer-token requests. No retries; the caller owns that policy."""

    def __init__(
        self,
        provider: Provider,
        token: str,
        timeout_seconds: int,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        self.provider = provider
        self.token = token
        self.timeout_seconds = timeout_seconds
        self.extra_headers = dict(extra_headers or {})

    def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        resource_id: str = "",
    ) -> dict[str, Any] | None:
        if not self.token:
            raise CredentialError(self.provider.value)
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            **self.extra_headers,
        }
        logger.debug("{} {} {}", self.provider.value, method, url)
        try:
            response = requests.request(
                method,
                url,
                headers=headers,
                params=params,
                json=json,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ProviderError(self.provider.value, 0, f"{type(exc).__name__}: {exc}") from exc

        if response.status_code == 401:
            raise CredentialError(self.provider.value, _error_message(response))
        if response.status_code == 403:
            message = _error_message(response)
            if "rate" in message.lower() or "quota" in message.lower():
                raise ProviderError(self.provider.value, 403, message)
            raise CredentialError(self.provider.value, message)
        if response.status_code in {404, 410}:
            raise NotFoundError(self.provider.value, resource_id or url, _error_message(response))
        if not response.ok:
            raise ProviderError(self.provider.value, response.status_code, _error_message(response))
        if response.status_code == 204 or not response.content:
            return None
        payload = response.json()
        return payload if isinstance(payload, dict) else {"value": payload}


def within_due_window(due: date | None, filters: EventFilters) -> bool:
    if due is None:
        return True
    if filters.time_min is not None and due < filters.time_min.date():
        return False
    if filters.time_max is not None and due > filters.time_max.date():
        return False
    return True
