from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


FRACTION_PATTERN = re.compile(r"(\.\d{6})\d+")
CONVERSATION_VERSION = 1


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def resolve_zone(name: str | None) -> ZoneInfo | None:
    text = str(name or "").strip()
    if not text:
        return None
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError):
        return None


def parse_iso_datetime(value: str | datetime | None, zone_name: str | None = None) -> datetime | None:
    """Parse an ISO-8601 timestamp. Naive values are read in ``zone_name`` (UTC if unknown)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = FRACTION_PATTERN.sub(r"\1", text)
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        zone = resolve_zone(zone_name)
        if zone is not None:
            return parsed.replace(tzinfo=zone)
    return _ensure_tz(parsed)


def parse_iso_date(value: str | date | None) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    if len(text) == 10:
        return date.fromisoformat(text)
    parsed = parse_iso_datetime(text)
    return parsed.astimezone(timezone.utc).date() if parsed else None


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).astimezone(timezone.utc).isoformat()


def date_to_datetime(value: datetime | date | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def next_full_hour(now: datetime) -> datetime:
    now_utc = _ensure_tz(now).astimezone(timezone.utc)
    return now_utc.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)


def day_window(now: datetime, zone_name: str) -> tuple[datetime, datetime]:
    zone = resolve_zone(zone_name) or timezone.utc
    local_now = _ensure_tz(now).astimezone(zone)
    start = datetime.combine(local_now.date(), time.min, tzinfo=zone)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class Provider(str, Enum):
    GOOGLE = "google"
    OUTLOOK = "outlook"


COMBINED = "both"


class ToolName(str, Enum):
    LIST_EVENTS = "list_events"
    LIST_TASKS = "list_tasks"
    CREATE_EVENT = "create_event"
    UPDATE_EVENT = "update_event"
    DELETE_EVENT = "delete_event"
    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    DELETE_TASK = "delete_task"

    @property
    def is_read(self) -> bool:
        return self in READ_TOOLS


READ_TOOLS = frozenset({ToolName.LIST_EVENTS, ToolName.LIST_TASKS})
MUTATING_TOOLS = frozenset(set(ToolName) - READ_TOOLS)


@dataclass
class AIConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    timeout_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AIConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://api.openai.com/v1")).strip() or "https://api.openai.com/v1",
            api_key=str(data.get("api_key", "")).strip(),
            model=str(data.get("model", "gpt-4o-mini")).strip() or "gpt-4o-mini",
            timeout_seconds=max(1, int(data.get("timeout_seconds", 60))),
        )


@dataclass
class TranscriptionConfig:
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "whisper-1"
    language: str = "en"
    timeout_seconds: int = 60
    max_audio_bytes: int = 2 * 1024 * 1024

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TranscriptionConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://api.openai.com/v1")).strip() or "https://api.openai.com/v1",
            api_key=str(data.get("api_key", "")).strip(),
            model=str(data.get("model", "whisper-1")).strip() or "whisper-1",
            language=str(data.get("language", "en")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 60))),
            max_audio_bytes=max(1024, int(data.get("max_audio_bytes", 2 * 1024 * 1024))),
        )


@dataclass
class ProvidersConfig:
    google_calendar_url: str = "https://www.googleapis.com/calendar/v3"
    google_tasks_url: str = "https://tasks.googleapis.com/tasks/v1"
    graph_url: str = "https://graph.microsoft.com/v1.0"
    timeout_seconds: int = 20
    default_max_results: int = 100

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProvidersConfig":
        data = data or {}
        defaults = cls()
        return cls(
            google_calendar_url=str(data.get("google_calendar_url", defaults.google_calendar_url)).rstrip("/")
            or defaults.google_calendar_url,
            google_tasks_url=str(data.get("google_tasks_url", defaults.google_tasks_url)).rstrip("/")
            or defaults.google_tasks_url,
            graph_url=str(data.get("graph_url", defaults.graph_url)).rstrip("/") or defaults.graph_url,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 20))),
            default_max_results=min(250, max(1, int(data.get("default_max_results", 100)))),
        )


@dataclass
class AssistantConfig:
    default_timezone: str = "UTC"
    context_lookback_days: int = 14
    default_event_minutes: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AssistantConfig":
        data = data or {}
        zone_name = str(data.get("default_timezone", "UTC")).strip() or "UTC"
        if resolve_zone(zone_name) is None:
            zone_name = "UTC"
        return cls(
            default_timezone=zone_name,
            context_lookback_days=max(1, int(data.get("context_lookback_days", 14))),
            default_event_minutes=max(5, int(data.get("default_event_minutes", 30))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"
    serialize: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level, serialize=bool(data.get("serialize", False)))


@dataclass
class InteractionLogConfig:
    enabled: bool = True
    path: str = "data/interactions.db"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "InteractionLogConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", True)),
            path=str(data.get("path", "data/interactions.db")).strip() or "data/interactions.db",
        )


@dataclass
class AppConfig:
    ai: AIConfig = field(default_factory=AIConfig)
    transcription: TranscriptionConfig = field(default_factory=TranscriptionConfig)
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    assistant: AssistantConfig = field(default_factory=AssistantConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    interaction_log: InteractionLogConfig = field(default_factory=InteractionLogConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            ai=AIConfig.from_dict(data.get("ai")),
            transcription=TranscriptionConfig.from_dict(data.get("transcription")),
            providers=ProvidersConfig.from_dict(data.get("providers")),
            assistant=AssistantConfig.from_dict(data.get("assistant")),
            logging=LoggingConfig.from_dict(data.get("logging")),
            interaction_log=InteractionLogConfig.from_dict(data.get("interaction_log")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class ProviderCredentials:
    """Per-request bearer tokens. Never persisted."""

    google: str = ""
    outlook: str = ""

    def token_for(self, provider: Provider) -> str:
        return self.google if provider == Provider.GOOGLE else self.outlook

    def configured(self) -> list[Provider]:
        return [provider for provider in Provider if self.token_for(provider)]


@dataclass
class EventTime:
    date_time: datetime | None = None
    day: date | None = None
    time_zone: str = "UTC"

    @property
    def is_all_day(self) -> bool:
        return self.date_time is None and self.day is not None

    def instant(self) -> datetime | None:
        if self.date_time is not None:
            return self.date_time
        return date_to_datetime(self.day)

    def to_dict(self) -> dict[str, Any]:
        if self.date_time is not None:
            return {"dateTime": serialize_datetime(self.date_time), "timeZone": self.time_zone}
        return {"date": self.day.isoformat() if self.day else None, "timeZone": self.time_zone}


@dataclass
class Attendee:
    email: str
    display_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"email": self.email, "displayName": self.display_name}


@dataclass
class CanonicalEvent:
    id: str
    title: str = ""
    description: str = ""
    start: EventTime = field(default_factory=EventTime)
    end: EventTime = field(default_factory=EventTime)
    attendees: list[Attendee] = field(default_factory=list)
    conference_link: str | None = None
    location: str = ""
    source: str = Provider.GOOGLE.value
    is_task: bool = False

    def start_instant(self) -> datetime | None:
        return self.start.instant()

    def end_instant(self) -> datetime | None:
        return self.end.instant()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "start": self.start.to_dict(),
            "end": self.end.to_dict(),
            "attendees": [attendee.to_dict() for attendee in self.attendees],
            "conferenceLink": self.conference_link,
            "location": self.location,
            "source": self.source,
            "isTask": False,
        }


@dataclass
class CanonicalTask:
    id: str
    title: str = ""
    notes: str = ""
    due: date | None = None
    source: str = Provider.GOOGLE.value
    list_id: str = ""
    # Listing-only date for undated tasks; never written back as a due date.
    display_date: date | None = None
    is_task: bool = True

    def start_instant(self) -> datetime | None:
        return date_to_datetime(self.due or self.display_date)

    def end_instant(self) -> datetime | None:
        return self.start_instant()

    def to_dict(self) -> dict[str, Any]:
        shown = self.due or self.display_date
        shown_text = shown.isoformat() if shown else None
        return {
            "id": self.id,
            "title": self.title,
            "notes": self.notes,
            "due": self.due.isoformat() if self.due else None,
            "start": {"date": shown_text, "timeZone": "UTC"},
            "end": {"date": shown_text, "timeZone": "UTC"},
            "listId": self.list_id,
            "source": self.source,
            "isTask": True,
        }


@dataclass
class EventFilters:
    time_min: datetime | None = None
    time_max: datetime | None = None
    max_results: int | None = None
    query: str = ""

    def with_updates(self, **kwargs: Any) -> "EventFilters":
        payload = asdict(self)
        payload.update(kwargs)
        return EventFilters(**payload)


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        if not isinstance(data, dict):
            raise ValueError("tool call must be an object")
        function = data.get("function") if isinstance(data.get("function"), dict) else data
        raw_arguments = function.get("arguments", {})
        if isinstance(raw_arguments, str):
            raw_arguments = json.loads(raw_arguments or "{}")
        if not isinstance(raw_arguments, dict):
            raise ValueError("tool call arguments must be an object")
        return cls(
            id=str(data.get("id", "")),
            name=str(function.get("name", "")).strip(),
            arguments=raw_arguments,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments, ensure_ascii=False)},
        }


@dataclass
class ConversationTurn:
    role: str
    content: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationTurn":
        role = str(data.get("role", "")).strip()
        if role not in {"user", "assistant", "tool"}:
            raise ValueError(f"unsupported conversation role: {role!r}")
        raw_calls = data.get("tool_calls", data.get("toolCalls")) or []
        if not isinstance(raw_calls, list):
            raise ValueError("tool_calls must be a list")
        content = data.get("content")
        return cls(
            role=role,
            content=None if content is None else str(content),
            tool_calls=[ToolCall.from_dict(item) for item in raw_calls],
            tool_call_id=data.get("tool_call_id", data.get("toolCallId")),
        )

    def to_dict(self) -> dict[str, Any]:
        message: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            message["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.tool_call_id:
            message["tool_call_id"] = self.tool_call_id
        return message


@dataclass
class Conversation:
    """Caller-owned dialogue state, passed by value on every request."""

    turns: list[ConversationTurn] = field(default_factory=list)
    version: int = CONVERSATION_VERSION

    @classmethod
    def from_payload(cls, raw: Any) -> "Conversation":
        if raw is None or raw == "":
            return cls()
        if isinstance(raw, str):
            raw = json.loads(raw)
        if isinstance(raw, dict):
            version = int(raw.get("version", CONVERSATION_VERSION))
            if version != CONVERSATION_VERSION:
                raise ValueError(f"unsupported conversation version: {version}")
            raw = raw.get("turns", [])
        if not isinstance(raw, list):
            raise ValueError("conversation history must be a list of turns")
        return cls(turns=[ConversationTurn.from_dict(item) for item in raw if isinstance(item, dict)])

    def append(self, turn: ConversationTurn) -> None:
        self.turns.append(turn)

    def messages(self) -> list[dict[str, Any]]:
        return [turn.to_dict() for turn in self.turns]

    def to_dict(self) -> dict[str, Any]:
        return {"version": self.version, "turns": self.messages()}
