from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Annotated, Any, Literal

import pydantic
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cadence.errors import ResolutionError, ValidationError
from cadence.models import Attendee, CanonicalEvent, CanonicalTask, Conversation, ToolName


SYSTEM_PROMPT = """You are Cadence, an ultra-concise calendar assistant.
Current datetime: {now} ({timezone}, UTC{offset}).
Connected calendars: {providers}.

Use minimal words.
- "Schedule meeting with John tomorrow 3pm" -> create_event
- "Cancel my 3pm" -> delete_event for the 3pm event
- "What's tomorrow?" -> list_events for tomorrow
- If information is missing, ask ONE short question only.

Rules:
1. Express times in ISO 8601. Times without an offset are read in {timezone}.
2. Start time + duration: calculate the end time. Start time without duration: {default_minutes} minutes.
3. If the user cannot give a start time after two attempts, use the next full hour.
4. Always put exact email addresses in attendees. If a name matches several contacts, ask which one.
5. Every change names exactly one calendar ({provider_choices}).
6. Never say "I'll help you" or "Let me". State the action or ask the question.
"""

MISSING_FIELD_PROMPTS = {
    "calendar": "Which calendar should I use, Google or Outlook?",
    "summary": "What should I call it?",
    "attendees": "Who should I invite?",
    "eventId": "Which event do you mean?",
    "taskId": "Which task do you mean?",
    "title": "What's the task?",
    "startTime": "What time?",
    "endTime": "When should it end?",
}


class AttendeeArgument(BaseModel):
    email: str = Field(description="Exact email address")


class ToolArguments(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class ListEventsArguments(ToolArguments):
    """Get calendar events for a time range or search query."""

    time_min: str | None = Field(default=None, description="Start datetime in ISO 8601")
    time_max: str | None = Field(default=None, description="End datetime in ISO 8601")
    query: str | None = Field(default=None, description="Text to match in titles or descriptions")
    max_results: int | None = Field(default=None, ge=1, le=250)
    calendar: Literal["google", "outlook", "both"] | None = Field(
        default=None, description="Calendar to read; omit for every connected calendar"
    )


class ListTasksArguments(ToolArguments):
    """Get open tasks, optionally limited to a due-date range."""

    time_min: str | None = Field(default=None, description="Earliest due date in ISO 8601")
    time_max: str | None = Field(default=None, description="Latest due date in ISO 8601")
    max_results: int | None = Field(default=None, ge=1, le=250)
    calendar: Literal["google", "outlook", "both"] | None = None


def _coerce_attendees(value: Any) -> Any:
    if value is None:
        return value
    if isinstance(value, (str, dict)):
        value = [value]
    return [{"email": item} if isinstance(item, str) else item for item in value]


AttendeeList = Annotated[list[AttendeeArgument], BeforeValidator(_coerce_attendees)]


class CreateEventArguments(ToolArguments):
    """Create a new calendar event and invite its attendees."""

    calendar: Literal["google", "outlook"]
    summary: str = Field(description="Event title")
    attendees: AttendeeList = Field(description="At least one attendee is required")
    start_time: str | None = Field(default=None, description="Start datetime in ISO 8601")
    end_time: str | None = Field(
        default=None, description="End datetime in ISO 8601; defaults to startTime plus duration"
    )
    duration: int | None = Field(default=None, ge=1, le=24 * 60, description="Duration in minutes")
    description: str | None = None
    time_zone: str | None = Field(default=None, description="IANA time zone of the event")

    def attendee_emails(self) -> list[str]:
        return [item.email.strip() for item in self.attendees]


class UpdateEventArguments(ToolArguments):
    """Update an existing calendar event. Omitted fields stay as they are."""

    calendar: Literal["google", "outlook"]
    event_id: str = Field(description="ID of the event to update")
    summary: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    description: str | None = None
    attendees: AttendeeList | None = None
    time_zone: str | None = None

    def attendee_emails(self) -> list[str] | None:
        if self.attendees is None:
            return None
        return [item.email.strip() for item in self.attendees]


class DeleteEventArguments(ToolArguments):
    """Delete a calendar event."""

    calendar: Literal["google", "outlook"]
    event_id: str = Field(description="ID of the event to delete")


class CreateTaskArguments(ToolArguments):
    """Create a task, optionally with a due date."""

    calendar: Literal["google", "outlook"]
    title: str
    notes: str | None = None
    due: str | None = Field(default=None, description="Due date, YYYY-MM-DD")


class UpdateTaskArguments(ToolArguments):
    """Update an existing task. Omitted fields stay as they are."""

    calendar: Literal["google", "outlook"]
    task_id: str
    title: str | None = None
    notes: str | None = None
    due: str | None = Field(default=None, description="Due date, YYYY-MM-DD")
    task_list_id: str | None = Field(default=None, description="List the task belongs to")


class DeleteTaskArguments(ToolArguments):
    """Delete a task."""

    calendar: Literal["google", "outlook"]
    task_id: str
    task_list_id: str | None = None


TOOL_MODELS: dict[ToolName, type[ToolArguments]] = {
    ToolName.LIST_EVENTS: ListEventsArguments,
    ToolName.LIST_TASKS: ListTasksArguments,
    ToolName.CREATE_EVENT: CreateEventArguments,
    ToolName.UPDATE_EVENT: UpdateEventArguments,
    ToolName.DELETE_EVENT: DeleteEventArguments,
    ToolName.CREATE_TASK: CreateTaskArguments,
    ToolName.UPDATE_TASK: UpdateTaskArguments,
    ToolName.DELETE_TASK: DeleteTaskArguments,
}


def _inline_refs(node: Any, definitions: dict[str, Any]) -> Any:
    if isinstance(node, dict):
        ref = node.get("$ref")
        if isinstance(ref, str) and ref.startswith("#/$defs/"):
            return _inline_refs(definitions[ref.split("/")[-1]], definitions)
        # Schema titles are strings; a property that happens to be named "title" is a dict.
        return {
            key: _inline_refs(value, definitions)
            for key, value in node.items()
            if not (key == "title" and isinstance(value, str))
        }
    if isinstance(node, list):
        return [_inline_refs(item, definitions) for item in node]
    return node


def tool_schema(name: ToolName) -> dict[str, Any]:
    model = TOOL_MODELS[name]
    schema = model.model_json_schema(by_alias=True)
    definitions = schema.pop("$defs", {})
    description = schema.pop("description", "")
    parameters = _inline_refs(schema, definitions)
    parameters.setdefault("properties", {})
    return {
        "type": "function",
        "function": {"name": name.value, "description": description, "parameters": parameters},
    }


TOOL_SCHEMAS: list[dict[str, Any]] = [tool_schema(name) for name in ToolName]


def parse_tool_name(name: str) -> ToolName:
    try:
        return ToolName(name)
    except ValueError as exc:
        raise ResolutionError(f"Unsupported action requested: {name or 'unnamed'}") from exc


def _wire_name(model: type[ToolArguments], name: str) -> str:
    info = model.model_fields.get(name)
    if info is not None and info.alias:
        return info.alias
    return name


def validate_arguments(name: ToolName, arguments: dict[str, Any]) -> ToolArguments:
    model = TOOL_MODELS[name]
    try:
        return model.model_validate(arguments or {})
    except pydantic.ValidationError as exc:
        first = exc.errors()[0]
        location = [str(part) for part in first.get("loc", ()) if isinstance(part, str)]
        field = _wire_name(model, location[0]) if location else ""
        if first.get("type") == "missing" and field in MISSING_FIELD_PROMPTS:
            message = MISSING_FIELD_PROMPTS[field]
        elif field:
            message = f"I couldn't use the {field} you gave. Could you rephrase it?"
        else:
            message = "I couldn't understand those details. Could you rephrase?"
        raise ValidationError(message, field=field) from exc


def is_valid_email(value: str) -> bool:
    text = str(value or "").strip()
    return "@" in text and "." in text and len(text) >= 5


def _offset_label(now: datetime) -> str:
    offset = now.utcoffset()
    if offset is None:
        return "+00:00"
    minutes = int(offset.total_seconds() // 60)
    sign = "+" if minutes >= 0 else "-"
    minutes = abs(minutes)
    return f"{sign}{minutes // 60:02d}:{minutes % 60:02d}"


def _agenda_line(item: CanonicalEvent | CanonicalTask, local_zone: Any) -> str:
    start = item.start_instant()
    if item.is_task:
        return f"- [task {item.source}] {item.title} (id={item.id}, list={item.list_id})"
    when = start.astimezone(local_zone).strftime("%H:%M") if start and not item.start.is_all_day else "all day"
    return f"- [{item.source}] {when} {item.title} (id={item.id})"


def build_system_prompt(
    *,
    now: datetime,
    timezone_name: str,
    providers: list[str],
    agenda: list[CanonicalEvent | CanonicalTask],
    contacts: list[Attendee],
    default_minutes: int = 30,
) -> str:
    local_zone = now.tzinfo or timezone.utc
    prompt = SYSTEM_PROMPT.format(
        now=now.isoformat(timespec="minutes"),
        timezone=timezone_name,
        offset=_offset_label(now),
        providers=", ".join(providers) or "none",
        provider_choices=" or ".join(providers) if providers else "google or outlook",
        default_minutes=default_minutes,
    )
    sections: list[str] = []
    if agenda:
        sections.append("Today's agenda:\n" + "\n".join(_agenda_line(item, local_zone) for item in agenda))
    if contacts:
        lines = [
            f"- {contact.display_name} <{contact.email}>" if contact.display_name else f"- {contact.email}"
            for contact in contacts
        ]
        sections.append("Frequent contacts:\n" + "\n".join(lines))
    if sections:
        prompt += "\nContext:\n" + "\n\n".join(sections)
    return prompt


def build_messages(system_prompt: str, conversation: Conversation) -> list[dict[str, Any]]:
    return [{"role": "system", "content": system_prompt}, *conversation.messages()]


def tool_result_content(result: dict[str, Any]) -> str:
    return json.dumps(result, ensure_ascii=False, default=str)
