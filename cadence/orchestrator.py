from __future__ import annotations

import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable

from loguru import logger

from cadence.calendar_service import CalendarItem, CalendarService
from cadence.conflicts import ConflictDetector
from cadence.errors import CadenceError, ValidationError, attempt, unexpected_failure
from cadence.fanout import gather_best_effort
from cadence.interaction_log import InteractionLog
from cadence.llm_client import OpenAICompatibleClient, Resolution
from cadence.models import (
    COMBINED,
    AppConfig,
    Attendee,
    CanonicalEvent,
    Conversation,
    ConversationTurn,
    EventFilters,
    ToolCall,
    ToolName,
    day_window,
    next_full_hour,
    parse_iso_date,
    parse_iso_datetime,
    resolve_zone,
    serialize_datetime,
)
from cadence.providers import EventChanges, TaskChanges
from cadence.transcription import SUMMARIZE_PROMPT
from cadence.tools import (
    TOOL_SCHEMAS,
    CreateEventArguments,
    CreateTaskArguments,
    DeleteEventArguments,
    DeleteTaskArguments,
    ToolArguments,
    UpdateEventArguments,
    UpdateTaskArguments,
    build_messages,
    build_system_prompt,
    is_valid_email,
    parse_tool_name,
    tool_result_content,
    validate_arguments,
)


CANCELLED_MESSAGE = "Action cancelled"
READ_FALLBACK_MESSAGE = "Here are your events"
CLARIFY_FALLBACK_MESSAGE = "Could you say that another way?"
MAX_CONTACTS = 10
AGENDA_LIMIT = 25
CONTACT_SCAN_LIMIT = 250
PREVIEW_ONLY_KEYS = frozenset({"type", "eventDetails", "taskDetails", "conflict"})

EXECUTED_ACTION_TYPES = {
    ToolName.CREATE_EVENT: "create",
    ToolName.UPDATE_EVENT: "update",
    ToolName.DELETE_EVENT: "delete",
    ToolName.CREATE_TASK: "create_task",
    ToolName.UPDATE_TASK: "update_task",
    ToolName.DELETE_TASK: "delete_task",
}


@dataclass
class Caller:
    email: str = ""
    timezone: str = ""


def frequent_contacts(
    events: list[CalendarItem],
    exclude_email: str = "",
    limit: int = MAX_CONTACTS,
) -> list[Attendee]:
    excluded = exclude_email.strip().lower()
    counts: Counter[str] = Counter()
    names: dict[str, str] = {}
    for event in events:
        if event.is_task:
            continue
        for attendee in event.attendees:
            email = attendee.email.strip().lower()
            if not email or email == excluded:
                continue
            counts[email] += 1
            if attendee.display_name and email not in names:
                names[email] = attendee.display_name
    return [Attendee(email=email, display_name=names.get(email, "")) for email, _ in counts.most_common(limit)]


def _clock(value: datetime) -> str:
    return value.strftime("%I:%M %p").lstrip("0")


def describe_when(value: datetime, zone: Any) -> str:
    local = value.astimezone(zone)
    return f"{local:%a %b} {local.day} at {_clock(local)}"


def _describe_day(value: date) -> str:
    return f"{value:%a %b} {value.day}"


def parse_time_field(value: str | None, zone_name: str, field: str) -> datetime | None:
    if value is None or not str(value).strip():
        return None
    try:
        return parse_iso_datetime(value, zone_name)
    except ValueError as exc:
        raise ValidationError(f"I couldn't read the time {value!r}. What time did you mean?", field=field) from exc


def _parse_due(value: str | None) -> date | None:
    if value is None or not str(value).strip():
        return None
    try:
        return parse_iso_date(value)
    except ValueError as exc:
        raise ValidationError(f"I couldn't read the due date {value!r}.", field="due") from exc


def checked_attendees(emails: list[str] | None, required: bool) -> list[str] | None:
    if emails is None and not required:
        return None
    emails = [email for email in emails or [] if email]
    if not emails:
        raise ValidationError("Who should I invite?", field="attendees")
    for email in emails:
        if not is_valid_email(email):
            raise ValidationError(
                f"{email!r} doesn't look like an email address. Who should I invite?", field="attendees"
            )
    return emails


class CommandOrchestrator:
    def __init__(
        self,
        calendar_service: CalendarService,
        resolver: OpenAICompatibleClient,
        config: AppConfig,
        interaction_log: InteractionLog | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.calendar_service = calendar_service
        self.resolver = resolver
        self.config = config
        self.interaction_log = interaction_log
        self.conflicts = ConflictDetector(calendar_service)
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def zone_name(self, caller: Caller) -> str:
        if resolve_zone(caller.timezone) is not None:
            return caller.timezone.strip()
        return self.config.assistant.default_timezone

    def _zone(self, zone_name: str) -> Any:
        return resolve_zone(zone_name) or timezone.utc

    def _record(self, caller: Caller, action_type: str, provider: str | None, payload: dict[str, Any]) -> None:
        if self.interaction_log is not None:
            self.interaction_log.record(caller.email, action_type, provider, payload)

    def _load_conversation(self, history: Any) -> Conversation:
        try:
            return Conversation.from_payload(history)
        except (ValueError, TypeError) as exc:
            logger.warning("ignoring malformed conversation history: {}", exc)
            return Conversation()

    def _clarify(self, conversation: Conversation, message: str, caller: Caller) -> dict[str, Any]:
        conversation.append(ConversationTurn(role="assistant", content=message))
        self._record(caller, "ask_to_clarify", None, {"message": message})
        return {
            "success": True,
            "response": message,
            "needsClarification": True,
            "conversationHistory": conversation.to_dict(),
        }

    def audio_too_long(self, history: Any, caller: Caller) -> dict[str, Any]:
        logger.info("audio over the size limit; asking for a summary instead")
        return self._clarify(self._load_conversation(history), SUMMARIZE_PROMPT, caller)

    def _first_call(self, resolution: Resolution) -> ToolCall:
        call = resolution.tool_calls[0]
        if len(resolution.tool_calls) > 1:
            logger.info(
                "acting on {} only; ignoring {} further tool call(s)", call.name, len(resolution.tool_calls) - 1
            )
        if not call.id:
            call = ToolCall(id=f"call_{uuid.uuid4().hex[:12]}", name=call.name, arguments=call.arguments)
        return call

    def gather_context(self, caller: Caller, zone_name: str) -> tuple[list[CalendarItem], list[Attendee]]:
        now = self.clock()
        day_start, day_end = day_window(now, zone_name)
        lookback_start = now - timedelta(days=self.config.assistant.context_lookback_days)
        outcomes = gather_best_effort(
            {
                "agenda": lambda: self.calendar_service.get_events(
                    EventFilters(time_min=day_start, time_max=day_end, max_results=AGENDA_LIMIT)
                ),
                "contacts": lambda: self.calendar_service.get_events(
                    EventFilters(time_min=lookback_start, time_max=now, max_results=CONTACT_SCAN_LIMIT),
                    include_tasks=False,
                ),
            }
        )
        agenda = outcomes["agenda"].value_or([])
        contacts = frequent_contacts(outcomes["contacts"].value_or([]), exclude_email=caller.email)
        return agenda, contacts

    def handle_command(self, history: Any, text: str, caller: Caller) -> dict[str, Any]:
        conversation = self._load_conversation(history)
        text = str(text or "").strip()
        try:
            if not text:
                raise ValidationError("What would you like to do?", field="text")
            conversation.append(ConversationTurn(role="user", content=text))
            return self._route(conversation, caller)
        except ValidationError as exc:
            return self._clarify(conversation, exc.message, caller)
        except CadenceError as exc:
            logger.warning("command failed ({}): {}", exc.error_type, exc.message)
            payload = exc.to_payload()
            payload["conversationHistory"] = conversation.to_dict()
            return payload

    def _route(self, conversation: Conversation, caller: Caller) -> dict[str, Any]:
        zone_name = self.zone_name(caller)
        agenda, contacts = self.gather_context(caller, zone_name)
        system_prompt = build_system_prompt(
            now=self.clock().astimezone(self._zone(zone_name)),
            timezone_name=zone_name,
            providers=[provider.value for provider in self.calendar_service.credentials.configured()],
            agenda=agenda,
            contacts=contacts,
            default_minutes=self.config.assistant.default_event_minutes,
        )
        resolution = self.resolver.resolve(build_messages(system_prompt, conversation), TOOL_SCHEMAS)
        if not resolution.tool_calls:
            return self._clarify(conversation, resolution.message or CLARIFY_FALLBACK_MESSAGE, caller)
        call = self._first_call(resolution)
        tool = parse_tool_name(call.name)
        logger.info("resolved tool {}", tool.value)
        if tool.is_read:
            return self._read_then_summarize(conversation, resolution.message, call, tool, caller, system_prompt)
        return self._confirm(conversation, call, tool, caller)

    def _read_then_summarize(
        self,
        conversation: Conversation,
        preamble: str | None,
        call: ToolCall,
        tool: ToolName,
        caller: Caller,
        system_prompt: str,
    ) -> dict[str, Any]:
        args = validate_arguments(tool, call.arguments)
        result = self.run_read(tool, args, self.zone_name(caller))
        conversation.append(ConversationTurn(role="assistant", content=preamble, tool_calls=[call]))
        conversation.append(ConversationTurn(role="tool", content=tool_result_content(result), tool_call_id=call.id))

        follow_up = self.resolver.resolve(build_messages(system_prompt, conversation), TOOL_SCHEMAS)
        if follow_up.tool_calls:
            next_call = self._first_call(follow_up)
            next_tool = parse_tool_name(next_call.name)
            if not next_tool.is_read:
                logger.info("listing led to {}; going straight to confirmation", next_tool.value)
                return self._confirm(conversation, next_call, next_tool, caller)
            logger.info("ignoring chained read {} after {}", next_tool.value, tool.value)

        summary = follow_up.message or READ_FALLBACK_MESSAGE
        conversation.append(ConversationTurn(role="assistant", content=summary))
        action_type = "unified_calendar" if result["calendar"] == COMBINED else "converse"
        self._record(caller, action_type, result["calendar"], {"tool": tool.value, "count": result["count"]})
        return {
            "success": True,
            "response": summary,
            "executed": True,
            "result": result,
            "conversationHistory": conversation.to_dict(),
        }

    def run_read(self, tool: ToolName, args: ToolArguments, zone_name: str) -> dict[str, Any]:
        filters = EventFilters(
            time_min=parse_time_field(args.time_min, zone_name, "timeMin"),
            time_max=parse_time_field(args.time_max, zone_name, "timeMax"),
            max_results=args.max_results or self.config.providers.default_max_results,
            query=str(getattr(args, "query", None) or ""),
        )
        targets = self.calendar_service.read_targets(args.calendar)
        calendar = COMBINED if len(targets) > 1 else targets[0].value
        if tool == ToolName.LIST_TASKS:
            items = self.calendar_service.get_tasks(filters, target=args.calendar)
            key = "tasks"
        else:
            items = self.calendar_service.get_events(filters, target=args.calendar)
            key = "events"
        return {"success": True, "calendar": calendar, "count": len(items), key: [item.to_dict() for item in items]}

    def _confirm(self, conversation: Conversation, call: ToolCall, tool: ToolName, caller: Caller) -> dict[str, Any]:
        arguments = dict(call.arguments)
        arguments["calendar"] = self.calendar_service.mutation_target(arguments.get("calendar")).value
        args = validate_arguments(tool, arguments)
        action, message = self._previews[tool](self, args, self.zone_name(caller))
        action = {"type": tool.value, **action}
        conversation.append(ConversationTurn(role="assistant", content=message))
        self._record(caller, "converse", args.calendar, {"action": action})
        return {
            "success": True,
            "response": message,
            "needsConfirmation": True,
            "action": action,
            "conversationHistory": conversation.to_dict(),
        }

    def _conflict_note(self, conflict: CanonicalEvent | None, zone_name: str) -> str:
        if conflict is None:
            return ""
        start = conflict.start_instant()
        if start is None or conflict.start.is_all_day:
            return f' Heads up: it overlaps "{conflict.title}" (all day).'
        return f' Heads up: it overlaps "{conflict.title}" at {_clock(start.astimezone(self._zone(zone_name)))}.'

    def _preview_create_event(self, args: CreateEventArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        event_zone = args.time_zone if resolve_zone(args.time_zone) else zone_name
        attendees = checked_attendees(args.attendee_emails(), required=True)
        start = parse_time_field(args.start_time, event_zone, "startTime") or next_full_hour(self.clock())
        end = parse_time_field(args.end_time, event_zone, "endTime")
        if end is None:
            end = start + timedelta(minutes=args.duration or self.config.assistant.default_event_minutes)
        if end <= start:
            raise ValidationError("The end time has to be after the start time.", field="endTime")
        conflict = self.conflicts.check_conflict(args.calendar, start, end)

        action = args.model_dump(by_alias=True, exclude_none=True)
        action.update(
            startTime=serialize_datetime(start),
            endTime=serialize_datetime(end),
            attendees=[{"email": email} for email in attendees],
            timeZone=event_zone,
        )
        if conflict is not None:
            action["conflict"] = conflict.to_dict()
        message = (
            f'Create "{args.summary}" on {describe_when(start, self._zone(zone_name))} with {", ".join(attendees)}?'
            + self._conflict_note(conflict, zone_name)
        )
        return action, message

    def _preview_update_event(self, args: UpdateEventArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        event_zone = args.time_zone if resolve_zone(args.time_zone) else zone_name
        attendees = checked_attendees(args.attendee_emails(), required=False)
        details = attempt("event lookup for preview", self.calendar_service.get_event, args.calendar, args.event_id).value
        start = parse_time_field(args.start_time, event_zone, "startTime")
        end = parse_time_field(args.end_time, event_zone, "endTime")
        old_start = details.start_instant() if details else None
        old_end = details.end_instant() if details else None
        if start is not None and end is None and old_start is not None and old_end is not None:
            end = start + (old_end - old_start)
        if start is not None and end is None:
            raise ValidationError("When should it end?", field="endTime")

        action = args.model_dump(by_alias=True, exclude_none=True)
        if start is not None:
            action["startTime"] = serialize_datetime(start)
        if end is not None:
            action["endTime"] = serialize_datetime(end)
        if attendees is not None:
            action["attendees"] = [{"email": email} for email in attendees]
        if details is not None:
            action["eventDetails"] = details.to_dict()

        conflict = None
        changing = (start is not None and start != old_start) or (end is not None and end != old_end)
        if changing:
            window_start = start or old_start
            window_end = end or old_end
            if window_start is not None and window_end is not None:
                if window_end <= window_start:
                    raise ValidationError("The end time has to be after the start time.", field="endTime")
                conflict = self.conflicts.check_conflict(args.calendar, window_start, window_end, args.event_id)
        if conflict is not None:
            action["conflict"] = conflict.to_dict()

        title = args.summary or (details.title if details and details.title else "this event")
        when = f" to {describe_when(start, self._zone(zone_name))}" if start is not None else ""
        return action, f'Update "{title}"{when}?' + self._conflict_note(conflict, zone_name)

    def _preview_delete_event(self, args: DeleteEventArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        details = attempt("event lookup for preview", self.calendar_service.get_event, args.calendar, args.event_id).value
        action = args.model_dump(by_alias=True, exclude_none=True)
        if details is None:
            return action, "Delete this event?"
        action["eventDetails"] = details.to_dict()
        start = details.start_instant()
        if start is not None and not details.start.is_all_day:
            return action, f'Delete "{details.title}" on {describe_when(start, self._zone(zone_name))}?'
        return action, f'Delete "{details.title}"?'

    def _preview_create_task(self, args: CreateTaskArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        due = _parse_due(args.due)
        action = args.model_dump(by_alias=True, exclude_none=True)
        if due is not None:
            action["due"] = due.isoformat()
            return action, f'Add task "{args.title}" due {_describe_day(due)}?'
        return action, f'Add task "{args.title}"?'

    def _preview_update_task(self, args: UpdateTaskArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        due = _parse_due(args.due)
        details = attempt(
            "task lookup for preview",
            self.calendar_service.get_task,
            args.calendar,
            args.task_id,
            args.task_list_id or "",
        ).value
        action = args.model_dump(by_alias=True, exclude_none=True)
        if due is not None:
            action["due"] = due.isoformat()
        if details is not None:
            action["taskDetails"] = details.to_dict()
            if not args.task_list_id and details.list_id:
                action["taskListId"] = details.list_id
        title = args.title or (details.title if details and details.title else "this task")
        suffix = f" due {_describe_day(due)}" if due is not None else ""
        return action, f'Update task "{title}"{suffix}?'

    def _preview_delete_task(self, args: DeleteTaskArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        details = attempt(
            "task lookup for preview",
            self.calendar_service.get_task,
            args.calendar,
            args.task_id,
            args.task_list_id or "",
        ).value
        action = args.model_dump(by_alias=True, exclude_none=True)
        if details is None:
            return action, "Delete this task?"
        action["taskDetails"] = details.to_dict()
        if not args.task_list_id and details.list_id:
            action["taskListId"] = details.list_id
        return action, f'Delete task "{details.title}"?'

    _previews = {
        ToolName.CREATE_EVENT: _preview_create_event,
        ToolName.UPDATE_EVENT: _preview_update_event,
        ToolName.DELETE_EVENT: _preview_delete_event,
        ToolName.CREATE_TASK: _preview_create_task,
        ToolName.UPDATE_TASK: _preview_update_task,
        ToolName.DELETE_TASK: _preview_delete_task,
    }

    def execute(self, action: Any, confirmed: bool, caller: Caller) -> dict[str, Any]:
        """Apply a confirmed preview. Carries no conversation; repeated calls apply again."""
        try:
            if not isinstance(action, dict) or not action.get("type"):
                raise ValidationError("Action details required", field="action")
            if not confirmed:
                self._record(caller, "cancel", action.get("calendar"), {"action": action})
                return {"success": True, "response": CANCELLED_MESSAGE, "cancelled": True}
            try:
                tool = ToolName(str(action["type"]))
            except ValueError as exc:
                raise ValidationError("Invalid action type", field="type") from exc
            if tool.is_read:
                raise ValidationError("Invalid action type", field="type")
            arguments = {key: value for key, value in action.items() if key not in PREVIEW_ONLY_KEYS}
            args = validate_arguments(tool, arguments)
            self._record(caller, "approve", args.calendar, {"type": tool.value})
            result, message = self._executors[tool](self, args, self.zone_name(caller))
        except CadenceError as exc:
            logger.warning("execute failed ({}): {}", exc.error_type, exc.message)
            return exc.to_payload()
        except Exception:
            return unexpected_failure("execute")
        logger.info("executed {} on {}", tool.value, args.calendar)
        self._record(caller, EXECUTED_ACTION_TYPES[tool], args.calendar, {"action": arguments, "result": result})
        return {"success": True, "response": message, "result": result}

    def _execute_create_event(self, args: CreateEventArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        event_zone = args.time_zone if resolve_zone(args.time_zone) else zone_name
        attendees = checked_attendees(args.attendee_emails(), required=True)
        start = parse_time_field(args.start_time, event_zone, "startTime")
        end = parse_time_field(args.end_time, event_zone, "endTime")
        if start is None:
            raise ValidationError("What time?", field="startTime")
        if end is None:
            raise ValidationError("When should it end?", field="endTime")
        if end <= start:
            raise ValidationError("The end time has to be after the start time.", field="endTime")
        event = self.calendar_service.create_event(
            args.calendar,
            EventChanges(
                summary=args.summary,
                description=args.description,
                start=start,
                end=end,
                time_zone=event_zone,
                attendees=attendees,
            ),
        )
        return {"event": event.to_dict()}, f'Created "{event.title or args.summary}".'

    def _execute_update_event(self, args: UpdateEventArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        event_zone = args.time_zone if resolve_zone(args.time_zone) else zone_name
        changes = EventChanges(
            summary=args.summary,
            description=args.description,
            start=parse_time_field(args.start_time, event_zone, "startTime"),
            end=parse_time_field(args.end_time, event_zone, "endTime"),
            time_zone=args.time_zone,
            attendees=checked_attendees(args.attendee_emails(), required=False),
        )
        if changes.is_empty():
            raise ValidationError("What should I change?", field="eventId")
        if changes.start is not None and changes.end is not None and changes.end <= changes.start:
            raise ValidationError("The end time has to be after the start time.", field="endTime")
        event = self.calendar_service.update_event(args.calendar, args.event_id, changes)
        return {"event": event.to_dict()}, f'Updated "{event.title or "the event"}".'

    def _execute_delete_event(self, args: DeleteEventArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        details = self.calendar_service.delete_event(args.calendar, args.event_id)
        result = {"deleted": True, "eventId": args.event_id, "event": details.to_dict() if details else None}
        return result, f'Deleted "{details.title}".' if details and details.title else "Deleted the event."

    def _execute_create_task(self, args: CreateTaskArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        changes = TaskChanges(title=args.title, notes=args.notes, due=_parse_due(args.due))
        task = self.calendar_service.create_task(args.calendar, changes)
        return {"task": task.to_dict()}, f'Added task "{task.title or args.title}".'

    def _execute_update_task(self, args: UpdateTaskArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        clear_due = args.due is not None and not args.due.strip()
        changes = TaskChanges(title=args.title, notes=args.notes, due=_parse_due(args.due), clear_due=clear_due)
        if changes.title is None and changes.notes is None and changes.due is None and not clear_due:
            raise ValidationError("What should I change?", field="taskId")
        task = self.calendar_service.update_task(args.calendar, args.task_id, changes, args.task_list_id or "")
        return {"task": task.to_dict()}, f'Updated task "{task.title or "the task"}".'

    def _execute_delete_task(self, args: DeleteTaskArguments, zone_name: str) -> tuple[dict[str, Any], str]:
        details = self.calendar_service.delete_task(args.calendar, args.task_id, args.task_list_id or "")
        result = {"deleted": True, "taskId": args.task_id, "task": details.to_dict() if details else None}
        return result, f'Deleted task "{details.title}".' if details and details.title else "Deleted the task."

    _executors = {
        ToolName.CREATE_EVENT: _execute_create_event,
        ToolName.UPDATE_EVENT: _execute_update_event,
        ToolName.DELETE_EVENT: _execute_delete_event,
        ToolName.CREATE_TASK: _execute_create_task,
        ToolName.UPDATE_TASK: _execute_update_task,
        ToolName.DELETE_TASK: _execute_delete_task,
    }
