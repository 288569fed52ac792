from __future__ import annotations

import json
import os
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Body, Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cadence.calendar_service import CalendarService
from cadence.config_manager import ConfigManager
from cadence.errors import CadenceError, ValidationError, unexpected_failure
from cadence.interaction_log import InteractionLog
from cadence.llm_client import OpenAICompatibleClient
from cadence.logging_setup import setup_logging
from cadence.models import COMBINED, Provider, ProviderCredentials, ToolName, resolve_zone
from cadence.orchestrator import Caller, CommandOrchestrator, checked_attendees, parse_time_field
from cadence.profile_store import CALENDAR_CHOICES, ProfileStore
from cadence.providers import EventChanges
from cadence.streaming import run_command, stream_command
from cadence.tools import ListEventsArguments
from cadence.transcription import UPLOAD_LIMIT_BYTES, WhisperClient


STATUS_BY_ERROR_TYPE = {
    "validation": 400,
    "credential": 401,
    "not_found": 404,
    "provider": 502,
    "resolution": 502,
    "transcription": 502,
    "internal": 500,
}
REDACTED_FIELDS = {"api_key": "***", "apiKey": "***"}
BODY_LOG_LIMIT = 500


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ExecuteRequest(BaseModel):
    action: dict[str, Any] | None = None
    confirmed: bool = False
    timezone: str = ""


class EventWriteRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    summary: str | None = None
    description: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    time_zone: str | None = None
    attendees: list[Any] | None = None
    type: str | None = None

    def attendee_emails(self) -> list[str] | None:
        if self.attendees is None:
            return None
        emails = []
        for item in self.attendees:
            value = item.get("email") if isinstance(item, dict) else item
            emails.append(str(value or "").strip())
        return emails


@dataclass
class RequestScope:
    credentials: ProviderCredentials
    email: str


class AppContext:
    def __init__(self, config_path: str, state_path: str | None = None) -> None:
        self.config_manager = ConfigManager(config_path)
        config = self.config_manager.load()
        setup_logging(config.logging)
        db_path = state_path or config.interaction_log.path
        self.interaction_log = InteractionLog(db_path, enabled=config.interaction_log.enabled)
        self.profiles = ProfileStore(db_path)

    def calendar_type(self, explicit: str | None, email: str) -> str:
        text = str(explicit or "").strip().lower()
        if text:
            return text
        if email:
            return self.profiles.calendar_type(email) or Provider.GOOGLE.value
        return Provider.GOOGLE.value

    def zone_name(self, requested: str | None) -> str:
        if resolve_zone(requested) is not None:
            return str(requested).strip()
        return self.config_manager.load().assistant.default_timezone

    def calendar_service(self, credentials: ProviderCredentials) -> CalendarService:
        return CalendarService(credentials, self.config_manager.load().providers)

    def transcriber(self) -> WhisperClient:
        config = self.config_manager.load()
        return WhisperClient(config.transcription, api_key=OpenAICompatibleClient(config.ai).api_key)

    def orchestrator(self, credentials: ProviderCredentials) -> tuple[CommandOrchestrator, WhisperClient]:
        config = self.config_manager.load()
        resolver = OpenAICompatibleClient(config.ai)
        orchestrator = CommandOrchestrator(
            CalendarService(credentials, config.providers),
            resolver,
            config,
            interaction_log=self.interaction_log,
        )
        return orchestrator, WhisperClient(config.transcription, api_key=resolver.api_key)


def _bearer(authorization: str | None) -> str:
    text = str(authorization or "").strip()
    if not text.lower().startswith("bearer "):
        return ""
    return text[7:].strip()


def build_credentials(calendar_type: str, token: str, additional_token: str = "") -> ProviderCredentials:
    kind = str(calendar_type or Provider.GOOGLE.value).strip().lower()
    if kind == Provider.GOOGLE.value:
        return ProviderCredentials(google=token)
    if kind == Provider.OUTLOOK.value:
        return ProviderCredentials(outlook=token)
    if kind == COMBINED:
        return ProviderCredentials(google=token, outlook=additional_token)
    raise HTTPException(status_code=400, detail="calendar type must be google, outlook or both")


def require_token(authorization: str | None = Header(default=None)) -> str:
    token = _bearer(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="No authorization token provided")
    return token


def request_scope(
    request: Request,
    token: str = Depends(require_token),
    x_calendar_type: str | None = Header(default=None),
    x_additional_token: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
) -> RequestScope:
    email = str(x_user_email or "").strip()
    calendar_type = request.app.state.context.calendar_type(x_calendar_type, email)
    return RequestScope(
        credentials=build_credentials(calendar_type, token, str(x_additional_token or "").strip()),
        email=email,
    )


def caller_email(token: str = Depends(require_token), x_user_email: str | None = Header(default=None)) -> str:
    email = str(x_user_email or "").strip().lower()
    if not email:
        raise HTTPException(status_code=400, detail="X-User-Email header required")
    return email


def _respond(payload: dict[str, Any]) -> JSONResponse:
    if payload.get("success", False):
        return JSONResponse(payload)
    status = STATUS_BY_ERROR_TYPE.get(str(payload.get("errorType", "internal")), 500)
    return JSONResponse(payload, status_code=status)


def _guarded(label: str, handler: Callable[[], dict[str, Any]]) -> JSONResponse:
    try:
        return _respond(handler())
    except CadenceError as exc:
        logger.warning("{} failed ({}): {}", label, exc.error_type, exc.message)
        return _respond(exc.to_payload())
    except Exception:
        return _respond(unexpected_failure(label))


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            key: REDACTED_FIELDS[key] if key in REDACTED_FIELDS else _redact(item) for key, item in value.items()
        }
    if isinstance(value, list):
        return [_redact(item) for item in value]
    return value


async def _body_for_log(request: Request) -> str | None:
    if request.method in {"GET", "HEAD", "OPTIONS"}:
        return None
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        return "[FILE_UPLOAD]"
    raw = await request.body()
    if not raw:
        return None
    try:
        text = json.dumps(_redact(json.loads(raw)), ensure_ascii=False, default=str)
    except ValueError:
        text = raw.decode("utf-8", errors="replace")
    if len(text) > BODY_LOG_LIMIT:
        return text[:BODY_LOG_LIMIT] + "... [truncated]"
    return text


def _event_changes(body: EventWriteRequest, zone_name: str, creating: bool) -> EventChanges:
    event_zone = body.time_zone if resolve_zone(body.time_zone) else zone_name
    start = parse_time_field(body.start_time, event_zone, "startTime")
    end = parse_time_field(body.end_time, event_zone, "endTime")
    if creating and (not (body.summary or "").strip() or start is None or end is None):
        raise ValidationError("Missing required fields: summary, startTime, endTime", field="summary")
    if start is not None and end is not None and end <= start:
        raise ValidationError("The end time has to be after the start time.", field="endTime")
    emails = body.attendee_emails()
    return EventChanges(
        summary=body.summary,
        description=body.description,
        start=start,
        end=end,
        time_zone=event_zone if (start or end) else body.time_zone,
        attendees=checked_attendees(emails, required=False) if emails else emails,
    )


def create_app() -> FastAPI:
    config_path = os.getenv("CADENCE_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CADENCE_STATE_PATH") or None
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Cadence", version="0.1.0")
    app.state.context = context

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        request_id = uuid.uuid4().hex[:16]
        request.state.request_id = request_id
        log = logger.bind(request_id=request_id)
        started = time.perf_counter()
        log.info(
            "request {} {} query={} auth={} body={}",
            request.method,
            request.url.path,
            dict(request.query_params),
            "Bearer ***" if request.headers.get("authorization") else "none",
            await _body_for_log(request),
        )
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        log.info(
            "response {} {} status={} duration={:.1f}ms",
            request.method,
            request.url.path,
            response.status_code,
            (time.perf_counter() - started) * 1000,
        )
        return response

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        updated = app.state.context.config_manager.update(request.payload)
        setup_logging(updated.logging)
        return {"message": "config updated", "config": app.state.context.config_manager.masked()}

    @app.post("/api/ai/test")
    def test_ai_connectivity() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        client = OpenAICompatibleClient(config.ai)
        ok, message = client.test_connectivity()
        models = client.list_models() if ok else []
        return {"ok": ok, "message": message, "models": models}

    @app.get("/api/interactions")
    def interactions(limit: int = 50, email: str | None = None) -> dict[str, Any]:
        return {"logs": app.state.context.interaction_log.recent(limit=limit, email=email)}

    @app.get("/api/onboarding/profile")
    def get_profile(email: str = Depends(caller_email)) -> JSONResponse:
        return _guarded(
            "profile fetch", lambda: {"success": True, "profile": app.state.context.profiles.get(email)}
        )

    @app.post("/api/onboarding/profile")
    def save_profile(payload: dict[str, Any] = Body(...), email: str = Depends(caller_email)) -> JSONResponse:
        def save() -> dict[str, Any]:
            if "calendars" in payload:
                choice = str(payload["calendars"] or "").strip().lower()
                if choice not in CALENDAR_CHOICES:
                    raise ValidationError("calendars must be google, outlook or both", field="calendars")
                payload["calendars"] = choice
            return {"success": True, "profile": app.state.context.profiles.save(email, payload)}

        return _guarded("profile save", save)

    @app.post("/api/transcribe", dependencies=[Depends(require_token)])
    def transcribe(audio: UploadFile | None = File(default=None)) -> JSONResponse:
        if audio is None:
            raise HTTPException(status_code=400, detail="No audio file provided")
        audio_bytes = audio.file.read()
        if len(audio_bytes) > UPLOAD_LIMIT_BYTES:
            raise HTTPException(status_code=413, detail="Audio file too large")
        transcriber = app.state.context.transcriber()
        return _guarded(
            "transcription",
            lambda: {
                "success": True,
                "text": transcriber.transcribe(
                    audio_bytes, audio.filename or "audio.webm", audio.content_type or "audio/webm"
                ),
            },
        )

    @app.get("/api/calendar/events")
    def calendar_events(
        time_min: str | None = Query(default=None, alias="timeMin"),
        time_max: str | None = Query(default=None, alias="timeMax"),
        max_results: int | None = Query(default=None, alias="maxResults", ge=1, le=250),
        q: str | None = None,
        calendar: str | None = Query(default=None, alias="type"),
        token: str = Depends(require_token),
        x_calendar_type: str | None = Header(default=None),
        x_additional_token: str | None = Header(default=None),
        x_user_email: str | None = Header(default=None),
        x_timezone: str | None = Header(default=None),
    ) -> JSONResponse:
        calendar_type = app.state.context.calendar_type(calendar or x_calendar_type, str(x_user_email or "").strip())
        credentials = build_credentials(calendar_type, token, str(x_additional_token or "").strip())
        orchestrator, _ = app.state.context.orchestrator(credentials)

        def read() -> dict[str, Any]:
            args = ListEventsArguments(
                time_min=time_min,
                time_max=time_max,
                max_results=max_results,
                query=q,
                calendar=COMBINED if calendar_type == COMBINED else None,
            )
            return orchestrator.run_read(
                ToolName.LIST_EVENTS, args, orchestrator.zone_name(Caller(timezone=x_timezone or ""))
            )

        return _guarded("calendar read", read)

    @app.post("/api/calendar/events")
    def create_calendar_event(
        body: EventWriteRequest,
        scope: RequestScope = Depends(request_scope),
        x_timezone: str | None = Header(default=None),
    ) -> JSONResponse:
        service = app.state.context.calendar_service(scope.credentials)

        def create() -> dict[str, Any]:
            changes = _event_changes(body, app.state.context.zone_name(x_timezone), creating=True)
            return {"success": True, "event": service.create_event(body.type, changes).to_dict()}

        return _guarded("event create", create)

    @app.put("/api/calendar/events/{event_id}")
    def update_calendar_event(
        event_id: str,
        body: EventWriteRequest,
        scope: RequestScope = Depends(request_scope),
        x_timezone: str | None = Header(default=None),
    ) -> JSONResponse:
        service = app.state.context.calendar_service(scope.credentials)

        def update() -> dict[str, Any]:
            changes = _event_changes(body, app.state.context.zone_name(x_timezone), creating=False)
            if changes.is_empty():
                raise ValidationError("Nothing to update", field="eventId")
            return {"success": True, "event": service.update_event(body.type, event_id, changes).to_dict()}

        return _guarded("event update", update)

    @app.delete("/api/calendar/events/{event_id}")
    def delete_calendar_event(
        event_id: str,
        calendar: str | None = Query(default=None, alias="type"),
        scope: RequestScope = Depends(request_scope),
    ) -> JSONResponse:
        service = app.state.context.calendar_service(scope.credentials)

        def delete() -> dict[str, Any]:
            details = service.delete_event(calendar, event_id)
            return {
                "success": True,
                "deleted": True,
                "eventId": event_id,
                "event": details.to_dict() if details else None,
            }

        return _guarded("event delete", delete)

    @app.post("/api/voice/command")
    def voice_command(
        text: str = Form(default=""),
        history: str = Form(default=""),
        timezone: str = Form(default=""),
        audio: UploadFile | None = File(default=None),
        scope: RequestScope = Depends(request_scope),
    ) -> JSONResponse:
        audio_bytes = audio.file.read() if audio is not None else None
        if audio_bytes is None and not text.strip():
            raise HTTPException(status_code=400, detail="Either audio file or text input required")
        orchestrator, transcriber = app.state.context.orchestrator(scope.credentials)
        payload = run_command(
            orchestrator,
            transcriber,
            Caller(email=scope.email, timezone=timezone),
            history,
            text=text,
            audio=audio_bytes,
            filename=audio.filename if audio is not None else "audio.webm",
            content_type=audio.content_type if audio is not None else "audio/webm",
        )
        return _respond(payload)

    @app.post("/api/voice/command/stream")
    def voice_command_stream(
        text: str = Form(default=""),
        history: str = Form(default=""),
        timezone: str = Form(default=""),
        audio: UploadFile | None = File(default=None),
        scope: RequestScope = Depends(request_scope),
    ) -> StreamingResponse:
        audio_bytes = audio.file.read() if audio is not None else None
        if audio_bytes is None and not text.strip():
            raise HTTPException(status_code=400, detail="Either audio file or text input required")
        orchestrator, transcriber = app.state.context.orchestrator(scope.credentials)
        frames = stream_command(
            orchestrator,
            transcriber,
            Caller(email=scope.email, timezone=timezone),
            history,
            text=text,
            audio=audio_bytes,
            filename=audio.filename if audio is not None else "audio.webm",
            content_type=audio.content_type if audio is not None else "audio/webm",
        )
        return StreamingResponse(
            frames,
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    @app.post("/api/voice/execute")
    def voice_execute(request: ExecuteRequest, scope: RequestScope = Depends(request_scope)) -> JSONResponse:
        orchestrator, _ = app.state.context.orchestrator(scope.credentials)
        payload = orchestrator.execute(
            request.action,
            request.confirmed,
            Caller(email=scope.email, timezone=request.timezone),
        )
        return _respond(payload)

    return app


app = create_app()
