from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

from loguru import logger

from cadence.errors import CadenceError, unexpected_failure
from cadence.orchestrator import Caller, CommandOrchestrator
from cadence.transcription import WhisperClient


TERMINAL_FRAMES = frozenset({"response", "error"})


def sse_frame(frame_type: str, payload: dict[str, Any]) -> str:
    body = {"type": frame_type, **payload}
    return f"event: {frame_type}\ndata: {json.dumps(body, ensure_ascii=False, default=str)}\n\n"


def command_events(
    orchestrator: CommandOrchestrator,
    transcriber: WhisperClient,
    caller: Caller,
    history: Any,
    text: str = "",
    audio: bytes | None = None,
    filename: str = "audio.webm",
    content_type: str = "audio/webm",
) -> Iterator[tuple[str, dict[str, Any]]]:
    try:
        if audio is not None:
            if transcriber.is_oversized(audio):
                yield "response", orchestrator.audio_too_long(history, caller)
                return
            text = transcriber.transcribe(audio, filename, content_type)
            yield "transcription", {"text": text}
        result = orchestrator.handle_command(history, text, caller)
    except CadenceError as exc:
        logger.warning("command pipeline failed ({}): {}", exc.error_type, exc.message)
        yield "error", exc.to_payload()
        return
    except Exception:
        yield "error", unexpected_failure("command pipeline")
        return
    yield ("response" if result.get("success") else "error"), result


def run_command(
    orchestrator: CommandOrchestrator,
    transcriber: WhisperClient,
    caller: Caller,
    history: Any,
    text: str = "",
    audio: bytes | None = None,
    filename: str = "audio.webm",
    content_type: str = "audio/webm",
) -> dict[str, Any]:
    transcription: str | None = None
    for frame_type, payload in command_events(
        orchestrator, transcriber, caller, history, text, audio, filename, content_type
    ):
        if frame_type == "transcription":
            transcription = payload["text"]
            continue
        if transcription is not None:
            payload = {**payload, "transcription": transcription}
        return payload
    raise RuntimeError("command pipeline produced no terminal frame")


def stream_command(
    orchestrator: CommandOrchestrator,
    transcriber: WhisperClient,
    caller: Caller,
    history: Any,
    text: str = "",
    audio: bytes | None = None,
    filename: str = "audio.webm",
    content_type: str = "audio/webm",
) -> Iterator[str]:
    for frame_type, payload in command_events(
        orchestrator, transcriber, caller, history, text, audio, filename, content_type
    ):
        yield sse_frame(frame_type, payload)
        if frame_type in TERMINAL_FRAMES:
            return
