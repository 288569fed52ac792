from __future__ import annotations

import os

import requests
from loguru import logger

from cadence.errors import TranscriptionError
from cadence.models import TranscriptionConfig


SUMMARIZE_PROMPT = (
    "That recording is too long for me. Could you summarize what you need in a sentence or two?"
)
UPLOAD_LIMIT_BYTES = 25 * 1024 * 1024


class WhisperClient:
    """OpenAI-compatible speech-to-text over ``/audio/transcriptions``."""

    def __init__(self, config: TranscriptionConfig, api_key: str = "") -> None:
        self.config = config
        self.api_key = config.api_key or api_key or os.getenv("OPENAI_API_KEY", "")

    def is_oversized(self, audio: bytes) -> bool:
        return len(audio) > self.config.max_audio_bytes

    def _endpoint(self) -> str:
        return f"{self.config.base_url.rstrip('/')}/audio/transcriptions"

    def transcribe(self, audio: bytes, filename: str = "audio.webm", content_type: str = "audio/webm") -> str:
        if not self.api_key:
            raise TranscriptionError("Speech-to-text is not configured")
        if not audio:
            raise TranscriptionError("No audio received")
        data = {"model": self.config.model}
        if self.config.language:
            data["language"] = self.config.language
        try:
            response = requests.post(
                self._endpoint(),
                headers={"Authorization": f"Bearer {self.api_key}"},
                data=data,
                files={"file": (filename or "audio.webm", audio, content_type or "audio/webm")},
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise TranscriptionError(f"Transcription request failed: {type(exc).__name__}") from exc
        if not response.ok:
            logger.warning("transcription returned HTTP {}: {}", response.status_code, response.text[:300])
            raise TranscriptionError(f"Transcription failed with HTTP {response.status_code}")
        try:
            text = str(response.json().get("text", "")).strip()
        except (ValueError, AttributeError) as exc:
            raise TranscriptionError("Transcription response was malformed") from exc
        if not text:
            raise TranscriptionError("I couldn't hear anything in that recording")
        logger.info("transcribed {} bytes into {} characters", len(audio), len(text))
        return text
