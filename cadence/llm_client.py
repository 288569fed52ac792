from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any

import requests
from loguru import logger

from cadence.errors import ResolutionError
from cadence.models import AIConfig, ToolCall


@dataclass
class Resolution:
    message: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)


def _first_message(payload: dict[str, Any]) -> dict[str, Any]:
    try:
        message = payload["choices"][0]["message"]
    except (KeyError, IndexError, TypeError) as exc:
        raise ResolutionError("Language model response was malformed") from exc
    if not isinstance(message, dict):
        raise ResolutionError("Language model response was malformed")
    return message


class OpenAICompatibleClient:
    """Chat-completions client with tool calling. Works against any OpenAI-compatible base URL."""

    def __init__(self, config: AIConfig) -> None:
        self.config = config
        self.api_key = config.api_key or os.getenv("OPENAI_API_KEY", "")

    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.api_key and self.config.model)

    def _api_root(self) -> str:
        base = self.config.base_url.rstrip("/")
        if base.endswith("/chat/completions"):
            return base[: -len("/chat/completions")]
        return base

    def _post_chat(self, body: dict[str, Any]) -> dict[str, Any]:
        if not self.is_configured():
            raise ResolutionError("Language model is not configured: base_url/api_key/model required.")
        try:
            response = requests.post(
                f"{self._api_root()}/chat/completions",
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={"model": self.config.model, **body},
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise ResolutionError(f"Language model request failed: {type(exc).__name__}") from exc
        if not response.ok:
            logger.warning("chat completion returned HTTP {}: {}", response.status_code, response.text[:300])
            raise ResolutionError(f"Language model returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ResolutionError("Language model response was malformed") from exc
        if not isinstance(payload, dict):
            raise ResolutionError("Language model response was malformed")
        return payload

    def resolve(self, messages: list[dict[str, Any]], tools: list[dict[str, Any]]) -> Resolution:
        """One tool-calling round trip. Any failure becomes a ResolutionError."""
        payload = self._post_chat({"messages": messages, "tools": tools, "tool_choice": "auto", "temperature": 0.2})
        message = _first_message(payload)
        try:
            tool_calls = [ToolCall.from_dict(item) for item in message.get("tool_calls") or []]
        except (ValueError, TypeError, AttributeError) as exc:
            raise ResolutionError("Language model returned an unreadable tool call") from exc
        content = message.get("content")
        logger.debug("resolution: {} tool call(s), message={}", len(tool_calls), bool(content))
        return Resolution(message=str(content).strip() if content and str(content).strip() else None, tool_calls=tool_calls)

    def test_connectivity(self) -> tuple[bool, str]:
        try:
            message = _first_message(
                self._post_chat(
                    {"messages": [{"role": "user", "content": "Reply with: OK"}], "temperature": 0, "max_tokens": 8}
                )
            )
        except ResolutionError as exc:
            return False, exc.message
        reply = str(message.get("content") or "").strip().replace("\n", " ")
        return True, f"Connected. Model response: {reply[:120]}"

    def list_models(self) -> list[str]:
        if not self.is_configured():
            return []
        try:
            response = requests.get(
                f"{self._api_root()}/models",
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=self.config.timeout_seconds,
            )
            payload = response.json() if response.ok else {}
        except (requests.RequestException, ValueError) as exc:
            logger.warning("model listing failed: {}", exc)
            return []
        items = payload.get("data", []) if isinstance(payload, dict) else []
        model_ids = [str((item or {}).get("id", "")).strip() for item in items]
        return list(dict.fromkeys(model_id for model_id in model_ids if model_id))
