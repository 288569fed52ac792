from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from cadence.models import AppConfig, default_app_config


SECRET_FIELDS = (("ai", "api_key"), ("transcription", "api_key"))
MASK = "***"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _render(config: AppConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)


def _write_atomic(path: Path, text: str) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    try:
        tmp_path.replace(path)
    except OSError as exc:
        # Bind-mounted single files in containers refuse rename with EBUSY.
        if exc.errno != errno.EBUSY:
            raise
        logger.debug("atomic replace of {} refused (EBUSY); writing in place", path)
        path.write_text(text, encoding="utf-8")
        tmp_path.unlink(missing_ok=True)


def sanitize_secret_updates(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Blank or masked secrets in an update keep whatever is stored."""
    sanitized = copy.deepcopy(payload)
    for section, key in SECRET_FIELDS:
        block = sanitized.get(section)
        if not isinstance(block, dict) or key not in block:
            continue
        text = str(block.get(key) or "").strip()
        if text in {"", MASK}:
            if str(current.get(section, {}).get(key, "")):
                block.pop(key, None)
            else:
                block[key] = ""
        if not block:
            sanitized.pop(section, None)
    return sanitized


class ConfigManager:
    """YAML-backed settings. Reads are cached until the file's mtime changes."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._cached: AppConfig | None = None
        self._cached_mtime: int | None = None
        if not self.config_path.exists():
            logger.info("writing default config to {}", self.config_path)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            mtime = self.config_path.stat().st_mtime_ns
            if self._cached is not None and mtime == self._cached_mtime:
                return copy.deepcopy(self._cached)
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
            if not isinstance(data, dict):
                logger.warning("{} does not hold a mapping; using defaults", self.config_path)
                data = {}
            self._cached = AppConfig.from_dict(data)
            self._cached_mtime = mtime
            return copy.deepcopy(self._cached)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            _write_atomic(self.config_path, _render(config))
            self._cached = None

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load().to_dict()
            config = AppConfig.from_dict(_deep_merge(current, sanitize_secret_updates(payload, current)))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
