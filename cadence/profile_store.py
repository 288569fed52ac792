from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

from cadence.models import COMBINED, Provider


CALENDAR_CHOICES = frozenset({Provider.GOOGLE.value, Provider.OUTLOOK.value, COMBINED})


class ProfileStore:
    """Onboarding answers per user. Saving merges into what is already stored."""

    def __init__(self, db_path: str) -> None:
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with self._connect() as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS profiles (
                        email TEXT PRIMARY KEY,
                        payload_json TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );
                    """
                )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def get(self, email: str) -> dict[str, Any] | None:
        key = str(email or "").strip().lower()
        if not key:
            return None
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT payload_json FROM profiles WHERE email = ?", (key,)).fetchone()
        if row is None:
            return None
        return json.loads(row["payload_json"] or "{}")

    def save(self, email: str, data: dict[str, Any]) -> dict[str, Any]:
        key = str(email or "").strip().lower()
        if not key:
            raise ValueError("email is required")
        with self._lock:
            merged = {**(self.get(key) or {}), **data}
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO profiles(email, payload_json, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT(email) DO UPDATE SET
                        payload_json=excluded.payload_json,
                        updated_at=excluded.updated_at
                    """,
                    (key, json.dumps(merged, ensure_ascii=False, default=str), datetime.now(timezone.utc).isoformat()),
                )
                conn.commit()
        return merged

    def calendar_type(self, email: str) -> str | None:
        try:
            profile = self.get(email) or {}
        except (sqlite3.Error, ValueError) as exc:
            logger.warning("onboarding profile lookup failed for {}: {}", email, exc)
            return None
        choice = str(profile.get("calendars") or "").strip().lower()
        return choice if choice in CALENDAR_CHOICES else None
