from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger


ACTION_TYPES = frozenset(
    {
        "create",
        "update",
        "delete",
        "create_task",
        "update_task",
        "delete_task",
        "ask_to_clarify",
        "cancel",
        "approve",
        "converse",
        "unified_calendar",
    }
)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InteractionLog:
    def __init__(self, db_path: str, enabled: bool = True) -> None:
        self.db_path = Path(db_path)
        self.enabled = enabled
        self._lock = threading.RLock()
        if self.enabled:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        schema_sql = """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS logs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            user_id INTEGER NOT NULL REFERENCES users(id),
            provider TEXT,
            action_type TEXT NOT NULL,
            payload_json TEXT NOT NULL
        );
        """
        with self._lock:
            with self._connect() as conn:
                conn.executescript(schema_sql)

    def _user_id(self, conn: sqlite3.Connection, email: str) -> int:
        conn.execute(
            """
            INSERT INTO users(email, created_at)
            VALUES (?, ?)
            ON CONFLICT(email) DO NOTHING
            """,
            (email, _utc_now()),
        )
        row = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
        return int(row["id"])

    def record(
        self,
        email: str,
        action_type: str,
        provider: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        if not self.enabled:
            return
        email = str(email or "").strip().lower()
        if not email:
            logger.debug("interaction log skipped: no caller email ({})", action_type)
            return
        if action_type not in ACTION_TYPES:
            logger.warning("interaction log: unknown action type {!r}", action_type)
        try:
            with self._lock:
                with self._connect() as conn:
                    user_id = self._user_id(conn, email)
                    conn.execute(
                        """
                        INSERT INTO logs(created_at, user_id, provider, action_type, payload_json)
                        VALUES (?, ?, ?, ?, ?)
                        """,
                        (
                            _utc_now(),
                            user_id,
                            provider,
                            action_type,
                            json.dumps(payload or {}, ensure_ascii=False, default=str),
                        ),
                    )
                    conn.commit()
        except (sqlite3.Error, OSError, TypeError, ValueError) as exc:
            logger.warning("interaction log write failed ({}): {}", action_type, exc)

    def recent(self, limit: int = 50, email: str | None = None) -> list[dict[str, Any]]:
        if not self.enabled:
            return []
        query = """
            SELECT logs.id, logs.created_at, users.email, logs.provider, logs.action_type, logs.payload_json
            FROM logs
            JOIN users ON users.id = logs.user_id
        """
        params: list[Any] = []
        if email:
            query += " WHERE users.email = ?"
            params.append(str(email).strip().lower())
        query += " ORDER BY logs.id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        output: list[dict[str, Any]] = []
        for row in rows:
            item = dict(row)
            item["payload"] = json.loads(item.pop("payload_json") or "{}")
            output.append(item)
        return output
