from __future__ import annotations

import json
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_DEFAULT_DB_PATH = Path.home() / ".projectflow" / "projectflow.db"

DEFAULTS: dict[str, Any] = {
    # Seconds between keep-alive frames on every observed project
    "realtime.keepalive_interval": 10,
    "realtime.send_timeout": 30,
    # Per-subscriber BackFlow buffer; the oldest action is dropped when full
    "realtime.queue_size": 256,
    "realtime.max_message_size": 1 * 1024 * 1024,
    "auth.jwt_algorithms": ["HS256"],
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS settings (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""


class UnknownSettingError(KeyError):
    """Raised when writing a key that has no entry in ``DEFAULTS``."""


@dataclass(frozen=True)
class RealtimeConfig:
    """Typed view of the settings the WebSocket core runs with."""

    keepalive_interval: float
    send_timeout: float
    queue_size: int
    max_message_size: int
    jwt_algorithms: tuple[str, ...]

    @classmethod
    def from_settings(cls, values: dict[str, Any]) -> RealtimeConfig:
        config = cls(
            keepalive_interval=float(values["realtime.keepalive_interval"]),
            send_timeout=float(values["realtime.send_timeout"]),
            queue_size=int(values["realtime.queue_size"]),
            max_message_size=int(values["realtime.max_message_size"]),
            jwt_algorithms=tuple(values["auth.jwt_algorithms"]),
        )
        if config.keepalive_interval <= 0 or config.send_timeout <= 0:
            raise ValueError("keep-alive interval and send timeout must be positive")
        if config.queue_size < 1 or config.max_message_size < 1:
            raise ValueError("queue size and max message size must be at least 1")
        if not config.jwt_algorithms:
            raise ValueError("at least one JWT algorithm is required")
        return config


class SettingsStore:
    """Key/value settings persisted as JSON, falling back to ``DEFAULTS``."""

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)

    def get(self, key: str, default: Any = ...) -> Any:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        if row is not None:
            return json.loads(row[0])
        if default is not ...:
            return default
        return DEFAULTS.get(key)

    def set(self, key: str, value: Any) -> None:
        self.set_many({key: value})

    def set_many(self, updates: dict[str, Any]) -> None:
        """Persist every update in one transaction; unknown keys reject the batch."""
        unknown = sorted(k for k in updates if k not in DEFAULTS)
        if unknown:
            raise UnknownSettingError(f"Unknown settings keys: {unknown}")
        rows = [(key, json.dumps(value)) for key, value in updates.items()]
        with self._lock:
            self._conn.executemany(
                "INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", rows
            )
            self._conn.commit()

    def delete(self, key: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM settings WHERE key = ?", (key,))
            self._conn.commit()

    def get_all(self) -> dict[str, Any]:
        with self._lock:
            rows = self._conn.execute("SELECT key, value FROM settings").fetchall()
        result = dict(DEFAULTS)
        result.update({key: json.loads(value) for key, value in rows})
        return result

    def get_effective(self, cli_overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """Stored settings over defaults, with non-None ``cli_overrides`` on top."""
        result = self.get_all()
        if cli_overrides:
            result.update({k: v for k, v in cli_overrides.items() if v is not None})
        return result

    def realtime_config(self, cli_overrides: dict[str, Any] | None = None) -> RealtimeConfig:
        return RealtimeConfig.from_settings(self.get_effective(cli_overrides))
