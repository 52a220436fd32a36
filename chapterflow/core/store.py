from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol

from .errors import PersistenceError


@dataclass(frozen=True)
class StoredSession:
    raw: str
    version: int


class SessionStore(Protocol):
    def get(self, code: str) -> Optional[StoredSession]:
        ...

    def put(self, code: str, raw: str) -> int:
        ...

    def compare_and_set(self, code: str, expected_version: int, raw: str) -> bool:
        ...

    def exists(self, code: str) -> bool:
        ...

    def ping(self) -> None:
        ...


class InMemorySessionStore:
    def __init__(self) -> None:
        self._items: Dict[str, StoredSession] = {}
        self._lock = threading.Lock()

    def get(self, code: str) -> Optional[StoredSession]:
        with self._lock:
            return self._items.get(code)

    def put(self, code: str, raw: str) -> int:
        with self._lock:
            current = self._items.get(code)
            version = (current.version if current else 0) + 1
            self._items[code] = StoredSession(raw=raw, version=version)
            return version

    def compare_and_set(self, code: str, expected_version: int, raw: str) -> bool:
        with self._lock:
            current = self._items.get(code)
            if current is None or current.version != expected_version:
                return False
            self._items[code] = StoredSession(raw=raw, version=expected_version + 1)
            return True

    def exists(self, code: str) -> bool:
        with self._lock:
            return code in self._items

    def ping(self) -> None:
        return None


def _parse_sqlite_path(database_url: str) -> Path:
    if database_url.startswith("sqlite:///"):
        return Path(database_url.replace("sqlite:///", "/", 1)).expanduser()
    if database_url.startswith("sqlite://"):
        return Path(database_url.replace("sqlite://", "", 1)).expanduser()
    if database_url.startswith("sqlite:"):
        return Path(database_url.replace("sqlite:", "", 1)).expanduser()
    raise ValueError("Invalid sqlite database URL")


class SqliteSessionStore:
    def __init__(self, database_url: str) -> None:
        self._db_path = _parse_sqlite_path(database_url)
        self._ensure_parent()
        self._init_db()

    def _ensure_parent(self) -> None:
        if self._db_path.parent:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    code TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    updated_at TEXT NOT NULL
                );
                """
            )

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    def get(self, code: str) -> Optional[StoredSession]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT payload, version FROM sessions WHERE code = ?",
                    (code,),
                ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to read session state: {exc}") from exc
        if row is None:
            return None
        return StoredSession(raw=row["payload"], version=int(row["version"]))

    def put(self, code: str, raw: str) -> int:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (code, payload, version, updated_at)
                    VALUES (?, ?, 1, ?)
                    ON CONFLICT(code) DO UPDATE SET
                        payload = excluded.payload,
                        version = sessions.version + 1,
                        updated_at = excluded.updated_at
                    """,
                    (code, raw, self._now()),
                )
                row = conn.execute("SELECT version FROM sessions WHERE code = ?", (code,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to write session state: {exc}") from exc
        return int(row["version"])

    def compare_and_set(self, code: str, expected_version: int, raw: str) -> bool:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    UPDATE sessions SET payload = ?, version = version + 1, updated_at = ?
                    WHERE code = ? AND version = ?
                    """,
                    (raw, self._now(), code, expected_version),
                )
                updated = cursor.rowcount > 0
        except sqlite3.Error as exc:
            raise PersistenceError(f"Failed to write session state: {exc}") from exc
        return updated

    def exists(self, code: str) -> bool:
        return self.get(code) is not None

    def ping(self) -> None:
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"Session store unavailable: {exc}") from exc


def build_session_store(database_url: str) -> SessionStore:
    if database_url.startswith("memory:"):
        return InMemorySessionStore()
    if database_url.startswith("sqlite"):
        return SqliteSessionStore(database_url)
    raise ValueError("Only memory:// and sqlite database URLs are supported")
