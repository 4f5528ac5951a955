"""SQLite storage layer for users, items and imported playback sessions."""

from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Optional

from .models import SessionRecord

# Column order for INSERT; matches the sessions table below.
_SESSION_COLUMNS = (
    "id",
    "dedup_key",
    "server_id",
    "user_id",
    "item_id",
    "user_name",
    "user_server_id",
    "item_name",
    "series_name",
    "client_name",
    "device_name",
    "play_method",
    "play_duration",
    "start_time",
    "end_time",
    "last_activity_date",
    "runtime_ticks",
    "position_ticks",
    "percent_complete",
    "completed",
    "is_paused",
    "is_muted",
    "is_active",
    "is_transcoded",
    "transcoding_is_video_direct",
    "transcoding_video_codec",
    "transcoding_is_audio_direct",
    "transcoding_audio_codec",
    "raw_data",
    "created_at",
    "updated_at",
)

_BOOL_COLUMNS = frozenset({
    "completed",
    "is_paused",
    "is_muted",
    "is_active",
    "is_transcoded",
    "transcoding_is_video_direct",
    "transcoding_is_audio_direct",
})


def _dict_factory(cursor: sqlite3.Cursor, row: tuple) -> dict:
    return {col[0]: row[i] for i, col in enumerate(cursor.description)}


class Storage:
    """SQLite-backed store. Serves reference lookups and conflict-ignoring session inserts."""

    def __init__(self, db_path: str | Path = "playreport.db"):
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None

    def connect(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = _dict_factory
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._ensure_schema()
        return self._conn

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_schema(self) -> None:
        conn = self.connect()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                type TEXT
            );
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                dedup_key TEXT NOT NULL UNIQUE,
                server_id INTEGER NOT NULL,
                user_id TEXT REFERENCES users(id) ON DELETE SET NULL,
                item_id TEXT REFERENCES items(id) ON DELETE SET NULL,
                user_name TEXT NOT NULL,
                user_server_id TEXT,
                item_name TEXT,
                series_name TEXT,
                client_name TEXT,
                device_name TEXT,
                play_method TEXT,
                play_duration INTEGER,
                start_time TEXT,
                end_time TEXT,
                last_activity_date TEXT,
                runtime_ticks INTEGER,
                position_ticks INTEGER,
                percent_complete REAL,
                completed INTEGER NOT NULL,
                is_paused INTEGER NOT NULL,
                is_muted INTEGER NOT NULL,
                is_active INTEGER NOT NULL,
                is_transcoded INTEGER NOT NULL DEFAULT 0,
                transcoding_is_video_direct INTEGER,
                transcoding_video_codec TEXT,
                transcoding_is_audio_direct INTEGER,
                transcoding_audio_codec TEXT,
                raw_data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_sessions_server_id ON sessions(server_id);
            CREATE INDEX IF NOT EXISTS idx_sessions_user_id ON sessions(user_id);
            CREATE INDEX IF NOT EXISTS idx_sessions_start_time ON sessions(start_time);
        """)
        conn.commit()

    # --- Reference data ---

    def upsert_user(self, user_id: str, name: str) -> None:
        conn = self.connect()
        conn.execute(
            """
            INSERT INTO users (id, name) VALUES (?, ?)
            ON CONFLICT(id) DO UPDATE SET name = excluded.name
            """,
            (user_id, name),
        )
        conn.commit()

    def upsert_item(self, item_id: str, name: str, item_type: Optional[str] = None) -> None:
        conn = self.connect()
        conn.execute(
            """
            INSERT INTO items (id, name, type) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET name = excluded.name, type = excluded.type
            """,
            (item_id, name, item_type),
        )
        conn.commit()

    def find_user(self, user_id: str) -> Optional[str]:
        """Display name of the user, or None when no such user exists."""
        row = self.connect().execute("SELECT name FROM users WHERE id = ?", (user_id,)).fetchone()
        return row["name"] if row else None

    def find_item(self, item_id: str) -> Optional[str]:
        """Display name of the item, or None when no such item exists."""
        row = self.connect().execute("SELECT name FROM items WHERE id = ?", (item_id,)).fetchone()
        return row["name"] if row else None

    # --- Sessions ---

    def insert_session(self, session: SessionRecord) -> bool:
        """Insert one session; a dedup_key or id conflict is a no-op. Returns True when a row was written."""
        conn = self.connect()
        data = session.model_dump(mode="json")
        data["raw_data"] = json.dumps(data["raw_data"])
        for col in _BOOL_COLUMNS:
            data[col] = int(bool(data[col]))
        placeholders = ", ".join("?" for _ in _SESSION_COLUMNS)
        cur = conn.execute(
            f"INSERT INTO sessions ({', '.join(_SESSION_COLUMNS)}) VALUES ({placeholders}) "
            "ON CONFLICT DO NOTHING",
            tuple(data[col] for col in _SESSION_COLUMNS),
        )
        conn.commit()
        return cur.rowcount == 1

    def get_session(self, session_id: str) -> Optional[dict]:
        """Return the session row with raw_data parsed and booleans restored, or None."""
        row = self.connect().execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _decode_session_row(row) if row else None

    def get_sessions_for_server(self, server_id: int) -> list[dict]:
        """All sessions for a server in start_time order."""
        rows = self.connect().execute(
            "SELECT * FROM sessions WHERE server_id = ? ORDER BY start_time, id",
            (server_id,),
        ).fetchall()
        return [_decode_session_row(r) for r in rows]

    def count_sessions(self, server_id: Optional[int] = None) -> int:
        conn = self.connect()
        if server_id is None:
            row = conn.execute("SELECT COUNT(*) AS n FROM sessions").fetchone()
        else:
            row = conn.execute("SELECT COUNT(*) AS n FROM sessions WHERE server_id = ?", (server_id,)).fetchone()
        return int(row["n"])


def _decode_session_row(row: dict) -> dict:
    out = dict(row)
    out["raw_data"] = json.loads(out["raw_data"])
    for col in _BOOL_COLUMNS:
        if out.get(col) is not None:
            out[col] = bool(out[col])
    return out
