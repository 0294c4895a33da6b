from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from concierge_core.errors import PersistenceFailure

log = logging.getLogger(__name__)


class SQLiteStore:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        """One unit of work: commit on success, roll back and re-raise as
        :class:`PersistenceFailure` on any SQLite error."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"cannot open {self._path.name}: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            log.error("sqlite unit of work rolled back: %s", exc)
            raise PersistenceFailure(str(exc)) from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS call_scripts (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  clinic_name TEXT NOT NULL,
                  clinic_phone TEXT,
                  script_text TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'approved',
                  approved_at TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS consent_records (
                  id TEXT PRIMARY KEY,
                  script_id TEXT UNIQUE NOT NULL REFERENCES call_scripts(id) ON DELETE CASCADE,
                  user_id TEXT NOT NULL,
                  type TEXT NOT NULL DEFAULT 'outbound_call',
                  text TEXT NOT NULL,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS episode_snapshots (
                  user_id TEXT NOT NULL,
                  session_key TEXT NOT NULL,
                  snapshot_json TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (user_id, session_key)
                );

                CREATE TABLE IF NOT EXISTS tasks (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  title TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'todo',
                  due TEXT,
                  notes TEXT,
                  linked_place_id TEXT,
                  linked_insight_id TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_call_scripts_user ON call_scripts(user_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_tasks_user ON tasks(user_id, created_at);
                """
            )
