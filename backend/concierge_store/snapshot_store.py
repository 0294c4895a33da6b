from __future__ import annotations

import json
import logging
from typing import Any

from .database import SQLiteStore
from .time_utils import to_iso, utc_now

log = logging.getLogger(__name__)

SNAPSHOT_KEYS = ("messages", "risk", "riskTrail", "insights", "places", "zip", "evidenceLock", "stage", "topic", "script")


class SnapshotStore:
    def __init__(self, db: SQLiteStore) -> None:
        self._db = db

    def save(self, user_id: str, session_key: str, snapshot: dict[str, Any]) -> None:
        payload = {key: snapshot.get(key) for key in SNAPSHOT_KEYS if key in snapshot}
        now = to_iso(utc_now())
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO episode_snapshots (user_id, session_key, snapshot_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, session_key) DO UPDATE SET
                  snapshot_json = excluded.snapshot_json,
                  updated_at = excluded.updated_at
                """,
                (user_id, session_key, json.dumps(payload, separators=(",", ":")), now),
            )

    def load(self, user_id: str, session_key: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT snapshot_json FROM episode_snapshots WHERE user_id = ? AND session_key = ?",
                (user_id, session_key),
            ).fetchone()
        if not row:
            return None
        try:
            payload = json.loads(row["snapshot_json"])
        except json.JSONDecodeError:
            log.warning("discarding unreadable snapshot user_id=%s session=%s", user_id, session_key)
            return None
        return payload if isinstance(payload, dict) else None

    def clear(self, user_id: str, session_key: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                "DELETE FROM episode_snapshots WHERE user_id = ? AND session_key = ?",
                (user_id, session_key),
            )
