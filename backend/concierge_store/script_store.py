from __future__ import annotations

import uuid

from concierge_core.models import CallScript, ConsentRecord

from .database import SQLiteStore
from .time_utils import to_iso, utc_now


class CallScriptStore:
    def __init__(self, db: SQLiteStore) -> None:
        self._db = db

    def create_with_consent(
        self,
        *,
        user_id: str,
        clinic_name: str,
        clinic_phone: str | None,
        script_text: str,
        consent_text: str,
    ) -> CallScript:
        """Insert the script and its consent record in one transaction."""
        now = to_iso(utc_now())
        script_id = uuid.uuid4().hex
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO call_scripts (
                  id, user_id, clinic_name, clinic_phone, script_text, status, approved_at, created_at
                )
                VALUES (?, ?, ?, ?, ?, 'approved', ?, ?)
                """,
                (script_id, user_id, clinic_name, clinic_phone, script_text, now, now),
            )
            conn.execute(
                """
                INSERT INTO consent_records (id, script_id, user_id, type, text, created_at)
                VALUES (?, ?, ?, 'outbound_call', ?, ?)
                """,
                (uuid.uuid4().hex, script_id, user_id, consent_text, now),
            )
        return CallScript(
            id=script_id,
            user_id=user_id,
            clinic_name=clinic_name,
            clinic_phone=clinic_phone,
            script_text=script_text,
            approved_at=now,
        )

    def get(self, script_id: str, *, user_id: str | None = None) -> CallScript | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, clinic_name, clinic_phone, script_text, status, approved_at
                FROM call_scripts
                WHERE id = ?
                """,
                (script_id,),
            ).fetchone()
        if not row or (user_id is not None and row["user_id"] != user_id):
            return None
        return CallScript(
            id=row["id"],
            user_id=row["user_id"],
            clinic_name=row["clinic_name"],
            clinic_phone=row["clinic_phone"],
            script_text=row["script_text"],
            approved_at=row["approved_at"],
            status=row["status"],
        )

    def consent_for(self, script_id: str) -> ConsentRecord | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT script_id, type, text, created_at FROM consent_records WHERE script_id = ?",
                (script_id,),
            ).fetchone()
        if not row:
            return None
        return ConsentRecord(script_id=row["script_id"], text=row["text"], created_at=row["created_at"], type=row["type"])
