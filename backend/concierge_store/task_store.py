from __future__ import annotations

from concierge_core.models import Task

from .database import SQLiteStore

_COLUMNS = "id, title, status, due, notes, linked_place_id, linked_insight_id, created_at, updated_at"


class TaskStore:
    def __init__(self, db: SQLiteStore) -> None:
        self._db = db

    def list_tasks(self, user_id: str) -> list[Task]:
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM tasks WHERE user_id = ? ORDER BY created_at ASC",
                (user_id,),
            ).fetchall()
        return [Task.from_dict(dict(row)) for row in rows]

    def upsert(self, user_id: str, task: Task) -> None:
        with self._db.connection() as conn:
            conn.execute(
                f"""
                INSERT INTO tasks (user_id, {_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  title = excluded.title,
                  status = excluded.status,
                  due = excluded.due,
                  notes = excluded.notes,
                  linked_place_id = excluded.linked_place_id,
                  linked_insight_id = excluded.linked_insight_id,
                  updated_at = excluded.updated_at
                WHERE tasks.user_id = excluded.user_id
                """,
                (
                    user_id,
                    task.id,
                    task.title,
                    task.status,
                    task.due,
                    task.notes,
                    task.linked_place_id,
                    task.linked_insight_id,
                    task.created_at,
                    task.updated_at,
                ),
            )

    def delete(self, user_id: str, task_ids: list[str]) -> int:
        if not task_ids:
            return 0
        placeholders = ",".join("?" for _ in task_ids)
        with self._db.connection() as conn:
            cursor = conn.execute(
                f"DELETE FROM tasks WHERE user_id = ? AND id IN ({placeholders})",
                (user_id, *task_ids),
            )
            return cursor.rowcount
