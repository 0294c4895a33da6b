from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from .models import TASK_STATUSES, Task

STATUS_ORDER = {status: idx for idx, status in enumerate(TASK_STATUSES)}
FILTERS = ("all", "today", "week", "done")
EDITABLE_FIELDS = ("title", "status", "due", "notes", "linked_place_id", "linked_insight_id")


def new_task_id() -> str:
    return f"task_{uuid.uuid4().hex[:12]}"


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def make_task(
    title: str,
    *,
    now: str,
    due: str | None = None,
    notes: str | None = None,
    linked_place_id: str | None = None,
    linked_insight_id: str | None = None,
    task_id: str | None = None,
) -> Task:
    cleaned = (title or "").strip()
    if not cleaned:
        raise ValueError("Task title is required.")
    return Task(
        id=task_id or new_task_id(),
        title=cleaned,
        status="todo",
        created_at=now,
        updated_at=now,
        due=_clean(due),
        notes=_clean(notes),
        linked_place_id=_clean(linked_place_id),
        linked_insight_id=_clean(linked_insight_id),
    )


def update_task(task: Task, changes: dict[str, Any], *, now: str) -> Task:
    updates: dict[str, Any] = {}
    for key in EDITABLE_FIELDS:
        if key not in changes:
            continue
        value = changes[key]
        if key == "title":
            value = (value or "").strip()
            if not value:
                raise ValueError("Task title is required.")
        elif key == "status":
            if value not in STATUS_ORDER:
                raise ValueError(f"Unknown task status: {value}")
        else:
            value = _clean(value)
        updates[key] = value
    if not updates:
        return task
    return replace(task, updated_at=now, **updates)


def next_status(status: str) -> str:
    idx = STATUS_ORDER.get(status, 0)
    return TASK_STATUSES[(idx + 1) % len(TASK_STATUSES)]


def cycle_task(task: Task, *, now: str) -> Task:
    return replace(task, status=next_status(task.status), updated_at=now)


def clear_done(tasks: Iterable[Task]) -> tuple[Task, ...]:
    return tuple(task for task in tasks if task.status != "done")


def sort_tasks(tasks: Iterable[Task]) -> list[Task]:
    """Order by status, then due date (undated last), then creation time."""

    def key(task: Task) -> tuple[int, int, str, str]:
        return (
            STATUS_ORDER.get(task.status, 0),
            0 if task.due else 1,
            task.due or "",
            task.created_at,
        )

    return sorted(tasks, key=key)


def _due_date(task: Task) -> date | None:
    if not task.due:
        return None
    try:
        return datetime.fromisoformat(task.due.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def filter_tasks(tasks: Iterable[Task], view: str, *, today: date) -> list[Task]:
    if view not in FILTERS:
        raise ValueError(f"Unknown task filter: {view}")
    ordered = sort_tasks(tasks)
    if view == "all":
        return ordered
    if view == "done":
        return [task for task in ordered if task.status == "done"]
    selected = []
    for task in ordered:
        due = _due_date(task)
        if due is None:
            continue
        if view == "today" and due == today:
            selected.append(task)
        elif view == "week" and today <= due <= today + timedelta(days=7):
            selected.append(task)
    return selected


def task_stats(tasks: Iterable[Task]) -> dict[str, int]:
    counts = {status: 0 for status in TASK_STATUSES}
    total = 0
    for task in tasks:
        counts[task.status] = counts.get(task.status, 0) + 1
        total += 1
    return {"total": total, **counts}
