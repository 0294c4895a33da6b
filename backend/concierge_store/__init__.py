from .database import SQLiteStore
from .script_store import CallScriptStore
from .snapshot_store import SnapshotStore
from .task_store import TaskStore

__all__ = [
    "CallScriptStore",
    "SQLiteStore",
    "SnapshotStore",
    "TaskStore",
]
