from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from concierge_core.errors import PersistenceFailure
from concierge_core.models import Episode, Task
from concierge_store import CallScriptStore, SQLiteStore, SnapshotStore, TaskStore
from concierge_store.time_utils import to_iso


@pytest.fixture
def db(tmp_path):
    return SQLiteStore(str(tmp_path / "nested" / "store.sqlite"))


def test_script_and_consent_written_together(db):
    store = CallScriptStore(db)
    script = store.create_with_consent(
        user_id="user-a",
        clinic_name="Oak Clinic",
        clinic_phone="+14125550100",
        script_text="Hi, I'm calling to book a visit.",
        consent_text="I consent.",
    )
    assert script.approved_at.endswith("Z")

    loaded = store.get(script.id, user_id="user-a")
    assert loaded == script
    assert store.get(script.id, user_id="user-b") is None
    assert store.get("missing") is None

    consent = store.consent_for(script.id)
    assert consent.text == "I consent."
    assert consent.type == "outbound_call"
    assert consent.created_at == script.approved_at


def test_failed_consent_insert_rolls_back_script(db):
    with db.connection() as conn:
        conn.execute("DROP TABLE consent_records")

    store = CallScriptStore(db)
    with pytest.raises(PersistenceFailure):
        store.create_with_consent(
            user_id="user-a",
            clinic_name="Clinic",
            clinic_phone=None,
            script_text="Hello",
            consent_text="I consent.",
        )
    with db.connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM call_scripts").fetchone()[0] == 0


def test_snapshot_round_trip_and_clear(db):
    store = SnapshotStore(db)
    assert store.load("user-a", "s1") is None

    episode = Episode(risk="moderate", risk_trail=("low", "moderate"), zip="15213", evidence_lock=False)
    store.save("user-a", "s1", episode.snapshot())
    store.save("user-a", "s1", {**episode.snapshot(), "zip": "94110", "unexpected": 1})

    payload = store.load("user-a", "s1")
    assert payload["zip"] == "94110"
    assert "unexpected" not in payload
    restored = Episode.from_snapshot(payload)
    assert restored.risk_trail == ("low", "moderate")
    assert restored.evidence_lock is False
    assert store.load("user-b", "s1") is None

    store.clear("user-a", "s1")
    assert store.load("user-a", "s1") is None


def test_tasks_are_scoped_per_user(db):
    store = TaskStore(db)
    task = Task(id="t1", title="Ice ankle", created_at="2026-03-01T10:00:00Z", updated_at="2026-03-01T10:00:00Z")
    store.upsert("user-a", task)
    store.upsert("user-a", Task(**{**task.as_dict(), "status": "done", "updated_at": "2026-03-01T11:00:00Z"}))
    store.upsert("user-b", Task(**{**task.as_dict(), "title": "Hijacked"}))

    (saved,) = store.list_tasks("user-a")
    assert saved.status == "done"
    assert saved.title == "Ice ankle"
    assert store.list_tasks("user-b") == []

    assert store.delete("user-b", ["t1"]) == 0
    assert store.delete("user-a", []) == 0
    assert store.delete("user-a", ["t1"]) == 1
    assert store.list_tasks("user-a") == []


def test_sqlite_errors_surface_as_persistence_failure(db):
    with pytest.raises(PersistenceFailure):
        with db.connection() as conn:
            conn.execute("SELECT * FROM no_such_table")


def test_to_iso_normalizes_to_utc_z():
    assert to_iso(datetime(2026, 3, 1, 10, 0)) == "2026-03-01T10:00:00Z"
    eastern = timezone(timedelta(hours=-5))
    assert to_iso(datetime(2026, 3, 1, 5, 0, tzinfo=eastern)) == "2026-03-01T10:00:00Z"
