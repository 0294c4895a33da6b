from __future__ import annotations

import importlib
import json
import sys
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))


class ScriptedModel:
    """Stands in for the conversational model; replays queued replies."""

    def __init__(self, *replies: dict[str, Any] | str) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[list[dict[str, str]], dict[str, Any]]] = []

    def queue(self, *replies: dict[str, Any] | str) -> None:
        self.replies.extend(replies)

    def complete(self, history, context):
        self.calls.append((history, context))
        reply = self.replies.pop(0) if self.replies else {"text": "Could you tell me more?"}
        return reply if isinstance(reply, str) else json.dumps(reply)


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "concierge-test.sqlite"
    monkeypatch.setenv("CONCIERGE_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    monkeypatch.setenv("CONCIERGE_EVIDENCE_MODE", "soft")
    monkeypatch.setenv("CONCIERGE_HANDOFF_DELAY_SECONDS", "0")
    # Keep CI deterministic; dedicated provider tests can override this.
    monkeypatch.setenv("CONCIERGE_DISABLE_EXTERNAL", "true")

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def scripted_model(backend_module) -> ScriptedModel:
    model = ScriptedModel()
    backend_module.container.pipeline.model = model
    return model


@pytest.fixture
def handoffs(backend_module) -> list[tuple[float, Callable[[], None]]]:
    scheduled: list[tuple[float, Callable[[], None]]] = []
    backend_module.container.script_service.scheduler = lambda delay, callback: scheduled.append((delay, callback))
    return scheduled


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make
