from __future__ import annotations

import hashlib
import logging
import os
import re
from dataclasses import replace
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from concierge_core import (
    CallScriptService,
    ConciergeSettings,
    Episode,
    EvidencePolicy,
    MalformedResponse,
    PersistenceFailure,
    SessionRegistry,
    TurnInProgress,
    TurnInput,
    TurnPipeline,
    UpstreamUnavailable,
    build_plan,
    classify_risk,
    extract_topic,
    rank_places,
    stage_for,
    visit_expectations,
)
from concierge_core.schemas import ModelReply
from concierge_core.tasks import clear_done, cycle_task, filter_tasks, make_task, sort_tasks, task_stats, update_task
from concierge_services import CallingClient, CitationBackfill, ConversationalModel, NearbyCareSearch
from concierge_services.nearby import fallback_options
from concierge_store import CallScriptStore, SnapshotStore, SQLiteStore, TaskStore
from concierge_store.time_utils import to_iso, utc_now

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_ZIP_RE = re.compile(r"^\d{5}$")
DEMO_USER = "demo-user"

log = logging.getLogger("concierge")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


def _configure_logging() -> None:
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=os.getenv("CONCIERGE_LOG_LEVEL", "INFO").upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )


_bootstrap_local_env()
_configure_logging()


class ChatRequest(BaseModel):
    message: str
    zip: str | None = None
    red_flags: dict[str, bool] | None = None
    age_band: str | None = None
    severity: str | None = None
    pain: float | None = Field(default=None, ge=0, le=10)
    body_area: str | None = None


class PlanRequest(BaseModel):
    text: str = ""
    severity: str = "mild"
    pain: int = Field(default=0, ge=0, le=10)
    red_flags: dict[str, bool] = Field(default_factory=dict)
    age_band: str | None = None
    body_area: str | None = None
    insurance: str | None = None
    venue_type: str | None = None


class RankRequest(BaseModel):
    places: list[dict[str, Any]] = Field(default_factory=list)
    include_unverified: bool = False


class TaskCreate(BaseModel):
    title: str
    due: str | None = None
    notes: str | None = None
    linked_place_id: str | None = None
    linked_insight_id: str | None = None


class TaskPatch(BaseModel):
    title: str | None = None
    status: str | None = None
    due: str | None = None
    notes: str | None = None
    linked_place_id: str | None = None
    linked_insight_id: str | None = None


class ConciergeApp:
    def __init__(self) -> None:
        self.settings = ConciergeSettings.from_env()
        self.db = SQLiteStore(self.settings.db_path)
        self.scripts = CallScriptStore(self.db)
        self.snapshots = SnapshotStore(self.db)
        self.tasks = TaskStore(self.db)

        self.policy = EvidencePolicy(lock=self.settings.evidence_lock, mode=self.settings.evidence_mode)
        self.model = ConversationalModel(self.settings)
        self.backfill = CitationBackfill(self.settings)
        self.nearby = NearbyCareSearch(self.settings)
        self.calling = CallingClient(self.settings)
        self.script_service = CallScriptService(
            store=self.scripts,
            calling=self.calling,
            handoff_delay=self.settings.handoff_delay_seconds,
        )
        self.pipeline = TurnPipeline(
            model=self.model,
            policy=self.policy,
            backfill=self.backfill,
            nearby=self.nearby,
            scripts=self.script_service,
            snapshots=self.snapshots,
        )
        self.sessions = SessionRegistry(loader=self._restore_episode)

    def _restore_episode(self, user_id: str, session_key: str) -> Episode:
        fresh = Episode(evidence_lock=self.policy.lock)
        if not is_signed_in(user_id):
            return fresh
        try:
            snapshot = self.snapshots.load(user_id, session_key)
            tasks = self.tasks.list_tasks(user_id)
        except PersistenceFailure:
            log.exception("restoring episode failed user_id=%s", user_id)
            return fresh
        episode = Episode.from_snapshot(snapshot, tasks) if snapshot else replace(fresh, tasks=tuple(tasks))
        return replace(episode, stage=stage_for(episode))


container = ConciergeApp()
app = FastAPI(title="Care Concierge Backend")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(container.settings.allowed_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_user_id(auth_header: str | None) -> str:
    raw = (auth_header or "").replace("Bearer", "", 1).strip()
    if not raw:
        if container.settings.allow_anon:
            return DEMO_USER
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Opaque bearer token; long tokens are hashed into a bounded id.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def is_signed_in(user_id: str) -> bool:
    return user_id != DEMO_USER


def _session_key(user_id: str, x_session_key: str | None) -> str:
    candidate = (x_session_key or "").strip()
    if candidate:
        return candidate[:64]
    return f"session-{hashlib.sha1(user_id.encode('utf-8')).hexdigest()[:24]}"


def _now() -> str:
    return to_iso(utc_now())


def _persist_task_change(user_id: str, *, upsert: list | None = None, delete: list[str] | None = None) -> None:
    if not is_signed_in(user_id):
        return
    try:
        for task in upsert or []:
            container.tasks.upsert(user_id, task)
        if delete:
            container.tasks.delete(user_id, delete)
    except PersistenceFailure as exc:
        raise HTTPException(status_code=503, detail="Could not save tasks right now.") from exc


def _task_payload(episode: Episode, view: str = "all") -> dict[str, Any]:
    try:
        selected = filter_tasks(episode.tasks, view, today=utc_now().date())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "tasks": [task.as_dict() for task in selected],
        "stats": task_stats(episode.tasks),
        "stage": episode.stage,
    }


def _find_task(episode: Episode, task_id: str):
    for task in episode.tasks:
        if task.id == task_id:
            return task
    raise HTTPException(status_code=404, detail="Task not found")


def _replace_task(episode: Episode, updated) -> Episode:
    return replace(episode, tasks=tuple(updated if task.id == updated.id else task for task in episode.tasks))


@app.get("/health")
def health() -> dict[str, Any]:
    return {
        "ok": True,
        "evidence_mode": container.policy.mode,
        "evidence_lock": container.policy.lock,
        "external": not container.settings.disable_external,
    }


@app.get("/episode")
def get_episode(
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    session = container.sessions.get(user_id, _session_key(user_id, x_session_key))
    return {"episode": session.episode.as_dict(), "busy": session.busy, "signed_in": is_signed_in(user_id)}


@app.post("/episode/reset")
def reset_episode(
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    session_key = _session_key(user_id, x_session_key)
    episode = container.sessions.get(user_id, session_key).reset()
    if is_signed_in(user_id):
        try:
            container.snapshots.clear(user_id, session_key)
        except PersistenceFailure:
            log.exception("clearing snapshot failed user_id=%s", user_id)
    return {"episode": episode.as_dict()}


@app.post("/chat")
def chat(
    payload: ChatRequest,
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    if not payload.message.strip():
        raise HTTPException(status_code=400, detail="Message is required.")
    session_key = _session_key(user_id, x_session_key)
    session = container.sessions.get(user_id, session_key)
    turn = TurnInput(
        text=payload.message,
        zip=payload.zip,
        red_flags=payload.red_flags,
        age_band=payload.age_band,
        severity=payload.severity,
        pain=payload.pain,
        body_area=payload.body_area,
    )
    try:
        result = container.pipeline.run(
            session,
            turn,
            user_id=user_id,
            session_key=session_key,
            signed_in=is_signed_in(user_id),
        )
    except TurnInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (UpstreamUnavailable, MalformedResponse) as exc:
        log.warning("chat turn failed user_id=%s: %s", user_id, exc)
        raise HTTPException(status_code=502, detail=f"Model request failed: {exc}") from exc
    return result.as_envelope()


@app.post("/plan")
def plan(payload: PlanRequest):
    topic = extract_topic(payload.text, payload.body_area)
    assessment = classify_risk(
        payload.text,
        red_flags=payload.red_flags,
        age_band=payload.age_band,
        severity=payload.severity,
        pain=payload.pain,
        topic=topic,
    )
    built = build_plan(
        topic,
        assessment.risk,
        insurance=payload.insurance,
        body_area=payload.body_area,
        current_year=utc_now().year,
    )
    return {
        "topic": topic,
        "risk": built.risk,
        "matched_phrase": assessment.matched,
        "plan": built.as_dict(),
        "expectations": visit_expectations(topic, payload.venue_type),
    }


@app.post("/places/rank")
def places_rank(
    payload: RankRequest,
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    candidates = ModelReply.model_validate({"places": payload.places}).core_places()
    ranked = rank_places(candidates, include_unverified=payload.include_unverified)
    session = container.sessions.get(user_id, _session_key(user_id, x_session_key))
    try:
        episode = session.update(lambda current: replace(current, places=ranked), when_idle=True)
    except TurnInProgress as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {
        "places": [place.as_dict() for place in ranked],
        "excluded": len(candidates) - len(ranked),
        "stage": episode.stage,
    }


@app.get("/nearby")
def nearby(zip: str, authorization: str | None = Header(default=None)):
    get_user_id(authorization)
    zip_code = zip.strip()[:5]
    if not _ZIP_RE.fullmatch(zip_code):
        raise HTTPException(status_code=400, detail="A 5-digit US ZIP code is required.")
    degraded = False
    try:
        options = container.nearby.search(zip_code)
    except UpstreamUnavailable as exc:
        log.warning("nearby search failed zip=%s: %s", zip_code, exc)
        options = fallback_options(zip_code)
        degraded = True
    ranked = rank_places(options)
    return {"zip": zip_code, "places": [place.as_dict() for place in ranked], "degraded": degraded}


@app.get("/tasks")
def list_tasks(
    view: str = "all",
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    session = container.sessions.get(user_id, _session_key(user_id, x_session_key))
    return _task_payload(session.episode, view)


@app.post("/tasks")
def create_task(
    payload: TaskCreate,
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    try:
        task = make_task(
            payload.title,
            now=_now(),
            due=payload.due,
            notes=payload.notes,
            linked_place_id=payload.linked_place_id,
            linked_insight_id=payload.linked_insight_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _persist_task_change(user_id, upsert=[task])
    session = container.sessions.get(user_id, _session_key(user_id, x_session_key))
    episode = session.update(lambda current: replace(current, tasks=current.tasks + (task,)))
    return {"task": task.as_dict(), "stage": episode.stage}


@app.patch("/tasks/{task_id}")
def patch_task(
    task_id: str,
    payload: TaskPatch,
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    session = container.sessions.get(user_id, _session_key(user_id, x_session_key))
    current = _find_task(session.episode, task_id)
    try:
        updated = update_task(current, payload.model_dump(exclude_unset=True), now=_now())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _persist_task_change(user_id, upsert=[updated])
    episode = session.update(lambda ep: _replace_task(ep, updated))
    return {"task": updated.as_dict(), "stage": episode.stage}


@app.post("/tasks/{task_id}/cycle")
def cycle(
    task_id: str,
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    session = container.sessions.get(user_id, _session_key(user_id, x_session_key))
    updated = cycle_task(_find_task(session.episode, task_id), now=_now())
    _persist_task_change(user_id, upsert=[updated])
    episode = session.update(lambda ep: _replace_task(ep, updated))
    return {"task": updated.as_dict(), "stage": episode.stage}


@app.delete("/tasks/{task_id}")
def delete_task(
    task_id: str,
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    session = container.sessions.get(user_id, _session_key(user_id, x_session_key))
    _find_task(session.episode, task_id)
    _persist_task_change(user_id, delete=[task_id])
    episode = session.update(
        lambda ep: replace(ep, tasks=tuple(task for task in ep.tasks if task.id != task_id))
    )
    return {"deleted": task_id, "stage": episode.stage}


@app.post("/tasks/clear-done")
def clear_done_tasks(
    authorization: str | None = Header(default=None),
    x_session_key: str | None = Header(default=None),
):
    user_id = get_user_id(authorization)
    session = container.sessions.get(user_id, _session_key(user_id, x_session_key))
    done_ids = [task.id for task in session.episode.tasks if task.status == "done"]
    _persist_task_change(user_id, delete=done_ids)
    episode = session.update(lambda ep: replace(ep, tasks=clear_done(ep.tasks)))
    return {
        "removed": len(done_ids),
        "tasks": [task.as_dict() for task in sort_tasks(episode.tasks)],
        "stage": episode.stage,
    }


@app.get("/call-scripts/{script_id}")
def get_call_script(script_id: str, authorization: str | None = Header(default=None)):
    user_id = get_user_id(authorization)
    if not is_signed_in(user_id):
        raise HTTPException(status_code=401, detail="Sign in to view saved call scripts.")
    try:
        script = container.scripts.get(script_id, user_id=user_id)
        consent = container.scripts.consent_for(script_id) if script else None
    except PersistenceFailure as exc:
        raise HTTPException(status_code=503, detail="Could not load the call script.") from exc
    if script is None:
        raise HTTPException(status_code=404, detail="Call script not found")
    return {"script": script.as_dict(), "consent": consent.as_dict() if consent else None}


@app.post("/call-scripts/{script_id}/start")
def start_call(script_id: str, authorization: str | None = Header(default=None)):
    user_id = get_user_id(authorization)
    if not is_signed_in(user_id):
        raise HTTPException(status_code=401, detail="Sign in to start a call.")
    try:
        script = container.scripts.get(script_id, user_id=user_id)
    except PersistenceFailure as exc:
        raise HTTPException(status_code=503, detail="Could not load the call script.") from exc
    if script is None:
        raise HTTPException(status_code=404, detail="Call script not found")
    if not script.clinic_phone:
        raise HTTPException(status_code=400, detail="No clinic phone on file")
    return {"script_id": script.id, "started": container.script_service.hand_off(script)}
