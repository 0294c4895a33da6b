from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Protocol, Sequence

from .call_script import CallScriptService, ScriptOutcome, ScriptSignal, advance, newly_completed, strip_approval_marker
from .care_options import rank_places
from .citations import BackfillFn, EvidencePolicy, GateDecision, gate_reply
from .errors import PersistenceFailure, UpstreamUnavailable
from .insights import merge_insights
from .models import CareOption, ChatMessage, Episode
from .risk import classify_risk
from .schemas import ModelReply, parse_model_reply
from .session import EpisodeSession
from .stage import stage_for
from .topics import extract_topic

log = logging.getLogger(__name__)

_ZIP_LABELLED = re.compile(r"\bZIP:\s*([0-9]{5})(?:-[0-9]{4})?", re.IGNORECASE)
_ZIP_BARE = re.compile(r"\b([0-9]{5})(?:-[0-9]{4})?\b")
_ZIP_EXPLICIT = re.compile(r"^\d{5}(-\d{4})?$")
_WANTS_NEARBY = re.compile(r"near\s*me|nearby|closest|hospital|urgent|\ber\b|clinic", re.IGNORECASE)


def extract_zip(texts: Sequence[str], explicit: str | None = None) -> str | None:
    candidate = (explicit or "").strip()
    if _ZIP_EXPLICIT.fullmatch(candidate):
        return candidate[:5]
    joined = " ".join(text or "" for text in texts)
    match = _ZIP_LABELLED.search(joined) or _ZIP_BARE.search(joined)
    return match.group(1) if match else None


def wants_nearby(text: str | None) -> bool:
    return bool(_WANTS_NEARBY.search(text or ""))


class ModelClient(Protocol):
    def complete(self, history: list[dict[str, str]], context: dict[str, Any]) -> str: ...


class NearbySearch(Protocol):
    def search(self, zip_code: str) -> list[CareOption]: ...


class SnapshotSink(Protocol):
    def save(self, user_id: str, session_key: str, snapshot: dict[str, Any]) -> None: ...


@dataclass
class TurnInput:
    text: str
    zip: str | None = None
    red_flags: Mapping[str, bool] | None = None
    age_band: str | None = None
    severity: str | None = None
    pain: float | None = None
    body_area: str | None = None


@dataclass
class TurnResult:
    status: str
    episode: Episode
    reply: ChatMessage | None = None
    gate_code: str = "ok"
    matched_phrase: str | None = None
    script_message: str | None = None
    script_id: str | None = None
    errors: list[dict[str, Any]] = field(default_factory=list)

    def as_envelope(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "reply": self.reply.as_dict() if self.reply else None,
            "gate": self.gate_code,
            "matched_phrase": self.matched_phrase,
            "script_message": self.script_message,
            "script_id": self.script_id,
            "episode": self.episode.as_dict(),
            "errors": self.errors,
        }


def _message_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


def _history(episode: Episode) -> list[dict[str, str]]:
    return [
        {"role": message.role, "content": message.text}
        for message in episode.messages
        if message.role in {"user", "assistant"}
    ]


class TurnPipeline:
    """Runs one chat turn from raw input to a committed episode.

    Only a failed model call aborts the turn. Every other collaborator failure
    degrades to a safe default. Nothing is written to the session until the
    whole reduction has been computed.
    """

    def __init__(
        self,
        *,
        model: ModelClient,
        policy: EvidencePolicy,
        backfill: BackfillFn | None = None,
        nearby: NearbySearch | None = None,
        scripts: CallScriptService | None = None,
        snapshots: SnapshotSink | None = None,
    ) -> None:
        self.model = model
        self.policy = policy
        self.backfill = backfill
        self.nearby = nearby
        self.scripts = scripts
        self.snapshots = snapshots

    def run(
        self,
        session: EpisodeSession,
        turn: TurnInput,
        *,
        user_id: str,
        session_key: str,
        signed_in: bool,
    ) -> TurnResult:
        generation, episode = session.begin_turn()
        try:
            return self._run(
                session,
                generation,
                episode,
                turn,
                user_id=user_id,
                session_key=session_key,
                signed_in=signed_in,
            )
        finally:
            session.finish(generation)

    def _run(
        self,
        session: EpisodeSession,
        generation: int,
        episode: Episode,
        turn: TurnInput,
        *,
        user_id: str,
        session_key: str,
        signed_in: bool,
    ) -> TurnResult:
        text = (turn.text or "").strip()
        topic = extract_topic(text, turn.body_area)
        if topic == "generic" and episode.topic:
            topic = episode.topic
        user_message = ChatMessage(id=_message_id("msg"), role="user", text=text)
        zip_code = extract_zip([m.text for m in episode.messages if m.role == "user"] + [text], turn.zip) or episode.zip

        history = _history(episode) + [{"role": "user", "content": text}]
        context = {"risk": episode.risk, "topic": topic, "zip": zip_code, "stage": episode.stage}
        raw = self.model.complete(history, context)
        reply = parse_model_reply(raw)

        gate = gate_reply(reply.text, reply.core_citations(), self.policy, self.backfill)
        assessment = classify_risk(
            text,
            previous=episode.risk,
            trail=episode.risk_trail,
            model_risk=reply.risk,
            red_flags=turn.red_flags,
            age_band=turn.age_band,
            severity=turn.severity,
            pain=turn.pain,
            topic=topic,
        )
        if assessment.changed:
            log.info("risk %s -> %s matched=%s", episode.risk, assessment.risk, assessment.matched)

        incoming_places = [] if gate.withheld else reply.core_places()
        if not incoming_places and not episode.places and zip_code:
            if wants_nearby(text) or assessment.risk != "low":
                incoming_places = self._nearby(zip_code)
        places = rank_places(incoming_places) if incoming_places else episode.places

        insights = episode.insights
        if not gate.withheld:
            insights = merge_insights(episode.insights, reply.core_insights(), self.policy.allowed_domains)

        workflow = episode.script
        if not gate.withheld:
            workflow = advance(workflow, self._script_signal(reply))

        assistant = self._assistant_message(reply, gate)

        def reduce(current: Episode) -> Episode:
            updated = replace(
                current,
                messages=current.messages + (user_message, assistant),
                risk=assessment.risk,
                risk_trail=assessment.trail,
                insights=insights,
                places=places,
                zip=zip_code,
                topic=topic,
                script=workflow,
            )
            return replace(updated, stage=stage_for(updated))

        committed = session.commit(generation, reduce)
        if committed is None:
            return TurnResult(status="stale", episode=session.episode, reply=assistant, gate_code=gate.code)

        outcome = ScriptOutcome(workflow=workflow)
        if self.scripts is not None and newly_completed(episode.script, workflow):
            outcome = self.scripts.finalize(user_id=user_id, signed_in=signed_in, workflow=workflow)
            if outcome.message:
                note = ChatMessage(id=_message_id("msg"), role="assistant", text=outcome.message)
                committed = session.commit(
                    generation,
                    lambda current: replace(current, messages=current.messages + (note,), script=outcome.workflow),
                ) or session.episode

        if signed_in:
            self._save_snapshot(user_id, session_key, committed)

        return TurnResult(
            status="committed",
            episode=committed,
            reply=assistant,
            gate_code=gate.code,
            matched_phrase=assessment.matched,
            script_message=outcome.message,
            script_id=outcome.script.id if outcome.script else None,
        )

    def _nearby(self, zip_code: str) -> list[CareOption]:
        if self.nearby is None:
            return []
        try:
            return self.nearby.search(zip_code)
        except UpstreamUnavailable as exc:
            log.warning("nearby search unavailable zip=%s: %s", zip_code, exc)
            return []

    @staticmethod
    def _script_signal(reply: ModelReply) -> ScriptSignal:
        return ScriptSignal.from_reply(
            reply.text,
            script_draft=reply.script_draft,
            approved=reply.approved,
            consented=reply.consented,
            clinic_name=reply.clinic_name,
            clinic_phone=reply.clinic_phone,
        )

    @staticmethod
    def _assistant_message(reply: ModelReply, gate: GateDecision) -> ChatMessage:
        if gate.withheld:
            return ChatMessage(id=_message_id("msg"), role="assistant", text=gate.advisory or "")
        return ChatMessage(
            id=_message_id("msg"),
            role="assistant",
            text=strip_approval_marker(reply.text),
            citations=gate.citations,
            advisory=gate.advisory,
        )

    def _save_snapshot(self, user_id: str, session_key: str, episode: Episode) -> None:
        if self.snapshots is None:
            return
        try:
            self.snapshots.save(user_id, session_key, episode.snapshot())
        except PersistenceFailure:
            log.exception("episode snapshot save failed user_id=%s", user_id)
