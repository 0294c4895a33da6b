from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from typing import Any, Callable, Protocol

from .errors import PersistenceFailure, WorkflowError
from .models import CallScript, ScriptWorkflow

log = logging.getLogger(__name__)

DRAFT_MARKER = "CALL SCRIPT DRAFT:"
APPROVAL_MARKER = "CALL_SCRIPT_APPROVED_AND_CONSENTED"
DEFAULT_CLINIC_NAME = "Clinic"
CONSENT_TEXT = (
    "I approve this call script and consent to an AI assistant placing a call on my behalf "
    "and sharing the script information with the clinic."
)
CONFIRMATION_TEXT = "Your call script is saved. Connecting you to the calling assistant now."
PERSIST_FAILED_TEXT = (
    "I couldn't save the call script right now. You can still copy it and use it to call the clinic yourself."
)
SIGN_IN_TEXT = "Sign in to save this call script and have it called for you. You can still copy it and call yourself."


class ScriptStore(Protocol):
    def create_with_consent(
        self,
        *,
        user_id: str,
        clinic_name: str,
        clinic_phone: str | None,
        script_text: str,
        consent_text: str,
    ) -> CallScript: ...


class CallingClient(Protocol):
    def start_call(self, script: CallScript) -> bool: ...


Scheduler = Callable[[float, Callable[[], None]], Any]


def timer_scheduler(delay: float, callback: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, callback)
    timer.daemon = True
    timer.start()
    return timer


def extract_script_text(text: str | None) -> str | None:
    """Return the trimmed text after the draft marker, up to the approval marker."""
    body = text or ""
    start = body.find(DRAFT_MARKER)
    if start < 0:
        return None
    remainder = body[start + len(DRAFT_MARKER) :]
    end = remainder.find(APPROVAL_MARKER)
    if end >= 0:
        remainder = remainder[:end]
    return remainder.strip()


def has_approval_marker(text: str | None) -> bool:
    lines = [line.strip() for line in (text or "").splitlines() if line.strip()]
    return bool(lines) and lines[-1] == APPROVAL_MARKER


def strip_approval_marker(text: str) -> str:
    if not has_approval_marker(text):
        return text
    head, _, _ = text.rstrip().rpartition(APPROVAL_MARKER)
    return head.rstrip()


@dataclass(frozen=True)
class ScriptSignal:
    draft_text: str | None = None
    approved: bool | None = None
    consented: bool | None = None
    clinic_name: str | None = None
    clinic_phone: str | None = None
    legacy_marker: bool = False

    @classmethod
    def from_reply(
        cls,
        text: str | None,
        *,
        script_draft: str | None = None,
        approved: bool | None = None,
        consented: bool | None = None,
        clinic_name: str | None = None,
        clinic_phone: str | None = None,
    ) -> "ScriptSignal":
        draft = (script_draft or "").strip() or extract_script_text(text)
        return cls(
            draft_text=draft or None,
            approved=approved,
            consented=consented,
            clinic_name=(clinic_name or "").strip() or None,
            clinic_phone=(clinic_phone or "").strip() or None,
            legacy_marker=has_approval_marker(text),
        )


_TRANSITIONS = {
    "no_script": {"no_script", "drafted"},
    "drafted": {"drafted", "revising", "approved", "approved_and_consented"},
    "revising": {"drafted", "revising", "approved", "approved_and_consented"},
    "approved": {"drafted", "revising", "approved", "approved_and_consented"},
    "approved_and_consented": {"drafted", "revising", "approved", "approved_and_consented", "persisted"},
    "persisted": {"drafted", "persisted"},
}


def _checked(current: ScriptWorkflow, **changes: Any) -> ScriptWorkflow:
    next_state = changes.get("state", current.state)
    if next_state not in _TRANSITIONS.get(current.state, set()):
        raise WorkflowError(f"Invalid transition: {current.state} -> {next_state}")
    return replace(current, **changes)


def _flag(explicit: bool | None, legacy: bool, current: bool) -> bool:
    if explicit is not None:
        return explicit
    return current or legacy


def advance(workflow: ScriptWorkflow, signal: ScriptSignal) -> ScriptWorkflow:
    """Fold one reply's script signal into the workflow.

    A new draft replaces the previous one and clears both confirmations.
    Approval and consent are tracked separately; the legacy marker stands in
    for whichever flag the reply leaves unset.
    """
    if signal.draft_text:
        base = _checked(
            workflow,
            state="drafted",
            draft_text=signal.draft_text,
            clinic_name=signal.clinic_name or workflow.clinic_name,
            clinic_phone=signal.clinic_phone or workflow.clinic_phone,
            approved=False,
            consented=False,
            revision=workflow.revision + 1,
            script_id=None,
        )
    elif workflow.state in {"no_script", "persisted"}:
        return workflow
    else:
        base = replace(
            workflow,
            clinic_name=signal.clinic_name or workflow.clinic_name,
            clinic_phone=signal.clinic_phone or workflow.clinic_phone,
        )

    approved = _flag(signal.approved, signal.legacy_marker, base.approved)
    consented = _flag(signal.consented, signal.legacy_marker, base.consented)
    if approved and consented:
        state = "approved_and_consented"
    elif approved:
        state = "approved"
    elif signal.draft_text:
        state = "drafted"
    else:
        state = "revising"
    return _checked(base, state=state, approved=approved, consented=consented)


def newly_completed(previous: ScriptWorkflow, current: ScriptWorkflow) -> bool:
    if current.state != "approved_and_consented":
        return False
    return previous.state != "approved_and_consented" or previous.revision != current.revision


@dataclass(frozen=True)
class ScriptOutcome:
    workflow: ScriptWorkflow
    message: str | None = None
    script: CallScript | None = None
    handoff_scheduled: bool = False


class CallScriptService:
    """Persists an approved and consented script, then hands it to the caller."""

    def __init__(
        self,
        *,
        store: ScriptStore,
        calling: CallingClient,
        handoff_delay: float = 1.2,
        scheduler: Scheduler = timer_scheduler,
    ) -> None:
        self.store = store
        self.calling = calling
        self.handoff_delay = handoff_delay
        self.scheduler = scheduler

    def finalize(self, *, user_id: str, signed_in: bool, workflow: ScriptWorkflow) -> ScriptOutcome:
        if workflow.state != "approved_and_consented":
            return ScriptOutcome(workflow=workflow)
        if not signed_in:
            return ScriptOutcome(workflow=workflow, message=SIGN_IN_TEXT)
        script_text = (workflow.draft_text or "").strip()
        if not script_text:
            log.debug("approved script is empty; nothing to save")
            return ScriptOutcome(workflow=workflow)

        try:
            script = self.store.create_with_consent(
                user_id=user_id,
                clinic_name=workflow.clinic_name or DEFAULT_CLINIC_NAME,
                clinic_phone=workflow.clinic_phone,
                script_text=script_text,
                consent_text=CONSENT_TEXT,
            )
        except PersistenceFailure:
            log.exception("saving call script failed user_id=%s", user_id)
            return ScriptOutcome(workflow=workflow, message=PERSIST_FAILED_TEXT)

        persisted = _checked(workflow, state="persisted", script_id=script.id)
        log.info("call script %s saved; handoff in %.1fs", script.id, self.handoff_delay)
        self.scheduler(self.handoff_delay, lambda: self.hand_off(script))
        return ScriptOutcome(workflow=persisted, message=CONFIRMATION_TEXT, script=script, handoff_scheduled=True)

    def hand_off(self, script: CallScript) -> bool:
        if not script.clinic_phone:
            log.warning("call script %s has no clinic phone; handoff skipped", script.id)
            return False
        started = self.calling.start_call(script)
        if not started:
            log.warning("calling subsystem rejected script %s", script.id)
        return started
