from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from .models import RISK_LEVELS, RISK_RANK

# Ordered; first match wins and is reported.
SEVERE_PHRASES = (
    "can't breathe",
    "cannot breathe",
    "can not breathe",
    "not breathing",
    "shortness of breath",
    "trouble breathing",
    "chest pain",
    "crushing",
    "unconscious",
    "passed out",
    "unresponsive",
    "severe bleeding",
    "won't stop bleeding",
    "coughing blood",
    "vomiting blood",
    "stroke",
    "face drooping",
    "slurred speech",
    "seizure",
    "anaphylaxis",
    "throat closing",
    "overdose",
    "suicid",
    "self harm",
    "self-harm",
    "obvious deform",
    "bone exposed",
    "bone sticking out",
)

MODERATE_PHRASES = (
    "fever",
    "high temperature",
    "vomiting",
    "can't bear weight",
    "cannot bear weight",
    "can't move",
    "numb",
    "tingl",
    "severe swelling",
    "swelling",
    "getting worse",
    "worsening",
    "infection",
    "infected",
    "pus",
    "red streak",
    "dizzy",
    "bleeding",
    "deep cut",
    "blister",
)

FRACTURE_TOPIC = "possible fracture"
RED_FLAG_KEYS = ("deformity", "open_wound", "numbness", "cannot_move", "severe_swelling")

_RISK_ALIASES = {
    "severe": "severe",
    "high": "severe",
    "escalate": "severe",
    "urgent": "severe",
    "moderate": "moderate",
    "med": "moderate",
    "medium": "moderate",
    "watch": "moderate",
    "elevated": "moderate",
    "low": "low",
    "info": "low",
    "none": "low",
}


def normalize_risk(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    if not text:
        return None
    return _RISK_ALIASES.get(text, "low")


def risk_max(*levels: str | None) -> str | None:
    present = [level for level in levels if level in RISK_RANK]
    if not present:
        return None
    return max(present, key=lambda level: RISK_RANK[level])


def _normalize_text(text: str | None) -> str:
    return (text or "").replace("’", "'").replace("‘", "'").strip().lower()


def match_phrase(text: str | None, phrases: Iterable[str]) -> str | None:
    cleaned = _normalize_text(text)
    if not cleaned:
        return None
    for phrase in phrases:
        if phrase in cleaned:
            return phrase
    return None


def heuristic_risk(text: str | None, *, age_band: str | None = None) -> tuple[str | None, str | None]:
    """Scan free text for severe, then moderate phrases.

    Returns ``(level, matched_phrase)``; both are ``None`` when nothing matched.
    A fever mentioned for an infant is always severe.
    """
    cleaned = _normalize_text(text)
    if not cleaned:
        return None, None
    if (age_band or "").strip().lower() == "infant" and "fever" in cleaned:
        return "severe", "fever (infant)"
    phrase = match_phrase(cleaned, SEVERE_PHRASES)
    if phrase:
        return "severe", phrase
    phrase = match_phrase(cleaned, MODERATE_PHRASES)
    if phrase:
        return "moderate", phrase
    return None, None


def form_risk(
    *,
    red_flags: Mapping[str, bool] | None = None,
    severity: str | None = None,
    pain: int | float | None = None,
) -> str | None:
    flags = red_flags or {}
    if any(bool(flags.get(key)) for key in RED_FLAG_KEYS):
        return "severe"
    severity_value = (severity or "").strip().lower()
    pain_value = float(pain) if pain is not None else 0.0
    if severity_value == "severe" or pain_value >= 8:
        return "severe"
    if severity_value == "moderate" or pain_value >= 5:
        return "moderate"
    return None


def append_trail(trail: Iterable[str], label: str) -> tuple[str, ...]:
    current = tuple(trail)
    if current and current[-1] == label:
        return current
    return current + (label,)


@dataclass(frozen=True)
class RiskAssessment:
    risk: str
    trail: tuple[str, ...]
    heuristic: str | None
    matched: str | None
    changed: bool


def classify_risk(
    text: str | None,
    *,
    previous: str = "low",
    trail: Iterable[str] = (),
    model_risk: str | None = None,
    red_flags: Mapping[str, bool] | None = None,
    age_band: str | None = None,
    severity: str | None = None,
    pain: int | float | None = None,
    topic: str | None = None,
) -> RiskAssessment:
    """Merge text heuristics, structured flags and model risk into one level.

    The aggregate never drops below ``previous``; only an explicit episode
    reset lowers risk. The trail only grows when the aggregate changes.
    A suspected fracture topic counts as a severe signal.
    """
    heuristic, matched = heuristic_risk(text, age_band=age_band)
    structured = form_risk(red_flags=red_flags, severity=severity, pain=pain)
    topical = "severe" if topic == FRACTURE_TOPIC else None
    if topical and not matched:
        matched = FRACTURE_TOPIC
    signal = risk_max(heuristic, structured, topical)
    baseline = previous if previous in RISK_RANK else RISK_LEVELS[0]
    aggregate = risk_max(baseline, normalize_risk(model_risk), signal) or baseline
    return RiskAssessment(
        risk=aggregate,
        trail=append_trail(trail, aggregate),
        heuristic=signal,
        matched=matched,
        changed=aggregate != baseline,
    )
