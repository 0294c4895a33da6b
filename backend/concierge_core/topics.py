from __future__ import annotations

import re

TOPICS = (
    "possible fracture",
    "minor cut",
    "sprain/strain",
    "burn",
    "fever",
    "rash",
    "generic",
)

# Checked in order; fracture terms first since they force escalation.
_TOPIC_PATTERNS = (
    ("possible fracture", re.compile(r"(fractur|broke|broken|dislocat|bone|obvious deform)")),
    ("minor cut", re.compile(r"(cut|lacerat|bleed|glass|gash)")),
    ("sprain/strain", re.compile(r"(sprain|twist|rolled|strain|pulled)")),
    ("burn", re.compile(r"(burn|scald)")),
    ("fever", re.compile(r"(fever|temperature|temp)")),
    ("rash", re.compile(r"(rash|hives|itch|urticaria)")),
)

_TIE_BREAK_AREAS = {"hand", "foot"}


def extract_topic(text: str | None, body_area: str | None = None) -> str:
    cleaned = (text or "").lower()
    for topic, pattern in _TOPIC_PATTERNS:
        if pattern.search(cleaned):
            return topic
    if (body_area or "").strip().lower() in _TIE_BREAK_AREAS:
        return "sprain/strain"
    return "generic"
