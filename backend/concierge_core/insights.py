from __future__ import annotations

import re
from dataclasses import replace
from typing import Iterable, Sequence

from .citations import DEFAULT_ALLOWED_DOMAINS, filter_allowed
from .models import InsightCard


def normalize_title(title: str | None) -> str:
    return re.sub(r"\s+", " ", title or "").strip().lower()


def _union(first: Iterable[str], second: Iterable[str]) -> tuple[str, ...]:
    seen: set[str] = set()
    merged: list[str] = []
    for item in [*first, *second]:
        if item in seen:
            continue
        seen.add(item)
        merged.append(item)
    return tuple(merged)


def _prefer(incoming, existing):
    if incoming is None:
        return existing
    if isinstance(incoming, str) and not incoming.strip():
        return existing
    return incoming


def _combine(existing: InsightCard, incoming: InsightCard, allowed: Sequence[str]) -> InsightCard:
    return replace(
        existing,
        body=_prefer(incoming.body, existing.body),
        confidence=_prefer(incoming.confidence, existing.confidence),
        urgency=_prefer(incoming.urgency, existing.urgency),
        timestamp=_prefer(incoming.timestamp, existing.timestamp),
        why=_union(existing.why, incoming.why),
        next=_union(existing.next, incoming.next),
        citations=tuple(filter_allowed([*existing.citations, *incoming.citations], allowed)),
    )


def merge_insights(
    existing: Iterable[InsightCard],
    incoming: Iterable[InsightCard],
    allowed: Sequence[str] = DEFAULT_ALLOWED_DOMAINS,
) -> tuple[InsightCard, ...]:
    """Union two card sets keyed by normalized title.

    Existing order is kept and unseen titles are appended in arrival order.
    Merging a set into itself is a no-op.
    """
    order: list[str] = []
    cards: dict[str, InsightCard] = {}
    for card in [*existing, *incoming]:
        key = normalize_title(card.title)
        if not key:
            continue
        if key in cards:
            cards[key] = _combine(cards[key], card, allowed)
            continue
        order.append(key)
        cards[key] = replace(
            card,
            why=_union(card.why, ()),
            next=_union(card.next, ()),
            citations=tuple(filter_allowed(card.citations, allowed)),
        )
    return tuple(cards[key] for key in order)


def evidence_qualified(card: InsightCard, evidence_lock: bool) -> bool:
    if not evidence_lock:
        return True
    return bool(card.citations)
