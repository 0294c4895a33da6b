from __future__ import annotations

import math
import re
from dataclasses import dataclass, replace
from typing import Iterable

from .citations import citation_host, host_allowed
from .models import CareOption

RATING_WEIGHT = 0.55
VOLUME_WEIGHT = 0.15
DISTANCE_WEIGHT = 0.20
COST_WEIGHT = 0.10

UNKNOWN_DISTANCE_KM = 30.0
DISTANCE_HORIZON_KM = 18.0
COST_CEILING = 450.0
VOLUME_LOG_DIVISOR = 2.3
NEUTRAL_COST_SCORE = 0.6

# Composite in [0, 1] is shown on a 3.0-5.0 band.
DISPLAY_FLOOR = 3.0
DISPLAY_SPAN = 2.0

PRICE_BAND_SCORES = {
    "$": 0.9,
    "$$": 0.7,
    "$$$": 0.45,
    "$$$$": 0.25,
}

REVIEW_DOMAINS = (
    "google.com",
    "yelp.com",
    "healthgrades.com",
    "zocdoc.com",
    "vitals.com",
    "ratemds.com",
    "facebook.com",
    "webmd.com",
)

VENUE_PRICES = {
    "er": ("$$$", 350.0, 600.0, "$350+"),
    "urgent": ("$$", 120.0, 280.0, "$120–$280"),
    "clinic": ("$", 85.0, 160.0, "$85–$160"),
}

_ER_HINT = re.compile(r"(hospital|emergency|\ber\b|trauma|medical center)", re.IGNORECASE)
_URGENT_HINT = re.compile(r"(urgent|walk-?in|immediate care|express care)", re.IGNORECASE)


@dataclass(frozen=True)
class ScoreBreakdown:
    rating: float
    volume: float
    distance: float
    cost: float

    @property
    def composite(self) -> float:
        return (
            RATING_WEIGHT * self.rating
            + VOLUME_WEIGHT * self.volume
            + DISTANCE_WEIGHT * self.distance
            + COST_WEIGHT * self.cost
        )

    @property
    def overall(self) -> float:
        return round(DISPLAY_FLOOR + DISPLAY_SPAN * self.composite, 2)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def cost_midpoint(place: CareOption) -> float | None:
    low, high = place.est_cost_min, place.est_cost_max
    if low is None and high is None:
        return None
    if low is None:
        return high
    if high is None:
        return low
    return (low + high) / 2.0


def cost_score(place: CareOption) -> float:
    midpoint = cost_midpoint(place)
    if midpoint is not None:
        return _clamp(1.0 - midpoint / COST_CEILING)
    return PRICE_BAND_SCORES.get((place.price or "").strip(), NEUTRAL_COST_SCORE)


def compute_score(place: CareOption) -> ScoreBreakdown:
    rating = _clamp((place.rating or 0.0) / 5.0)
    reviews = max(place.reviews or 0, 0)
    volume = min(1.0, math.log10(reviews + 1) / VOLUME_LOG_DIVISOR)
    distance_km = place.distance_km if place.distance_km is not None else UNKNOWN_DISTANCE_KM
    distance = 1.0 - min(1.0, max(distance_km, 0.0) / DISTANCE_HORIZON_KM)
    return ScoreBreakdown(rating=rating, volume=volume, distance=distance, cost=cost_score(place))


def score_reason(place: CareOption) -> str:
    if (place.rating or 0.0) >= 4.2:
        return "strong patient rating"
    if (place.reviews or 0) > 100:
        return "many reviews"
    if place.distance_km is not None and place.distance_km < 8:
        return "close by"
    midpoint = cost_midpoint(place)
    if midpoint is not None:
        return f"estimated cost around ${midpoint:.0f}"
    if place.price in PRICE_BAND_SCORES:
        return f"price band {place.price}"
    return "price not listed"


def score_notes(place: CareOption) -> tuple[str, ...]:
    notes: list[str] = []
    if place.rating is None:
        notes.append("No rating available.")
    if place.distance_km is None:
        notes.append(f"Distance unknown; scored as {UNKNOWN_DISTANCE_KM:.0f} km.")
    if cost_midpoint(place) is None:
        if place.price in PRICE_BAND_SCORES:
            notes.append("Cost inferred from price band.")
        else:
            notes.append("No cost information; neutral cost score used.")
    return tuple(notes)


def passes_review_gate(place: CareOption) -> bool:
    if (place.rating or 0) > 0 and (place.reviews or 0) > 0:
        return True
    if place.review_citation is not None and (place.review_citation.quote or "").strip():
        return True
    return any(host_allowed(citation_host(source.url), REVIEW_DOMAINS) for source in place.score_sources)


def score_place(place: CareOption) -> CareOption:
    return replace(
        place,
        score=compute_score(place).overall,
        reason=score_reason(place),
        notes=score_notes(place),
    )


def rank_places(places: Iterable[CareOption], *, include_unverified: bool = False) -> tuple[CareOption, ...]:
    """Review-gate, score and sort places, best first.

    Derived fields are recomputed from scratch. ``sorted`` is stable so equal
    scores keep their input order.
    """
    eligible = [place for place in places if include_unverified or passes_review_gate(place)]
    scored = [score_place(place) for place in eligible]
    return tuple(sorted(scored, key=lambda place: place.score or 0.0, reverse=True))


def venue_type_for(name: str | None, *tags: str | None) -> str:
    text = " ".join(part for part in (name, *tags) if part)
    if _ER_HINT.search(text):
        return "er"
    if _URGENT_HINT.search(text):
        return "urgent"
    return "clinic"


def venue_price(venue_type: str) -> tuple[str, float, float, str]:
    """Return ``(price_band, est_min, est_max, label)`` for a venue type."""
    return VENUE_PRICES.get(venue_type, VENUE_PRICES["clinic"])
