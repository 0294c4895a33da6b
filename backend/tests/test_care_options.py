from __future__ import annotations

from concierge_core.care_options import (
    compute_score,
    passes_review_gate,
    rank_places,
    score_reason,
    venue_type_for,
)
from concierge_core.models import CareOption, Citation, PlaceReview


def _place(place_id: str, **kwargs) -> CareOption:
    return CareOption(id=place_id, name=kwargs.pop("name", place_id), **kwargs)


def test_place_a_ranks_above_place_b():
    a = _place("A", rating=4.5, reviews=200, distance_km=3)
    b = _place("B", rating=3.0, reviews=5, distance_km=15)
    ranked = rank_places([b, a])
    assert [place.id for place in ranked] == ["A", "B"]
    assert ranked[0].score > ranked[1].score


def test_score_is_deterministic_and_in_display_band():
    place = _place("A", rating=4.0, reviews=50, distance_km=5, est_cost_min=100, est_cost_max=200)
    first = compute_score(place)
    assert first == compute_score(place)
    assert 3.0 <= first.overall <= 5.0
    assert first.cost == 1.0 - 150 / 450


def test_unknown_distance_scores_zero_distance():
    assert compute_score(_place("A", rating=4.0, reviews=1)).distance == 0.0


def test_price_band_proxy_and_neutral_default():
    assert compute_score(_place("A", price="$")).cost == 0.9
    assert compute_score(_place("B", price="$$$$")).cost == 0.25
    assert compute_score(_place("C")).cost == 0.6


def test_perfect_and_empty_places_hit_band_edges():
    best = _place("A", rating=5.0, reviews=10**6, distance_km=0, est_cost_min=0, est_cost_max=0)
    assert compute_score(best).overall == 5.0
    worst = _place("B", rating=0, reviews=0, est_cost_min=900, est_cost_max=900)
    assert compute_score(worst).overall == 3.0


def test_reason_priority():
    assert score_reason(_place("A", rating=4.6, reviews=500, distance_km=1)) == "strong patient rating"
    assert score_reason(_place("B", rating=3.9, reviews=101)) == "many reviews"
    assert score_reason(_place("C", rating=3.9, reviews=10, distance_km=2)) == "close by"
    assert score_reason(_place("D", est_cost_min=80, est_cost_max=120)) == "estimated cost around $100"
    assert score_reason(_place("E", price="$$")) == "price band $$"


def test_review_gate():
    assert passes_review_gate(_place("A", rating=4.0, reviews=3))
    assert not passes_review_gate(_place("B", rating=0, reviews=0))
    assert passes_review_gate(_place("C", review_citation=PlaceReview(url="https://yelp.com/x", quote="Great staff")))
    assert not passes_review_gate(_place("D", review_citation=PlaceReview(url="https://yelp.com/x")))
    assert passes_review_gate(
        _place("E", score_sources=(Citation(title="g", url="https://www.google.com/maps/search/?q=x"),))
    )
    assert not passes_review_gate(_place("F", score_sources=(Citation(title="blog", url="https://blog.example.com"),)))


def test_unverified_places_excluded_unless_overridden():
    unverified = _place("U", rating=0, reviews=0)
    verified = _place("V", rating=4.0, reviews=20)
    assert [place.id for place in rank_places([unverified, verified])] == ["V"]
    assert {place.id for place in rank_places([unverified, verified], include_unverified=True)} == {"U", "V"}


def test_ranking_is_stable_for_ties_and_reranking():
    places = [_place(name, rating=4.0, reviews=10, distance_km=4) for name in ("first", "second", "third")]
    ranked = rank_places(places)
    assert [place.id for place in ranked] == ["first", "second", "third"]
    assert rank_places(ranked) == ranked


def test_derived_fields_are_recomputed():
    stale = _place("A", rating=4.5, reviews=200, distance_km=3, score=1.0, reason="old", notes=("old",))
    (ranked,) = rank_places([stale])
    assert ranked.score != 1.0
    assert ranked.reason == "strong patient rating"
    assert "old" not in ranked.notes


def test_venue_typing():
    assert venue_type_for("St. Mary Hospital") == "er"
    assert venue_type_for("Downtown Urgent Care") == "urgent"
    assert venue_type_for("Family Health Center") == "clinic"
    assert venue_type_for("Unnamed facility", "urgent_care") == "urgent"
