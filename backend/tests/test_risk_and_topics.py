from __future__ import annotations

import pytest

from concierge_core.risk import append_trail, classify_risk, form_risk, heuristic_risk, normalize_risk
from concierge_core.topics import extract_topic


@pytest.mark.parametrize("previous", ["low", "moderate", "severe"])
def test_severe_phrase_is_severe_regardless_of_previous(previous):
    result = classify_risk("Crushing chest pain since an hour", previous=previous)
    assert result.risk == "severe"
    assert result.matched == "chest pain"


def test_cant_breathe_is_severe_even_when_form_says_mild():
    result = classify_risk("I can't breathe and have chest pain", severity="mild", pain=1)
    assert result.heuristic == "severe"
    assert result.risk == "severe"


def test_curly_apostrophe_matches_severe_phrase():
    level, phrase = heuristic_risk("I can’t breathe")
    assert level == "severe"
    assert phrase == "can't breathe"


def test_moderate_phrase_and_no_signal():
    assert heuristic_risk("Low grade fever since yesterday")[0] == "moderate"
    assert heuristic_risk("   ") == (None, None)
    assert heuristic_risk("just a question about insurance") == (None, None)


def test_infant_fever_escalates_to_severe():
    result = classify_risk("she has a fever", age_band="infant")
    assert result.risk == "severe"
    assert result.matched == "fever (infant)"


def test_fracture_topic_is_severe_even_with_low_pain():
    result = classify_risk("I broke my ankle", pain=2, topic="possible fracture")
    assert result.risk == "severe"
    assert result.matched == "possible fracture"
    assert classify_risk("I broke my ankle", pain=2).risk == "low"


def test_fracture_topic_keeps_stronger_phrase_match():
    result = classify_risk("chest pain after I broke a rib", topic="possible fracture")
    assert result.matched == "chest pain"


def test_risk_never_decreases_without_reset():
    result = classify_risk("feeling a bit better", previous="moderate", trail=("low", "moderate"), model_risk="low")
    assert result.risk == "moderate"
    assert result.trail == ("low", "moderate")
    assert result.changed is False


def test_model_risk_can_raise_aggregate():
    result = classify_risk("ok", previous="low", trail=("low",), model_risk="urgent")
    assert result.risk == "severe"
    assert result.trail == ("low", "severe")
    assert result.changed is True


def test_trail_has_no_consecutive_duplicates():
    trail = append_trail((), "low")
    trail = append_trail(trail, "low")
    trail = append_trail(trail, "moderate")
    trail = append_trail(trail, "moderate")
    assert trail == ("low", "moderate")


def test_first_turn_seeds_trail():
    assert classify_risk("hello").trail == ("low",)


@pytest.mark.parametrize(
    ("value", "expected"),
    [("HIGH", "severe"), ("escalate", "severe"), ("med", "moderate"), ("watch", "moderate"), ("banana", "low")],
)
def test_normalize_risk_aliases(value, expected):
    assert normalize_risk(value) == expected


def test_normalize_risk_absent_stays_absent():
    assert normalize_risk(None) is None
    assert normalize_risk("  ") is None


def test_form_risk_rules():
    assert form_risk(red_flags={"numbness": True}) == "severe"
    assert form_risk(severity="mild", pain=8) == "severe"
    assert form_risk(severity="moderate", pain=1) == "moderate"
    assert form_risk(severity="mild", pain=5) == "moderate"
    assert form_risk(severity="mild", pain=2, red_flags={"deformity": False}) is None
    assert form_risk(red_flags={"itchy": True}) is None


@pytest.mark.parametrize(
    ("text", "topic"),
    [
        ("I broke my ankle", "possible fracture"),
        ("I cut my finger on glass and it is bleeding", "minor cut"),
        ("rolled my ankle playing soccer", "sprain/strain"),
        ("scalded my hand with boiling water", "burn"),
        ("temperature of 39 since morning", "fever"),
        ("itchy hives on my arms", "rash"),
        ("I feel off today", "generic"),
    ],
)
def test_extract_topic(text, topic):
    assert extract_topic(text) == topic


def test_fracture_terms_win_over_cut_terms():
    assert extract_topic("broken bone and a cut on the shin") == "possible fracture"


def test_body_area_is_only_a_tie_break():
    assert extract_topic("it hurts", body_area="foot") == "sprain/strain"
    assert extract_topic("it hurts", body_area="head") == "generic"
    assert extract_topic("small burn", body_area="hand") == "burn"
