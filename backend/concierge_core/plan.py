from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from .topics import TOPICS

PLAN_RISK_LEVELS = ("low", "moderate", "escalate")
FALLBACK_CITATION_ID = "nih-medlineplus-cuts-2024"
PRICE_NOTE = "Estimate. We show the math."


@dataclass(frozen=True)
class CatalogCitation:
    id: str
    label: str
    org: str
    tier: str
    last_updated: str
    href: str

    @property
    def year(self) -> int:
        return int(self.last_updated[:4])

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "org": self.org,
            "tier": self.tier,
            "last_updated": self.last_updated,
            "href": self.href,
        }


CITATION_CATALOG: dict[str, CatalogCitation] = {
    entry.id: entry
    for entry in (
        CatalogCitation("cdc-wounds-2023", "Wound care basics", "CDC", "T1", "2023-09-01", "https://www.cdc.gov/"),
        CatalogCitation(
            "nih-medlineplus-cuts-2024",
            "Cuts and lacerations (patient education)",
            "NIH / MedlinePlus",
            "T1",
            "2024-02-15",
            "https://medlineplus.gov/",
        ),
        CatalogCitation(
            "nice-laceration-2022",
            "Laceration: assessment & management",
            "NICE",
            "T1",
            "2022-12-10",
            "https://www.nice.org.uk/",
        ),
        CatalogCitation(
            "cochrane-irrigation-2021",
            "Irrigation of acute wounds (review)",
            "Cochrane",
            "T2",
            "2021-11-01",
            "https://www.cochranelibrary.com/",
        ),
        CatalogCitation(
            "nih-medlineplus-fractures-2024",
            "Fractures (patient education)",
            "NIH / MedlinePlus",
            "T1",
            "2024-03-01",
            "https://medlineplus.gov/",
        ),
        CatalogCitation(
            "nice-fracture-assessment-2023",
            "Fracture: initial assessment",
            "NICE",
            "T1",
            "2023-05-10",
            "https://www.nice.org.uk/",
        ),
        CatalogCitation(
            "nih-sprain-2024",
            "Sprains and strains (R.I.C.E., return to activity)",
            "NIH / MedlinePlus",
            "T1",
            "2024-01-20",
            "https://medlineplus.gov/",
        ),
        CatalogCitation(
            "nih-burns-2024",
            "Minor burns (cooling, dressings, when to escalate)",
            "NIH / MedlinePlus",
            "T1",
            "2024-06-05",
            "https://medlineplus.gov/",
        ),
        CatalogCitation(
            "who-fever-2023",
            "Fever: patient guidance & red flags",
            "WHO",
            "T1",
            "2023-04-03",
            "https://www.who.int/",
        ),
    )
}


@dataclass(frozen=True)
class PlanLine:
    text: str
    citation_id: str

    def as_dict(self) -> dict[str, str]:
        return {"text": self.text, "citation_id": self.citation_id}


@dataclass(frozen=True)
class Coverage:
    oop_estimate: str | None
    assumptions: tuple[str, ...]
    citation_ids: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "oop_estimate": self.oop_estimate,
            "assumptions": list(self.assumptions),
            "citation_ids": list(self.citation_ids),
        }


@dataclass(frozen=True)
class Plan:
    topic: str
    risk: str
    summary: str
    self_care: tuple[PlanLine, ...]
    watch_outs: tuple[PlanLine, ...]
    after_care: tuple[PlanLine, ...]
    coverage: Coverage
    citations_used: tuple[str, ...]
    stale: bool
    price_note: str = PRICE_NOTE
    citations: tuple[CatalogCitation, ...] = field(default=())

    def as_dict(self) -> dict[str, Any]:
        return {
            "topic": self.topic,
            "risk": self.risk,
            "summary": self.summary,
            "self_care": [line.as_dict() for line in self.self_care],
            "watch_outs": [line.as_dict() for line in self.watch_outs],
            "after_care": [line.as_dict() for line in self.after_care],
            "coverage": self.coverage.as_dict(),
            "citations_used": list(self.citations_used),
            "citations": [entry.as_dict() for entry in self.citations],
            "stale": self.stale,
            "price_note": self.price_note,
        }


def _lines(*pairs: tuple[str, str]) -> tuple[PlanLine, ...]:
    return tuple(PlanLine(text, citation_id) for text, citation_id in pairs)


_TOPIC_CONTENT: dict[str, dict[str, Any]] = {
    "possible fracture": {
        "summary": "Possible fracture: needs in-person assessment and imaging.",
        "self_care": _lines(
            ("Immobilize with a rigid support or sling; avoid using the limb.", "nice-fracture-assessment-2023"),
            ("Remove rings or tight items before swelling increases.", "nih-medlineplus-fractures-2024"),
            ("Cold pack wrapped in cloth for 15–20 min; elevate.", "nih-medlineplus-fractures-2024"),
            ("Do not attempt to realign the limb.", "nice-fracture-assessment-2023"),
        ),
        "watch_outs": _lines(
            ("Blue/pale fingers, worsening numbness, or uncontrolled pain → ER now.", "nice-fracture-assessment-2023"),
        ),
        "after_care": _lines(
            ("Protect splint/cast from moisture; follow orthopedics if advised.", "nih-medlineplus-fractures-2024"),
        ),
    },
    "minor cut": {
        "summary": "Likely minor laceration: safe to start home care now.",
        "self_care": _lines(
            ("Rinse under clean running water for 5 minutes; remove visible debris.", "cdc-wounds-2023"),
            ("Apply gentle pressure with clean cloth to stop bleeding.", "nih-medlineplus-cuts-2024"),
            ("Thin layer of petroleum-based ointment; cover with sterile dressing.", "nice-laceration-2022"),
        ),
        "watch_outs": _lines(
            ("Numbness, deep gaping edges, or heavy bleeding that won't stop → urgent care/ER.", "nice-laceration-2022"),
            ("Red streaks, fever, or worsening pain/swelling after 24–48h → seek care.", "cdc-wounds-2023"),
        ),
        "after_care": _lines(
            ("Change the dressing daily or if soaked; keep clean and dry.", "nih-medlineplus-cuts-2024"),
            ("Confirm tetanus status if unsure.", "nice-laceration-2022"),
        ),
    },
    "sprain/strain": {
        "summary": "Likely sprain/strain: start R.I.C.E., monitor function, escalate if red flags.",
        "self_care": _lines(
            ("Rest and protect the area; avoid painful activity for 24–48h.", "nih-sprain-2024"),
            ("Ice 15–20 min on/off; compression wrap; elevate above heart.", "nih-sprain-2024"),
        ),
        "watch_outs": _lines(
            ("Inability to bear weight or severe instability → urgent care/ER.", "nih-sprain-2024"),
        ),
        "after_care": _lines(
            ("Gradual return to activity as pain allows; consider brace.", "nih-sprain-2024"),
        ),
    },
    "burn": {
        "summary": "Minor burn: cool, cover, and watch for depth/size/location concerns.",
        "self_care": _lines(
            ("Cool running water (10–20 min). No ice.", "nih-burns-2024"),
            ("Non-adherent dressing; avoid home remedies on the wound.", "nih-burns-2024"),
        ),
        "watch_outs": _lines(
            ("Face/hands/genitals or large/deep burns → urgent care/ER.", "nih-burns-2024"),
        ),
        "after_care": _lines(
            ("Keep clean/dry; change dressing as directed; pain control as needed.", "nih-burns-2024"),
        ),
    },
    "fever": {
        "summary": "Fever: hydration, antipyretics if indicated, look for red flags.",
        "self_care": _lines(("Oral fluids regularly; rest.", "who-fever-2023")),
        "watch_outs": _lines(
            ("Neck stiffness, confusion, chest pain, severe dehydration → urgent care/ER.", "who-fever-2023"),
        ),
        "after_care": _lines(
            ("Re-evaluate in 24–48h; seek care if worsening or persistent.", "who-fever-2023"),
        ),
    },
    "rash": {
        "summary": "Rash: symptom relief; monitor pattern and systemic symptoms.",
        "self_care": _lines(("Avoid triggers; cool compresses; OTC antihistamine if itchy.", "who-fever-2023")),
        "watch_outs": _lines(
            ("Fever, blistering, mucosal involvement, or rapid spread → urgent care/ER.", "who-fever-2023"),
        ),
        "after_care": _lines(("If not improving in 48–72h, seek care.", "who-fever-2023")),
    },
    "generic": {
        "summary": "We can start with conservative self-care and monitor.",
        "self_care": _lines(
            ("Rest and protect the area; avoid activities that worsen pain.", "nih-medlineplus-cuts-2024"),
            ("Over-the-counter pain relief per label if needed.", "nice-laceration-2022"),
        ),
        "watch_outs": _lines(
            (
                "If symptoms rapidly worsen or red-flag signs appear, escalate to in-person care.",
                "nih-medlineplus-cuts-2024",
            ),
        ),
        "after_care": _lines(
            ("Re-evaluate in 24–48h; if not improving, contact a clinician.", "nih-medlineplus-cuts-2024"),
        ),
    },
}

_ESCALATED_ESTIMATE = "$120–$280 (urgent care), $350+ (ER)"


def _bucket_for(topic: str, tier: str) -> str:
    if topic == "possible fracture" or tier == "escalate":
        return _ESCALATED_ESTIMATE
    if topic == "minor cut":
        return "$85–$160 (clinic/urgent care)"
    return "$85–$200 (clinic/urgent care)"


COVERAGE_BUCKETS: dict[tuple[str, str], str] = {
    (topic, tier): _bucket_for(topic, tier) for topic in TOPICS for tier in PLAN_RISK_LEVELS
}

COVERAGE_ASSUMPTIONS = (
    "Based on typical cash rates or PPO in-network urgent care visit.",
    "Does not include procedures (e.g., imaging, sutures) or tests.",
)
NO_INSURANCE_ASSUMPTION = "Add your insurance to check in-network and estimate out-of-pocket."
COVERAGE_CITATION_IDS = ("cochrane-irrigation-2021",)

_VISIT_EXPECTATIONS: dict[str, tuple[str, ...]] = {
    "minor cut": (
        "Irrigation/cleaning; evaluate if closure (adhesive/sutures) needed.",
        "Tetanus update if indicated.",
        "Infection prevention and what to watch for.",
    ),
    "sprain/strain": (
        "Focused exam; consider X-ray if Ottawa rules suggest.",
        "R.I.C.E. + graded activity; brace or wrap if helpful.",
        "Follow-up if not improving 48–72h.",
    ),
    "burn": (
        "Cool running water (no ice); non-adherent dressing.",
        "Assess depth/size/location; refer if face/hands/genitals or large area.",
        "Pain control and infection watch-outs.",
    ),
    "fever": (
        "Temp check method, hydration, antipyretics as indicated.",
        "Age-specific thresholds; look for red flags.",
        "When to escalate or test.",
    ),
    "rash": (
        "Pattern and distribution assessment.",
        "Allergy/infection differentiation; symptomatic relief.",
        "Escalate if systemic symptoms or mucosal involvement.",
    ),
    "generic": (
        "Focused exam and conservative care first.",
        "Clear watch-outs and when to escalate.",
        "Follow-up plan if not improving within 24–48h.",
    ),
}


def plan_risk(risk: str | None) -> str:
    value = (risk or "").strip().lower()
    if value in {"severe", "escalate"}:
        return "escalate"
    if value == "moderate":
        return "moderate"
    return "low"


def visit_expectations(topic: str, venue_type: str | None = None) -> list[str]:
    if topic == "possible fracture":
        extra = "Ortho consult available if complex." if venue_type == "er" else "May refer to ER if fracture is complex."
        return [
            "Imaging (X-ray) to confirm fracture and alignment.",
            "Immobilization (splint/cast) and pain control.",
            extra,
        ]
    return list(_VISIT_EXPECTATIONS.get(topic, _VISIT_EXPECTATIONS["generic"]))


def _body_area_adjustments(topic: str, body_area: str | None) -> tuple[list[str], list[str]]:
    area = (body_area or "").strip().lower()
    extra_self: list[str] = []
    extra_watch: list[str] = []
    if topic == "minor cut" and area == "foot":
        extra_self.append("After cleaning, keep weight-bearing minimal until sealed. Change dressing if soaked.")
        extra_watch.append("Increasing redness, swelling, or pain when walking can indicate infection; seek care.")
    if topic == "sprain/strain" and area in {"foot", "leg"}:
        extra_self.append("R.I.C.E.: Rest, Ice (15–20 min on/off), Compression wrap, Elevation above heart.")
    if area == "head" and topic not in {"fever", "rash"}:
        extra_watch.append("Worsening headache, repeated vomiting, confusion, or unequal pupils → ER now.")
    return extra_self, extra_watch


def _extend(lines: tuple[PlanLine, ...], texts: list[str]) -> tuple[PlanLine, ...]:
    if not texts:
        return lines
    citation_id = lines[0].citation_id if lines else FALLBACK_CITATION_ID
    return lines + tuple(PlanLine(text, citation_id) for text in texts)


def build_coverage(topic: str, risk: str, insurance: str | None) -> Coverage:
    if not (insurance or "").strip():
        return Coverage(oop_estimate=None, assumptions=(NO_INSURANCE_ASSUMPTION,))
    return Coverage(
        oop_estimate=COVERAGE_BUCKETS[(topic, plan_risk(risk))],
        assumptions=COVERAGE_ASSUMPTIONS,
        citation_ids=COVERAGE_CITATION_IDS,
    )


def is_stale(citation_ids: Iterable[str], current_year: int) -> bool:
    return any(
        CITATION_CATALOG[citation_id].year <= current_year - 2
        for citation_id in citation_ids
        if citation_id in CITATION_CATALOG
    )


def build_plan(
    topic: str,
    risk: str | None,
    *,
    insurance: str | None = None,
    body_area: str | None = None,
    current_year: int,
) -> Plan:
    """Build the self-care plan for a topic at a given risk.

    A possible fracture is always escalated whatever risk was passed in. The
    stale flag marks plans citing sources two or more years old; it is
    informational only.
    """
    topic = topic if topic in _TOPIC_CONTENT else "generic"
    resolved_risk = "escalate" if topic == "possible fracture" else plan_risk(risk)
    content = _TOPIC_CONTENT[topic]

    extra_self, extra_watch = _body_area_adjustments(topic, body_area)
    self_care = _extend(content["self_care"], extra_self)
    watch_outs = _extend(content["watch_outs"], extra_watch)
    after_care: tuple[PlanLine, ...] = content["after_care"]
    coverage = build_coverage(topic, resolved_risk, insurance)

    used: list[str] = []
    for citation_id in [line.citation_id for line in (*self_care, *watch_outs, *after_care)] + list(
        coverage.citation_ids
    ):
        if citation_id not in used:
            used.append(citation_id)

    return Plan(
        topic=topic,
        risk=resolved_risk,
        summary=content["summary"],
        self_care=self_care,
        watch_outs=watch_outs,
        after_care=after_care,
        coverage=coverage,
        citations_used=tuple(used),
        stale=is_stale(used, current_year),
        citations=tuple(CITATION_CATALOG[citation_id] for citation_id in used if citation_id in CITATION_CATALOG),
    )
