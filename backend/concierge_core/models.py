from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


RISK_LEVELS = ("low", "moderate", "severe")
RISK_RANK = {level: idx for idx, level in enumerate(RISK_LEVELS)}
TASK_STATUSES = ("todo", "doing", "done")
STAGES = ("intake", "triage", "plan", "actions", "wrap")


def _str_or_none(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _float_or_none(value: Any) -> float | None:
    try:
        if value is None or value == "":
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Citation:
    title: str
    url: str
    source: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"title": self.title, "url": self.url, "source": self.source}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Citation":
        return cls(
            title=str(data.get("title") or ""),
            url=str(data.get("url") or ""),
            source=_str_or_none(data.get("source")),
        )


@dataclass(frozen=True)
class InsightCard:
    id: str
    title: str
    body: str = ""
    why: tuple[str, ...] = ()
    next: tuple[str, ...] = ()
    citations: tuple[Citation, ...] = ()
    confidence: float | None = None
    urgency: str | None = None
    timestamp: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "why": list(self.why),
            "next": list(self.next),
            "citations": [citation.as_dict() for citation in self.citations],
            "confidence": self.confidence,
            "urgency": self.urgency,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "InsightCard":
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            body=str(data.get("body") or ""),
            why=tuple(str(item) for item in data.get("why") or []),
            next=tuple(str(item) for item in data.get("next") or []),
            citations=tuple(Citation.from_dict(item) for item in data.get("citations") or []),
            confidence=_float_or_none(data.get("confidence")),
            urgency=_str_or_none(data.get("urgency")),
            timestamp=_str_or_none(data.get("timestamp")),
        )


@dataclass(frozen=True)
class PlaceReview:
    url: str
    source: str | None = None
    quote: str | None = None
    author: str | None = None
    rating: float | None = None
    date: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class CareOption:
    id: str
    name: str
    rating: float | None = None
    reviews: int | None = None
    distance_km: float | None = None
    price: str | None = None
    est_cost_min: float | None = None
    est_cost_max: float | None = None
    review_citation: PlaceReview | None = None
    score_sources: tuple[Citation, ...] = ()
    address: str | None = None
    phone: str | None = None
    url: str | None = None
    maps: str | None = None
    venue_type: str | None = None
    # Derived on every ranking pass.
    score: float | None = None
    reason: str | None = None
    notes: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "rating": self.rating,
            "reviews": self.reviews,
            "distance_km": self.distance_km,
            "price": self.price,
            "est_cost_min": self.est_cost_min,
            "est_cost_max": self.est_cost_max,
            "review_citation": self.review_citation.as_dict() if self.review_citation else None,
            "score_sources": [citation.as_dict() for citation in self.score_sources],
            "address": self.address,
            "phone": self.phone,
            "url": self.url,
            "maps": self.maps,
            "venue_type": self.venue_type,
            "score": self.score,
            "reason": self.reason,
            "notes": list(self.notes),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CareOption":
        review = data.get("review_citation")
        reviews = _float_or_none(data.get("reviews"))
        return cls(
            id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            rating=_float_or_none(data.get("rating")),
            reviews=int(reviews) if reviews is not None else None,
            distance_km=_float_or_none(data.get("distance_km")),
            price=_str_or_none(data.get("price")),
            est_cost_min=_float_or_none(data.get("est_cost_min")),
            est_cost_max=_float_or_none(data.get("est_cost_max")),
            review_citation=PlaceReview(**review) if isinstance(review, dict) and review.get("url") else None,
            score_sources=tuple(Citation.from_dict(item) for item in data.get("score_sources") or []),
            address=_str_or_none(data.get("address")),
            phone=_str_or_none(data.get("phone")),
            url=_str_or_none(data.get("url")),
            maps=_str_or_none(data.get("maps")),
            venue_type=_str_or_none(data.get("venue_type")),
        )


@dataclass(frozen=True)
class Task:
    id: str
    title: str
    status: str = "todo"
    created_at: str = ""
    updated_at: str = ""
    due: str | None = None
    notes: str | None = None
    linked_place_id: str | None = None
    linked_insight_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        status = str(data.get("status") or "todo")
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            status=status if status in TASK_STATUSES else "todo",
            created_at=str(data.get("created_at") or ""),
            updated_at=str(data.get("updated_at") or data.get("created_at") or ""),
            due=_str_or_none(data.get("due")),
            notes=_str_or_none(data.get("notes")),
            linked_place_id=_str_or_none(data.get("linked_place_id")),
            linked_insight_id=_str_or_none(data.get("linked_insight_id")),
        )


@dataclass(frozen=True)
class ChatMessage:
    id: str
    role: str
    text: str
    citations: tuple[Citation, ...] = ()
    advisory: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "citations": [citation.as_dict() for citation in self.citations],
            "advisory": self.advisory,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(data.get("id") or ""),
            role=str(data.get("role") or "assistant"),
            text=str(data.get("text") or ""),
            citations=tuple(Citation.from_dict(item) for item in data.get("citations") or []),
            advisory=_str_or_none(data.get("advisory")),
        )


@dataclass(frozen=True)
class CallScript:
    id: str
    user_id: str
    clinic_name: str
    script_text: str
    approved_at: str
    clinic_phone: str | None = None
    status: str = "approved"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConsentRecord:
    script_id: str
    text: str
    created_at: str
    type: str = "outbound_call"

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ScriptWorkflow:
    state: str = "no_script"
    draft_text: str | None = None
    clinic_name: str | None = None
    clinic_phone: str | None = None
    approved: bool = False
    consented: bool = False
    revision: int = 0
    script_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScriptWorkflow":
        known = {key: data[key] for key in cls.__dataclass_fields__ if key in data}
        return cls(**known)


@dataclass(frozen=True)
class Episode:
    messages: tuple[ChatMessage, ...] = ()
    risk: str = "low"
    risk_trail: tuple[str, ...] = ()
    insights: tuple[InsightCard, ...] = ()
    places: tuple[CareOption, ...] = ()
    tasks: tuple[Task, ...] = ()
    evidence_lock: bool = True
    zip: str | None = None
    stage: str = "intake"
    topic: str | None = None
    script: ScriptWorkflow = field(default_factory=ScriptWorkflow)

    def snapshot(self) -> dict[str, Any]:
        return {
            "messages": [message.as_dict() for message in self.messages],
            "risk": self.risk,
            "riskTrail": list(self.risk_trail),
            "insights": [card.as_dict() for card in self.insights],
            "places": [place.as_dict() for place in self.places],
            "zip": self.zip,
            "evidenceLock": self.evidence_lock,
            "stage": self.stage,
            "topic": self.topic,
            "script": self.script.as_dict(),
        }

    def as_dict(self) -> dict[str, Any]:
        payload = self.snapshot()
        payload["tasks"] = [task.as_dict() for task in self.tasks]
        return payload

    @classmethod
    def from_snapshot(cls, data: dict[str, Any], tasks: list[Task] | None = None) -> "Episode":
        risk = str(data.get("risk") or "low")
        stage = str(data.get("stage") or "intake")
        return cls(
            messages=tuple(ChatMessage.from_dict(item) for item in data.get("messages") or []),
            risk=risk if risk in RISK_RANK else "low",
            risk_trail=tuple(str(item) for item in data.get("riskTrail") or [] if item in RISK_RANK),
            insights=tuple(InsightCard.from_dict(item) for item in data.get("insights") or []),
            places=tuple(CareOption.from_dict(item) for item in data.get("places") or []),
            tasks=tuple(tasks or ()),
            evidence_lock=bool(data.get("evidenceLock", True)),
            zip=_str_or_none(data.get("zip")),
            stage=stage if stage in STAGES else "intake",
            topic=_str_or_none(data.get("topic")),
            script=ScriptWorkflow.from_dict(data.get("script") or {}),
        )
