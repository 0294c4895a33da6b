from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .models import CareOption, Citation, InsightCard, PlaceReview
from .risk import normalize_risk

log = logging.getLogger(__name__)


def extract_json_object(raw_text: str) -> dict[str, Any] | None:
    text = (raw_text or "").strip()
    if not text:
        return None
    try:
        payload = json.loads(text)
        if isinstance(payload, dict):
            return payload
    except json.JSONDecodeError:
        pass

    for start_idx in [idx for idx, char in enumerate(text) if char == "{"]:
        depth = 0
        for end_idx in range(start_idx, len(text)):
            char = text[end_idx]
            if char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
            if depth == 0:
                try:
                    payload = json.loads(text[start_idx : end_idx + 1])
                    if isinstance(payload, dict):
                        return payload
                except json.JSONDecodeError:
                    break
    return None


def _keep_valid(model: type[BaseModel], items: Any, label: str) -> list[BaseModel]:
    if not isinstance(items, list):
        return []
    kept: list[BaseModel] = []
    for item in items:
        try:
            kept.append(model.model_validate(item))
        except ValidationError as exc:
            log.debug("dropping malformed %s entry: %s", label, exc.error_count())
    return kept


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CitationIn(_Lenient):
    title: str = ""
    url: str
    source: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        return "" if value is None else str(value)

    def to_core(self) -> Citation:
        return Citation(title=self.title or self.url, url=self.url, source=self.source)


class InsightIn(_Lenient):
    id: str = Field(default_factory=lambda: f"card_{uuid.uuid4().hex[:8]}")
    title: str = "Note"
    body: str = ""
    why: list[str] = Field(default_factory=list)
    next: list[str] = Field(default_factory=list)
    citations: list[CitationIn] = Field(default_factory=list)
    confidence: float | None = None
    urgency: str | None = None
    timestamp: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        return text or f"card_{uuid.uuid4().hex[:8]}"

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        return text or "Note"

    @field_validator("body", mode="before")
    @classmethod
    def _body(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("urgency", "timestamp", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value).strip() or None

    @field_validator("why", "next", mode="before")
    @classmethod
    def _strings(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item).strip() for item in value if isinstance(item, (str, int, float)) and str(item).strip()]

    @field_validator("citations", mode="before")
    @classmethod
    def _citations(cls, value: Any) -> list[CitationIn]:
        return _keep_valid(CitationIn, value, "citation")

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence(cls, value: Any) -> float | None:
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    def to_core(self) -> InsightCard:
        return InsightCard(
            id=self.id,
            title=self.title,
            body=self.body,
            why=tuple(self.why),
            next=tuple(self.next),
            citations=tuple(citation.to_core() for citation in self.citations),
            confidence=self.confidence,
            urgency=self.urgency,
            timestamp=self.timestamp,
        )


class ReviewIn(_Lenient):
    url: str
    source: str | None = None
    quote: str | None = None
    author: str | None = None
    rating: float | None = None
    date: str | None = None


class PlaceIn(_Lenient):
    id: str = Field(default_factory=lambda: f"place_{uuid.uuid4().hex[:8]}")
    name: str
    rating: float | None = None
    reviews: int | None = None
    distance_km: float | None = Field(default=None, validation_alias=AliasChoices("distance_km", "distanceKm"))
    price: str | None = None
    est_cost_min: float | None = Field(default=None, validation_alias=AliasChoices("est_cost_min", "estCostMin"))
    est_cost_max: float | None = Field(default=None, validation_alias=AliasChoices("est_cost_max", "estCostMax"))
    review_citation: ReviewIn | None = Field(
        default=None,
        validation_alias=AliasChoices("review_citation", "reviewCitation", "reviewCite"),
    )
    score_sources: list[CitationIn] = Field(
        default_factory=list,
        validation_alias=AliasChoices("score_sources", "scoreSources"),
    )
    address: str | None = None
    phone: str | None = None
    url: str | None = None
    maps: str | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id(cls, value: Any) -> str:
        text = str(value).strip() if value is not None else ""
        return text or f"place_{uuid.uuid4().hex[:8]}"

    @field_validator("price", "address", "phone", "url", "maps", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        if value is None:
            return None
        return str(value).strip() or None

    @field_validator("rating", "distance_km", "est_cost_min", "est_cost_max", mode="before")
    @classmethod
    def _number(cls, value: Any) -> float | None:
        try:
            return float(value) if value not in (None, "") else None
        except (TypeError, ValueError):
            return None

    @field_validator("reviews", mode="before")
    @classmethod
    def _count(cls, value: Any) -> int | None:
        try:
            return int(float(value)) if value not in (None, "") else None
        except (TypeError, ValueError):
            return None

    @field_validator("review_citation", mode="before")
    @classmethod
    def _review(cls, value: Any) -> Any:
        return value if isinstance(value, dict) and value.get("url") else None

    @field_validator("score_sources", mode="before")
    @classmethod
    def _sources(cls, value: Any) -> list[CitationIn]:
        return _keep_valid(CitationIn, value, "score source")

    def to_core(self) -> CareOption:
        review = self.review_citation
        return CareOption(
            id=self.id,
            name=self.name,
            rating=self.rating,
            reviews=self.reviews,
            distance_km=self.distance_km,
            price=self.price,
            est_cost_min=self.est_cost_min,
            est_cost_max=self.est_cost_max,
            review_citation=PlaceReview(**review.model_dump()) if review else None,
            score_sources=tuple(source.to_core() for source in self.score_sources),
            address=self.address,
            phone=self.phone,
            url=self.url,
            maps=self.maps,
        )


class ModelReply(_Lenient):
    """Structured reply from the conversational model.

    Every field is optional. Malformed list entries are dropped one by one so
    a single bad card never sinks the rest of the reply.
    """

    text: str = Field(default="", validation_alias=AliasChoices("text", "reply"))
    citations: list[CitationIn] = Field(default_factory=list)
    risk: str | None = None
    insights: list[InsightIn] = Field(default_factory=list)
    places: list[PlaceIn] = Field(default_factory=list)
    ref_images: list[str] = Field(default_factory=list, validation_alias=AliasChoices("refImages", "ref_images"))
    script_draft: str | None = Field(default=None, validation_alias=AliasChoices("scriptDraft", "script_draft"))
    approved: bool | None = None
    consented: bool | None = None
    clinic_name: str | None = Field(default=None, validation_alias=AliasChoices("clinicName", "clinic_name"))
    clinic_phone: str | None = Field(default=None, validation_alias=AliasChoices("clinicPhone", "clinic_phone"))

    @model_validator(mode="before")
    @classmethod
    def _plan_delta_risk(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("risk"):
            delta = data.get("planDelta")
            if isinstance(delta, dict) and delta.get("risk"):
                data = {**data, "risk": delta["risk"]}
        return data

    @field_validator("text", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("risk", mode="before")
    @classmethod
    def _risk(cls, value: Any) -> str | None:
        return normalize_risk(value)

    @field_validator("citations", mode="before")
    @classmethod
    def _citations(cls, value: Any) -> list[CitationIn]:
        return _keep_valid(CitationIn, value, "citation")

    @field_validator("insights", mode="before")
    @classmethod
    def _insights(cls, value: Any) -> list[InsightIn]:
        return _keep_valid(InsightIn, value, "insight")

    @field_validator("places", mode="before")
    @classmethod
    def _places(cls, value: Any) -> list[PlaceIn]:
        return _keep_valid(PlaceIn, value, "place")

    @field_validator("ref_images", mode="before")
    @classmethod
    def _images(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str) and item.strip()]

    @field_validator("approved", "consented", mode="before")
    @classmethod
    def _flag(cls, value: Any) -> bool | None:
        return value if isinstance(value, bool) else None

    @field_validator("script_draft", "clinic_name", "clinic_phone", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str | None:
        if not isinstance(value, str):
            return None
        return value.strip() or None

    def core_citations(self) -> list[Citation]:
        return [citation.to_core() for citation in self.citations]

    def core_insights(self) -> list[InsightCard]:
        return [card.to_core() for card in self.insights]

    def core_places(self) -> list[CareOption]:
        return [place.to_core() for place in self.places]


def parse_model_reply(raw_text: str) -> ModelReply:
    """Validate raw model output; prose that is not JSON becomes the reply text."""
    payload = extract_json_object(raw_text)
    if payload is None:
        return ModelReply(text=(raw_text or "").strip())
    return ModelReply.model_validate(payload)
