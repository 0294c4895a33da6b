from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import quote_plus

import httpx

from concierge_core.care_options import venue_price, venue_type_for
from concierge_core.errors import UpstreamUnavailable
from concierge_core.models import CareOption, Citation, PlaceReview
from concierge_core.settings import ConciergeSettings

log = logging.getLogger(__name__)

NOMINATIM_URL = "https://nominatim.openstreetmap.org/search"
OVERPASS_URL = "https://overpass-api.de/api/interpreter"
USER_AGENT = "care-concierge/1.0 (care triage)"
RADIUS_LADDER_M = (7000, 12000, 20000)
MIN_CANDIDATES = 10
PER_RADIUS_LIMIT = 25


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    radius_km = 6371.0
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(dlon / 2) ** 2
    )
    return radius_km * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def maps_search_url(name: str, zip_code: str | None = None) -> str:
    query = f"{name} {zip_code or ''}".strip()
    return f"https://www.google.com/maps/search/?api=1&query={quote_plus(query)}"


def _json_body(response: httpx.Response, service: str, shape: type) -> Any:
    if not response.content:
        return shape()
    try:
        payload = response.json()
    except ValueError as exc:
        raise UpstreamUnavailable(service, "response body is not JSON") from exc
    if not isinstance(payload, shape):
        raise UpstreamUnavailable(service, f"unexpected {type(payload).__name__} body")
    return payload


def _safe_float(value: Any) -> float | None:
    try:
        if value is None:
            return None
        return float(value)
    except (TypeError, ValueError):
        return None


@dataclass
class RawPlace:
    osm_id: str
    name: str
    lat: float
    lon: float
    tags: dict[str, str] = field(default_factory=dict)

    @property
    def dedupe_key(self) -> str:
        return f"{self.name.lower()}@{self.lat:.5f},{self.lon:.5f}"


def overpass_query(lat: float, lon: float, radius_m: int) -> str:
    return f"""
    [out:json][timeout:25];
    (
      node(around:{radius_m},{lat},{lon})["amenity"~"hospital|clinic"];
      node(around:{radius_m},{lat},{lon})["healthcare"~"hospital|clinic|doctor|urgent_care"];
    );
    out body {PER_RADIUS_LIMIT};
    """


def to_care_option(place: RawPlace, origin: tuple[float, float], zip_code: str | None) -> CareOption:
    venue = venue_type_for(place.name, place.tags.get("healthcare"), place.tags.get("amenity"))
    band, est_min, est_max, _ = venue_price(venue)
    maps = maps_search_url(place.name, zip_code)
    address = " ".join(
        part for part in (place.tags.get("addr:housenumber"), place.tags.get("addr:street"), place.tags.get("addr:city")) if part
    )
    return CareOption(
        id=f"osm-{place.osm_id}",
        name=place.name,
        distance_km=round(haversine_km(origin[0], origin[1], place.lat, place.lon), 2),
        price=band,
        est_cost_min=est_min,
        est_cost_max=est_max,
        review_citation=PlaceReview(url=maps, source="google.com"),
        score_sources=(Citation(title=f"{place.name} reviews", url=maps, source="google.com"),),
        address=address or None,
        phone=place.tags.get("phone") or place.tags.get("contact:phone"),
        url=place.tags.get("website"),
        maps=maps,
        venue_type=venue,
    )


def fallback_options(zip_code: str | None) -> list[CareOption]:
    """Emergency-capable placeholders pointing at a maps search."""
    options = []
    for idx, (name, venue) in enumerate(
        (("Nearest emergency department", "er"), ("Nearest urgent care center", "urgent"))
    ):
        band, est_min, est_max, _ = venue_price(venue)
        maps = maps_search_url(name.replace("Nearest ", ""), zip_code)
        options.append(
            CareOption(
                id=f"fallback-{idx}",
                name=name,
                price=band,
                est_cost_min=est_min,
                est_cost_max=est_max,
                review_citation=PlaceReview(url=maps, source="google.com"),
                score_sources=(Citation(title="Maps search", url=maps, source="google.com"),),
                maps=maps,
                venue_type=venue,
            )
        )
    return options


class NearbyCareSearch:
    def __init__(self, settings: ConciergeSettings) -> None:
        self.settings = settings

    def search(self, zip_code: str) -> list[CareOption]:
        if self.settings.disable_external:
            return fallback_options(zip_code)
        origin = self.geocode_zip(zip_code)
        if origin is None:
            log.info("zip %s did not geocode; using fallback options", zip_code)
            return fallback_options(zip_code)

        collected = self.collect(origin)
        if not collected:
            return fallback_options(zip_code)
        options = [to_care_option(place, origin, zip_code) for place in collected]
        return sorted(options, key=lambda option: option.distance_km if option.distance_km is not None else 999.0)

    def geocode_zip(self, zip_code: str) -> tuple[float, float] | None:
        try:
            response = httpx.get(
                NOMINATIM_URL,
                params={"format": "jsonv2", "countrycodes": "us", "postalcode": zip_code, "limit": 1},
                headers={"User-Agent": USER_AGENT},
                timeout=self.settings.web_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable("geocoding", str(exc) or exc.__class__.__name__) from exc

        rows = _json_body(response, "geocoding", list)
        if not rows or not isinstance(rows[0], dict):
            return None
        lat = _safe_float(rows[0].get("lat"))
        lon = _safe_float(rows[0].get("lon"))
        if lat is None or lon is None:
            return None
        return lat, lon

    def collect(self, origin: tuple[float, float]) -> list[RawPlace]:
        """Walk the radius ladder until enough unique candidates are found."""
        seen: set[str] = set()
        collected: list[RawPlace] = []
        for radius in RADIUS_LADDER_M:
            try:
                found = self._overpass(origin, radius)
            except UpstreamUnavailable as exc:
                if not collected:
                    raise
                log.warning("nearby ladder stopped at radius=%sm with %s candidates: %s", radius, len(collected), exc)
                break
            for place in found:
                if place.dedupe_key in seen:
                    continue
                seen.add(place.dedupe_key)
                collected.append(place)
            log.debug("nearby radius=%sm candidates=%s", radius, len(collected))
            if len(collected) >= MIN_CANDIDATES:
                break
        return collected

    def _overpass(self, origin: tuple[float, float], radius_m: int) -> list[RawPlace]:
        try:
            response = httpx.post(
                OVERPASS_URL,
                content=overpass_query(origin[0], origin[1], radius_m),
                headers={"Content-Type": "text/plain", "User-Agent": USER_AGENT, "Accept": "application/json"},
                timeout=self.settings.web_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable("nearby", str(exc) or exc.__class__.__name__) from exc

        payload = _json_body(response, "nearby", dict)
        elements = payload.get("elements")
        places: list[RawPlace] = []
        for element in elements or []:
            if not isinstance(element, dict):
                continue
            lat = _safe_float(element.get("lat"))
            lon = _safe_float(element.get("lon"))
            if lat is None or lon is None:
                continue
            tags = element.get("tags") if isinstance(element.get("tags"), dict) else {}
            places.append(
                RawPlace(
                    osm_id=str(element.get("id") or f"{lat:.5f},{lon:.5f}"),
                    name=str(tags.get("name") or "Unnamed facility"),
                    lat=lat,
                    lon=lon,
                    tags={str(key): str(value) for key, value in tags.items()},
                )
            )
        return places
