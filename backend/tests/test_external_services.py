from __future__ import annotations

import re
from dataclasses import replace
from typing import Any

import httpx
import pytest

from concierge_core.errors import MalformedResponse, UpstreamUnavailable
from concierge_core.models import CallScript
from concierge_core.settings import ConciergeSettings
from concierge_services import CallingClient, CitationBackfill, ConversationalModel, NearbyCareSearch
from concierge_services.nearby import RawPlace, fallback_options, haversine_km

ALLOWED = ("cdc.gov", "nih.gov", "medlineplus.gov")
SETTINGS = ConciergeSettings(db_path=":memory:", openai_api_key="sk-test", tavily_api_key="tv-test")


class _FakeResponse:
    def __init__(self, *, status_code: int = 200, json_data: Any = None, text: str = "", url: str = "https://example.test") -> None:
        self.status_code = status_code
        self._json_data = json_data
        self.text = text
        self.url = url
        self.content = b"1"

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPStatusError(
                "error", request=httpx.Request("GET", self.url), response=httpx.Response(self.status_code)
            )

    def json(self) -> Any:
        if isinstance(self._json_data, Exception):
            raise self._json_data
        return self._json_data


class _FakeClient:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts: list[dict[str, Any]] = []

    def __call__(self, *args, **kwargs):
        return self

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def post(self, url, **kwargs):
        self.posts.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


def _completion(content: Any) -> dict[str, Any]:
    return {"choices": [{"message": {"content": content}}]}


def _element(idx: int, name: str, lat: float, lon: float, **tags: str) -> dict[str, Any]:
    return {"id": idx, "lat": lat, "lon": lon, "tags": {"name": name, **tags}}


def test_model_sends_context_and_history(monkeypatch):
    fake = _FakeClient(_FakeResponse(json_data=_completion('{"text": "Hello"}')))
    monkeypatch.setattr("concierge_services.model_client.httpx.Client", fake)

    raw = ConversationalModel(SETTINGS).complete([{"role": "user", "content": "hi"}], {"risk": "low"})

    assert raw == '{"text": "Hello"}'
    body = fake.posts[0]["json"]
    assert fake.posts[0]["url"].endswith("/chat/completions")
    assert body["response_format"] == {"type": "json_object"}
    assert body["messages"][1]["content"] == 'Episode context: {"risk": "low"}'
    assert body["messages"][-1] == {"role": "user", "content": "hi"}


def test_model_joins_content_parts(monkeypatch):
    parts = [{"type": "text", "text": "one"}, {"type": "text", "text": "two"}, "ignored"]
    monkeypatch.setattr(
        "concierge_services.model_client.httpx.Client", _FakeClient(_FakeResponse(json_data=_completion(parts)))
    )
    assert ConversationalModel(SETTINGS).complete([], {}) == "one\ntwo"


@pytest.mark.parametrize(
    "fake",
    [
        _FakeClient(_FakeResponse(status_code=429, json_data={"error": {"message": "rate limited"}})),
        _FakeClient(error=httpx.ConnectTimeout("timed out")),
    ],
)
def test_model_upstream_errors(monkeypatch, fake):
    monkeypatch.setattr("concierge_services.model_client.httpx.Client", fake)
    with pytest.raises(UpstreamUnavailable):
        ConversationalModel(SETTINGS).complete([], {})


def test_model_error_message_comes_from_provider(monkeypatch):
    fake = _FakeClient(_FakeResponse(status_code=401, json_data={"error": {"message": "bad key"}}))
    monkeypatch.setattr("concierge_services.model_client.httpx.Client", fake)
    with pytest.raises(UpstreamUnavailable, match="bad key"):
        ConversationalModel(SETTINGS).complete([], {})


def test_model_non_json_body_is_malformed(monkeypatch):
    fake = _FakeClient(_FakeResponse(json_data=ValueError("not json")))
    monkeypatch.setattr("concierge_services.model_client.httpx.Client", fake)
    with pytest.raises(MalformedResponse):
        ConversationalModel(SETTINGS).complete([], {})


def test_model_requires_key_and_external_access():
    with pytest.raises(UpstreamUnavailable):
        ConversationalModel(replace(SETTINGS, openai_api_key="")).complete([], {})
    with pytest.raises(UpstreamUnavailable):
        ConversationalModel(replace(SETTINGS, disable_external=True)).complete([], {})


def test_backfill_prefers_tavily_and_filters(monkeypatch):
    def fake_post(url, **kwargs):
        assert url == "https://api.tavily.com/search"
        assert kwargs["json"]["include_domains"] == list(ALLOWED)
        return _FakeResponse(
            json_data={
                "results": [
                    {"title": "Blog", "url": "https://health-blog.example.com/cuts"},
                    {"title": "CDC", "url": "https://www.cdc.gov/wounds"},
                    {"title": "MedlinePlus", "url": "https://medlineplus.gov/cuts.html"},
                    {"title": "No url"},
                ]
            }
        )

    monkeypatch.setattr("concierge_services.citation_backfill.httpx.post", fake_post)
    citations = CitationBackfill(SETTINGS)("Rinse the cut with clean water.", ALLOWED)
    assert [citation.title for citation in citations] == ["MedlinePlus", "CDC"]
    assert citations[1].source == "cdc.gov"


def test_backfill_falls_back_to_openai_when_tavily_fails(monkeypatch):
    def failing_post(url, **kwargs):
        return _FakeResponse(status_code=500, url=url)

    monkeypatch.setattr("concierge_services.citation_backfill.httpx.post", failing_post)
    content = '{"citations": [{"title": "NIH", "url": "https://www.nih.gov/cuts"}, {"title": "x", "url": "https://evil.test"}]}'
    monkeypatch.setattr(
        "concierge_services.model_client.httpx.Client", _FakeClient(_FakeResponse(json_data=_completion(content)))
    )
    citations = CitationBackfill(SETTINGS).find("Rinse the cut.", ALLOWED)
    assert [citation.url for citation in citations] == ["https://www.nih.gov/cuts"]


def test_backfill_disabled_returns_nothing():
    assert CitationBackfill(replace(SETTINGS, disable_external=True)).find("Rinse it.", ALLOWED) == []
    assert CitationBackfill(SETTINGS).find("   ", ALLOWED) == []


def test_nearby_walks_radius_ladder_and_dedupes(monkeypatch):
    settings = replace(SETTINGS, disable_external=False)
    radii: list[int] = []

    def fake_get(url, **kwargs):
        assert kwargs["params"]["postalcode"] == "15213"
        return _FakeResponse(json_data=[{"lat": "40.4406", "lon": "-79.9959"}])

    def fake_post(url, **kwargs):
        radius = int(re.search(r"around:(\d+),", kwargs["content"]).group(1))
        radii.append(radius)
        if radius == 7000:
            elements = [_element(i, f"Clinic {i}", 40.44 + i / 1000, -79.99) for i in range(4)]
            elements.append(_element(99, "Clinic 0", 40.44, -79.99))
        else:
            elements = [_element(i, f"Clinic {i}", 40.44 + i / 1000, -79.99) for i in range(11)]
            elements.append({"id": 500, "tags": {"name": "No coordinates"}})
        return _FakeResponse(json_data={"elements": elements})

    monkeypatch.setattr("concierge_services.nearby.httpx.get", fake_get)
    monkeypatch.setattr("concierge_services.nearby.httpx.post", fake_post)

    options = NearbyCareSearch(settings).search("15213")
    assert radii == [7000, 12000]
    assert len(options) == 11
    assert len({option.name for option in options}) == 11
    distances = [option.distance_km for option in options]
    assert distances == sorted(distances)
    assert all(option.score_sources and option.maps for option in options)


def test_nearby_types_venues_from_tags(monkeypatch):
    def fake_get(url, **kwargs):
        return _FakeResponse(json_data=[{"lat": "40.0", "lon": "-80.0"}])

    def fake_post(url, **kwargs):
        return _FakeResponse(
            json_data={
                "elements": [
                    _element(1, "Mercy", 40.01, -80.0, amenity="hospital"),
                    _element(2, "Quick Care", 40.02, -80.0, amenity="clinic", healthcare="urgent_care"),
                    _element(3, "Family Practice", 40.03, -80.0, amenity="clinic", phone="+14125550100"),
                ]
            }
        )

    monkeypatch.setattr("concierge_services.nearby.httpx.get", fake_get)
    monkeypatch.setattr("concierge_services.nearby.httpx.post", fake_post)
    options = NearbyCareSearch(SETTINGS).search("15213")
    assert [(option.name, option.venue_type, option.price) for option in options] == [
        ("Mercy", "er", "$$$"),
        ("Quick Care", "urgent", "$$"),
        ("Family Practice", "clinic", "$"),
    ]
    assert options[2].phone == "+14125550100"


def test_nearby_unknown_zip_and_disabled_use_fallback(monkeypatch):
    monkeypatch.setattr("concierge_services.nearby.httpx.get", lambda url, **kwargs: _FakeResponse(json_data=[]))
    options = NearbyCareSearch(SETTINGS).search("00000")
    assert [option.venue_type for option in options] == ["er", "urgent"]
    assert NearbyCareSearch(replace(SETTINGS, disable_external=True)).search("15213") == fallback_options("15213")


def test_nearby_geocoder_outage_raises(monkeypatch):
    monkeypatch.setattr(
        "concierge_services.nearby.httpx.get", lambda url, **kwargs: _FakeResponse(status_code=503, url=url)
    )
    with pytest.raises(UpstreamUnavailable):
        NearbyCareSearch(SETTINGS).search("15213")


@pytest.mark.parametrize("body", [ValueError("<html>busy</html>"), {"lat": "40.0"}])
def test_nearby_geocoder_bad_body_raises(monkeypatch, body):
    monkeypatch.setattr("concierge_services.nearby.httpx.get", lambda url, **kwargs: _FakeResponse(json_data=body))
    with pytest.raises(UpstreamUnavailable, match="geocoding"):
        NearbyCareSearch(SETTINGS).search("15213")


def test_nearby_overpass_html_on_first_radius_raises(monkeypatch):
    monkeypatch.setattr(
        "concierge_services.nearby.httpx.get",
        lambda url, **kwargs: _FakeResponse(json_data=[{"lat": "40.0", "lon": "-80.0"}]),
    )
    monkeypatch.setattr(
        "concierge_services.nearby.httpx.post",
        lambda url, **kwargs: _FakeResponse(json_data=ValueError("<html>rate limited</html>")),
    )
    with pytest.raises(UpstreamUnavailable, match="not JSON"):
        NearbyCareSearch(SETTINGS).search("15213")


@pytest.mark.parametrize(
    "failure", [_FakeResponse(status_code=504), _FakeResponse(json_data=ValueError("<html>rate limited</html>"))]
)
def test_nearby_keeps_candidates_when_wider_radius_fails(monkeypatch, failure):
    radii: list[int] = []
    monkeypatch.setattr(
        "concierge_services.nearby.httpx.get",
        lambda url, **kwargs: _FakeResponse(json_data=[{"lat": "40.44", "lon": "-79.99"}]),
    )

    def fake_post(url, **kwargs):
        radius = int(re.search(r"around:(\d+),", kwargs["content"]).group(1))
        radii.append(radius)
        if radius == 7000:
            return _FakeResponse(
                json_data={"elements": [_element(i, f"Clinic {i}", 40.44 + i / 1000, -79.99) for i in range(4)]}
            )
        return failure

    monkeypatch.setattr("concierge_services.nearby.httpx.post", fake_post)
    options = NearbyCareSearch(SETTINGS).search("15213")
    assert radii == [7000, 12000]
    assert [option.name for option in options] == [f"Clinic {i}" for i in range(4)]


def test_backfill_non_object_tavily_body_falls_back_to_openai(monkeypatch):
    monkeypatch.setattr(
        "concierge_services.citation_backfill.httpx.post", lambda url, **kwargs: _FakeResponse(json_data=["unexpected"])
    )
    content = '{"citations": [{"title": "NIH", "url": "https://www.nih.gov/cuts"}]}'
    monkeypatch.setattr(
        "concierge_services.model_client.httpx.Client", _FakeClient(_FakeResponse(json_data=_completion(content)))
    )
    citations = CitationBackfill(SETTINGS).find("Rinse the cut.", ALLOWED)
    assert [citation.url for citation in citations] == ["https://www.nih.gov/cuts"]


@pytest.mark.parametrize("body", [["unexpected"], ValueError("<html>rate limited</html>")])
def test_backfill_bad_tavily_body_without_openai_returns_nothing(monkeypatch, body):
    monkeypatch.setattr(
        "concierge_services.citation_backfill.httpx.post", lambda url, **kwargs: _FakeResponse(json_data=body)
    )
    assert CitationBackfill(replace(SETTINGS, openai_api_key="")).find("Rinse the cut.", ALLOWED) == []


def test_dedupe_key_and_distance():
    place = RawPlace(osm_id="1", name="Oak Clinic", lat=40.123456789, lon=-79.9)
    assert place.dedupe_key == "oak clinic@40.12346,-79.90000"
    assert haversine_km(40.0, -80.0, 40.0, -80.0) == 0.0
    assert 110 < haversine_km(40.0, -80.0, 41.0, -80.0) < 112


def _script(phone: str | None = "+14125550100") -> CallScript:
    return CallScript(id="s1", user_id="u", clinic_name="Oak", script_text="Hi", approved_at="t", clinic_phone=phone)


def test_calling_client_posts_script(monkeypatch):
    posted = []

    def fake_post(url, **kwargs):
        posted.append((url, kwargs["json"]))
        return _FakeResponse()

    monkeypatch.setattr("concierge_services.calling.httpx.post", fake_post)
    client = CallingClient(replace(SETTINGS, call_endpoint="https://calls.test/start"))
    assert client.start_call(_script()) is True
    assert posted == [("https://calls.test/start", {"scriptId": "s1", "to": "+14125550100", "clinicName": "Oak"})]


def test_calling_client_reports_false_without_endpoint_or_phone(monkeypatch):
    monkeypatch.setattr(
        "concierge_services.calling.httpx.post", lambda url, **kwargs: _FakeResponse(status_code=500, url=url)
    )
    assert CallingClient(SETTINGS).start_call(_script()) is False
    configured = CallingClient(replace(SETTINGS, call_endpoint="https://calls.test/start"))
    assert configured.start_call(_script(phone=None)) is False
    assert configured.start_call(_script()) is False
