from __future__ import annotations

import logging
from typing import Any, Sequence

import httpx

from concierge_core.citations import citation_host, filter_allowed, rank_by_authority
from concierge_core.errors import MalformedResponse, UpstreamUnavailable
from concierge_core.models import Citation
from concierge_core.schemas import extract_json_object
from concierge_core.settings import ConciergeSettings

from .model_client import json_chat

log = logging.getLogger(__name__)

TAVILY_URL = "https://api.tavily.com/search"
MAX_CITATIONS = 6


def _to_citations(rows: Any) -> list[Citation]:
    if not isinstance(rows, list):
        return []
    citations: list[Citation] = []
    for row in rows:
        if not isinstance(row, dict) or not row.get("url"):
            continue
        url = str(row["url"]).strip()
        citations.append(
            Citation(
                title=str(row.get("title") or url),
                url=url,
                source=str(row.get("source") or citation_host(url)) or None,
            )
        )
    return citations


class CitationBackfill:
    """Finds trusted sources for an uncited claim.

    Tavily is tried first when a key is configured, then an OpenAI JSON
    prompt. Results are always re-filtered against the allow-list.
    """

    def __init__(self, settings: ConciergeSettings) -> None:
        self.settings = settings

    def __call__(self, text: str, allowed: Sequence[str]) -> list[Citation]:
        return self.find(text, allowed)

    def find(self, text: str, allowed: Sequence[str]) -> list[Citation]:
        query = " ".join((text or "").split())[:400]
        if not query or self.settings.disable_external:
            return []

        found: list[Citation] = []
        if self.settings.tavily_api_key:
            try:
                found = self._tavily(query, allowed)
            except UpstreamUnavailable as exc:
                log.warning("tavily backfill failed: %s", exc)
        if not found and self.settings.openai_api_key:
            found = self._openai(query, allowed)
        return rank_by_authority(filter_allowed(found, allowed), limit=MAX_CITATIONS)

    def _tavily(self, query: str, allowed: Sequence[str]) -> list[Citation]:
        try:
            response = httpx.post(
                TAVILY_URL,
                json={
                    "api_key": self.settings.tavily_api_key,
                    "query": query,
                    "include_domains": list(allowed),
                    "search_depth": "basic",
                    "max_results": 8,
                },
                timeout=self.settings.web_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable("tavily", str(exc) or exc.__class__.__name__) from exc
        if not response.content:
            return []
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailable("tavily", "response body is not JSON") from exc
        if not isinstance(payload, dict):
            raise UpstreamUnavailable("tavily", f"unexpected {type(payload).__name__} body")
        return _to_citations(payload.get("results"))

    def _openai(self, query: str, allowed: Sequence[str]) -> list[Citation]:
        system = (
            "Return 3-6 citations as JSON ONLY: {\"citations\": [{title, url, source}]}. "
            f"URLs must be real pages from these domains ONLY: {', '.join(allowed)}. "
            "Prefer patient-facing guidance or evidence summaries. No homepages. "
            "If unsure, do not invent links."
        )
        messages = [
            {"role": "system", "content": system},
            {"role": "user", "content": f'Provide citations for: "{query}"'},
        ]
        try:
            raw = json_chat(self.settings, messages, service="citation-backfill", timeout_seconds=self.settings.web_timeout_seconds)
        except MalformedResponse as exc:
            raise UpstreamUnavailable("citation-backfill", str(exc)) from exc
        payload = extract_json_object(raw) or {}
        rows = payload.get("citations") or payload.get("items") or payload.get("results")
        return _to_citations(rows)
