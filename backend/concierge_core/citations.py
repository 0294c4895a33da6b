from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence
from urllib.parse import urlsplit

from .errors import UpstreamUnavailable
from .models import Citation

log = logging.getLogger(__name__)

DEFAULT_ALLOWED_DOMAINS = (
    "nih.gov",
    "medlineplus.gov",
    "cdc.gov",
    "who.int",
    "nice.org.uk",
    "mayoclinic.org",
    "aafp.org",
    "cochranelibrary.com",
)

# Authority weights for ordering backfilled citations; unknown domains get 5.
DOMAIN_WEIGHTS = (
    ("medlineplus.gov", 9.0),
    ("nih.gov", 8.5),
    ("cdc.gov", 8.2),
    ("who.int", 7.9),
    ("nice.org.uk", 7.7),
    ("mayoclinic.org", 7.4),
    ("aafp.org", 7.2),
    ("cochranelibrary.com", 7.1),
)

ADVISORY_TEXT = (
    "Some parts of this might not be fully citation-backed. "
    "Treat this as education, not a diagnosis."
)
CLARIFY_TEXT = (
    "I want to make sure anything I tell you is backed by a trusted source, and I couldn't find one for that. "
    "Could you tell me a bit more about what's going on so I can answer more precisely?"
)

BackfillFn = Callable[[str, Sequence[str]], Iterable[Citation]]

_SENTENCE_BREAK = re.compile(r"[.!] ")


def citation_host(url: str | None) -> str:
    if not url:
        return ""
    try:
        parts = urlsplit(str(url).strip())
        host = (parts.hostname or "").lower()
    except ValueError:
        return ""
    if not parts.scheme or not host:
        return ""
    return host[4:] if host.startswith("www.") else host


def citation_identity(url: str) -> str:
    """Normalized URL: lowercase host without ``www.``, rest as given."""
    parts = urlsplit(url.strip())
    rest = parts.path or ""
    if parts.query:
        rest += f"?{parts.query}"
    if parts.fragment:
        rest += f"#{parts.fragment}"
    return f"{citation_host(url)}{rest}"


def host_allowed(host: str, allowed: Iterable[str]) -> bool:
    return any(host == domain or host.endswith(f".{domain}") for domain in allowed)


def filter_allowed(
    citations: Iterable[Citation] | None,
    allowed: Sequence[str] = DEFAULT_ALLOWED_DOMAINS,
) -> list[Citation]:
    seen: set[str] = set()
    kept: list[Citation] = []
    for citation in citations or []:
        if not citation or not citation.url:
            continue
        host = citation_host(citation.url)
        if not host or not host_allowed(host, allowed):
            continue
        identity = citation_identity(citation.url)
        if identity in seen:
            continue
        seen.add(identity)
        kept.append(citation)
    return kept


def domain_weight(url: str) -> float:
    host = citation_host(url)
    for domain, weight in DOMAIN_WEIGHTS:
        if host == domain or host.endswith(f".{domain}"):
            return weight
    return 5.0


def rank_by_authority(citations: Iterable[Citation], limit: int = 6) -> list[Citation]:
    ordered = sorted(citations, key=lambda citation: domain_weight(citation.url), reverse=True)
    return ordered[:limit]


def is_declarative(text: str | None) -> bool:
    cleaned = (text or "").strip()
    if not cleaned:
        return False
    return not cleaned.endswith("?") or bool(_SENTENCE_BREAK.search(cleaned))


@dataclass(frozen=True)
class EvidencePolicy:
    lock: bool = True
    mode: str = "soft"
    allowed_domains: tuple[str, ...] = DEFAULT_ALLOWED_DOMAINS

    @property
    def strict(self) -> bool:
        return self.mode == "strict"


@dataclass(frozen=True)
class GateDecision:
    citations: tuple[Citation, ...] = ()
    code: str = "ok"
    advisory: str | None = None
    withheld: bool = False
    backfilled: bool = False


def gate_reply(
    text: str | None,
    citations: Iterable[Citation] | None,
    policy: EvidencePolicy,
    backfill: BackfillFn | None = None,
) -> GateDecision:
    """Filter reply citations and enforce the evidence lock.

    Backfill is attempted at most once. In soft mode a miss yields an advisory,
    in strict mode the reply is withheld and a clarification is requested.
    """
    kept = filter_allowed(citations, policy.allowed_domains)
    if kept or not policy.lock or not is_declarative(text):
        return GateDecision(citations=tuple(kept))

    if backfill is not None:
        try:
            recovered = filter_allowed(backfill(text or "", policy.allowed_domains), policy.allowed_domains)
        except UpstreamUnavailable as exc:
            log.warning("citation backfill unavailable: %s", exc)
            recovered = []
        if recovered:
            return GateDecision(citations=tuple(recovered), code="backfilled", backfilled=True)

    if policy.strict:
        return GateDecision(code="clarification_required", advisory=CLARIFY_TEXT, withheld=True)
    return GateDecision(code="advisory", advisory=ADVISORY_TEXT)
