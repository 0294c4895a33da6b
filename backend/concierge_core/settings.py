from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


def _flag(name: str, default: str = "false") -> bool:
    return (os.getenv(name) or default).strip().lower() in {"1", "true", "yes", "on"}


def _number(name: str, default: float) -> float:
    try:
        return float(os.getenv(name) or default)
    except ValueError:
        return default


@dataclass(frozen=True)
class ConciergeSettings:
    db_path: str
    allow_anon: bool = False
    allowed_origins: tuple[str, ...] = ("http://localhost:3000",)
    disable_external: bool = False
    evidence_mode: str = "soft"
    evidence_lock: bool = True
    handoff_delay_seconds: float = 1.2
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    chat_model: str = "gpt-4o-mini"
    tavily_api_key: str = ""
    call_endpoint: str = ""
    chat_timeout_seconds: float = 30.0
    web_timeout_seconds: float = 8.0

    @classmethod
    def from_env(cls) -> "ConciergeSettings":
        default_db = str(Path(__file__).resolve().parents[1] / "concierge.sqlite")
        mode = (os.getenv("CONCIERGE_EVIDENCE_MODE") or "soft").strip().lower()
        origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
        return cls(
            db_path=os.getenv("CONCIERGE_DB_PATH", default_db),
            allow_anon=_flag("ALLOW_ANON"),
            allowed_origins=tuple(origin.strip() for origin in origins if origin.strip()),
            disable_external=_flag("CONCIERGE_DISABLE_EXTERNAL"),
            evidence_mode=mode if mode in {"soft", "strict"} else "soft",
            evidence_lock=_flag("CONCIERGE_EVIDENCE_LOCK", "true"),
            handoff_delay_seconds=_number("CONCIERGE_HANDOFF_DELAY_SECONDS", 1.2),
            openai_api_key=(os.getenv("OPENAI_API_KEY") or "").strip(),
            openai_base_url=(os.getenv("OPENAI_API_BASE_URL") or "https://api.openai.com/v1").strip().rstrip("/"),
            chat_model=(os.getenv("CONCIERGE_CHAT_MODEL") or "gpt-4o-mini").strip(),
            tavily_api_key=(os.getenv("TAVILY_API_KEY") or "").strip(),
            call_endpoint=(os.getenv("CONCIERGE_CALL_ENDPOINT") or "").strip(),
            chat_timeout_seconds=_number("CONCIERGE_CHAT_TIMEOUT_SECONDS", 30.0),
            web_timeout_seconds=_number("CONCIERGE_WEB_TIMEOUT_SECONDS", 8.0),
        )
