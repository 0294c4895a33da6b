from __future__ import annotations

import json
import logging
from typing import Any

import httpx

from concierge_core.citations import DEFAULT_ALLOWED_DOMAINS
from concierge_core.errors import MalformedResponse, UpstreamUnavailable
from concierge_core.settings import ConciergeSettings

log = logging.getLogger(__name__)

SYSTEM_PROMPT = " ".join(
    [
        "You are Stella, a medical triage and care-navigation assistant. Be concise, warm, and safety-first.",
        "Always reply as a single JSON object with keys: text, citations, risk, insights, places, "
        "scriptDraft, approved, consented, clinicName, clinicPhone.",
        'risk is one of "low", "moderate", "severe".',
        "insights = [{id, title, body, why, next, citations}]; citations = [{title, url, source}].",
        f"Citations MUST come only from: {', '.join(DEFAULT_ALLOWED_DOMAINS)}.",
        "Primary job: understand symptoms, assess risk, and suggest safe next steps. "
        "Ask brief clarifying questions before strong recommendations.",
        "When the user is ready for concrete next steps, offer to draft a call script for a nearby clinic. "
        "First ask which clinic to call (name, city, phone if known).",
        "Put the full script in scriptDraft, written as the patient speaking to clinic staff. "
        "Then ask whether it looks right and revise until the user approves.",
        "Set approved=true only when the user approves the wording. Then ask separately for consent to place "
        "the call and share the script with the clinic; set consented=true only after they agree.",
        "If location is needed to suggest venues, ask for a US ZIP code and explain why.",
    ]
)


def provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


def json_chat(
    settings: ConciergeSettings,
    messages: list[dict[str, Any]],
    *,
    service: str,
    temperature: float = 0.2,
    timeout_seconds: float | None = None,
) -> str:
    """POST an OpenAI-compatible chat completion in JSON mode, return raw content."""
    if settings.disable_external:
        raise UpstreamUnavailable(service, "external calls disabled")
    if not settings.openai_api_key:
        raise UpstreamUnavailable(service, "OpenAI API key is not configured")

    payload = {
        "model": settings.chat_model,
        "temperature": temperature,
        "response_format": {"type": "json_object"},
        "messages": messages,
    }
    headers = {
        "Authorization": f"Bearer {settings.openai_api_key}",
        "Content-Type": "application/json",
    }
    timeout = timeout_seconds or settings.chat_timeout_seconds
    try:
        with httpx.Client(timeout=httpx.Timeout(timeout, connect=8.0)) as client:
            response = client.post(f"{settings.openai_base_url}/chat/completions", headers=headers, json=payload)
    except httpx.HTTPError as exc:
        raise UpstreamUnavailable(service, str(exc) or exc.__class__.__name__) from exc
    if response.status_code >= 400:
        raise UpstreamUnavailable(service, provider_error_message(response))
    try:
        completion = response.json()
    except ValueError as exc:
        raise MalformedResponse(f"{service}: completion body is not JSON") from exc
    if not isinstance(completion, dict):
        raise MalformedResponse(f"{service}: completion body is not an object")
    return coerce_completion_text(completion).strip()


class ConversationalModel:
    def __init__(self, settings: ConciergeSettings) -> None:
        self.settings = settings

    def complete(self, history: list[dict[str, str]], context: dict[str, Any]) -> str:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "system", "content": f"Episode context: {json.dumps(context, sort_keys=True)}"},
        ]
        messages.extend({"role": item["role"], "content": item["content"]} for item in history)
        raw = json_chat(self.settings, messages, service="model")
        if not raw:
            log.warning("model returned an empty completion")
        return raw
