from __future__ import annotations

import logging

import httpx

from concierge_core.models import CallScript
from concierge_core.settings import ConciergeSettings

log = logging.getLogger(__name__)


class CallingClient:
    """Hands an approved script to the outbound calling service.

    The service places the call on its own; only acceptance is reported back.
    """

    def __init__(self, settings: ConciergeSettings) -> None:
        self.settings = settings

    def start_call(self, script: CallScript) -> bool:
        if not script.clinic_phone:
            log.warning("script %s has no clinic phone on file", script.id)
            return False
        if self.settings.disable_external or not self.settings.call_endpoint:
            log.info("calling disabled; script %s not dialed", script.id)
            return False
        try:
            response = httpx.post(
                self.settings.call_endpoint,
                json={"scriptId": script.id, "to": script.clinic_phone, "clinicName": script.clinic_name},
                timeout=self.settings.web_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            log.warning("start call failed script=%s: %s", script.id, exc)
            return False
        return True
