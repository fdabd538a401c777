from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable

import httpx

from askeve_core.errors import ExternalServiceError
from askeve_core.models import DeliveryAck, EscalationEvent, SafetyResult
from memory.time_utils import utc_now

logger = logging.getLogger(__name__)

_THEME_COLOURS = {"high": "D13438", "medium": "FFB900", "low": "0078D4"}


class NurseTeamNotifier:
    """Hands callback requests to the nurse team.

    Posts a message card to the configured webhook. Without a webhook the request
    is only logged, which keeps local runs working.
    """

    def __init__(
        self,
        *,
        webhook_url: str | None = None,
        timeout: float = 8.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.webhook_url = (webhook_url or "").strip() or None
        self.timeout = timeout
        self.clock = clock

    def create_event(
        self,
        user_id: str,
        session_id: str,
        message: str,
        safety_result: SafetyResult | None,
    ) -> EscalationEvent:
        crisis = bool(safety_result and safety_result.is_crisis)
        return EscalationEvent(
            event_id=uuid.uuid4().hex,
            user_id=user_id,
            session_id=session_id,
            message=(message or "")[:280],
            severity=safety_result.severity if crisis and safety_result else "routine",
            created_at=self.clock(),
            safety_label=safety_result.matched_label if crisis and safety_result else None,
        )

    def notify_team(self, event: EscalationEvent) -> DeliveryAck:
        if not self.webhook_url:
            logger.info(
                "Nurse webhook not configured; callback request logged event_id=%s priority=%s",
                event.event_id,
                event.priority,
            )
            return DeliveryAck(delivered=True, channel="log", reference=event.event_id)

        try:
            response = httpx.post(self.webhook_url, json=self._card(event), timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ExternalServiceError("nurse_notifier", str(exc)) from exc
        return DeliveryAck(
            delivered=True,
            channel="webhook",
            reference=response.headers.get("x-request-id") or event.event_id,
        )

    def _card(self, event: EscalationEvent) -> dict[str, Any]:
        title = "Crisis support alert" if event.trigger_type == "crisis" else "Nurse callback request"
        facts = [
            {"name": "Priority", "value": event.priority},
            {"name": "Trigger", "value": event.trigger_type},
            {"name": "Name", "value": event.contact_name or "-"},
            {"name": "Contact method", "value": event.contact_method or "-"},
            {"name": "Contact details", "value": event.contact_details or "-"},
            {"name": "Session", "value": event.session_id},
        ]
        if event.safety_label:
            facts.append({"name": "Safety signal", "value": event.safety_label})
        return {
            "@type": "MessageCard",
            "@context": "https://schema.org/extensions",
            "summary": title,
            "themeColor": _THEME_COLOURS.get(event.priority, _THEME_COLOURS["low"]),
            "sections": [{"activityTitle": title, "text": event.message, "facts": facts}],
            "event": event.as_payload(),
        }

    def health_check(self) -> bool:
        return True
