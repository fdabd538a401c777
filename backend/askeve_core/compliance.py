from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from memory.time_utils import to_iso, utc_now

from . import responses
from .audit import AuditSink, record_policy_event
from .errors import ExternalServiceError
from .models import ConversationState, SafetyResult
from .registry import TopicDescriptor
from .settings import CONSENT_ABSENT_POLICIES

if TYPE_CHECKING:
    from .context import GDPRService

logger = logging.getLogger(__name__)

DEFAULT_CONSENT_TYPE = "nurse_callback"


@dataclass(frozen=True)
class ComplianceDecision:
    action: str
    status: str
    code: str
    legal_basis: str | None = None
    message: str | None = None

    @property
    def allowed(self) -> bool:
        return self.action not in {"degrade", "block"}

    @property
    def renewal(self) -> bool:
        return self.action == "renew"


class ComplianceGate:
    """Arbitrates consent for handlers that collect personal data.

    A crisis on the current turn, or within the recency window, overrides the
    consent requirement under vital interests, but only for topics that can
    escalate to a human. Every override is written to the audit sink.
    """

    def __init__(
        self,
        gdpr: "GDPRService",
        *,
        audit: AuditSink | None = None,
        absent_policy: str = "enter_consent",
        crisis_recency_seconds: int = 600,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if absent_policy not in CONSENT_ABSENT_POLICIES:
            raise ValueError(f"Unknown absent-consent policy: {absent_policy}")
        self.gdpr = gdpr
        self.audit = audit
        self.absent_policy = absent_policy
        self.crisis_recency = timedelta(seconds=crisis_recency_seconds)
        self.clock = clock

    def check(self, user_id: str, consent_type: str) -> str:
        try:
            status = self.gdpr.get_consent_status(user_id, consent_type)
        except ExternalServiceError:
            raise
        except Exception as exc:
            raise ExternalServiceError("gdpr", f"consent lookup failed: {exc}") from exc
        return status.state

    def crisis_in_window(self, state: ConversationState, safety: SafetyResult | None) -> bool:
        if safety is not None and safety.is_crisis:
            return True
        if state.last_crisis_at is None:
            return False
        return self.clock() - state.last_crisis_at <= self.crisis_recency

    def evaluate(
        self,
        descriptor: TopicDescriptor,
        state: ConversationState,
        safety: SafetyResult | None,
    ) -> ComplianceDecision:
        if not descriptor.requires_consent:
            return ComplianceDecision("proceed", "not_required", "consent_not_required")

        consent_type = descriptor.consent_type or DEFAULT_CONSENT_TYPE
        subflow = state.active_subflow
        if subflow is not None and subflow.consent_given:
            return ComplianceDecision("proceed", "granted", "session_consent", legal_basis="consent")

        if descriptor.can_escalate and self.crisis_in_window(state, safety):
            self._record_override(descriptor, state, safety, consent_type)
            return ComplianceDecision("override", "bypassed", "vital_interests_override", legal_basis="vital_interests")

        status = self.check(state.user_id, consent_type)
        if status == "granted":
            return ComplianceDecision("proceed", "granted", "consent_on_file", legal_basis="consent")
        if status == "expired":
            return ComplianceDecision("renew", "expired", "consent_expired")
        if self.absent_policy == "degrade":
            return ComplianceDecision("degrade", "absent", "consent_absent_degraded", message=responses.CONSENT_DEGRADED)
        if self.absent_policy == "block":
            return ComplianceDecision("block", "absent", "consent_absent_blocked", message=responses.CONSENT_BLOCKED)
        return ComplianceDecision("enter_consent", "absent", "consent_required")

    def _record_override(
        self,
        descriptor: TopicDescriptor,
        state: ConversationState,
        safety: SafetyResult | None,
        consent_type: str,
    ) -> None:
        current_turn = bool(safety is not None and safety.is_crisis)
        logger.warning(
            "Vital-interests override applied conversation_id=%s topic=%s current_turn=%s",
            state.conversation_id,
            descriptor.id,
            current_turn,
        )
        record_policy_event(
            self.audit,
            user_id=state.user_id,
            session_key=state.session_id,
            event_type="vital_interests_override",
            topic=descriptor.id,
            details={
                "conversation_id": state.conversation_id,
                "consent_type": consent_type,
                "legal_basis": "vital_interests",
                "current_turn_crisis": current_turn,
                "matched_label": safety.matched_label if safety is not None else None,
                "last_crisis_at": to_iso(state.last_crisis_at) if state.last_crisis_at else None,
            },
        )
