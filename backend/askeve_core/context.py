from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol

from .audit import AuditSink, record_policy_event
from .compliance import ComplianceDecision
from .models import ConsentRecord, ConsentStatus, ContentSnippet, DeliveryAck, EscalationEvent, SafetyResult
from .settings import FlowSettings
from .state import ConversationTurn


class ContentService(Protocol):
    def search(self, query: str, *, limit: int = 3) -> list[ContentSnippet]: ...


class EscalationService(Protocol):
    def create_event(
        self,
        user_id: str,
        session_id: str,
        message: str,
        safety_result: SafetyResult | None,
    ) -> EscalationEvent: ...

    def notify_team(self, event: EscalationEvent) -> DeliveryAck: ...


class GDPRService(Protocol):
    def get_consent_status(self, user_id: str, consent_type: str) -> ConsentStatus: ...

    def record_consent(self, user_id: str, record: ConsentRecord) -> None: ...


@dataclass
class FlowServices:
    content: ContentService
    escalation: EscalationService
    gdpr: GDPRService
    audit: AuditSink | None = None


@dataclass
class TurnContext:
    conversation_id: str
    user_id: str
    session_id: str
    request_id: str
    message: str
    settings: FlowSettings
    services: FlowServices
    turn: ConversationTurn
    safety: SafetyResult
    clock: Callable[[], datetime]
    compliance: ComplianceDecision | None = None

    def now(self) -> datetime:
        return self.clock()

    def audit(self, event_type: str, topic: str | None, details: dict[str, Any]) -> None:
        record_policy_event(
            self.services.audit,
            user_id=self.user_id,
            session_key=self.session_id,
            event_type=event_type,
            topic=topic,
            details={"conversation_id": self.conversation_id, **details},
        )
