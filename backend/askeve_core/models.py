from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from memory.time_utils import to_iso


STAGES = {
    "greeting",
    "topic_detection",
    "information_gathering",
    "providing_information",
    "consent_capture",
    "contact_collection",
    "escalation",
    "completion",
}
SUBFLOW_STAGES = {"consent_capture", "contact_collection", "escalation"}

ESCALATION_STEPS = {
    "none",
    "consent",
    "name",
    "contact_method",
    "contact_details",
    "confirmation",
    "completed",
    "cancelled",
    "timeout",
}
TERMINAL_STEPS = {"completed", "cancelled", "timeout"}
SEVERITIES = ("high", "medium", "low")

TOPIC_CONVERSATION_START = "conversation_start"
TOPIC_HEALTH_INFORMATION = "health_information_router"
TOPIC_NURSE_ESCALATION = "nurse_escalation_handler"
TOPIC_SUPPORT_OPTIONS = "support_options_overview"
TOPIC_END_OF_CONVERSATION = "end_of_conversation"
TOPIC_UNCLEAR_INTENT = "unclear_intent"
TOPIC_CRISIS_SUPPORT = "crisis_support_routing"


def _iso(value: datetime | None) -> str | None:
    return to_iso(value) if value is not None else None


@dataclass(frozen=True)
class ContactInfo:
    name: str | None = None
    phone: str | None = None
    email: str | None = None
    preferred_method: str | None = None

    @property
    def is_empty(self) -> bool:
        return not any((self.name, self.phone, self.email, self.preferred_method))

    def as_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "preferred_method": self.preferred_method,
        }


@dataclass(frozen=True)
class ChatMessage:
    role: str
    text: str
    timestamp: datetime
    topic: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"role": self.role, "text": self.text, "timestamp": to_iso(self.timestamp), "topic": self.topic}


@dataclass(frozen=True)
class EscalationContext:
    """Subflow context for a nurse callback request.

    Only ever held on ``ConversationState.subflow``; any other subflow kind
    would get its own context class rather than extra optional fields here.
    """

    escalation_id: str
    start_time: datetime
    step: str = "none"
    is_active: bool = True
    trigger_type: str = "user_request"
    priority: str = "low"
    reason: str = ""
    consent_given: bool = False
    legal_basis: str | None = None
    vital_interests: bool = False
    renewal: bool = False
    user_name: str | None = None
    contact_method: str | None = None
    contact_details: str | None = None
    timeout_warning: bool = False
    delivery_failed: bool = False
    event_id: str | None = None
    steps: tuple[str, ...] = ("none",)

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": "escalation",
            "escalation_id": self.escalation_id,
            "step": self.step,
            "is_active": self.is_active,
            "trigger_type": self.trigger_type,
            "priority": self.priority,
            "reason": self.reason,
            "start_time": to_iso(self.start_time),
            "consent_given": self.consent_given,
            "legal_basis": self.legal_basis,
            "vital_interests": self.vital_interests,
            "renewal": self.renewal,
            "user_name": self.user_name,
            "contact_method": self.contact_method,
            "contact_details": self.contact_details,
            "timeout_warning": self.timeout_warning,
            "delivery_failed": self.delivery_failed,
            "event_id": self.event_id,
            "steps": list(self.steps),
        }


Subflow = EscalationContext | None


@dataclass(frozen=True)
class ConversationState:
    conversation_id: str
    user_id: str
    session_id: str
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    current_topic: str | None = None
    current_stage: str = "greeting"
    has_seen_opening_statement: bool = False
    conversation_started: bool = False
    conversation_ended: bool = False
    contact_info: ContactInfo = field(default_factory=ContactInfo)
    subflow: Subflow = None
    history: tuple[ChatMessage, ...] = ()
    topics_visited: tuple[str, ...] = ()
    message_count: int = 0
    last_crisis_at: datetime | None = None
    version: int = 0

    @property
    def active_subflow(self) -> EscalationContext | None:
        if self.subflow is not None and self.subflow.is_active:
            return self.subflow
        return None

    def as_dict(self) -> dict[str, Any]:
        return {
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "current_topic": self.current_topic,
            "current_stage": self.current_stage,
            "has_seen_opening_statement": self.has_seen_opening_statement,
            "conversation_started": self.conversation_started,
            "conversation_ended": self.conversation_ended,
            "contact_info": self.contact_info.as_dict(),
            "subflow": self.subflow.as_dict() if self.subflow is not None else None,
            "history": [message.as_dict() for message in self.history],
            "topics_visited": list(self.topics_visited),
            "message_count": self.message_count,
            "last_crisis_at": _iso(self.last_crisis_at),
            "created_at": to_iso(self.created_at),
            "last_activity_at": to_iso(self.last_activity_at),
            "expires_at": to_iso(self.expires_at),
            "version": self.version,
        }


@dataclass(frozen=True)
class SafetyResult:
    is_crisis: bool
    severity: str = "low"
    matched_label: str | None = None
    category: str | None = None
    elapsed_ms: float = 0.0
    fault: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "is_crisis": self.is_crisis,
            "severity": self.severity,
            "matched_label": self.matched_label,
            "category": self.category,
            "elapsed_ms": round(self.elapsed_ms, 3),
            "fault": self.fault,
        }


@dataclass(frozen=True)
class ConsentRecord:
    user_id: str
    consent_type: str
    purpose: str
    data_categories: tuple[str, ...]
    legal_basis: str
    timestamp: datetime
    capture_method: str = "chat_interface"
    granted: bool = True


@dataclass(frozen=True)
class ConsentStatus:
    granted: bool
    expired: bool = False
    recorded_at: datetime | None = None

    @property
    def state(self) -> str:
        if self.granted and not self.expired:
            return "granted"
        if self.expired:
            return "expired"
        return "absent"


@dataclass(frozen=True)
class ContentSnippet:
    title: str
    summary: str
    source_url: str | None = None
    score: float = 0.0


@dataclass(frozen=True)
class EscalationEvent:
    event_id: str
    user_id: str
    session_id: str
    message: str
    severity: str
    created_at: datetime
    trigger_type: str = "user_request"
    priority: str = "low"
    safety_label: str | None = None
    contact_name: str | None = None
    contact_method: str | None = None
    contact_details: str | None = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "message": self.message,
            "severity": self.severity,
            "created_at": to_iso(self.created_at),
            "trigger_type": self.trigger_type,
            "priority": self.priority,
            "safety_label": self.safety_label,
            "contact": {
                "name": self.contact_name,
                "method": self.contact_method,
                "details": self.contact_details,
            },
        }


@dataclass(frozen=True)
class DeliveryAck:
    delivered: bool
    channel: str
    reference: str | None = None


@dataclass(frozen=True)
class TransitionResult:
    ok: bool
    state: ConversationState
    error: Exception | None = None


@dataclass
class FlowResponse:
    text: str
    suggested_actions: list[str] = field(default_factory=list)


@dataclass
class HandlerResult:
    response: FlowResponse
    new_state: ConversationState
    escalation_triggered: bool = False
    conversation_ended: bool = False


@dataclass
class FlowResult:
    response: FlowResponse
    new_state: ConversationState | None
    escalation_triggered: bool = False
    conversation_ended: bool = False
    topic: str | None = None
    safety: SafetyResult | None = None

    def as_envelope(self) -> dict[str, Any]:
        return {
            "response": {
                "text": self.response.text,
                "suggested_actions": list(self.response.suggested_actions),
            },
            "state": self.new_state.as_dict() if self.new_state is not None else None,
            "escalation_triggered": self.escalation_triggered,
            "conversation_ended": self.conversation_ended,
            "topic": self.topic,
        }
