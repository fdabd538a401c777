from .compliance import ComplianceDecision, ComplianceGate
from .context import FlowServices, TurnContext
from .engine import ConversationFlowEngine, create_engine
from .errors import (
    ExternalServiceError,
    FlowError,
    SafetyGateError,
    StaleStateError,
    TransitionError,
    ValidationError,
)
from .escalation import EscalationSubflow
from .hooks import HookRunner
from .models import (
    ESCALATION_STEPS,
    STAGES,
    TERMINAL_STEPS,
    ConsentRecord,
    ConsentStatus,
    ContactInfo,
    ContentSnippet,
    ConversationState,
    DeliveryAck,
    EscalationContext,
    EscalationEvent,
    FlowResponse,
    FlowResult,
    SafetyResult,
)
from .registry import IntentRule, TopicDescriptor, TopicHandlerRegistry, intent_rule
from .safety import SafetyGate
from .selector import TopicSelector
from .settings import FlowSettings
from .state import ConversationStateManager

__all__ = [
    "ESCALATION_STEPS",
    "STAGES",
    "TERMINAL_STEPS",
    "ComplianceDecision",
    "ComplianceGate",
    "ConsentRecord",
    "ConsentStatus",
    "ContactInfo",
    "ContentSnippet",
    "ConversationFlowEngine",
    "ConversationState",
    "ConversationStateManager",
    "DeliveryAck",
    "EscalationContext",
    "EscalationEvent",
    "EscalationSubflow",
    "ExternalServiceError",
    "FlowError",
    "FlowResponse",
    "FlowResult",
    "FlowServices",
    "FlowSettings",
    "HookRunner",
    "IntentRule",
    "SafetyGate",
    "SafetyGateError",
    "SafetyResult",
    "StaleStateError",
    "TopicDescriptor",
    "TopicHandlerRegistry",
    "TopicSelector",
    "TransitionError",
    "TurnContext",
    "ValidationError",
    "create_engine",
    "intent_rule",
]
