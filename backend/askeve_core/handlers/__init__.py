from __future__ import annotations

from ..escalation import EscalationSubflow
from ..registry import TopicHandlerRegistry
from .base import KeywordTopicHandler, normalize_message
from .conversation_start import ConversationStartHandler
from .end_of_conversation import EndOfConversationHandler
from .health_information import HealthInformationHandler
from .nurse_escalation import NurseEscalationHandler
from .support_options import SupportOptionsHandler
from .unclear_intent import UnclearIntentHandler


def register_default_handlers(registry: TopicHandlerRegistry, *, subflow: EscalationSubflow) -> NurseEscalationHandler:
    nurse = NurseEscalationHandler(subflow)
    start = ConversationStartHandler()
    registry.register(start.descriptor, start, role="start")
    registry.register(nurse.descriptor, nurse)
    for handler in (EndOfConversationHandler(), HealthInformationHandler(), SupportOptionsHandler()):
        registry.register(handler.descriptor, handler)
    unclear = UnclearIntentHandler()
    registry.register(unclear.descriptor, unclear, role="unclear")
    return nurse


__all__ = [
    "ConversationStartHandler",
    "EndOfConversationHandler",
    "HealthInformationHandler",
    "KeywordTopicHandler",
    "NurseEscalationHandler",
    "SupportOptionsHandler",
    "UnclearIntentHandler",
    "normalize_message",
    "register_default_handlers",
]
