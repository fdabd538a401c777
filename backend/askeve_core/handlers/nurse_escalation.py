from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from ..escalation import CONSENT_TYPE, EscalationSubflow, SubflowOutcome, stage_for_step
from ..models import TOPIC_NURSE_ESCALATION, ConversationState, HandlerResult
from ..registry import TopicDescriptor, intent_rule
from .base import KeywordTopicHandler

if TYPE_CHECKING:
    from ..context import TurnContext

logger = logging.getLogger(__name__)

DESCRIPTOR = TopicDescriptor(
    id=TOPIC_NURSE_ESCALATION,
    display_name="Speak to a nurse",
    description="Arranges a callback from The Eve Appeal's specialist nurses.",
    keywords=("nurse", "callback", "call back", "specialist", "human", "real person"),
    intent_rules=(
        intent_rule(
            r"\b(?:speak|talk|chat)\s+(?:to|with)\s+(?:a |an |the |someone |somebody )?"
            r"(?:nurse|specialist|human|person|someone|somebody|professional)\b",
            0.9,
            "speak_to_nurse",
        ),
        intent_rule(r"\b(?:can|could) (?:someone|somebody|a nurse) (?:call|contact|ring) me\b", 0.85, "callback_request"),
        intent_rule(r"\b(?:real|actual) (?:person|human)\b", 0.8, "human_request"),
        intent_rule(r"\b(?:nurse|call back|callback)\b", 0.7, "nurse_mention"),
        intent_rule(r"^2$", 0.8, "menu_choice"),
    ),
    supported_stages=frozenset(
        {
            "topic_detection",
            "information_gathering",
            "providing_information",
            "consent_capture",
            "contact_collection",
            "escalation",
        }
    ),
    requires_consent=True,
    can_escalate=True,
    priority=9,
    consent_type=CONSENT_TYPE,
)


class NurseEscalationHandler(KeywordTopicHandler):
    descriptor = DESCRIPTOR

    def __init__(self, subflow: EscalationSubflow) -> None:
        self.subflow = subflow

    def match_confidence(self, message: str, state: ConversationState) -> float:
        if state.active_subflow is not None:
            return 1.0
        return super().match_confidence(message, state)

    def preempt(self, message: str, state: ConversationState, context: "TurnContext") -> HandlerResult | None:
        active = state.active_subflow
        if active is None:
            return None
        outcome = self.subflow.interrupt(active, message)
        if outcome is None:
            return None
        return self.apply_outcome(context, outcome)

    def handle(self, message: str, state: ConversationState, context: "TurnContext") -> HandlerResult:
        decision = context.compliance
        override = bool(decision and decision.action == "override")
        renewal = bool(decision and decision.renewal)
        on_file = bool(decision and decision.code == "consent_on_file")

        active = state.active_subflow
        if active is None:
            outcome = self.subflow.start(
                message,
                vital_interests=override,
                renewal=renewal,
                consent_on_file=on_file,
            )
        else:
            if override and not active.vital_interests:
                active = replace(active, vital_interests=True)
            if renewal and not active.renewal:
                active = replace(active, renewal=True)
            outcome = self.subflow.advance(active, message, context)
        return self.apply_outcome(context, outcome)

    def apply_outcome(self, context: "TurnContext", outcome: SubflowOutcome) -> HandlerResult:
        previous = context.turn.state.subflow
        stage = stage_for_step(outcome.context.step) if outcome.context.is_active else "topic_detection"
        self.move_to(context, stage)
        changes = {"subflow": outcome.context}
        if outcome.contact_info is not None:
            changes["contact_info"] = outcome.contact_info
        context.turn.update(**changes)
        if previous is None or previous.step != outcome.context.step:
            logger.info(
                "Escalation step escalation_id=%s %s -> %s",
                outcome.context.escalation_id,
                previous.step if previous is not None else "none",
                outcome.context.step,
            )
        return self.reply(
            context,
            outcome.reply,
            outcome.suggested_actions,
            escalation_triggered=outcome.escalation_triggered,
        )

    def on_crisis(self, message: str, state: ConversationState, context: "TurnContext", *, seed: bool) -> bool:
        """Apply a crisis turn to the subflow; returns True when a callback offer was opened."""
        active = state.active_subflow
        if active is not None:
            if self.subflow.is_timed_out(active):
                self.apply_outcome(context, self.subflow.expire(active))
            else:
                context.turn.update(subflow=replace(active, vital_interests=True))
                return False
        if not seed:
            return False
        outcome = self.subflow.start(message, trigger_type="crisis", vital_interests=True)
        self.move_to(context, stage_for_step(outcome.context.step))
        context.turn.update(subflow=outcome.context)
        return True
