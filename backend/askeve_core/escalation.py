"""Nurse callback subflow.

The subflow is a small state machine over ``EscalationContext.step``. Every step
change goes through ``EscalationSubflow.advance_step`` which checks the transition
table and the consent guard; handlers never assign ``step`` directly. A failed
delivery keeps the step at ``confirmation`` and is marked inactive by
``EscalationSubflow.mark_delivery_failed``.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable

from memory.time_utils import utc_now

from . import responses
from .errors import TransitionError, ValidationError
from .models import TERMINAL_STEPS, ConsentRecord, ContactInfo, EscalationContext
from .validators import normalize_email, normalize_name, normalize_uk_phone, parse_contact_method

if TYPE_CHECKING:
    from .context import TurnContext

logger = logging.getLogger(__name__)

CONSENT_TYPE = "nurse_callback"
CONSENT_PURPOSE = "specialist_nurse_consultation"
CONSENT_DATA_CATEGORIES = ("contact_information", "health_inquiry")

_TRANSITIONS = {
    "none": {"consent"},
    "consent": {"name", "none", "cancelled", "timeout"},
    "name": {"contact_method", "cancelled", "timeout"},
    "contact_method": {"contact_details", "cancelled", "timeout"},
    "contact_details": {"confirmation", "cancelled", "timeout"},
    "confirmation": {"completed", "contact_method", "cancelled", "timeout"},
    "completed": set(),
    "cancelled": set(),
    "timeout": set(),
}
CONSENT_GUARDED_STEPS = {"contact_method", "contact_details", "confirmation"}

STEP_STAGES = {
    "consent": "consent_capture",
    "name": "contact_collection",
    "contact_method": "contact_collection",
    "contact_details": "contact_collection",
    "confirmation": "escalation",
}


def _patterns(*expressions: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(expression, re.IGNORECASE) for expression in expressions)


PHRASES: dict[str, tuple[re.Pattern[str], ...]] = {
    "cancel": _patterns(
        r"\b(?:cancel|stop|quit|exit|nevermind|never mind|forget it)\b",
        r"\bchanged?\s+my\s+mind\b",
    ),
    "positive": _patterns(
        r"^\s*(?:yes|yeah|yep|yup|ok|okay|sure|alright|fine|agree|consent|please)\b",
        r"\bi\s+(?:agree|consent|accept)\b",
        r"\b(?:go ahead|proceed|continue|happy to|that'?s fine|that is fine)\b",
    ),
    "decline": _patterns(
        r"^\s*(?:no|nope|nah|not now|maybe later)\b",
        r"\b(?:don'?t|do not)\s+(?:want|need|agree|consent)\b",
        r"\bi'?d\s+rather\s+not\b",
    ),
    "info_request": _patterns(
        r"\b(?:what|which)\s+(?:information|info|details|data)\b",
        r"\bwhy\s+do\s+you\s+need\b",
        r"\bwhat\s+will\s+you\s+(?:do|use)\b",
    ),
    "confirm": _patterns(
        r"^\s*(?:yes|yeah|yep|yup|ok|okay|sure|correct|right|confirm(?:ed)?)\b",
        r"\b(?:that'?s|that is|all)\s+(?:right|correct)\b",
        r"\blooks\s+(?:good|right)\b",
    ),
    "edit": _patterns(
        r"\b(?:change|edit|update|wrong|incorrect|mistake|fix)\b",
        r"^\s*no\b",
    ),
}

URGENCY_KEYWORDS = (
    ("high", ("urgent", "emergency", "worried", "scared", "pain", "bleeding")),
    ("medium", ("concerned", "anxious", "soon", "asap")),
)


def matches(kind: str, text: str) -> bool:
    return any(pattern.search(text or "") for pattern in PHRASES[kind])


def assess_urgency(message: str) -> str:
    lowered = (message or "").lower()
    for level, keywords in URGENCY_KEYWORDS:
        if any(re.search(rf"\b{keyword}\b", lowered) for keyword in keywords):
            return level
    return "low"


def stage_for_step(step: str) -> str:
    return STEP_STAGES.get(step, "topic_detection")


@dataclass
class SubflowOutcome:
    context: EscalationContext
    reply: str
    suggested_actions: list[str] = field(default_factory=list)
    contact_info: ContactInfo | None = None
    escalation_triggered: bool = False


class EscalationSubflow:
    def __init__(
        self,
        *,
        timeout_seconds: int = 15 * 60,
        warning_seconds: int = 3 * 60,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.timeout = timedelta(seconds=timeout_seconds)
        self.warning = timedelta(seconds=warning_seconds)
        self.clock = clock

    @staticmethod
    def advance_step(context: EscalationContext, next_step: str, **changes) -> EscalationContext:
        allowed_next = _TRANSITIONS.get(context.step, set())
        if next_step not in allowed_next:
            raise TransitionError(f"Invalid escalation transition: {context.step} -> {next_step}")
        consent_given = changes.get("consent_given", context.consent_given)
        if next_step in CONSENT_GUARDED_STEPS and not (consent_given or context.vital_interests):
            raise TransitionError(f"Consent required before {next_step}")
        is_active = next_step not in TERMINAL_STEPS and next_step != "none"
        return replace(
            context,
            step=next_step,
            is_active=is_active,
            steps=context.steps + (next_step,),
            **changes,
        )

    @staticmethod
    def mark_delivery_failed(context: EscalationContext, *, event_id: str | None) -> EscalationContext:
        if context.step != "confirmation" or not context.is_active:
            raise TransitionError(f"Delivery cannot fail from step {context.step}")
        return replace(context, is_active=False, delivery_failed=True, event_id=event_id)

    def start(
        self,
        message: str,
        *,
        trigger_type: str = "user_request",
        vital_interests: bool = False,
        renewal: bool = False,
        consent_on_file: bool = False,
    ) -> SubflowOutcome:
        priority = "high" if trigger_type == "crisis" else assess_urgency(message)
        context = EscalationContext(
            escalation_id=uuid.uuid4().hex,
            start_time=self.clock(),
            trigger_type=trigger_type,
            priority=priority,
            reason=(message or "")[:280],
            vital_interests=vital_interests,
            legal_basis="vital_interests" if vital_interests else None,
            renewal=renewal,
        )
        context = self.advance_step(context, "consent")
        logger.info(
            "Escalation started escalation_id=%s trigger=%s priority=%s",
            context.escalation_id,
            trigger_type,
            priority,
        )
        if consent_on_file:
            context = self.advance_step(context, "name", consent_given=True, legal_basis="consent")
            return SubflowOutcome(context, responses.ASK_NAME)
        prompt = responses.CONSENT_RENEWAL_PROMPT if renewal else responses.CONSENT_PROMPT
        return SubflowOutcome(context, prompt, ["Yes, that's fine", "No thanks", "What information do you need?"])

    def is_timed_out(self, context: EscalationContext) -> bool:
        return self.clock() - context.start_time > self.timeout

    def expire(self, context: EscalationContext) -> SubflowOutcome:
        expired = self.advance_step(
            context,
            "timeout",
            user_name=None,
            contact_method=None,
            contact_details=None,
        )
        logger.info("Escalation timed out escalation_id=%s at step=%s", context.escalation_id, context.step)
        return SubflowOutcome(expired, responses.ESCALATION_TIMEOUT, ["Speak to a nurse"], contact_info=ContactInfo())

    def cancel(self, context: EscalationContext) -> SubflowOutcome:
        cancelled = self.advance_step(
            context,
            "cancelled",
            user_name=None,
            contact_method=None,
            contact_details=None,
        )
        logger.info("Escalation cancelled escalation_id=%s at step=%s", context.escalation_id, context.step)
        return SubflowOutcome(cancelled, responses.ESCALATION_CANCELLED, ["Health information", "Support options"], contact_info=ContactInfo())

    def interrupt(self, context: EscalationContext, message: str) -> SubflowOutcome | None:
        """Timeout, then cancel. Both apply at any step, ahead of consent checks."""
        if not context.is_active:
            return None
        if self.is_timed_out(context):
            return self.expire(context)
        if matches("cancel", message):
            return self.cancel(context)
        return None

    def advance(self, context: EscalationContext, message: str, ctx: "TurnContext") -> SubflowOutcome:
        if not context.is_active:
            raise TransitionError(f"Escalation {context.escalation_id} is not active")
        interrupted = self.interrupt(context, message)
        if interrupted is not None:
            return interrupted

        step_handlers = {
            "consent": self._on_consent,
            "name": self._on_name,
            "contact_method": self._on_contact_method,
            "contact_details": self._on_contact_details,
            "confirmation": self._on_confirmation,
        }
        handler = step_handlers.get(context.step)
        if handler is None:
            raise TransitionError(f"No handler for escalation step {context.step}")
        outcome = handler(context, message, ctx)
        return self._with_timeout_warning(context, outcome)

    def _with_timeout_warning(self, before: EscalationContext, outcome: SubflowOutcome) -> SubflowOutcome:
        current = outcome.context
        if not current.is_active or before.timeout_warning:
            return outcome
        if self.clock() - current.start_time < self.timeout - self.warning:
            return outcome
        outcome.context = replace(current, timeout_warning=True)
        outcome.reply = f"{outcome.reply}\n\n{responses.ESCALATION_TIMEOUT_WARNING}"
        return outcome

    def _consent_record(self, ctx: "TurnContext", *, granted: bool) -> ConsentRecord:
        return ConsentRecord(
            user_id=ctx.user_id,
            consent_type=CONSENT_TYPE,
            purpose=CONSENT_PURPOSE,
            data_categories=CONSENT_DATA_CATEGORIES if granted else (),
            legal_basis="consent",
            timestamp=self.clock(),
            capture_method="chat_interface",
            granted=granted,
        )

    def _on_consent(self, context: EscalationContext, message: str, ctx: "TurnContext") -> SubflowOutcome:
        positive = matches("positive", message)
        decline = matches("decline", message)

        if positive and not decline:
            try:
                ctx.services.gdpr.record_consent(ctx.user_id, self._consent_record(ctx, granted=True))
            except Exception:
                logger.warning(
                    "Consent could not be recorded escalation_id=%s",
                    context.escalation_id,
                    exc_info=True,
                )
                return SubflowOutcome(context, responses.CONSENT_RECORD_FAILED, ["Try again", "No thanks"])
            accepted = self.advance_step(context, "name", consent_given=True, legal_basis="consent")
            return SubflowOutcome(accepted, responses.ASK_NAME)

        if decline and not positive:
            try:
                ctx.services.gdpr.record_consent(ctx.user_id, self._consent_record(ctx, granted=False))
            except Exception:
                logger.warning("Consent decline could not be recorded escalation_id=%s", context.escalation_id, exc_info=True)
            ctx.audit("consent_declined", None, {"escalation_id": context.escalation_id})
            declined = self.advance_step(context, "none")
            return SubflowOutcome(declined, responses.CONSENT_DECLINED, ["Health information", "Support options"])

        if matches("info_request", message):
            return SubflowOutcome(context, responses.CONSENT_INFO, ["Yes, that's fine", "No thanks"])
        return SubflowOutcome(context, responses.CONSENT_CLARIFY, ["Yes, that's fine", "No thanks"])

    def _on_name(self, context: EscalationContext, message: str, ctx: "TurnContext") -> SubflowOutcome:
        try:
            name = normalize_name(message)
        except ValidationError as exc:
            return SubflowOutcome(context, f"{exc.message} {responses.NAME_INVALID}")
        captured = self.advance_step(context, "contact_method", user_name=name)
        contact = replace(ctx.turn.state.contact_info, name=name)
        return SubflowOutcome(
            captured,
            responses.ASK_CONTACT_METHOD.format(name=name),
            ["1. Phone call", "2. Email"],
            contact_info=contact,
        )

    def _on_contact_method(self, context: EscalationContext, message: str, ctx: "TurnContext") -> SubflowOutcome:
        try:
            method = parse_contact_method(message)
        except ValidationError:
            return SubflowOutcome(context, responses.CONTACT_METHOD_INVALID, ["1. Phone call", "2. Email"])
        chosen = self.advance_step(context, "contact_details", contact_method=method)
        contact = replace(ctx.turn.state.contact_info, preferred_method=method)
        prompt = responses.ASK_PHONE if method == "phone" else responses.ASK_EMAIL
        return SubflowOutcome(chosen, prompt, contact_info=contact)

    def _on_contact_details(self, context: EscalationContext, message: str, ctx: "TurnContext") -> SubflowOutcome:
        try:
            if context.contact_method == "email":
                details = normalize_email(message)
            else:
                details = normalize_uk_phone(message)
        except ValidationError as exc:
            return SubflowOutcome(context, exc.message)

        captured = self.advance_step(context, "confirmation", contact_details=details)
        if context.contact_method == "email":
            contact = replace(ctx.turn.state.contact_info, email=details, phone=None)
            method_label, detail_label = "Email", "Email"
        else:
            contact = replace(ctx.turn.state.contact_info, phone=details, email=None)
            method_label, detail_label = "Phone call", "Phone"
        summary = responses.CONFIRM_DETAILS.format(
            name=context.user_name,
            method=method_label,
            label=detail_label,
            details=details,
        )
        return SubflowOutcome(captured, summary, ["Yes, that's correct", "Change details"], contact_info=contact)

    def _on_confirmation(self, context: EscalationContext, message: str, ctx: "TurnContext") -> SubflowOutcome:
        confirmed = matches("confirm", message)
        wants_edit = matches("edit", message)
        if wants_edit and not confirmed:
            editing = self.advance_step(context, "contact_method", contact_method=None, contact_details=None)
            contact = replace(ctx.turn.state.contact_info, phone=None, email=None, preferred_method=None)
            return SubflowOutcome(
                editing,
                responses.ASK_CONTACT_METHOD.format(name=context.user_name),
                ["1. Phone call", "2. Email"],
                contact_info=contact,
            )
        if not confirmed:
            return SubflowOutcome(context, responses.CONFIRM_CLARIFY, ["Yes, that's correct", "Change details"])
        return self._dispatch(context, ctx)

    def _dispatch(self, context: EscalationContext, ctx: "TurnContext") -> SubflowOutcome:
        escalation = ctx.services.escalation
        event_id: str | None = None
        try:
            event = escalation.create_event(ctx.user_id, ctx.session_id, context.reason, ctx.safety)
            event = replace(
                event,
                trigger_type=context.trigger_type,
                priority=context.priority,
                contact_name=context.user_name,
                contact_method=context.contact_method,
                contact_details=context.contact_details,
            )
            event_id = event.event_id
            ack = escalation.notify_team(event)
        except Exception:
            logger.warning("Escalation dispatch failed escalation_id=%s", context.escalation_id, exc_info=True)
            ack = None

        if self.is_timed_out(context):
            # Dispatch outlived the subflow ceiling; its result is not applied.
            logger.warning("Discarding dispatch result for timed-out escalation_id=%s", context.escalation_id)
            return self.expire(context)

        if ack is None or not ack.delivered:
            ctx.audit(
                "escalation_dispatch_failed",
                None,
                {"escalation_id": context.escalation_id, "event_id": event_id},
            )
            failed = self.mark_delivery_failed(context, event_id=event_id)
            return SubflowOutcome(failed, responses.ESCALATION_DISPATCH_FAILED, ["Support options"])

        completed = self.advance_step(context, "completed", event_id=event_id)
        ctx.audit(
            "escalation_dispatched",
            None,
            {
                "escalation_id": context.escalation_id,
                "event_id": event_id,
                "channel": ack.channel,
                "priority": context.priority,
            },
        )
        logger.info("Escalation completed escalation_id=%s channel=%s", context.escalation_id, ack.channel)
        reply = responses.ESCALATION_COMPLETED.format(
            name=context.user_name,
            sla=responses.SLA_TEXT.get(context.priority, responses.SLA_TEXT["low"]),
        )
        return SubflowOutcome(completed, reply, ["Health information", "Support options"], escalation_triggered=True)
