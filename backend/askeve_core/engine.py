"""Conversation flow engine.

One turn: screen the raw message, then under the conversation's lock either answer
the crisis or select a handler, let an open callback request cancel or time out,
consult the compliance gate, run the handler, and commit the
resulting state in one step.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable

from memory.time_utils import utc_now

from . import responses
from .compliance import ComplianceGate
from .context import FlowServices, TurnContext
from .errors import ExternalServiceError, TransitionError
from .escalation import EscalationSubflow
from .handlers import NurseEscalationHandler, register_default_handlers
from .hooks import HookRunner
from .models import TOPIC_CRISIS_SUPPORT, FlowResponse, FlowResult, HandlerResult, SafetyResult
from .registry import TopicHandlerRegistry, TopicRegistration
from .safety import SafetyGate, screen_message
from .selector import TopicSelector
from .settings import FlowSettings
from .state import ConversationStateManager, ConversationTurn, ExpiryListener

logger = logging.getLogger(__name__)

MENU = ["Health information", "Speak to a nurse", "Support options"]
CRISIS_ACTIONS = ["Call 999", "Call Samaritans on 116 123", "Text SHOUT to 85258"]


def crisis_text(safety: SafetyResult, *, nurse_offer: bool) -> str:
    lead = responses.CRISIS_MEDICAL if safety.category == "medical_emergency" else responses.CRISIS_SELF_HARM
    parts = [lead, responses.EMERGENCY_CONTACTS]
    if nurse_offer:
        parts.append(responses.CRISIS_NURSE_OFFER)
    return "\n\n".join(parts)


class ConversationFlowEngine:
    def __init__(
        self,
        *,
        registry: TopicHandlerRegistry,
        selector: TopicSelector,
        state_manager: ConversationStateManager,
        safety_gate: SafetyGate,
        compliance: ComplianceGate,
        services: FlowServices,
        settings: FlowSettings,
        hooks: HookRunner | None = None,
        crisis_escalation: NurseEscalationHandler | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.selector = selector
        self.state_manager = state_manager
        self.safety_gate = safety_gate
        self.compliance = compliance
        self.services = services
        self.settings = settings
        self.hooks = hooks or HookRunner()
        self.crisis_escalation = crisis_escalation
        self.clock = clock
        self._sweep_lock = threading.Lock()
        self._sweep_interval = timedelta(seconds=settings.sweep_interval_seconds)
        self._last_sweep: datetime | None = None

    def process_message(
        self,
        conversation_id: str,
        user_id: str,
        message: str,
        session_id: str | None = None,
    ) -> FlowResult:
        safety = screen_message(
            self.safety_gate,
            message,
            failure_mode=self.settings.safety_failure_mode,
            budget_ms=self.settings.crisis_budget_ms,
        )
        try:
            self._maybe_sweep()
            with self.state_manager.turn(conversation_id, user_id, session_id) as turn:
                context = TurnContext(
                    conversation_id=conversation_id,
                    user_id=user_id,
                    session_id=turn.base.session_id,
                    request_id=uuid.uuid4().hex,
                    message=message,
                    settings=self.settings,
                    services=self.services,
                    turn=turn,
                    safety=safety,
                    clock=self.clock,
                )
                self._discard_finished_subflow(turn)
                turn.append_message("user", message)
                turn.checkpoint()
                if safety.is_crisis:
                    result = self._crisis_turn(message, context)
                else:
                    result = self._routed_turn(message, context)
                turn.append_message("assistant", result.response.text, topic=result.topic)
            result.new_state = turn.committed
        except Exception:
            logger.exception("Turn failed conversation_id=%s", conversation_id)
            return self._failed_turn(conversation_id, user_id, safety)

        self.hooks.run_after(result)
        return result

    def _failed_turn(self, conversation_id: str, user_id: str, safety: SafetyResult) -> FlowResult:
        if safety.is_crisis:
            response = FlowResponse(crisis_text(safety, nurse_offer=False), list(CRISIS_ACTIONS))
            topic = TOPIC_CRISIS_SUPPORT
        else:
            response = FlowResponse(responses.TECHNICAL_DIFFICULTY, [])
            topic = None
        try:
            state = self.state_manager.get_current(conversation_id)
        except Exception:
            logger.exception("State lookup failed after turn failure conversation_id=%s", conversation_id)
            state = None
        if state is not None and state.user_id != user_id:
            state = None
        return FlowResult(response, state, escalation_triggered=safety.is_crisis, topic=topic, safety=safety)

    def _discard_finished_subflow(self, turn: ConversationTurn) -> None:
        subflow = turn.state.subflow
        if subflow is not None and not subflow.is_active:
            turn.update(subflow=None)

    def _maybe_sweep(self) -> None:
        now = self.clock()
        with self._sweep_lock:
            if self._last_sweep is not None and now - self._last_sweep < self._sweep_interval:
                return
            self._last_sweep = now
        try:
            self.state_manager.sweep_expired()
        except Exception:
            logger.exception("Opportunistic sweep failed")

    def _stage_allowed(self, registration: TopicRegistration, stage: str, conversation_started: bool) -> bool:
        if registration.role == "start" and not conversation_started:
            return True
        return registration.descriptor.supports(stage)

    def _crisis_turn(self, message: str, context: TurnContext) -> FlowResult:
        turn = context.turn
        safety = context.safety
        turn.update(last_crisis_at=self.clock())
        turn.checkpoint()

        offered = False
        if self.crisis_escalation is not None:
            seed = self.settings.seed_escalation_on_crisis
            try:
                if seed and not turn.state.conversation_started:
                    turn.update(conversation_started=True, has_seen_opening_statement=True)
                offered = self.crisis_escalation.on_crisis(message, turn.state, context, seed=seed)
                if offered:
                    self.compliance.evaluate(self.crisis_escalation.descriptor, turn.state, safety)
            except Exception:
                logger.exception("Crisis escalation update failed conversation_id=%s", context.conversation_id)
                turn.rollback()
                offered = False

        context.audit(
            "crisis_turn",
            TOPIC_CRISIS_SUPPORT,
            {
                "matched_label": safety.matched_label,
                "severity": safety.severity,
                "category": safety.category,
                "fault": safety.fault,
                "callback_offered": offered,
            },
        )
        if self.settings.alert_team_on_crisis:
            self._alert_team(message, context)

        actions = list(CRISIS_ACTIONS)
        if offered:
            actions.append("Yes, please call me back")
        return FlowResult(
            FlowResponse(crisis_text(safety, nurse_offer=offered), actions),
            None,
            escalation_triggered=True,
            topic=TOPIC_CRISIS_SUPPORT,
            safety=safety,
        )

    def _alert_team(self, message: str, context: TurnContext) -> None:
        try:
            event = self.services.escalation.create_event(
                context.user_id,
                context.session_id,
                message[:280],
                context.safety,
            )
            event = replace(event, trigger_type="crisis", priority="high")
            ack = self.services.escalation.notify_team(event)
            logger.info("Crisis alert sent delivered=%s channel=%s", ack.delivered, ack.channel)
        except Exception:
            logger.warning("Crisis alert to nurse team failed conversation_id=%s", context.conversation_id, exc_info=True)

    def _routed_turn(self, message: str, context: TurnContext) -> FlowResult:
        turn = context.turn
        topic: str | None = None
        try:
            selection = self.selector.select(message, turn.state)
            registration = selection.registration
            topic = registration.topic_id
            state = turn.state
            if not self._stage_allowed(registration, state.current_stage, state.conversation_started):
                raise TransitionError(f"Topic {topic} selected for unsupported stage {state.current_stage}")
            logger.info(
                "Topic selected conversation_id=%s topic=%s confidence=%.2f reason=%s stage=%s",
                context.conversation_id,
                topic,
                selection.confidence,
                selection.reason,
                state.current_stage,
            )

            # Cancel and timeout of an open subflow never wait on the consent check.
            preempt = getattr(registration.handler, "preempt", None)
            preempted = preempt(message, state, context) if preempt is not None else None
            if preempted is not None:
                return self._handler_result(preempted, topic, context)

            decision = self.compliance.evaluate(registration.descriptor, state, context.safety)
            context.compliance = decision
            if not decision.allowed:
                context.audit("consent_gate_denied", topic, {"action": decision.action, "status": decision.status})
                return FlowResult(
                    FlowResponse(decision.message or responses.CONSENT_BLOCKED, ["Support options", "Health information"]),
                    None,
                    topic=topic,
                    safety=context.safety,
                )

            handled = registration.handler.handle(message, state, context)
            return self._handler_result(handled, topic, context)
        except TransitionError as exc:
            logger.warning("Transition rejected conversation_id=%s topic=%s: %s", context.conversation_id, topic, exc)
            turn.rollback()
            return FlowResult(FlowResponse(responses.GENERIC_HELP, list(MENU)), None, topic=topic, safety=context.safety)
        except ExternalServiceError as exc:
            logger.warning("External service failure conversation_id=%s: %s", context.conversation_id, exc)
            turn.rollback()
            return FlowResult(
                FlowResponse(responses.SERVICE_UNAVAILABLE, ["Support options"]),
                None,
                topic=topic,
                safety=context.safety,
            )
        except Exception:
            logger.exception("Handler failed conversation_id=%s topic=%s", context.conversation_id, topic)
            turn.rollback()
            return FlowResult(FlowResponse(responses.TECHNICAL_DIFFICULTY, []), None, topic=topic, safety=context.safety)

    def _handler_result(self, handled: HandlerResult, topic: str, context: TurnContext) -> FlowResult:
        return FlowResult(
            handled.response,
            handled.new_state,
            escalation_triggered=handled.escalation_triggered,
            conversation_ended=handled.conversation_ended,
            topic=topic,
            safety=context.safety,
        )

    def health(self) -> dict[str, Any]:
        services = {
            "content": self.services.content,
            "escalation": self.services.escalation,
            "gdpr": self.services.gdpr,
            "audit": self.services.audit,
        }
        status: dict[str, str] = {}
        for name, service in services.items():
            if service is None:
                continue
            probe = getattr(service, "health_check", None)
            if probe is None:
                status[name] = "healthy"
                continue
            try:
                status[name] = "healthy" if probe() else "error"
            except Exception:
                logger.warning("Health probe failed service=%s", name, exc_info=True)
                status[name] = "error"
        return {
            "initialized": self.registry.start is not None and self.registry.unclear is not None,
            "registered_topic_count": len(self.registry),
            "per_service_status": status,
            "active_conversations": len(self.state_manager),
        }


def create_engine(
    settings: FlowSettings,
    services: FlowServices,
    *,
    clock: Callable[[], datetime] = utc_now,
    hooks: HookRunner | None = None,
    on_expire: ExpiryListener | None = None,
    safety_gate: SafetyGate | None = None,
) -> ConversationFlowEngine:
    registry = TopicHandlerRegistry()
    subflow = EscalationSubflow(
        timeout_seconds=settings.escalation_timeout_seconds,
        warning_seconds=settings.escalation_warning_seconds,
        clock=clock,
    )
    nurse = register_default_handlers(registry, subflow=subflow)
    state_manager = ConversationStateManager(
        stage_support=registry.supports,
        ttl_seconds=settings.session_ttl_seconds,
        history_limit=settings.history_limit,
        clock=clock,
        on_expire=on_expire,
    )
    compliance = ComplianceGate(
        services.gdpr,
        audit=services.audit,
        absent_policy=settings.consent_absent_policy,
        crisis_recency_seconds=settings.crisis_recency_seconds,
        clock=clock,
    )
    return ConversationFlowEngine(
        registry=registry,
        selector=TopicSelector(registry, confidence_floor=settings.confidence_floor),
        state_manager=state_manager,
        safety_gate=safety_gate or SafetyGate(),
        compliance=compliance,
        services=services,
        settings=settings,
        hooks=hooks,
        crisis_escalation=nurse,
        clock=clock,
    )
