from __future__ import annotations

import pytest

from askeve_core import responses
from askeve_core.context import TurnContext
from askeve_core.errors import TransitionError
from askeve_core.escalation import EscalationSubflow, assess_urgency
from askeve_core.models import EscalationContext, SafetyResult
from askeve_core.settings import FlowSettings
from askeve_core.state import ConversationStateManager, ConversationTurn


@pytest.fixture
def subflow(clock) -> EscalationSubflow:
    return EscalationSubflow(timeout_seconds=900, warning_seconds=180, clock=clock)


@pytest.fixture
def ctx(flow_services, clock) -> TurnContext:
    manager = ConversationStateManager(clock=clock)
    base = manager.get_or_create("conv-1", "user-1")
    return TurnContext(
        conversation_id="conv-1",
        user_id="user-1",
        session_id="conv-1",
        request_id="req-1",
        message="",
        settings=FlowSettings(),
        services=flow_services,
        turn=ConversationTurn(manager, base),
        safety=SafetyResult(is_crisis=False),
        clock=clock,
    )


def _walk(subflow: EscalationSubflow, ctx: TurnContext, *messages: str) -> EscalationContext:
    context = subflow.start("I'd like to speak to a nurse").context
    for message in messages:
        context = subflow.advance(context, message, ctx).context
    return context


@pytest.mark.parametrize(
    ("current", "target"),
    [
        ("none", "name"),
        ("consent", "confirmation"),
        ("name", "completed"),
        ("completed", "consent"),
        ("cancelled", "name"),
        ("timeout", "consent"),
    ],
)
def test_illegal_transitions_are_rejected(clock, current, target):
    context = EscalationContext(escalation_id="esc-1", start_time=clock(), step=current, consent_given=True)
    with pytest.raises(TransitionError):
        EscalationSubflow.advance_step(context, target)


def test_contact_steps_require_consent_or_vital_interests(clock):
    context = EscalationContext(escalation_id="esc-1", start_time=clock(), step="name")
    with pytest.raises(TransitionError):
        EscalationSubflow.advance_step(context, "contact_method")

    flagged = EscalationContext(escalation_id="esc-1", start_time=clock(), step="name", vital_interests=True)
    assert EscalationSubflow.advance_step(flagged, "contact_method").step == "contact_method"


def test_start_opens_consent_step(subflow):
    outcome = subflow.start("I'm worried about bleeding")
    assert outcome.context.step == "consent"
    assert outcome.context.is_active is True
    assert outcome.context.priority == "high"
    assert outcome.context.steps == ("none", "consent")
    assert outcome.reply == responses.CONSENT_PROMPT

    crisis = subflow.start("anything", trigger_type="crisis", vital_interests=True)
    assert crisis.context.priority == "high"
    assert crisis.context.legal_basis == "vital_interests"

    renewal = subflow.start("speak to a nurse", renewal=True)
    assert renewal.reply == responses.CONSENT_RENEWAL_PROMPT


@pytest.mark.parametrize(
    ("message", "level"),
    [
        ("This is urgent", "high"),
        ("I'm a bit anxious about it", "medium"),
        ("Could someone call me back", "low"),
    ],
)
def test_urgency_heuristics(message, level):
    assert assess_urgency(message) == level


def test_consent_accept_records_ledger_entry(subflow, ctx, gdpr_service):
    context = _walk(subflow, ctx, "yes please")
    assert context.step == "name"
    assert context.consent_given is True
    assert context.legal_basis == "consent"
    record = gdpr_service.records[-1]
    assert record.granted is True
    assert record.consent_type == "nurse_callback"
    assert record.purpose == "specialist_nurse_consultation"
    assert record.data_categories == ("contact_information", "health_inquiry")
    assert record.capture_method == "chat_interface"


def test_consent_decline_returns_to_none_and_is_audited(subflow, ctx, gdpr_service, audit_sink):
    start = subflow.start("speak to a nurse").context
    outcome = subflow.advance(start, "no thanks", ctx)
    assert outcome.context.step == "none"
    assert outcome.context.is_active is False
    assert outcome.reply == responses.CONSENT_DECLINED
    assert gdpr_service.records[-1].granted is False
    assert gdpr_service.records[-1].data_categories == ()
    assert len(audit_sink.of_type("consent_declined")) == 1


def test_consent_questions_and_unclear_answers_stay_on_consent(subflow, ctx):
    start = subflow.start("speak to a nurse").context
    info = subflow.advance(start, "what information do you need?", ctx)
    assert info.context.step == "consent"
    assert info.reply == responses.CONSENT_INFO

    unclear = subflow.advance(start, "hmm", ctx)
    assert unclear.context.step == "consent"
    assert unclear.reply == responses.CONSENT_CLARIFY


def test_consent_write_failure_keeps_consent_step(subflow, ctx, gdpr_service):
    gdpr_service.fail_record = True
    start = subflow.start("speak to a nurse").context
    outcome = subflow.advance(start, "yes", ctx)
    assert outcome.context.step == "consent"
    assert outcome.context.consent_given is False
    assert outcome.reply == responses.CONSENT_RECORD_FAILED


def test_invalid_name_reprompts_same_step(subflow, ctx):
    context = _walk(subflow, ctx, "yes")
    outcome = subflow.advance(context, "yes", ctx)
    assert outcome.context.step == "name"
    assert responses.NAME_INVALID in outcome.reply

    outcome = subflow.advance(context, "my name is jane doe", ctx)
    assert outcome.context.step == "contact_method"
    assert outcome.context.user_name == "Jane Doe"
    assert outcome.contact_info.name == "Jane Doe"


def test_invalid_contact_details_reprompt(subflow, ctx):
    context = _walk(subflow, ctx, "yes", "Jane", "1")
    assert context.step == "contact_details"
    outcome = subflow.advance(context, "12345", ctx)
    assert outcome.context.step == "contact_details"
    assert "UK phone number" in outcome.reply

    outcome = subflow.advance(context, "07123 456789", ctx)
    assert outcome.context.step == "confirmation"
    assert outcome.context.contact_details == "+447123456789"
    assert "+447123456789" in outcome.reply


def test_email_path(subflow, ctx):
    context = _walk(subflow, ctx, "yes", "Jane", "email")
    outcome = subflow.advance(context, "Jane.Doe@Example.org", ctx)
    assert outcome.context.contact_details == "jane.doe@example.org"
    assert outcome.contact_info.email == "jane.doe@example.org"
    assert outcome.contact_info.phone is None


def test_edit_at_confirmation_returns_to_contact_method(subflow, ctx):
    context = _walk(subflow, ctx, "yes", "Jane", "1", "07123456789")
    outcome = subflow.advance(context, "change details", ctx)
    assert outcome.context.step == "contact_method"
    assert outcome.context.contact_details is None
    assert outcome.contact_info.phone is None


def test_cancel_clears_details(subflow, ctx):
    context = _walk(subflow, ctx, "yes", "Jane", "1")
    outcome = subflow.advance(context, "cancel", ctx)
    assert outcome.context.step == "cancelled"
    assert outcome.context.is_active is False
    assert outcome.context.user_name is None
    assert outcome.contact_info.is_empty


def test_timeout_takes_precedence_over_the_step_handler(subflow, ctx, clock, escalation_service):
    context = _walk(subflow, ctx, "yes", "Jane", "1", "07123456789")
    clock.advance(901)
    outcome = subflow.advance(context, "yes", ctx)
    assert outcome.context.step == "timeout"
    assert outcome.context.contact_details is None
    assert outcome.reply == responses.ESCALATION_TIMEOUT
    assert escalation_service.notified == []


def test_timeout_boundary_is_strict(subflow, ctx, clock):
    context = _walk(subflow, ctx, "yes")
    clock.advance(900)
    assert subflow.is_timed_out(context) is False
    clock.advance(1)
    assert subflow.is_timed_out(context) is True


def test_timeout_warning_is_raised_once(subflow, ctx, clock):
    context = _walk(subflow, ctx, "yes")
    clock.advance(750)
    outcome = subflow.advance(context, "Jane", ctx)
    assert outcome.context.timeout_warning is True
    assert responses.ESCALATION_TIMEOUT_WARNING in outcome.reply

    again = subflow.advance(outcome.context, "1", ctx)
    assert responses.ESCALATION_TIMEOUT_WARNING not in again.reply


def test_confirmed_request_is_dispatched_once(subflow, ctx, escalation_service, audit_sink):
    context = _walk(subflow, ctx, "yes", "Jane", "1", "07123456789")
    outcome = subflow.advance(context, "yes", ctx)
    assert outcome.context.step == "completed"
    assert outcome.context.is_active is False
    assert outcome.escalation_triggered is True
    assert outcome.context.event_id == "evt-1"
    assert len(escalation_service.notified) == 1
    event = escalation_service.notified[0]
    assert event.contact_name == "Jane"
    assert event.contact_details == "+447123456789"
    assert responses.SLA_TEXT["low"] in outcome.reply
    assert len(audit_sink.of_type("escalation_dispatched")) == 1


@pytest.mark.parametrize(("fail", "delivered"), [(True, True), (False, False)])
def test_dispatch_failure_is_terminal_failed(subflow, ctx, escalation_service, audit_sink, fail, delivered):
    escalation_service.fail = fail
    escalation_service.delivered = delivered
    context = _walk(subflow, ctx, "yes", "Jane", "1", "07123456789")
    outcome = subflow.advance(context, "yes", ctx)
    assert outcome.context.step == "confirmation"
    assert outcome.context.is_active is False
    assert outcome.context.delivery_failed is True
    assert outcome.escalation_triggered is False
    assert "0808 802 0019" in outcome.reply
    assert len(audit_sink.of_type("escalation_dispatch_failed")) == 1


def test_dispatch_result_after_ceiling_is_discarded(subflow, ctx, escalation_service, clock):
    context = _walk(subflow, ctx, "yes", "Jane", "1", "07123456789")
    clock.advance(800)
    escalation_service.delay_seconds = 200
    outcome = subflow.advance(context, "yes", ctx)
    assert len(escalation_service.notified) == 1
    assert outcome.context.step == "timeout"
    assert outcome.escalation_triggered is False


def test_inactive_subflow_cannot_advance(subflow, ctx):
    context = _walk(subflow, ctx, "yes", "Jane", "1")
    cancelled = subflow.cancel(context).context
    with pytest.raises(TransitionError):
        subflow.advance(cancelled, "hello", ctx)


def test_interrupt_checks_timeout_before_cancel(subflow, ctx, clock):
    context = subflow.start("I'd like to speak to a nurse").context
    assert subflow.interrupt(context, "Jane") is None
    assert subflow.interrupt(context, "cancel").context.step == "cancelled"

    clock.advance(15 * 60 + 1)
    assert subflow.interrupt(context, "cancel").context.step == "timeout"
    assert subflow.interrupt(subflow.cancel(context).context, "cancel") is None


def test_delivery_failure_marking_only_applies_at_confirmation(subflow, ctx):
    confirming = _walk(subflow, ctx, "yes", "Jane", "1", "07123456789")
    failed = EscalationSubflow.mark_delivery_failed(confirming, event_id="evt-9")
    assert failed.step == "confirmation"
    assert failed.is_active is False
    assert failed.delivery_failed is True
    assert failed.event_id == "evt-9"
    assert failed.steps == confirming.steps

    with pytest.raises(TransitionError):
        EscalationSubflow.mark_delivery_failed(_walk(subflow, ctx, "yes"), event_id=None)
    with pytest.raises(TransitionError):
        EscalationSubflow.mark_delivery_failed(failed, event_id="evt-9")
