from __future__ import annotations

from dataclasses import replace
from datetime import timedelta

import pytest

from askeve_core.compliance import ComplianceGate
from askeve_core.errors import ExternalServiceError
from askeve_core.handlers.health_information import DESCRIPTOR as HEALTH_DESCRIPTOR
from askeve_core.handlers.nurse_escalation import DESCRIPTOR as NURSE_DESCRIPTOR
from askeve_core.models import ConversationState, EscalationContext, SafetyResult
from askeve_core.registry import TopicDescriptor
from conftest import START

CRISIS = SafetyResult(is_crisis=True, severity="high", matched_label="self_harm_intent", category="self_harm")
CALM = SafetyResult(is_crisis=False)


def _state(**changes) -> ConversationState:
    state = ConversationState(
        conversation_id="conv-1",
        user_id="user-1",
        session_id="session-1",
        created_at=START,
        last_activity_at=START,
        expires_at=START + timedelta(minutes=30),
        current_stage="topic_detection",
        conversation_started=True,
    )
    return replace(state, **changes)


@pytest.fixture
def gate(gdpr_service, audit_sink, clock) -> ComplianceGate:
    return ComplianceGate(gdpr_service, audit=audit_sink, crisis_recency_seconds=600, clock=clock)


def test_topics_without_consent_requirement_proceed(gate, gdpr_service):
    gdpr_service.fail_lookup = True
    decision = gate.evaluate(HEALTH_DESCRIPTOR, _state(), CALM)
    assert decision.action == "proceed"
    assert decision.code == "consent_not_required"


def test_absent_consent_enters_consent_step_by_default(gate):
    decision = gate.evaluate(NURSE_DESCRIPTOR, _state(), CALM)
    assert decision.action == "enter_consent"
    assert decision.status == "absent"
    assert decision.allowed is True


@pytest.mark.parametrize(("policy", "allowed"), [("degrade", False), ("block", False), ("enter_consent", True)])
def test_absent_consent_policies(gdpr_service, audit_sink, clock, policy, allowed):
    gate = ComplianceGate(gdpr_service, audit=audit_sink, absent_policy=policy, clock=clock)
    decision = gate.evaluate(NURSE_DESCRIPTOR, _state(), CALM)
    assert decision.allowed is allowed
    if not allowed:
        assert "0808 802 0019" in decision.message


def test_unknown_absent_policy_is_rejected(gdpr_service):
    with pytest.raises(ValueError):
        ComplianceGate(gdpr_service, absent_policy="shrug")


def test_granted_consent_on_file_proceeds(gate, gdpr_service, clock):
    gdpr_service.grant("user-1", at=clock() - timedelta(days=2))
    decision = gate.evaluate(NURSE_DESCRIPTOR, _state(), CALM)
    assert decision.action == "proceed"
    assert decision.legal_basis == "consent"


def test_expired_consent_requires_renewal(gate, gdpr_service, clock):
    gdpr_service.grant("user-1", at=clock() - timedelta(days=31))
    decision = gate.evaluate(NURSE_DESCRIPTOR, _state(), CALM)
    assert decision.action == "renew"
    assert decision.renewal is True
    assert decision.allowed is True


def test_consent_given_in_session_skips_lookup(gate, gdpr_service, clock):
    gdpr_service.fail_lookup = True
    subflow = EscalationContext(escalation_id="esc-1", start_time=clock(), step="name", consent_given=True)
    decision = gate.evaluate(NURSE_DESCRIPTOR, _state(subflow=subflow), CALM)
    assert decision.code == "session_consent"


def test_crisis_overrides_consent_and_is_audited(gate, audit_sink):
    decision = gate.evaluate(NURSE_DESCRIPTOR, _state(), CRISIS)
    assert decision.action == "override"
    assert decision.legal_basis == "vital_interests"

    events = audit_sink.of_type("vital_interests_override")
    assert len(events) == 1
    assert events[0]["topic"] == "nurse_escalation_handler"
    assert events[0]["details"]["current_turn_crisis"] is True
    assert events[0]["details"]["matched_label"] == "self_harm_intent"


def test_recent_crisis_still_overrides(gate, audit_sink, clock):
    state = _state(last_crisis_at=clock() - timedelta(minutes=5))
    assert gate.evaluate(NURSE_DESCRIPTOR, state, CALM).action == "override"
    assert audit_sink.of_type("vital_interests_override")[0]["details"]["current_turn_crisis"] is False

    stale = _state(last_crisis_at=clock() - timedelta(minutes=11))
    assert gate.evaluate(NURSE_DESCRIPTOR, stale, CALM).action == "enter_consent"


def test_override_only_applies_to_escalating_topics(gate, audit_sink):
    collector = TopicDescriptor(
        id="newsletter_signup",
        display_name="Newsletter",
        supported_stages=frozenset({"topic_detection"}),
        requires_consent=True,
        can_escalate=False,
        consent_type="newsletter",
    )
    decision = gate.evaluate(collector, _state(), CRISIS)
    assert decision.action == "enter_consent"
    assert audit_sink.of_type("vital_interests_override") == []


def test_lookup_failures_surface_as_external_service_errors(gdpr_service, clock):
    class _Exploding:
        def get_consent_status(self, user_id, consent_type):
            raise OSError("disk gone")

    gate = ComplianceGate(_Exploding(), clock=clock)
    with pytest.raises(ExternalServiceError):
        gate.evaluate(NURSE_DESCRIPTOR, _state(), CALM)

    gdpr_service.fail_lookup = True
    with pytest.raises(ExternalServiceError):
        ComplianceGate(gdpr_service, clock=clock).evaluate(NURSE_DESCRIPTOR, _state(), CALM)


def test_audit_sink_failure_does_not_block_override(gdpr_service, clock):
    class _BrokenSink:
        def append_policy_event(self, **kwargs):
            raise RuntimeError("audit store offline")

    gate = ComplianceGate(gdpr_service, audit=_BrokenSink(), clock=clock)
    assert gate.evaluate(NURSE_DESCRIPTOR, _state(), CRISIS).action == "override"
