from __future__ import annotations

import importlib
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from askeve_core import FlowServices, FlowSettings, create_engine  # noqa: E402
from askeve_core.errors import ExternalServiceError  # noqa: E402
from askeve_core.models import (  # noqa: E402
    ConsentRecord,
    ConsentStatus,
    ContentSnippet,
    DeliveryAck,
    EscalationEvent,
)

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingEscalationService:
    def __init__(
        self,
        clock: FakeClock,
        *,
        fail: bool = False,
        delivered: bool = True,
        delay_seconds: float = 0,
    ) -> None:
        self.clock = clock
        self.fail = fail
        self.delivered = delivered
        self.delay_seconds = delay_seconds
        self.events: list[EscalationEvent] = []
        self.notified: list[EscalationEvent] = []

    def create_event(self, user_id, session_id, message, safety_result) -> EscalationEvent:
        event = EscalationEvent(
            event_id=f"evt-{len(self.events) + 1}",
            user_id=user_id,
            session_id=session_id,
            message=message,
            severity=safety_result.severity if safety_result and safety_result.is_crisis else "routine",
            created_at=self.clock(),
        )
        self.events.append(event)
        return event

    def notify_team(self, event: EscalationEvent) -> DeliveryAck:
        if self.delay_seconds:
            self.clock.advance(self.delay_seconds)
        self.notified.append(event)
        if self.fail:
            raise ExternalServiceError("nurse_notifier", "webhook unreachable")
        return DeliveryAck(delivered=self.delivered, channel="test", reference=event.event_id)


class InMemoryGDPRService:
    def __init__(self, clock: FakeClock, *, validity_days: int = 30) -> None:
        self.clock = clock
        self.validity = timedelta(days=validity_days)
        self.records: list[ConsentRecord] = []
        self.fail_lookup = False
        self.fail_record = False

    def get_consent_status(self, user_id: str, consent_type: str) -> ConsentStatus:
        if self.fail_lookup:
            raise ExternalServiceError("gdpr", "consent service unavailable")
        matching = [r for r in self.records if r.user_id == user_id and r.consent_type == consent_type]
        if not matching:
            return ConsentStatus(granted=False)
        latest = matching[-1]
        if not latest.granted:
            return ConsentStatus(granted=False, recorded_at=latest.timestamp)
        if self.clock() - latest.timestamp >= self.validity:
            return ConsentStatus(granted=False, expired=True, recorded_at=latest.timestamp)
        return ConsentStatus(granted=True, recorded_at=latest.timestamp)

    def record_consent(self, user_id: str, record: ConsentRecord) -> None:
        if self.fail_record:
            raise ExternalServiceError("gdpr", "consent write failed")
        self.records.append(record)

    def grant(self, user_id: str, *, at: datetime, consent_type: str = "nurse_callback") -> None:
        self.records.append(
            ConsentRecord(
                user_id=user_id,
                consent_type=consent_type,
                purpose="specialist_nurse_consultation",
                data_categories=("contact_information",),
                legal_basis="consent",
                timestamp=at,
            )
        )


class StaticContentService:
    def __init__(self, snippets: list[ContentSnippet] | None = None) -> None:
        self.snippets = list(snippets or [])
        self.queries: list[str] = []
        self.fail = False

    def search(self, query: str, *, limit: int = 3) -> list[ContentSnippet]:
        self.queries.append(query)
        if self.fail:
            raise ExternalServiceError("content", "search index unavailable")
        return self.snippets[:limit]


class ListAuditSink:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []

    def append_policy_event(self, *, user_id, session_key, event_type, topic, details) -> None:
        self.events.append(
            {
                "user_id": user_id,
                "session_key": session_key,
                "event_type": event_type,
                "topic": topic,
                "details": details,
            }
        )

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.events if event["event_type"] == event_type]


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "askeve-test.sqlite"
    monkeypatch.setenv("ASKEVE_DB_PATH", str(db_path))
    # Keep CI deterministic; collaborator tests mock httpx directly.
    monkeypatch.delenv("ASKEVE_CONTENT_SEARCH_URL", raising=False)
    monkeypatch.delenv("ASKEVE_NURSE_WEBHOOK_URL", raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def user_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"X-User-Id": user_id}

    return _make


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def escalation_service(clock) -> RecordingEscalationService:
    return RecordingEscalationService(clock)


@pytest.fixture
def gdpr_service(clock) -> InMemoryGDPRService:
    return InMemoryGDPRService(clock)


@pytest.fixture
def content_service() -> StaticContentService:
    return StaticContentService(
        [
            ContentSnippet(
                title="ovarian cancer",
                summary="Persistent bloating is one of the most common signs.",
                source_url="https://eveappeal.org.uk/gynaecological-cancers/ovarian-cancer",
                score=0.9,
            ),
            ContentSnippet(title="symptoms to look out for", summary="Know what is normal for you.", score=0.4),
        ]
    )


@pytest.fixture
def audit_sink() -> ListAuditSink:
    return ListAuditSink()


@pytest.fixture
def flow_services(content_service, escalation_service, gdpr_service, audit_sink) -> FlowServices:
    return FlowServices(
        content=content_service,
        escalation=escalation_service,
        gdpr=gdpr_service,
        audit=audit_sink,
    )


@pytest.fixture
def make_engine(flow_services, clock):
    def _make(settings: FlowSettings | None = None, **kwargs):
        return create_engine(settings or FlowSettings(), flow_services, clock=clock, **kwargs)

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()
