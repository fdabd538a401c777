from __future__ import annotations

from typing import Any

import httpx
import pytest

from askeve_core.errors import ExternalServiceError
from askeve_core.models import SafetyResult
from askeve_services.content import CuratedContentService, SearchApiContentService
from askeve_services.notifier import NurseTeamNotifier


class _FakeResponse:
    def __init__(
        self,
        *,
        status_code: int = 200,
        json_data: Any = None,
        headers: dict[str, str] | None = None,
        url: str = "https://search.example.test/search",
    ) -> None:
        self.status_code = status_code
        self._json_data = json_data
        self.headers = headers or {"content-type": "application/json"}
        self.url = url
        self.content = b"1"

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("error", request=httpx.Request("GET", self.url), response=httpx.Response(self.status_code))

    def json(self) -> Any:
        if isinstance(self._json_data, Exception):
            raise self._json_data
        return self._json_data


def test_curated_catalogue_ranks_by_keyword_overlap():
    service = CuratedContentService()
    snippets = service.search("I have been bloating a lot, could it be ovarian cancer?")
    assert snippets[0].title == "ovarian cancer"
    assert snippets[0].source_url.startswith("https://eveappeal.org.uk/")
    assert len(snippets) <= 3
    assert service.search("what is it") == []
    assert service.health_check() is True


def test_curated_catalogue_knows_screening():
    snippets = CuratedContentService().search("when is my smear test due", limit=1)
    assert [snippet.title for snippet in snippets] == ["cervical screening"]


def test_search_api_maps_results(monkeypatch):
    captured: dict[str, Any] = {}

    def fake_get(url: str, **kwargs):
        captured["url"] = url
        captured.update(kwargs)
        return _FakeResponse(
            json_data={
                "results": [
                    {"title": "Womb cancer", "summary": "Bleeding after the menopause.", "url": "https://x/womb", "score": 0.4},
                    {"title": "HPV", "content": "A very common virus.", "score": "0.9"},
                    {"title": "", "summary": "no title"},
                    "not-a-row",
                ]
            }
        )

    monkeypatch.setattr("askeve_services.content.httpx.get", fake_get)
    service = SearchApiContentService("https://search.example.test/", api_key="secret", timeout=3.0)
    snippets = service.search("bleeding after menopause", limit=3)

    assert captured["url"] == "https://search.example.test/search"
    assert captured["params"] == {"q": "bleeding after menopause", "top": 3}
    assert captured["headers"]["api-key"] == "secret"
    assert captured["timeout"] == 3.0
    assert [snippet.title for snippet in snippets] == ["HPV", "Womb cancer"]
    assert snippets[1].source_url == "https://x/womb"


@pytest.mark.parametrize("failure", ["http", "transport", "payload"])
def test_search_api_failures_become_external_service_errors(monkeypatch, failure):
    def fake_get(url: str, **kwargs):
        if failure == "transport":
            raise httpx.ConnectError("connection refused")
        if failure == "payload":
            return _FakeResponse(json_data=ValueError("not json"))
        return _FakeResponse(status_code=503)

    monkeypatch.setattr("askeve_services.content.httpx.get", fake_get)
    with pytest.raises(ExternalServiceError) as excinfo:
        SearchApiContentService("https://search.example.test").search("hpv")
    assert excinfo.value.service == "content"


def test_search_api_health_check(monkeypatch):
    monkeypatch.setattr("askeve_services.content.httpx.get", lambda url, **kwargs: _FakeResponse(status_code=200))
    assert SearchApiContentService("https://search.example.test").health_check() is True

    def refuse(url: str, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("askeve_services.content.httpx.get", refuse)
    assert SearchApiContentService("https://search.example.test").health_check() is False


def _event(notifier: NurseTeamNotifier):
    safety = SafetyResult(is_crisis=True, severity="high", matched_label="self_harm_intent", category="self_harm")
    return notifier.create_event("user-1", "session-1", "please call me", safety)


def test_notifier_without_webhook_logs_and_acknowledges(monkeypatch):
    def fail_post(*args, **kwargs):
        raise AssertionError("no webhook configured")

    monkeypatch.setattr("askeve_services.notifier.httpx.post", fail_post)
    notifier = NurseTeamNotifier()
    event = _event(notifier)
    assert event.severity == "high"
    assert event.safety_label == "self_harm_intent"
    ack = notifier.notify_team(event)
    assert ack.delivered is True
    assert ack.channel == "log"
    assert ack.reference == event.event_id


def test_notifier_posts_message_card(monkeypatch):
    captured: dict[str, Any] = {}

    def fake_post(url: str, **kwargs):
        captured["url"] = url
        captured.update(kwargs)
        return _FakeResponse(headers={"x-request-id": "req-42"}, url=url)

    monkeypatch.setattr("askeve_services.notifier.httpx.post", fake_post)
    notifier = NurseTeamNotifier(webhook_url="https://hooks.example.test/nurses", timeout=2.0)
    ack = notifier.notify_team(_event(notifier))

    assert ack.channel == "webhook"
    assert ack.reference == "req-42"
    card = captured["json"]
    assert card["@type"] == "MessageCard"
    assert card["event"]["session_id"] == "session-1"
    facts = {fact["name"]: fact["value"] for fact in card["sections"][0]["facts"]}
    assert facts["Safety signal"] == "self_harm_intent"
    assert captured["timeout"] == 2.0


def test_notifier_failure_is_external_service_error(monkeypatch):
    def fake_post(url: str, **kwargs):
        return _FakeResponse(status_code=500, url=url)

    monkeypatch.setattr("askeve_services.notifier.httpx.post", fake_post)
    notifier = NurseTeamNotifier(webhook_url="https://hooks.example.test/nurses")
    with pytest.raises(ExternalServiceError):
        notifier.notify_team(_event(notifier))
