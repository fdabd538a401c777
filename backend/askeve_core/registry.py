from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from .models import STAGES, ConversationState, HandlerResult

if TYPE_CHECKING:
    from .context import TurnContext


HANDLER_ROLES = {"topic", "start", "unclear"}


@dataclass(frozen=True)
class IntentRule:
    pattern: re.Pattern[str]
    confidence: float
    label: str


def intent_rule(expression: str, confidence: float, label: str) -> IntentRule:
    return IntentRule(re.compile(expression, re.IGNORECASE), confidence, label)


@dataclass(frozen=True)
class TopicDescriptor:
    id: str
    display_name: str
    description: str = ""
    keywords: tuple[str, ...] = ()
    intent_rules: tuple[IntentRule, ...] = ()
    supported_stages: frozenset[str] = frozenset()
    requires_consent: bool = False
    can_escalate: bool = False
    priority: int = 0
    consent_type: str | None = None

    def supports(self, stage: str) -> bool:
        return stage in self.supported_stages


class TopicHandler(Protocol):
    descriptor: TopicDescriptor

    def match_confidence(self, message: str, state: ConversationState) -> float: ...

    def handle(self, message: str, state: ConversationState, context: "TurnContext") -> HandlerResult: ...


@dataclass(frozen=True)
class TopicRegistration:
    descriptor: TopicDescriptor
    handler: TopicHandler
    order: int
    role: str = "topic"

    @property
    def topic_id(self) -> str:
        return self.descriptor.id


class TopicHandlerRegistry:
    def __init__(self) -> None:
        self._registrations: dict[str, TopicRegistration] = {}
        self._start: TopicRegistration | None = None
        self._unclear: TopicRegistration | None = None

    def register(self, descriptor: TopicDescriptor, handler: TopicHandler, *, role: str = "topic") -> TopicRegistration:
        if role not in HANDLER_ROLES:
            raise ValueError(f"Unknown handler role: {role}")
        if descriptor.id in self._registrations:
            raise ValueError(f"Topic already registered: {descriptor.id}")
        unknown = set(descriptor.supported_stages) - STAGES
        if unknown:
            raise ValueError(f"Unknown stages for {descriptor.id}: {sorted(unknown)}")
        if role == "start" and self._start is not None:
            raise ValueError("A conversation-start handler is already registered.")
        if role == "unclear":
            if self._unclear is not None:
                raise ValueError("An unclear-intent handler is already registered.")
            if set(descriptor.supported_stages) != STAGES:
                raise ValueError("The unclear-intent handler must support every stage.")

        registration = TopicRegistration(descriptor, handler, len(self._registrations), role)
        self._registrations[descriptor.id] = registration
        if role == "start":
            self._start = registration
        elif role == "unclear":
            self._unclear = registration
        return registration

    def resolve(self, topic_id: str) -> TopicRegistration:
        registration = self._registrations.get(topic_id)
        if not registration:
            raise KeyError(f"Topic not found: {topic_id}")
        return registration

    def supports(self, topic_id: str, stage: str) -> bool:
        registration = self._registrations.get(topic_id)
        return bool(registration and registration.descriptor.supports(stage))

    @property
    def start(self) -> TopicRegistration | None:
        return self._start

    @property
    def unclear(self) -> TopicRegistration | None:
        return self._unclear

    def registrations(self) -> list[TopicRegistration]:
        return sorted(self._registrations.values(), key=lambda item: item.order)

    def list_ids(self) -> list[str]:
        return sorted(self._registrations.keys())

    def __len__(self) -> int:
        return len(self._registrations)
