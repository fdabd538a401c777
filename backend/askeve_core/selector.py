from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .models import ConversationState
from .registry import TopicHandlerRegistry, TopicRegistration

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    topic_id: str
    confidence: float
    priority: int
    order: int


@dataclass(frozen=True)
class Selection:
    registration: TopicRegistration
    confidence: float
    reason: str
    candidates: tuple[Candidate, ...] = ()

    @property
    def topic_id(self) -> str:
        return self.registration.topic_id


def _clamp(value: float) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(score):
        return 0.0
    return max(0.0, min(1.0, score))


class TopicSelector:
    """Picks the handler for a message.

    Eligibility is decided by stage alone, except for the start handler which may
    claim any stage until the conversation has started. Among eligible handlers the
    highest confidence wins, then the higher priority, then the earlier registration.
    """

    def __init__(self, registry: TopicHandlerRegistry, *, confidence_floor: float = 0.3) -> None:
        self.registry = registry
        self.confidence_floor = confidence_floor

    def is_eligible(self, registration: TopicRegistration, state: ConversationState) -> bool:
        if registration.role == "unclear":
            return False
        if registration.role == "start" and not state.conversation_started:
            return True
        return registration.descriptor.supports(state.current_stage)

    def eligible(self, state: ConversationState) -> list[TopicRegistration]:
        return [item for item in self.registry.registrations() if self.is_eligible(item, state)]

    def score(self, message: str, state: ConversationState) -> list[Candidate]:
        candidates: list[Candidate] = []
        for registration in self.eligible(state):
            try:
                confidence = _clamp(registration.handler.match_confidence(message, state))
            except Exception:
                logger.exception("Confidence scoring failed for topic=%s", registration.topic_id)
                confidence = 0.0
            candidates.append(
                Candidate(
                    topic_id=registration.topic_id,
                    confidence=confidence,
                    priority=registration.descriptor.priority,
                    order=registration.order,
                )
            )
        candidates.sort(key=lambda item: (-item.confidence, -item.priority, item.order))
        return candidates

    def select(self, message: str, state: ConversationState) -> Selection:
        candidates = tuple(self.score(message, state))
        unclear = self.registry.unclear
        if candidates and candidates[0].confidence >= self.confidence_floor:
            best = candidates[0]
            return Selection(self.registry.resolve(best.topic_id), best.confidence, "matched", candidates)
        if unclear is None:
            raise LookupError("No unclear-intent handler registered.")
        best_confidence = candidates[0].confidence if candidates else 0.0
        return Selection(unclear, best_confidence, "below_floor", candidates)
