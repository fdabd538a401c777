from __future__ import annotations

import re
from typing import TYPE_CHECKING

from ..errors import TransitionError
from ..models import ConversationState, FlowResponse, HandlerResult
from ..registry import IntentRule, TopicDescriptor

if TYPE_CHECKING:
    from ..context import TurnContext

_PUNCTUATION_RE = re.compile(r"[^\w\s']")
_WHITESPACE_RE = re.compile(r"\s+")

CONTEXT_BOOST = 0.1


def normalize_message(text: str) -> str:
    lowered = (text or "").lower().replace("’", "'")
    return _WHITESPACE_RE.sub(" ", _PUNCTUATION_RE.sub(" ", lowered)).strip()


def keyword_score(keywords: tuple[str, ...], normalized: str) -> float:
    hits = sum(1 for keyword in keywords if re.search(rf"\b{re.escape(keyword)}\b", normalized))
    if not hits:
        return 0.0
    return min(0.8, 0.25 + 0.15 * (hits - 1))


def rule_score(rules: tuple[IntentRule, ...], normalized: str) -> float:
    best = 0.0
    for rule in rules:
        if rule.confidence > best and rule.pattern.search(normalized):
            best = rule.confidence
    return best


class KeywordTopicHandler:
    """Default matching for handlers described by keywords and intent rules."""

    descriptor: TopicDescriptor

    def match_confidence(self, message: str, state: ConversationState) -> float:
        normalized = normalize_message(message)
        if not normalized:
            return 0.0
        score = max(
            rule_score(self.descriptor.intent_rules, normalized),
            keyword_score(self.descriptor.keywords, normalized),
        )
        if score > 0 and state.current_topic == self.descriptor.id:
            score += CONTEXT_BOOST
        return min(score, 1.0)

    def handle(self, message: str, state: ConversationState, context: "TurnContext") -> HandlerResult:
        raise NotImplementedError

    def move_to(self, context: "TurnContext", stage: str) -> ConversationState:
        result = context.turn.transition_topic(self.descriptor.id, stage)
        if not result.ok:
            raise result.error or TransitionError(f"{self.descriptor.id} cannot enter {stage}")
        return result.state

    def reply(
        self,
        context: "TurnContext",
        text: str,
        suggested_actions: list[str] | None = None,
        *,
        escalation_triggered: bool = False,
        conversation_ended: bool = False,
    ) -> HandlerResult:
        return HandlerResult(
            response=FlowResponse(text=text, suggested_actions=list(suggested_actions or [])),
            new_state=context.turn.state,
            escalation_triggered=escalation_triggered,
            conversation_ended=conversation_ended,
        )
