from __future__ import annotations

from typing import TYPE_CHECKING

from .. import responses
from ..models import STAGES, SUBFLOW_STAGES, TOPIC_UNCLEAR_INTENT, ConversationState, HandlerResult
from ..registry import TopicDescriptor
from .base import KeywordTopicHandler

if TYPE_CHECKING:
    from ..context import TurnContext

DESCRIPTOR = TopicDescriptor(
    id=TOPIC_UNCLEAR_INTENT,
    display_name="Unclear intent",
    description="Menu of options when no topic is confident enough.",
    supported_stages=frozenset(STAGES),
)


class UnclearIntentHandler(KeywordTopicHandler):
    descriptor = DESCRIPTOR

    def match_confidence(self, message: str, state: ConversationState) -> float:
        return 0.0

    def handle(self, message: str, state: ConversationState, context: "TurnContext") -> HandlerResult:
        # A subflow stage without a live subflow would leave only the menu reachable.
        if state.current_stage in SUBFLOW_STAGES and state.active_subflow is None:
            self.move_to(context, "topic_detection")
        return self.reply(
            context,
            responses.UNCLEAR_INTENT,
            ["Health information", "Speak to a nurse", "Support options"],
        )
