from __future__ import annotations

from typing import TYPE_CHECKING

from .. import responses
from ..models import TOPIC_CONVERSATION_START, ConversationState, HandlerResult
from ..registry import TopicDescriptor, intent_rule
from .base import KeywordTopicHandler

if TYPE_CHECKING:
    from ..context import TurnContext

MENU = ["Health information", "Speak to a nurse", "Support options"]

DESCRIPTOR = TopicDescriptor(
    id=TOPIC_CONVERSATION_START,
    display_name="Conversation start",
    description="Opening statement, greetings and restarts.",
    keywords=("hello", "hi", "hey", "hiya", "good morning", "good afternoon", "good evening"),
    intent_rules=(
        intent_rule(r"^(?:hi|hello|hey|hiya|good (?:morning|afternoon|evening))\b", 0.8, "greeting"),
        intent_rule(r"^(?:start|begin|get started|start again|restart)$", 0.7, "restart"),
    ),
    supported_stages=frozenset({"greeting", "topic_detection", "completion"}),
    priority=10,
)


class ConversationStartHandler(KeywordTopicHandler):
    descriptor = DESCRIPTOR

    def match_confidence(self, message: str, state: ConversationState) -> float:
        if not state.conversation_started or not state.has_seen_opening_statement:
            return 1.0
        return super().match_confidence(message, state)

    def handle(self, message: str, state: ConversationState, context: "TurnContext") -> HandlerResult:
        if not state.has_seen_opening_statement:
            self.move_to(context, "topic_detection")
            context.turn.update(conversation_started=True, has_seen_opening_statement=True, conversation_ended=False)
            return self.reply(context, responses.OPENING_STATEMENT, MENU)

        if state.conversation_ended or state.current_stage == "completion":
            self.move_to(context, "topic_detection")
            context.turn.update(conversation_ended=False)
            return self.reply(context, responses.WELCOME_BACK, MENU)

        self.move_to(context, "topic_detection")
        return self.reply(context, responses.FOLLOW_UP_GREETING, MENU)
