from __future__ import annotations

from typing import TYPE_CHECKING

from .. import responses
from ..models import TOPIC_END_OF_CONVERSATION, ConversationState, HandlerResult
from ..registry import TopicDescriptor, intent_rule
from .base import KeywordTopicHandler

if TYPE_CHECKING:
    from ..context import TurnContext

DESCRIPTOR = TopicDescriptor(
    id=TOPIC_END_OF_CONVERSATION,
    display_name="End of conversation",
    keywords=("bye", "goodbye"),
    intent_rules=(
        intent_rule(r"^(?:bye|goodbye|see you|cheers)\b", 0.9, "farewell"),
        intent_rule(r"\b(?:that's all|that is all|nothing else|i'm done|end (?:the )?(?:chat|conversation))\b", 0.9, "done"),
        intent_rule(r"^(?:thanks|thank you)(?: so much| very much)?(?: bye)?$", 0.7, "thanks"),
    ),
    supported_stages=frozenset({"topic_detection", "information_gathering", "providing_information", "completion"}),
    priority=6,
)


class EndOfConversationHandler(KeywordTopicHandler):
    descriptor = DESCRIPTOR

    def handle(self, message: str, state: ConversationState, context: "TurnContext") -> HandlerResult:
        self.move_to(context, "completion")
        context.turn.update(conversation_ended=True)
        return self.reply(context, responses.GOODBYE, conversation_ended=True)
