from __future__ import annotations

from typing import TYPE_CHECKING

from .. import responses
from ..models import TOPIC_SUPPORT_OPTIONS, ConversationState, HandlerResult
from ..registry import TopicDescriptor, intent_rule
from .base import KeywordTopicHandler

if TYPE_CHECKING:
    from ..context import TurnContext

DESCRIPTOR = TopicDescriptor(
    id=TOPIC_SUPPORT_OPTIONS,
    display_name="Support options",
    description="Ways The Eve Appeal can support someone.",
    keywords=("support", "options", "services", "resources", "helpline", "charity", "eve appeal"),
    intent_rules=(
        intent_rule(r"\b(?:support options|how can you help|what can you do|what do you offer)\b", 0.9, "support_overview"),
        intent_rule(r"\b(?:what|which)\s+(?:support|help|services)\b", 0.85, "support_question"),
        intent_rule(r"\bhelp ?line\b", 0.8, "helpline"),
        intent_rule(r"^(?:3|support)$", 0.8, "menu_choice"),
    ),
    supported_stages=frozenset({"topic_detection", "information_gathering", "providing_information"}),
    priority=4,
)


class SupportOptionsHandler(KeywordTopicHandler):
    descriptor = DESCRIPTOR

    def handle(self, message: str, state: ConversationState, context: "TurnContext") -> HandlerResult:
        self.move_to(context, "providing_information")
        return self.reply(context, responses.SUPPORT_OPTIONS, ["Speak to a nurse", "Health information"])
