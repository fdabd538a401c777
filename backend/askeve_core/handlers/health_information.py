from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .. import responses
from ..errors import ExternalServiceError
from ..escalation import assess_urgency
from ..models import TOPIC_HEALTH_INFORMATION, ConversationState, ContentSnippet, HandlerResult
from ..registry import TopicDescriptor, intent_rule
from .base import KeywordTopicHandler, normalize_message

if TYPE_CHECKING:
    from ..context import TurnContext

logger = logging.getLogger(__name__)

ASK_QUESTION = (
    "Of course. What would you like to know? You can ask about symptoms, screening, or any of the "
    "gynaecological cancers."
)
_MENU_CHOICES = {"1", "health information", "information", "health info"}

DESCRIPTOR = TopicDescriptor(
    id=TOPIC_HEALTH_INFORMATION,
    display_name="Health information",
    description="Answers gynaecological health questions from The Eve Appeal's content.",
    keywords=(
        "symptom",
        "symptoms",
        "cancer",
        "ovarian",
        "cervical",
        "womb",
        "vulval",
        "vaginal",
        "screening",
        "smear",
        "hpv",
        "menopause",
        "periods",
        "bloating",
        "endometriosis",
        "diagnosis",
        "treatment",
    ),
    intent_rules=(
        intent_rule(r"\b(?:what|which) (?:are|is) (?:the )?(?:signs|symptoms|risk factors)\b", 0.9, "symptom_question"),
        intent_rule(r"\b(?:ovarian|cervical|womb|uterine|vulval|vaginal|endometrial) cancer\b", 0.85, "cancer_type"),
        intent_rule(r"\b(?:smear test|cervical screening|screening|hpv)\b", 0.8, "screening"),
        intent_rule(r"\b(?:bleeding after (?:sex|the menopause|menopause)|bloating|pelvic pain|unusual discharge)\b", 0.75, "symptom_mention"),
        intent_rule(r"\b(?:tell me about|information (?:on|about)|what is|should i be worried|how do i know)\b", 0.6, "information_request"),
        intent_rule(r"^(?:1|health information|information|health info)$", 0.8, "menu_choice"),
    ),
    supported_stages=frozenset({"topic_detection", "information_gathering", "providing_information"}),
    priority=5,
)


def _compose(snippets: list[ContentSnippet]) -> str:
    top = snippets[0]
    lines = [f"Here's what The Eve Appeal says about {top.title}:", top.summary]
    if top.source_url:
        lines.append(f"Read more: {top.source_url}")
    related = [snippet.title for snippet in snippets[1:]]
    if related:
        lines.append("Related topics: " + ", ".join(related) + ".")
    lines.append(responses.MEDICAL_DISCLAIMER)
    return "\n\n".join(lines)


class HealthInformationHandler(KeywordTopicHandler):
    descriptor = DESCRIPTOR

    def handle(self, message: str, state: ConversationState, context: "TurnContext") -> HandlerResult:
        if normalize_message(message) in _MENU_CHOICES:
            self.move_to(context, "information_gathering")
            return self.reply(context, ASK_QUESTION)

        self.move_to(context, "information_gathering")
        try:
            snippets = context.services.content.search(message, limit=3)
        except ExternalServiceError as exc:
            logger.warning("Content search unavailable: %s", exc)
            return self.reply(context, responses.CONTENT_UNAVAILABLE, ["Speak to a nurse", "Support options"])

        if not snippets:
            return self.reply(context, responses.NO_CONTENT_FOUND, ["Speak to a nurse", "Support options"])

        self.move_to(context, "providing_information")
        suggestions = ["Speak to a nurse", "Ask another question"]
        if assess_urgency(message) == "high":
            suggestions = ["Speak to a nurse", "Support options"]
        return self.reply(context, _compose(snippets), suggestions)
