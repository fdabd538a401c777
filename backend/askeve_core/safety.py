from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Sequence

from .errors import SafetyGateError
from .models import SafetyResult

logger = logging.getLogger(__name__)

# Messages are capped well below this by the HTTP layer; the cap keeps the scan bounded.
MAX_SCAN_CHARS = 4000
FAULT_LABEL = "safety_gate_fault"

_QUOTES = str.maketrans({"’": "'", "‘": "'", "ʼ": "'"})


@dataclass(frozen=True)
class CrisisPattern:
    label: str
    severity: str
    category: str
    pattern: re.Pattern[str]


def _rule(label: str, severity: str, category: str, expression: str) -> CrisisPattern:
    return CrisisPattern(label, severity, category, re.compile(expression, re.IGNORECASE))


# Ordered; first match wins.
CRISIS_PATTERNS: tuple[CrisisPattern, ...] = (
    _rule("self_harm_intent", "high", "self_harm", r"\b(?:kill|hurt|harm|cut)\s+myself\b"),
    _rule("wish_to_die", "high", "self_harm", r"\bwant(?:s|ed)?\s+to\s+die\b"),
    _rule("end_own_life", "high", "self_harm", r"\b(?:end|take)\s+my\s+(?:own\s+)?life\b"),
    _rule("end_it_all", "high", "self_harm", r"\bend\s+it\s+all\b"),
    _rule("ready_to_end", "high", "self_harm", r"\bready\s+to\s+end\s+(?:this|it)\b"),
    _rule("suicidal_language", "high", "self_harm", r"\bsuicid(?:e|al)\b"),
    _rule(
        "not_want_to_live",
        "high",
        "self_harm",
        r"\b(?:don'?t|do\s+not)\s+want\s+to\s+(?:be\s+alive|live)\b",
    ),
    _rule("life_not_worth_living", "high", "self_harm", r"\blife\s+(?:is\s+)?(?:not|isn'?t)\s+worth\s+living\b"),
    _rule("farewell", "high", "self_harm", r"\bthis\s+is\s+(?:my\s+)?goodbye\b"),
    _rule("access_to_means", "high", "self_harm", r"\bi\s+have\s+(?:the\s+|some\s+|enough\s+)?pills\b"),
    _rule("self_harm", "high", "self_harm", r"\bself[- ]?harm(?:ing)?\b"),
    _rule("overdose", "high", "self_harm", r"\boverdos(?:e|ed|ing)\b"),
    _rule("severe_bleeding", "high", "medical_emergency", r"\b(?:severe|uncontrolled)\s+bleeding\b|\bbleeding\s+won'?t\s+stop\b"),
    _rule("chest_pain_breathing", "high", "medical_emergency", r"\bchest\s+pain\b.*\bbreath"),
    _rule("anaphylaxis", "high", "medical_emergency", r"\banaphyla(?:xis|ctic)\b"),
    _rule("cannot_go_on", "medium", "self_harm", r"\bi\s+(?:can'?t|cannot)\s+go\s+on\b"),
    _rule(
        "perceived_burden",
        "medium",
        "self_harm",
        r"\b(?:everyone|everybody)(?:\s+would|'d)?\s+be\s+better\s+off\s+without\s+me\b",
    ),
    _rule("no_reason_to_live", "medium", "self_harm", r"\bno\s+(?:reason|point)\s+(?:to|in)\s+(?:live|living)\b"),
    _rule("unresponsive", "medium", "medical_emergency", r"\b(?:unconscious|unresponsive|not\s+breathing)\b"),
)


class SafetyGate:
    """Synchronous crisis classifier over raw message text.

    No I/O and no conversation state: the cost of ``classify`` is bounded by the
    size of the pattern table and ``MAX_SCAN_CHARS``.
    """

    def __init__(self, patterns: Sequence[CrisisPattern] = CRISIS_PATTERNS) -> None:
        self._patterns = tuple(patterns)

    @property
    def labels(self) -> list[str]:
        return [entry.label for entry in self._patterns]

    def classify(self, text: str) -> SafetyResult:
        started = time.perf_counter()
        if not isinstance(text, str):
            raise SafetyGateError(f"Expected message text, got {type(text).__name__}")
        scanned = text[:MAX_SCAN_CHARS].translate(_QUOTES)
        for entry in self._patterns:
            if entry.pattern.search(scanned):
                return SafetyResult(
                    is_crisis=True,
                    severity=entry.severity,
                    matched_label=entry.label,
                    category=entry.category,
                    elapsed_ms=(time.perf_counter() - started) * 1000.0,
                )
        return SafetyResult(is_crisis=False, severity="low", elapsed_ms=(time.perf_counter() - started) * 1000.0)


def screen_message(
    gate: SafetyGate,
    text: str,
    *,
    failure_mode: str = "closed",
    budget_ms: float = 500.0,
) -> SafetyResult:
    started = time.perf_counter()
    try:
        result = gate.classify(text)
    except Exception:
        logger.exception("Safety gate failed; applying fail-%s policy", failure_mode)
        elapsed = (time.perf_counter() - started) * 1000.0
        if failure_mode == "open":
            return SafetyResult(is_crisis=False, severity="low", matched_label=FAULT_LABEL, elapsed_ms=elapsed, fault=True)
        return SafetyResult(
            is_crisis=True,
            severity="high",
            matched_label=FAULT_LABEL,
            category="self_harm",
            elapsed_ms=elapsed,
            fault=True,
        )
    elapsed = (time.perf_counter() - started) * 1000.0
    if elapsed > budget_ms:
        logger.warning("Crisis detection took %.1fms (budget %.0fms)", elapsed, budget_ms)
    if result.is_crisis:
        logger.warning("Crisis language detected label=%s severity=%s", result.matched_label, result.severity)
    return result
