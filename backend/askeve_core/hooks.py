from __future__ import annotations

import logging
from typing import Callable

from .models import FlowResult

logger = logging.getLogger(__name__)

AfterTurnHook = Callable[[FlowResult], None]


class HookRunner:
    def __init__(self) -> None:
        self._after_hooks: list[AfterTurnHook] = []

    def add_after(self, hook: AfterTurnHook) -> None:
        self._after_hooks.append(hook)

    def run_after(self, result: FlowResult) -> None:
        for hook in self._after_hooks:
            try:
                hook(result)
            except Exception:
                logger.exception("After-turn hook %s failed", getattr(hook, "__name__", hook))
