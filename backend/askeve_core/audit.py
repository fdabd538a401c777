from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class AuditSink(Protocol):
    def append_policy_event(
        self,
        *,
        user_id: str | None,
        session_key: str | None,
        event_type: str,
        topic: str | None,
        details: dict[str, Any],
    ) -> None: ...


def record_policy_event(
    sink: AuditSink | None,
    *,
    user_id: str | None,
    session_key: str | None,
    event_type: str,
    topic: str | None,
    details: dict[str, Any],
) -> None:
    if sink is None:
        return
    try:
        sink.append_policy_event(
            user_id=user_id,
            session_key=session_key,
            event_type=event_type,
            topic=topic,
            details=details,
        )
    except Exception:
        logger.exception("Failed to append policy event type=%s", event_type)
