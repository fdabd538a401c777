from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import fields, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from memory.time_utils import utc_now

from .errors import StaleStateError, TransitionError
from .models import STAGES, ChatMessage, ConversationState, TransitionResult

logger = logging.getLogger(__name__)

StageSupport = Callable[[str, str], bool]
ExpiryListener = Callable[[ConversationState], None]

_STATE_FIELDS = {item.name for item in fields(ConversationState)}
_MANAGED_FIELDS = {
    "conversation_id",
    "user_id",
    "created_at",
    "last_activity_at",
    "expires_at",
    "history",
    "message_count",
    "version",
}


class ConversationTurn:
    """Working copy of one conversation while its turn holds the lock.

    Every mutation goes through the manager's validation and produces a new frozen
    state; nothing is visible to other turns until the manager commits.
    """

    def __init__(self, manager: "ConversationStateManager", base: ConversationState) -> None:
        self._manager = manager
        self.base = base
        self.state = base
        self._checkpoint = base
        self.committed: ConversationState | None = None

    def update(self, **changes: Any) -> ConversationState:
        self.state = self._manager.apply_patch(self.state, changes)
        return self.state

    def transition_topic(self, topic: str, stage: str) -> TransitionResult:
        result = self._manager.check_transition(self.state, topic, stage)
        if result.ok:
            self.state = result.state
        return result

    def append_message(self, role: str, text: str, *, topic: str | None = None) -> ConversationState:
        self.state = self._manager.with_message(self.state, role, text, topic=topic)
        return self.state

    def checkpoint(self) -> None:
        self._checkpoint = self.state

    def rollback(self) -> ConversationState:
        self.state = self._checkpoint
        return self.state


class ConversationStateManager:
    def __init__(
        self,
        *,
        stage_support: StageSupport | None = None,
        ttl_seconds: int = 30 * 60,
        history_limit: int = 10,
        clock: Callable[[], datetime] = utc_now,
        on_expire: ExpiryListener | None = None,
    ) -> None:
        self.stage_support = stage_support
        self.ttl = timedelta(seconds=ttl_seconds)
        self.history_limit = history_limit
        self.clock = clock
        self.on_expire = on_expire
        self._states: dict[str, ConversationState] = {}
        self._guard = threading.Lock()
        # conversation_id -> [lock, holders and waiters]
        self._locks: dict[str, list[Any]] = {}

    @contextmanager
    def _locked(self, conversation_id: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(conversation_id)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[conversation_id] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0 and self._locks.get(conversation_id) is entry:
                    del self._locks[conversation_id]

    def _new_state(self, conversation_id: str, user_id: str, session_id: str | None) -> ConversationState:
        now = self.clock()
        return ConversationState(
            conversation_id=conversation_id,
            user_id=user_id,
            session_id=session_id or conversation_id,
            created_at=now,
            last_activity_at=now,
            expires_at=now + self.ttl,
        )

    def _lookup(self, conversation_id: str, *, evict: bool = True) -> ConversationState | None:
        # Only callers holding the conversation lock may evict.
        expired: ConversationState | None = None
        with self._guard:
            state = self._states.get(conversation_id)
            if state is not None and self.clock() >= state.expires_at:
                if evict:
                    expired = self._states.pop(conversation_id)
                state = None
        if expired is not None:
            self._notify_expired(expired)
        return state

    def _get_or_create_locked(self, conversation_id: str, user_id: str, session_id: str | None) -> ConversationState:
        state = self._lookup(conversation_id)
        if state is not None:
            if state.user_id != user_id:
                raise PermissionError(f"Conversation {conversation_id} belongs to another user")
            return state
        state = self._new_state(conversation_id, user_id, session_id)
        with self._guard:
            self._states[conversation_id] = state
        logger.info("Conversation created conversation_id=%s", conversation_id)
        return state

    def _commit(self, base: ConversationState, new_state: ConversationState) -> ConversationState:
        now = self.clock()
        with self._guard:
            stored = self._states.get(base.conversation_id)
            if stored is None or stored.version != base.version:
                raise StaleStateError(f"Conversation {base.conversation_id} changed during the turn")
            final = replace(
                new_state,
                version=base.version + 1,
                last_activity_at=now,
                expires_at=now + self.ttl,
            )
            self._states[base.conversation_id] = final
        return final

    def _notify_expired(self, state: ConversationState) -> None:
        if self.on_expire is None:
            return
        try:
            self.on_expire(state)
        except Exception:
            logger.exception("Expiry listener failed conversation_id=%s", state.conversation_id)

    def apply_patch(self, state: ConversationState, patch: dict[str, Any]) -> ConversationState:
        unknown = set(patch) - _STATE_FIELDS
        if unknown:
            raise ValueError(f"Unknown conversation fields: {sorted(unknown)}")
        managed = set(patch) & _MANAGED_FIELDS
        if managed:
            raise ValueError(f"Fields managed by the state manager: {sorted(managed)}")
        stage = patch.get("current_stage")
        if stage is not None and stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}")
        return replace(state, **patch)

    def check_transition(self, state: ConversationState, topic: str, stage: str) -> TransitionResult:
        if stage not in STAGES:
            return TransitionResult(False, state, TransitionError(f"Unknown stage: {stage}"))
        if self.stage_support is not None and not self.stage_support(topic, stage):
            return TransitionResult(
                False,
                state,
                TransitionError(f"Topic {topic} does not support stage {stage}"),
            )
        visited = state.topics_visited
        if topic not in visited:
            visited = visited + (topic,)
        return TransitionResult(True, replace(state, current_topic=topic, current_stage=stage, topics_visited=visited))

    def with_message(self, state: ConversationState, role: str, text: str, *, topic: str | None = None) -> ConversationState:
        message = ChatMessage(role=role, text=text, timestamp=self.clock(), topic=topic)
        history = (state.history + (message,))[-self.history_limit :]
        count = state.message_count + (1 if role == "user" else 0)
        return replace(state, history=history, message_count=count)

    def get_or_create(self, conversation_id: str, user_id: str, session_id: str | None = None) -> ConversationState:
        with self._locked(conversation_id):
            return self._get_or_create_locked(conversation_id, user_id, session_id)

    def get_current(self, conversation_id: str) -> ConversationState | None:
        return self._lookup(conversation_id, evict=False)

    def update(self, conversation_id: str, patch: dict[str, Any]) -> ConversationState:
        with self._locked(conversation_id):
            current = self._lookup(conversation_id)
            if current is None:
                raise KeyError(f"Conversation not found: {conversation_id}")
            return self._commit(current, self.apply_patch(current, patch))

    def transition_topic(self, conversation_id: str, topic: str, stage: str) -> TransitionResult:
        with self._locked(conversation_id):
            current = self._lookup(conversation_id)
            if current is None:
                raise KeyError(f"Conversation not found: {conversation_id}")
            result = self.check_transition(current, topic, stage)
            if not result.ok:
                logger.warning("Rejected topic transition conversation_id=%s: %s", conversation_id, result.error)
                return result
            return TransitionResult(True, self._commit(current, result.state))

    def append_message(
        self,
        conversation_id: str,
        role: str,
        text: str,
        *,
        topic: str | None = None,
    ) -> ConversationState:
        with self._locked(conversation_id):
            current = self._lookup(conversation_id)
            if current is None:
                raise KeyError(f"Conversation not found: {conversation_id}")
            return self._commit(current, self.with_message(current, role, text, topic=topic))

    @contextmanager
    def turn(self, conversation_id: str, user_id: str, session_id: str | None = None) -> Iterator[ConversationTurn]:
        with self._locked(conversation_id):
            base = self._get_or_create_locked(conversation_id, user_id, session_id)
            turn = ConversationTurn(self, base)
            yield turn
            turn.committed = self._commit(base, turn.state)

    def sweep_expired(self, ttl_seconds: int | None = None) -> int:
        ttl = timedelta(seconds=ttl_seconds) if ttl_seconds is not None else self.ttl
        now = self.clock()
        removed: list[ConversationState] = []
        with self._guard:
            for conversation_id, state in list(self._states.items()):
                if conversation_id in self._locks:
                    continue
                if now - state.last_activity_at > ttl:
                    removed.append(self._states.pop(conversation_id))
        for state in removed:
            self._notify_expired(state)
        if removed:
            logger.info("Swept %s expired conversations", len(removed))
        return len(removed)

    def __len__(self) -> int:
        with self._guard:
            return len(self._states)
