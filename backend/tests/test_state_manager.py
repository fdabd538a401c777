from __future__ import annotations

import threading

import pytest

from askeve_core.errors import StaleStateError
from askeve_core.state import ConversationStateManager


def _manager(clock, **kwargs) -> ConversationStateManager:
    kwargs.setdefault("ttl_seconds", 1800)
    kwargs.setdefault("history_limit", 4)
    return ConversationStateManager(clock=clock, **kwargs)


def test_get_or_create_returns_fresh_state_and_reuses_it(clock):
    manager = _manager(clock)
    state = manager.get_or_create("conv-1", "user-1")
    assert state.current_stage == "greeting"
    assert state.current_topic is None
    assert state.version == 0
    assert state.session_id == "conv-1"
    assert manager.get_or_create("conv-1", "user-1") == state
    assert len(manager) == 1


def test_conversation_is_bound_to_its_user(clock):
    manager = _manager(clock)
    manager.get_or_create("conv-1", "user-1")
    with pytest.raises(PermissionError):
        manager.get_or_create("conv-1", "user-2")


def test_update_commits_a_new_version_and_rejects_managed_fields(clock):
    manager = _manager(clock)
    manager.get_or_create("conv-1", "user-1")
    clock.advance(30)

    updated = manager.update("conv-1", {"conversation_started": True})
    assert updated.conversation_started is True
    assert updated.version == 1
    assert updated.last_activity_at == clock.now

    with pytest.raises(ValueError):
        manager.update("conv-1", {"version": 99})
    with pytest.raises(ValueError):
        manager.update("conv-1", {"favourite_colour": "teal"})
    with pytest.raises(ValueError):
        manager.update("conv-1", {"current_stage": "daydreaming"})
    assert manager.get_current("conv-1").version == 1


def test_transition_topic_validates_stage_support(clock):
    manager = _manager(clock, stage_support=lambda topic, stage: stage != "escalation")
    manager.get_or_create("conv-1", "user-1")

    result = manager.transition_topic("conv-1", "health_information_router", "information_gathering")
    assert result.ok is True
    assert result.state.current_stage == "information_gathering"
    assert result.state.topics_visited == ("health_information_router",)

    rejected = manager.transition_topic("conv-1", "health_information_router", "escalation")
    assert rejected.ok is False
    assert rejected.error is not None
    assert manager.get_current("conv-1").current_stage == "information_gathering"

    unknown = manager.transition_topic("conv-1", "health_information_router", "nowhere")
    assert unknown.ok is False


def test_history_is_bounded_and_counts_user_messages(clock):
    manager = _manager(clock, history_limit=3)
    manager.get_or_create("conv-1", "user-1")
    for index in range(3):
        manager.append_message("conv-1", "user", f"question {index}")
        manager.append_message("conv-1", "assistant", f"answer {index}")

    state = manager.get_current("conv-1")
    assert [message.text for message in state.history] == ["answer 1", "question 2", "answer 2"]
    assert state.message_count == 3


def test_turn_commits_all_changes_at_once(clock):
    manager = _manager(clock)
    with manager.turn("conv-1", "user-1") as turn:
        turn.append_message("user", "hello")
        turn.update(conversation_started=True)
        turn.transition_topic("conversation_start", "topic_detection")
        assert manager.get_current("conv-1").version == 0
    assert turn.committed.version == 1
    assert turn.committed.conversation_started is True
    assert turn.committed.current_stage == "topic_detection"
    assert manager.get_current("conv-1") == turn.committed


def test_failed_turn_leaves_no_partial_state(clock):
    manager = _manager(clock)
    manager.get_or_create("conv-1", "user-1")
    with pytest.raises(RuntimeError):
        with manager.turn("conv-1", "user-1") as turn:
            turn.update(conversation_started=True)
            raise RuntimeError("handler blew up")
    state = manager.get_current("conv-1")
    assert state.conversation_started is False
    assert state.version == 0


def test_rollback_restores_checkpoint(clock):
    manager = _manager(clock)
    with manager.turn("conv-1", "user-1") as turn:
        turn.append_message("user", "hello")
        turn.checkpoint()
        turn.update(conversation_started=True)
        turn.rollback()
    assert turn.committed.conversation_started is False
    assert turn.committed.message_count == 1


def test_stale_commit_is_rejected(clock):
    manager = _manager(clock)
    base = manager.get_or_create("conv-1", "user-1")
    manager.update("conv-1", {"conversation_started": True})
    with pytest.raises(StaleStateError):
        manager._commit(base, base)


def test_expired_state_is_replaced_on_access(clock):
    expired = []
    manager = _manager(clock, ttl_seconds=60, on_expire=expired.append)
    manager.get_or_create("conv-1", "user-1")
    manager.update("conv-1", {"conversation_started": True})
    clock.advance(61)

    assert manager.get_current("conv-1") is None
    assert len(manager) == 1

    fresh = manager.get_or_create("conv-1", "user-1")
    assert fresh.conversation_started is False
    assert fresh.version == 0
    assert [state.conversation_id for state in expired] == ["conv-1"]


def test_sweep_removes_idle_conversations_only(clock):
    expired = []
    manager = _manager(clock, ttl_seconds=600, on_expire=expired.append)
    manager.get_or_create("idle", "user-1")
    clock.advance(400)
    manager.get_or_create("recent", "user-2")
    clock.advance(300)

    assert manager.sweep_expired() == 1
    assert manager.get_current("idle") is None
    assert manager.get_current("recent") is not None
    assert [state.conversation_id for state in expired] == ["idle"]
    assert manager.sweep_expired(ttl_seconds=100) == 1
    assert len(manager) == 0


def test_sweep_skips_conversation_with_turn_in_progress(clock):
    manager = _manager(clock, ttl_seconds=60)
    with manager.turn("conv-1", "user-1") as turn:
        clock.advance(120)
        assert manager.sweep_expired() == 0
        turn.update(conversation_started=True)
    assert manager.get_current("conv-1").conversation_started is True


def test_concurrent_turns_on_one_conversation_are_serialised(clock):
    manager = _manager(clock, history_limit=10)
    manager.get_or_create("conv-1", "user-1")

    def _worker():
        for _ in range(25):
            with manager.turn("conv-1", "user-1") as turn:
                turn.append_message("user", "ping")

    threads = [threading.Thread(target=_worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    state = manager.get_current("conv-1")
    assert state.message_count == 200
    assert state.version == 200
    assert manager._locks == {}
