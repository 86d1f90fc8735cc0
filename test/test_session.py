from __future__ import annotations

import time

from inkpilot.messages import Message, MessageRole
from inkpilot.session import SessionManager, SessionStatus


def test_iteration_budget_transition():
    manager = SessionManager()
    s = manager.create_session("goal", max_iterations=2)

    manager.increment_iteration(s.id)
    assert s.status is SessionStatus.ACTIVE
    manager.increment_iteration(s.id)
    assert s.status is SessionStatus.MAX_ITERATIONS
    assert s.iteration_count == 2


def test_completion_is_kept_when_budget_runs_out():
    manager = SessionManager()
    s = manager.create_session("goal", max_iterations=1)
    manager.complete_session(s.id)
    manager.increment_iteration(s.id)
    assert s.status is SessionStatus.COMPLETED


def test_terminal_states_do_not_change():
    manager = SessionManager()
    s = manager.create_session("goal", max_iterations=5)
    manager.error_session(s.id, "boom")
    manager.complete_session(s.id)
    assert s.status is SessionStatus.ERROR
    assert s.error_message == "boom"
    assert manager.cancel_session(s.id) is False


def test_cancel_idle_session():
    manager = SessionManager()
    s = manager.create_session("goal", max_iterations=5)
    assert manager.cancel_session(s.id) is True
    assert s.status is SessionStatus.CANCELLED
    assert manager.cancel_session("missing") is False


def test_cancel_during_turn_is_deferred():
    manager = SessionManager()
    s = manager.create_session("goal", max_iterations=5)
    with s.turn_lock:
        assert manager.cancel_session(s.id) is True
        assert s.status is SessionStatus.ACTIVE
    assert manager.observe_cancellation(s.id) is True
    assert s.status is SessionStatus.CANCELLED


def test_record_entities_keeps_order_without_duplicates():
    manager = SessionManager()
    s = manager.create_session("goal", max_iterations=5)
    manager.record_entities(s.id, created=["intro", "cave"])
    manager.record_entities(s.id, created=["cave", "end"], modified=["intro", "intro"])
    assert s.created_entities == ["intro", "cave", "end"]
    assert s.modified_entities == ["intro"]


def test_snapshot_is_a_copy():
    manager = SessionManager()
    s = manager.create_session("goal", max_iterations=5, data={"k": 1})
    manager.add_message(s.id, Message(MessageRole.USER, "hi"))
    snap = manager.snapshot(s.id)

    manager.add_message(s.id, Message(MessageRole.USER, "again"))
    assert snap.message_count == 1
    assert snap.data == {"k": 1}
    assert manager.snapshot("missing") is None


def test_cleanup_only_removes_old_finished_sessions():
    manager = SessionManager()
    old_done = manager.create_session("a", max_iterations=1)
    old_active = manager.create_session("b", max_iterations=1)
    fresh_done = manager.create_session("c", max_iterations=1)

    manager.complete_session(old_done.id)
    manager.complete_session(fresh_done.id)
    old_done.last_activity_at = time.time() - 7200
    old_active.last_activity_at = time.time() - 7200

    assert manager.cleanup_old_sessions(max_age_s=3600) == 1
    assert manager.get_session(old_done.id) is None
    assert manager.get_session(old_active.id) is not None
    assert manager.get_session(fresh_done.id) is not None
    assert [x.id for x in manager.active_sessions()] == [old_active.id]


def test_delete_session():
    manager = SessionManager()
    s = manager.create_session("goal", max_iterations=5)
    assert manager.delete_session(s.id)
    assert not manager.delete_session(s.id)
    assert s.cancel_requested.is_set()
