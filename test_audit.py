from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from audit import (
    ACTION_LOGIN,
    ACTION_LOGIN_FAILED,
    RESOURCE_AUTHENTICATION,
    AuditRecorder,
)
from models import AuditLog, ImmutableAuditEntry
from schemas import AuditFilters


def login_failed(recorder, ip="203.0.113.7", name="alice"):
    return recorder.record(
        action=ACTION_LOGIN_FAILED,
        resource_type=RESOURCE_AUTHENTICATION,
        success=False,
        ip=ip,
        actor_name=name,
        error_message="HTTP 401",
    )


def test_record_returns_id(recorder):
    entry_id = recorder.record(
        action="posts_created",
        resource_type="posts",
        resource_id=42,
        resource_title="Hello",
        actor_user_id="u-1",
        new_values={"title": "Hello"},
    )

    entry = recorder.get_entry(entry_id)
    assert entry.action == "posts_created"
    assert entry.resource_id == "42"
    assert entry.new_values == {"title": "Hello"}
    assert entry.success is True


def test_write_failure_is_swallowed(policy):
    factory = MagicMock()
    factory.return_value.commit.side_effect = OperationalError("INSERT", {}, Exception("db down"))
    recorder = AuditRecorder(factory, policy_provider=policy)

    assert recorder.record(action="x", resource_type="y") is None
    factory.return_value.rollback.assert_called_once()
    factory.return_value.close.assert_called_once()


def test_entries_are_immutable(recorder, session_factory):
    entry_id = recorder.record(action="posts_deleted", resource_type="posts", resource_id="1")

    db = session_factory()
    try:
        row = db.get(AuditLog, entry_id)
        row.action = "nothing_happened"
        with pytest.raises(ImmutableAuditEntry):
            db.commit()
    finally:
        db.rollback()
        db.close()

    assert recorder.get_entry(entry_id).action == "posts_deleted"


def test_by_resource_newest_first(recorder, clock):
    for verb in ("created", "updated", "deleted"):
        recorder.record(action=f"posts_{verb}", resource_type="posts", resource_id="7")
        clock.advance(1)
    recorder.record(action="posts_created", resource_type="posts", resource_id="8")

    entries = recorder.by_resource("posts", "7")
    assert [e.action for e in entries] == ["posts_deleted", "posts_updated", "posts_created"]


def test_list_entries_filters_and_paging(recorder, clock):
    for i in range(5):
        login_failed(recorder, name="mallory")
        clock.advance(1)
    recorder.record(
        action=ACTION_LOGIN,
        resource_type=RESOURCE_AUTHENTICATION,
        actor_name="alice",
        ip="198.51.100.1",
        details="POST /api/auth/login",
    )

    failed = recorder.list_entries(AuditFilters(success=False, limit=2))
    assert failed.total_count == 5
    assert failed.total_pages == 3
    assert len(failed.logs) == 2
    assert all(not e.success for e in failed.logs)

    by_ip = recorder.list_entries(AuditFilters(ip_address="198.51.100.1"))
    assert [e.user_name for e in by_ip.logs] == ["alice"]

    search = recorder.list_entries(AuditFilters(search="auth/login"))
    assert search.total_count == 1


def test_failure_log_counts_and_clears(recorder, clock):
    for _ in range(3):
        counts = recorder.record_failure("203.0.113.7", "Alice")
    assert counts.ip_failures == 3
    assert counts.user_failures == 3

    recorder.clear_user_failures("alice")
    counts = recorder.recent_failures("203.0.113.7", "alice")
    assert counts.ip_failures == 3
    assert counts.user_failures == 0


def test_failure_log_is_a_trailing_window(recorder, clock):
    recorder.record_failure("203.0.113.7")
    clock.advance(600)
    recorder.record_failure("203.0.113.7")
    clock.advance(301)

    assert recorder.recent_failures(ip="203.0.113.7").ip_failures == 1


def test_count_failed_attempts(recorder, clock):
    login_failed(recorder, ip="203.0.113.7")
    clock.advance(1000)
    login_failed(recorder, ip="203.0.113.7")
    login_failed(recorder, ip="198.51.100.1")
    recorder.record(action="rate_limited", resource_type="security", success=False, ip="203.0.113.7")

    assert recorder.count_failed_attempts(ip="203.0.113.7") == 2
    assert recorder.count_failed_attempts(ip="203.0.113.7", within_seconds=900) == 1


def test_purge_refuses_recent_cutoff(recorder):
    with pytest.raises(ValueError):
        recorder.purge_older_than(7)


def test_purge_older_than(recorder, clock):
    recorder.record(action="old", resource_type="posts")
    clock.advance(40 * 24 * 3600)
    recent_id = recorder.record(action="new", resource_type="posts")

    assert recorder.purge_older_than(30) == 1
    assert [e.id for e in recorder.recent()] == [recent_id]


def test_stats(recorder):
    login_failed(recorder)
    login_failed(recorder)
    recorder.record(action=ACTION_LOGIN, resource_type=RESOURCE_AUTHENTICATION, actor_name="alice")
    recorder.record(action="posts_created", resource_type="posts")

    stats = recorder.stats()
    assert stats["summary"] == {"total_logs": 4, "failed_logs": 2, "success_rate": "50.0%"}
    assert stats["top_actions"][0] == {"value": ACTION_LOGIN_FAILED, "count": 2}
    assert len(stats["recent_failed_actions"]) == 2


def test_by_actor(recorder, clock):
    recorder.record(action="posts_created", resource_type="posts", actor_user_id="u-1")
    clock.advance(1)
    recorder.record(action="posts_created", resource_type="posts", actor_user_id="u-2")
    clock.advance(1)
    recorder.record(action="posts_deleted", resource_type="posts", actor_user_id="u-1")

    assert [e.action for e in recorder.by_actor("u-1")] == ["posts_deleted", "posts_created"]


def test_concurrent_writers_keep_per_resource_order(file_session_factory, store, policy, clock):
    recorder = AuditRecorder(file_session_factory, store=store, policy_provider=policy, clock=clock)
    verbs = ["created", "updated", "published", "updated", "deleted"]

    def write_history(resource_id):
        return [
            recorder.record(action=f"posts_{verb}", resource_type="posts", resource_id=resource_id)
            for verb in verbs
        ]

    with ThreadPoolExecutor(max_workers=4) as pool:
        ids = dict(zip("abcd", pool.map(write_history, "abcd")))

    for resource_id, written in ids.items():
        assert None not in written
        history = recorder.by_resource("posts", resource_id)
        assert [e.id for e in history] == list(reversed(written))
        assert [e.action for e in history] == [f"posts_{verb}" for verb in reversed(verbs)]
