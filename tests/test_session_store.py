"""Tests for the in-memory session store and expiry sweep."""

from datetime import timedelta

import pytest

from citabot.config import BotConfig
from citabot.conversation.session_store import SessionStore
from citabot.schemas.conversation_schema import ConversationState
from tests.conftest import FIXED_NOW


@pytest.fixture
def store():
    return SessionStore(BotConfig(default_language="de", session_timeout_seconds=60))


class TestGetOrCreate:
    def test_creates_with_defaults(self, store):
        session, created = store.get_or_create("a", FIXED_NOW)
        assert created
        assert session.state == ConversationState.INIT
        assert session.language == "de"
        assert session.start_time == session.last_activity == FIXED_NOW
        assert session.retry_count == 0 and not session.completed

    def test_returns_existing(self, store):
        first, _ = store.get_or_create("a", FIXED_NOW)
        second, created = store.get_or_create("a", FIXED_NOW + timedelta(seconds=5))
        assert second is first
        assert not created

    def test_container_protocol(self, store):
        store.get_or_create("a", FIXED_NOW)
        store.get_or_create("b", FIXED_NOW)
        assert len(store) == 2
        assert "a" in store and "c" not in store
        assert {s.id for s in store} == {"a", "b"}

    def test_remove(self, store):
        store.get_or_create("a", FIXED_NOW)
        assert store.remove("a").id == "a"
        assert store.get("a") is None
        assert store.remove("a") is None


class TestLocks:
    def test_same_lock_per_session(self, store):
        assert store.lock_for("a") is store.lock_for("a")
        assert store.lock_for("a") is not store.lock_for("b")


class TestExpiry:
    def test_is_expired_is_strict(self, store):
        session, _ = store.get_or_create("a", FIXED_NOW)
        assert not store.is_expired(session, FIXED_NOW + timedelta(seconds=60))
        assert store.is_expired(session, FIXED_NOW + timedelta(seconds=61))

    def test_sweep_evicts_idle_sessions(self, store):
        store.get_or_create("idle", FIXED_NOW)
        store.get_or_create("fresh", FIXED_NOW + timedelta(seconds=50))
        evicted = store.sweep_expired(FIXED_NOW + timedelta(seconds=90))
        assert [s.id for s in evicted] == ["idle"]
        assert "idle" not in store and "fresh" in store

    def test_sweep_is_idempotent(self, store):
        store.get_or_create("idle", FIXED_NOW)
        later = FIXED_NOW + timedelta(seconds=120)
        assert len(store.sweep_expired(later)) == 1
        assert store.sweep_expired(later) == []

    @pytest.mark.asyncio
    async def test_sweep_skips_locked_sessions(self, store):
        store.get_or_create("busy", FIXED_NOW)
        async with store.lock_for("busy"):
            assert store.sweep_expired(FIXED_NOW + timedelta(hours=1)) == []
        assert len(store.sweep_expired(FIXED_NOW + timedelta(hours=1))) == 1


class TestStats:
    def test_counts(self, store):
        a, _ = store.get_or_create("a", FIXED_NOW)
        b, _ = store.get_or_create("b", FIXED_NOW)
        a.state = ConversationState.COMPLETED
        a.completed = True
        b.language = "en"
        stats = store.stats()
        assert stats["active"] == 2
        assert stats["completed"] == 1
        assert stats["by_state"] == {"COMPLETED": 1, "INIT": 1}
        assert stats["by_language"] == {"de": 1, "en": 1}

    def test_empty(self, store):
        assert store.stats() == {"active": 0, "completed": 0, "by_state": {}, "by_language": {}}
