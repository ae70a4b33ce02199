"""Tests for the in-memory and file session stores."""

import os
from datetime import timedelta

import pytest

from task_guide.core.errors import (
    ConcurrentModification,
    SessionNotFound,
    StoreError,
    StoreUnavailable,
)
from task_guide.core.session import SessionState
from task_guide.store.file_store import FileSessionStore
from task_guide.store.locks import FileLock, SessionLocks
from task_guide.store.memory_store import InMemorySessionStore

from tests.unit.workflow_fixtures import NOW


def _session(user_id="u1", now=NOW, **variables):
    return SessionState.new("passport_renewal", 1, user_id=user_id, now=now, variables=variables)


@pytest.fixture(params=["memory", "file"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemorySessionStore()
    return FileSessionStore(tmp_path / "store", lock_timeout=0.5)


class TestSessionStoreContract:
    def test_save_assigns_next_version(self, store):
        session = _session(age=30)
        saved = store.save(session, expected_version=0)

        assert saved.version == 1
        assert session.version == 0
        loaded = store.load(session.session_id, now=NOW)
        assert loaded == saved
        assert loaded.context.get("age") == 30

    def test_stale_version_rejected(self, store):
        saved = store.save(_session(), expected_version=0)
        store.save(saved, expected_version=1)

        with pytest.raises(ConcurrentModification) as exc_info:
            store.save(saved, expected_version=1)
        assert exc_info.value.actual_version == 2

    def test_unknown_session(self, store):
        with pytest.raises(SessionNotFound):
            store.load("does-not-exist", now=NOW)

    def test_expired_session_not_loadable(self, store):
        saved = store.save(_session(), expected_version=0)
        with pytest.raises(SessionNotFound):
            store.load(saved.session_id, now=saved.expires_at + timedelta(seconds=1))

    def test_list_by_user_newest_first(self, store):
        older = store.save(_session(), 0)
        newer = store.save(_session(now=NOW + timedelta(hours=1)), 0)
        store.save(_session(user_id="someone-else"), 0)

        listed = store.list_by_user("u1", now=NOW + timedelta(hours=2))

        assert [s.session_id for s in listed] == [newer.session_id, older.session_id]

    def test_expire_tombstones_ids(self, store):
        """Expired ids are gone for good, even for writers holding the old state."""
        stale = store.save(_session(), 0)
        fresh = store.save(_session(now=NOW + timedelta(days=9)), 0)
        now = NOW + timedelta(days=10)

        assert store.expire_older_than(timedelta(days=5), now=now) == 1

        with pytest.raises(SessionNotFound):
            store.load(stale.session_id, now=now)
        with pytest.raises(SessionNotFound):
            store.save(stale, expected_version=1)
        assert store.load(fresh.session_id, now=now).session_id == fresh.session_id

    def test_loaded_state_is_independent(self, store):
        saved = store.save(_session(), 0)
        loaded = store.load(saved.session_id, now=NOW)
        loaded.context.variables["age"] = 99
        assert "age" not in store.load(saved.session_id, now=NOW).context.variables


class TestFileSessionStore:
    def test_layout(self, tmp_path):
        store = FileSessionStore(tmp_path / "store")
        saved = store.save(_session(), 0)
        assert (tmp_path / "store" / "sessions" / f"{saved.session_id}.json").exists()
        assert not list((tmp_path / "store" / "locks").iterdir())

    def test_corrupt_file_is_a_store_error(self, tmp_path):
        store = FileSessionStore(tmp_path / "store")
        (store.sessions_dir / "broken.json").write_text("{not json")
        with pytest.raises(StoreError):
            store.load("broken", now=NOW)

    def test_list_skips_unreadable_files(self, tmp_path):
        store = FileSessionStore(tmp_path / "store")
        saved = store.save(_session(), 0)
        (store.sessions_dir / "broken.json").write_text("{not json")

        assert [s.session_id for s in store.list_by_user("u1", now=NOW)] == [saved.session_id]

    def test_held_lock_makes_store_unavailable(self, tmp_path):
        store = FileSessionStore(tmp_path / "store", lock_timeout=0.05)
        session = _session()
        holder = FileLock(store.lock_dir, session.session_id)
        assert holder.acquire()
        try:
            with pytest.raises(StoreUnavailable):
                store.save(session, 0)
        finally:
            holder.release()
        assert store.save(session, 0).version == 1


class TestFileLock:
    def test_exclusive(self, tmp_path):
        first = FileLock(tmp_path, "s1")
        second = FileLock(tmp_path, "s1")

        assert first.acquire()
        assert not second.acquire(timeout=0.05)
        first.release()
        assert second.acquire()
        second.release()

    def test_records_pid(self, tmp_path):
        with FileLock(tmp_path, "s1") as lock:
            assert lock.pid_file.read_text() == str(os.getpid())
        assert not lock.lock_path.exists()

    def test_invalid_pid_is_reclaimed(self, tmp_path):
        stale = tmp_path / "s1.lock"
        stale.mkdir()
        (stale / "pid").write_text("not-a-pid")

        lock = FileLock(tmp_path, "s1")
        assert lock.acquire()
        lock.release()


class TestSessionLocks:
    def test_same_lock_per_session(self):
        locks = SessionLocks()
        assert locks.get("a") is locks.get("a")
        assert locks.get("a") is not locks.get("b")

    def test_discard(self):
        locks = SessionLocks()
        first = locks.get("a")
        locks.discard("a")
        assert locks.get("a") is not first

    def test_discard_keeps_held_lock(self):
        locks = SessionLocks()
        with locks.hold("a"):
            locks.discard("a")
            assert len(locks) == 1
        locks.discard("a")
        assert len(locks) == 0

    def test_prune_drops_idle_locks(self):
        locks = SessionLocks()
        locks.get("a")
        locks.get("b")
        with locks.hold("c"):
            assert locks.prune() == 2
            assert len(locks) == 1
        assert locks.prune() == 1

    def test_hold_after_discard_uses_registered_lock(self):
        locks = SessionLocks()
        locks.get("a")
        locks.discard("a")
        with locks.hold("a"):
            assert locks.get("a").locked()
