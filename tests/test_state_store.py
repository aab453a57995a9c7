"""Tests for the lock-guarded state store."""

import json
from datetime import timedelta

import pytest

from fleetstage.state.models import LockInfo, StateEntry, utcnow
from fleetstage.state.store import StateStore
from fleetstage.utils.errors import StateError, StateStoreLockedError


@pytest.fixture
def paths(tmp_path):
    state_dir = tmp_path / ".fleetflow"
    return state_dir / "state.json", state_dir / "lock.json"


def entry(key="sakura:server:web", identity="1130001", **metadata):
    return StateEntry(key=key, identity=identity, metadata=metadata)


class TestPersistence:
    """Tests for committing and reloading entries."""

    def test_survives_reopen(self, paths):
        """An entry put in one invocation is read by the next."""
        state_path, lock_path = paths
        with StateStore.open(state_path, lock_path) as store:
            store.put(entry(ipv4="153.120.0.5"))

        with StateStore.open(state_path, lock_path) as store:
            loaded = store.get("sakura:server:web")

        assert loaded.identity == "1130001"
        assert loaded.metadata == {"ipv4": "153.120.0.5"}

    def test_missing_file_is_empty(self, paths):
        state_path, _ = paths

        assert StateStore.snapshot(state_path).entries() == []

    def test_replace_keeps_created_at(self, paths):
        """Updating an entry keeps when it was first applied."""
        state_path, lock_path = paths
        with StateStore.open(state_path, lock_path) as store:
            first = store.put(entry())
            second = store.put(entry(identity="1130002"))

        assert second.identity == "1130002"
        assert second.created_at == first.created_at

    def test_remove(self, paths):
        state_path, lock_path = paths
        with StateStore.open(state_path, lock_path) as store:
            store.put(entry())
            assert store.remove("sakura:server:web") is not None
            assert store.remove("sakura:server:web") is None

        assert StateStore.snapshot(state_path).entries() == []

    def test_entries_by_prefix(self, paths):
        state_path, lock_path = paths
        with StateStore.open(state_path, lock_path) as store:
            store.put(entry())
            store.put(entry("cloudflare:dns:web-prod.example.com", "z1/r1"))

            servers = store.entries("sakura:server:")

        assert [e.key for e in servers] == ["sakura:server:web"]

    def test_no_temp_file_after_commit(self, paths):
        state_path, lock_path = paths
        with StateStore.open(state_path, lock_path) as store:
            store.put(entry())

        assert state_path.exists()
        assert not store.temp_path.exists()


class TestCrashSafety:
    """Tests for interrupted writes and unreadable files."""

    def test_truncated_temp_file_is_ignored(self, paths):
        """A half-written .tmp from a crash never replaces committed state."""
        state_path, lock_path = paths
        with StateStore.open(state_path, lock_path) as store:
            store.put(entry())
        temp_path = state_path.with_name("state.json.tmp")
        temp_path.write_text('{"version": 1, "entries": {"sakura:ser')

        snapshot = StateStore.snapshot(state_path)
        assert snapshot.get("sakura:server:web").identity == "1130001"
        assert temp_path.exists()

        with StateStore.open(state_path, lock_path) as store:
            assert store.get("sakura:server:web") is not None
        assert not temp_path.exists()

    def test_corrupt_file(self, paths):
        state_path, lock_path = paths
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json")

        with pytest.raises(StateError, match="Failed to read state file"):
            StateStore.snapshot(state_path)

    def test_newer_version_is_refused(self, paths):
        """A file written by a newer release is not guessed at."""
        state_path, _ = paths
        state_path.parent.mkdir(parents=True)
        state_path.write_text(json.dumps({"version": 99, "entries": {}}))

        with pytest.raises(StateError, match="version 99"):
            StateStore.snapshot(state_path)


class TestWriteGuards:
    """Tests that mutations require the lock."""

    def test_put_without_lock(self, paths):
        state_path, lock_path = paths
        store = StateStore(state_path, lock_path)

        with pytest.raises(StateError, match="must be locked"):
            store.put(entry())
        assert not state_path.exists()

    def test_snapshot_is_read_only(self, paths):
        state_path, _ = paths

        with pytest.raises(StateError, match="read-only"):
            StateStore.snapshot(state_path).put(entry())


class TestLocking:
    """Tests for the project-wide exclusive lock."""

    def test_second_invocation_refused(self, paths):
        """Only one writer at a time."""
        state_path, lock_path = paths
        with StateStore.open(state_path, lock_path, command="stage up prod"):
            with pytest.raises(StateStoreLockedError) as excinfo:
                with StateStore.open(state_path, lock_path):
                    pass

        assert "stage up prod" in str(excinfo.value)

    def test_released_on_exception(self, paths):
        """An error inside the block still frees the lock."""
        state_path, lock_path = paths
        with pytest.raises(RuntimeError):
            with StateStore.open(state_path, lock_path):
                raise RuntimeError("provider exploded")

        with StateStore.open(state_path, lock_path) as store:
            assert store.is_locked
            assert store.reclaimed_lock is None

    def test_stale_lock_reclaimed(self, paths):
        """Holder info left by a dead invocation is reclaimed and reported."""
        state_path, lock_path = paths
        lock_path.parent.mkdir(parents=True)
        dead = LockInfo(pid=424242, hostname="build-3", command="stage down prod")
        lock_path.write_text(dead.model_dump_json())

        with StateStore.open(state_path, lock_path) as store:
            assert store.reclaimed_lock.pid == 424242
            assert store.reclaimed_lock.command == "stage down prod"

    def test_long_held_lock_suggests_hung_holder(self, paths):
        """A live holder older than the stale age is flagged as possibly hung."""
        state_path, lock_path = paths
        with StateStore.open(state_path, lock_path, stale_lock_max_age=60):
            old = LockInfo(pid=31337, hostname="ci-runner",
                           acquired_at=utcnow() - timedelta(hours=2))
            lock_path.write_text(old.model_dump_json())

            with pytest.raises(StateStoreLockedError) as excinfo:
                with StateStore.open(state_path, lock_path, stale_lock_max_age=60):
                    pass

        assert any("stop pid 31337" in s for s in excinfo.value.suggestions)

    def test_lock_file_emptied_on_release(self, paths):
        state_path, lock_path = paths
        with StateStore.open(state_path, lock_path):
            assert json.loads(lock_path.read_text())["pid"] > 0

        assert lock_path.read_text() == ""
