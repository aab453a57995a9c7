"""Lock-guarded, crash-safe store of applied resource identities."""

import fcntl
import json
import os
import socket
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from pydantic import ValidationError

from fleetstage.state.models import STATE_VERSION, LockInfo, StateEntry, StateFile, utcnow
from fleetstage.utils.errors import ErrorContext, StateError, StateStoreLockedError
from fleetstage.utils.logging import get_logger

logger = get_logger(__name__)


class StateStore:
    """Persisted map of resource key to StateEntry.

    Every mutation is committed immediately: the whole file is written to a
    sibling ``.tmp`` file, fsynced, then renamed over the live file, so a
    reader only ever observes a fully committed version.

    Mutations require the project lock (see :meth:`open`). A store loaded
    with :meth:`snapshot` is read-only and takes no lock.
    """

    def __init__(
        self,
        state_path: Path,
        lock_path: Optional[Path] = None,
        lock_timeout: float = 0.0,
        stale_lock_max_age: float = 3600.0,
        read_only: bool = False,
    ):
        """
        Initialize StateStore.

        Args:
            state_path: Path to the state file
            lock_path: Path to the lock file (defaults to lock.json beside the state file)
            lock_timeout: Seconds to wait for a lock held by a live invocation
            stale_lock_max_age: Age after which a held lock is reported as possibly hung
            read_only: Refuse all mutations
        """
        self.state_path = Path(state_path)
        self.lock_path = Path(lock_path) if lock_path else self.state_path.with_name("lock.json")
        self.lock_timeout = lock_timeout
        self.stale_lock_max_age = stale_lock_max_age
        self.read_only = read_only
        self._entries: Dict[str, StateEntry] = {}
        self._lock_fd: Optional[int] = None
        self._mutex = threading.Lock()
        self.reclaimed_lock: Optional[LockInfo] = None

    @property
    def temp_path(self) -> Path:
        return self.state_path.with_name(self.state_path.name + ".tmp")

    @property
    def is_locked(self) -> bool:
        return self._lock_fd is not None

    # ------------------------------------------------------------------
    # Scoped acquisition
    # ------------------------------------------------------------------

    @classmethod
    @contextmanager
    def open(
        cls,
        state_path: Path,
        lock_path: Optional[Path] = None,
        lock_timeout: float = 0.0,
        stale_lock_max_age: float = 3600.0,
        command: Optional[str] = None,
    ) -> Iterator["StateStore"]:
        """Lock, load, and yield a writable store; the lock is released on every exit path.

        Raises:
            StateStoreLockedError: If another live invocation holds the lock
            StateError: If the state file cannot be read
        """
        store = cls(state_path, lock_path, lock_timeout, stale_lock_max_age)
        store.lock(command=command)
        try:
            store.load()
            yield store
        finally:
            store.unlock()

    @classmethod
    def snapshot(cls, state_path: Path) -> "StateStore":
        """Read the last committed state without taking the lock."""
        store = cls(state_path, read_only=True)
        return store.load()

    # ------------------------------------------------------------------
    # Loading and committing
    # ------------------------------------------------------------------

    def load(self) -> "StateStore":
        """
        Load committed entries from disk.

        A leftover ``.tmp`` file from an interrupted write is never read.

        Returns:
            self

        Raises:
            StateError: If the state file is corrupted or from a newer version
        """
        if self.temp_path.exists():
            logger.warning(f"Ignoring uncommitted state write at {self.temp_path}")
            if self.is_locked:
                self.temp_path.unlink()

        if not self.state_path.exists():
            self._entries = {}
            return self

        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateError(
                f"Failed to read state file {self.state_path}: {e}",
                context=ErrorContext(operation="load_state"),
                cause=e,
            )

        version = data.get("version", STATE_VERSION) if isinstance(data, dict) else None
        if not isinstance(version, int) or version > STATE_VERSION:
            raise StateError(
                f"State file {self.state_path} has version {version}, "
                f"this release supports up to {STATE_VERSION}",
                context=ErrorContext(operation="load_state"),
                suggestions=["Upgrade fleetstage to read this state file"],
            )

        try:
            state = StateFile.from_dict(data)
        except ValidationError as e:
            raise StateError(
                f"State file {self.state_path} is invalid: {e}",
                context=ErrorContext(operation="load_state"),
                cause=e,
            )

        self._entries = dict(state.entries)
        logger.debug(f"Loaded {len(self._entries)} state entries from {self.state_path}")
        return self

    def _commit(self) -> None:
        state = StateFile(updated_at=utcnow(), entries=self._entries)
        self.state_path.parent.mkdir(parents=True, exist_ok=True)

        temp_path = self.temp_path
        try:
            with open(temp_path, "w") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.state_path)
        except OSError as e:
            raise StateError(
                f"Failed to save state file {self.state_path}: {e}",
                context=ErrorContext(operation="save_state"),
                cause=e,
            )

    # ------------------------------------------------------------------
    # Entry access
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[StateEntry]:
        return self._entries.get(key)

    def entries(self, prefix: Optional[str] = None) -> List[StateEntry]:
        """All entries, optionally only those whose key starts with ``prefix``."""
        return [
            entry for key, entry in sorted(self._entries.items())
            if prefix is None or key.startswith(prefix)
        ]

    def put(self, entry: StateEntry) -> StateEntry:
        """Insert or replace an entry and commit.

        Replacing keeps the original ``created_at``.
        """
        self._check_writable()
        with self._mutex:
            existing = self._entries.get(entry.key)
            if existing is not None:
                entry = entry.model_copy(
                    update={"created_at": existing.created_at, "updated_at": utcnow()}
                )
            self._entries[entry.key] = entry
            self._commit()
        logger.debug(f"State entry saved: {entry.key} -> {entry.identity}")
        return entry

    def remove(self, key: str) -> Optional[StateEntry]:
        """Delete an entry and commit. Missing keys are a no-op."""
        self._check_writable()
        with self._mutex:
            entry = self._entries.pop(key, None)
            if entry is not None:
                self._commit()
        if entry is not None:
            logger.debug(f"State entry removed: {key}")
        return entry

    def _check_writable(self) -> None:
        if self.read_only:
            raise StateError("State snapshot is read-only", context=ErrorContext(operation="save_state"))
        if not self.is_locked:
            raise StateError(
                "State store must be locked before it is modified",
                context=ErrorContext(operation="save_state"),
            )

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    def lock(self, command: Optional[str] = None) -> None:
        """
        Acquire the project-wide exclusive lock.

        The kernel drops the flock when its holder dies, so a lock file left
        behind by a crashed invocation is reclaimed immediately; its holder
        details are logged and kept in ``reclaimed_lock``.

        Args:
            command: Description of the running command, stored for other waiters

        Raises:
            StateStoreLockedError: If a live invocation still holds the lock after ``lock_timeout``
        """
        if self.is_locked:
            return

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(self.lock_path), os.O_CREAT | os.O_RDWR, 0o644)

        start_time = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - start_time >= self.lock_timeout:
                    holder = self._read_holder(fd)
                    os.close(fd)
                    raise self._locked_error(holder)
                time.sleep(0.1)

        previous = self._read_holder(fd)
        if previous is not None:
            self.reclaimed_lock = previous
            logger.warning(f"Reclaimed stale state lock left by {previous.describe()}")

        info = LockInfo(pid=os.getpid(), hostname=socket.gethostname(), command=command)
        self._write_holder(fd, info.model_dump_json())
        self._lock_fd = fd
        logger.debug(f"Acquired state lock {self.lock_path}")

    def unlock(self) -> None:
        """Release the lock. The lock file stays, emptied, so waiters never race on a new inode."""
        if self._lock_fd is None:
            return
        try:
            self._write_holder(self._lock_fd, "")
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None
        logger.debug(f"Released state lock {self.lock_path}")

    def _locked_error(self, holder: Optional[LockInfo]) -> StateStoreLockedError:
        suggestions = ["Wait for the other invocation to finish, then retry"]
        if holder is None:
            detail = "another invocation holds the state lock"
        else:
            detail = f"state lock held by {holder.describe()}"
            age = (utcnow() - holder.acquired_at).total_seconds()
            if age > self.stale_lock_max_age:
                suggestions.append(
                    f"The holder has run for {int(age)}s; if it is hung, stop pid {holder.pid}"
                )
        return StateStoreLockedError(
            detail,
            context=ErrorContext(
                operation="lock_state",
                additional_info={"lock_path": str(self.lock_path)},
            ),
            suggestions=suggestions,
        )

    @staticmethod
    def _read_holder(fd: int) -> Optional[LockInfo]:
        os.lseek(fd, 0, os.SEEK_SET)
        raw = b""
        while True:
            chunk = os.read(fd, 4096)
            if not chunk:
                break
            raw += chunk
        text = raw.decode("utf-8", errors="replace").strip()
        if not text:
            return None
        try:
            return LockInfo.model_validate_json(text)
        except ValidationError:
            logger.debug(f"Unreadable lock holder info: {text!r}")
            return None

    @staticmethod
    def _write_holder(fd: int, text: str) -> None:
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, text.encode("utf-8"))
        os.fsync(fd)

    def __enter__(self):
        """Context manager entry - acquire lock and load state."""
        self.lock()
        self.load()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.unlock()
