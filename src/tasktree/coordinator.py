"""Process-wide lock registry for workspace writes and project dispatch.

Two kinds of critical section exist:

* workspace: every graph mutation for one workspace (single writer);
* project: the dispatch check-then-act sections for one project root.

Each lock pairs a ``threading.RLock`` (threads in this process) with a
``filelock.FileLock`` (other processes sharing the state directory). Lock
order is always project before workspace.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from filelock import FileLock
from loguru import logger

from .constants import LOCK_TIMEOUT


class _KeyedLock:
    def __init__(self, lock_path: Path, timeout: float) -> None:
        self.thread_lock = threading.RLock()
        self.file_lock = FileLock(str(lock_path), timeout=timeout)
        self.lock_path = lock_path


class LockCoordinator:
    """Hand out one lock per resolved lock-file path.

    The coordinator is a singleton so that every store and engine in the
    process serializes on the same objects for the same path.
    """

    _instance: Optional[LockCoordinator] = None
    _lock = threading.Lock()

    def __new__(cls) -> LockCoordinator:
        """Singleton pattern to ensure one coordinator per process."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._locks = {}
                    cls._instance._registry_lock = threading.Lock()
        return cls._instance

    def _get(self, lock_path: Path, timeout: float) -> _KeyedLock:
        key = str(lock_path.resolve())
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                lock_path.parent.mkdir(parents=True, exist_ok=True)
                entry = _KeyedLock(lock_path, timeout)
                self._locks[key] = entry
            return entry

    @contextmanager
    def hold(self, lock_path: Path, name: str = "lock", timeout: float = LOCK_TIMEOUT) -> Iterator[None]:
        """Hold the thread lock and file lock for *lock_path*.

        Args:
            lock_path: Lock file; its parent directory is created on demand.
            name: Label used in debug logging.
            timeout: Seconds to wait for the file lock.

        Raises:
            filelock.Timeout: If another process holds the file lock too long.
        """
        entry = self._get(lock_path, timeout)
        thread_id = threading.current_thread().name
        logger.debug("Thread {} waiting for {} ({})", thread_id, name, entry.lock_path.name)
        with entry.thread_lock:
            with entry.file_lock:
                logger.debug("Thread {} acquired {}", thread_id, name)
                try:
                    yield
                finally:
                    logger.debug("Thread {} releasing {}", thread_id, name)


# Global instance
_coordinator = LockCoordinator()


def get_lock_coordinator() -> LockCoordinator:
    """Get the global lock coordinator instance."""
    return _coordinator
