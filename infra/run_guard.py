"""Single-permit guard keyed by handler name."""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator
import logging

logger = logging.getLogger(__name__)


class RunGuard:
    """
    Non-blocking per-name permits for the scheduler's tick handlers.

    A tick that finds its handler still running is skipped, never queued.

    Usage:
        with guard.hold("reward_distribution") as acquired:
            if not acquired:
                return
            ...
    """

    def __init__(self) -> None:
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._skipped: Dict[str, int] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock

    def try_acquire(self, name: str) -> bool:
        acquired = self._lock_for(name).acquire(blocking=False)
        if not acquired:
            with self._registry_lock:
                self._skipped[name] = self._skipped.get(name, 0) + 1
            logger.warning(f"Handler {name} still running, skipping this tick")
        return acquired

    def release(self, name: str) -> None:
        self._lock_for(name).release()

    def is_running(self, name: str) -> bool:
        return self._lock_for(name).locked()

    def skipped_count(self, name: str) -> int:
        with self._registry_lock:
            return self._skipped.get(name, 0)

    @contextmanager
    def hold(self, name: str) -> Iterator[bool]:
        acquired = self.try_acquire(name)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(name)
