"""
Single Instance Lock - one scheduler per store

Two schedulers over the same store would sign ledger writes from the same
account concurrently and break nonce ordering. A PID file in the data
directory prevents that; a stale file left by a dead process is reclaimed.
"""

import atexit
import os
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class SingleInstanceLock:
    """
    File-based single instance lock using PID files.

    Usage:
        lock = SingleInstanceLock("contest-engine")
        if not lock.acquire():
            sys.exit(1)
    """

    def __init__(self, name: str, lock_dir: str = "data"):
        self.name = name
        self.lock_dir = Path(lock_dir)
        self.lock_file = self.lock_dir / f"{name}.pid"
        self.acquired = False
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        atexit.register(self.release)

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            # Signal 0 checks existence without delivering anything
            os.kill(pid, 0)
            return True
        except OSError:
            return False

    def _read_owner(self) -> Optional[int]:
        try:
            return int(self.lock_file.read_text().strip())
        except (ValueError, OSError):
            return None

    def acquire(self) -> bool:
        """Returns False if another live process holds the lock."""
        if self.acquired:
            return True

        if self.lock_file.exists():
            owner = self._read_owner()
            if owner is not None and owner != os.getpid() and self._is_process_running(owner):
                logger.error(f"Another scheduler is running (PID={owner}). Lock file: {self.lock_file}")
                return False
            logger.warning(f"Removing stale lock file {self.lock_file} (PID={owner})")
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

        try:
            fd = os.open(str(self.lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            logger.error(f"Lost race for lock file {self.lock_file}")
            return False
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))

        self.acquired = True
        logger.info(f"Lock acquired (PID={os.getpid()}, file={self.lock_file})")
        return True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self.lock_file.exists() and self._read_owner() == os.getpid():
                self.lock_file.unlink()
                logger.info(f"Lock released (file={self.lock_file})")
        except OSError as e:
            logger.warning(f"Failed to release lock: {e}")
        self.acquired = False

    def __enter__(self):
        if not self.acquire():
            raise RuntimeError(f"Failed to acquire lock for {self.name}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def check_single_instance(name: str = "contest-engine", lock_dir: str = "data") -> Optional[SingleInstanceLock]:
    """Acquire the lock or return None if another instance is running."""
    lock = SingleInstanceLock(name, lock_dir)
    if lock.acquire():
        return lock
    return None
