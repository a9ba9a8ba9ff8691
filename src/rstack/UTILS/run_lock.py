"""
File lock that keeps two rstack invocations from mutating the same stack.
"""
import fcntl
import logging
import os
from typing import Optional

import psutil

from ..exceptions import LockError

logger = logging.getLogger(__name__)


class RunLock:
    """
    Exclusive, non-blocking advisory lock on a file that records the holder's
    PID. The kernel drops the lock when the holder exits, so a stale file never
    blocks a later run.
    """
    def __init__(self, path: str):
        self.path = path
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        """
        :raises LockError: If another process holds the lock.
        """
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise LockError(f"Another rstack run is in progress ({self._describe_holder()})") from None

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        logger.debug("Acquired run lock %s", self.path)

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            os.ftruncate(self._fd, 0)
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        logger.debug("Released run lock %s", self.path)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _describe_holder(self) -> str:
        try:
            with open(self.path, "r") as f:
                pid = int(f.read().strip() or 0)
        except (OSError, ValueError):
            return "holder unknown"
        if pid and psutil.pid_exists(pid):
            try:
                return f"pid {pid}, {psutil.Process(pid).name()}"
            except psutil.Error:
                return f"pid {pid}"
        return "holder unknown"

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
