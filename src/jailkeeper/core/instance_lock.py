"""Exclusive single-instance lock.

Two installers converging the same host at once would race on jail.local,
the runtime directory and the service itself.  The lock is an ``flock``
held for the whole run; the kernel releases it if the process dies.
"""

import fcntl
import logging
import os
from contextlib import contextmanager
from pathlib import Path

from .exceptions import InstanceLockError

logger = logging.getLogger(__name__)


class InstanceLock:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def acquire(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.path, "a+")
        except OSError as exc:
            raise InstanceLockError(f"cannot open lock file {self.path}: {exc}") from exc
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.close()
            raise InstanceLockError(
                f"another jailkeeper run holds {self.path}"
            ) from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("acquired instance lock %s", self.path)

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        except OSError:
            logger.debug("unlock of %s failed; closing handle", self.path)
        self._handle.close()
        self._handle = None


@contextmanager
def instance_lock(path: Path):
    lock = InstanceLock(path)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()
