"""Host-wide lock serialising transactions."""

import fcntl
import logging
import os
from pathlib import Path
from types import TracebackType
from typing import IO, Optional, Type, Union

from host_reconciler.errors import LockError

logger = logging.getLogger(__name__)


class HostLock:
    """Exclusive, non-blocking flock on a lock file for the length of one transaction."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._handle: Optional[IO[str]] = None

    def acquire(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = open(self.path, "a+")
        except OSError as e:
            raise LockError(f"cannot open lock file {self.path}: {e}") from e
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.seek(0)
            holder = handle.read().strip() or "unknown"
            handle.close()
            raise LockError(f"another transaction holds {self.path} (pid {holder})") from None
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug(f"Acquired host lock {self.path}")

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            self._handle.seek(0)
            self._handle.truncate()
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
            logger.debug(f"Released host lock {self.path}")

    @property
    def held(self) -> bool:
        return self._handle is not None

    def __enter__(self) -> "HostLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.release()
