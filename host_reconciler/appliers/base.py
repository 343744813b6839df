"""Applier interface and shared filesystem helpers."""

import hashlib
import logging
import os
import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

from host_reconciler.commands import CommandRunner, describe_failure, run_command
from host_reconciler.models import (
    Backend,
    ChangeUnit,
    ObservedValue,
    SettingID,
    SnapshotEntry,
    VerifyResult,
)

logger = logging.getLogger(__name__)


class ChangeApplier(ABC):
    """
    Backend capable of reading, changing and restoring one family of settings.

    apply() raises ApplyFailed and must leave the host as it found it when it
    does; verify() reports instead of raising; rollback() raises
    RollbackFailed, which the transaction runner records and moves past.
    """

    backend: Backend

    def __init__(self, runner: CommandRunner = run_command, timeout: Optional[int] = None):
        self.runner = runner
        self.timeout = timeout

    @abstractmethod
    def probe(self, setting_id: SettingID) -> ObservedValue:
        ...

    def capture(self, setting_id: SettingID) -> SnapshotEntry:
        """Record what is needed to restore a setting later."""
        return SnapshotEntry(setting_id, self.probe(setting_id))

    @abstractmethod
    def apply(self, unit: ChangeUnit) -> None:
        ...

    @abstractmethod
    def verify(self, unit: ChangeUnit) -> VerifyResult:
        ...

    @abstractmethod
    def rollback(self, unit: ChangeUnit, entry: SnapshotEntry) -> None:
        ...

    def discard(self, unit: ChangeUnit) -> None:
        """Drop per-unit restore material once a transaction has committed."""

    def run(self, cmd: Sequence[str], timeout: Optional[int] = None) -> subprocess.CompletedProcess:
        return self.runner(list(cmd), timeout=timeout or self.timeout)

    def run_checked(self, cmd: Sequence[str], what: str, timeout: Optional[int] = None) -> Optional[str]:
        """Run a command; return None on success or a failure description."""
        try:
            result = self.run(cmd, timeout=timeout)
        except subprocess.TimeoutExpired:
            return f"{what} timed out"
        except OSError as e:
            return f"{what} could not be started: {e}"
        if result.returncode != 0:
            return f"{what} failed: {describe_failure(result)}"
        return None


# ----------------------------------------------------------------
# Filesystem Helpers
# ----------------------------------------------------------------
def file_digest(path: Union[str, Path]) -> str:
    """SHA-256 of a file's bytes."""
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def read_file_state(path: Path) -> Optional[Tuple[bytes, int]]:
    """Current bytes and permission bits of a file, or None when it is missing."""
    try:
        data = path.read_bytes()
        mode = path.stat().st_mode & 0o7777
    except FileNotFoundError:
        return None
    return data, mode


def write_temp_beside(path: Path, data: bytes, mode: Optional[int] = None) -> Path:
    """Write data to a temp file in path's directory and return the temp path."""
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        if mode is not None:
            os.chmod(tmp_path, mode)
        elif path.exists():
            os.chmod(tmp_path, path.stat().st_mode & 0o7777)
        else:
            os.chmod(tmp_path, 0o644)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    return tmp_path


def atomic_write(path: Path, data: bytes, mode: Optional[int] = None) -> None:
    """Replace path with data via temp file plus rename."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = write_temp_beside(path, data, mode)
    try:
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    logger.debug(f"Wrote {len(data)} bytes to {path}")
