"""Whole managed files rendered from catalog templates."""

import logging
from pathlib import Path
from typing import Optional, Sequence

from host_reconciler.appliers.base import ChangeApplier, atomic_write, file_digest, read_file_state
from host_reconciler.commands import CommandRunner, run_command
from host_reconciler.errors import ApplyFailed, RollbackFailed
from host_reconciler.models import (
    Backend,
    ChangeUnit,
    ObservedValue,
    SettingID,
    SnapshotEntry,
    VerifyResult,
)
from host_reconciler.values import sha256_text

logger = logging.getLogger(__name__)


class FileTemplateApplier(ChangeApplier):
    """
    Backend for file-template settings. The setting id is the file path.

    Probing yields the SHA-256 of the file; the snapshot keeps the previous
    bytes and mode so rollback can put them back (or remove a file that did
    not exist). Each value may name commands to run after the file changes,
    such as ``sysctl -p`` or ``udevadm control --reload-rules``, and commands
    to run before rollback removes a file it created, such as
    ``systemctl disable --now``. Removal never re-runs the forward commands.
    """

    backend = Backend.FILE_TEMPLATE

    def __init__(self, runner: CommandRunner = run_command, timeout: Optional[int] = None):
        super().__init__(runner, timeout)

    def probe(self, setting_id: SettingID) -> ObservedValue:
        path = Path(setting_id)
        if not path.exists():
            return ObservedValue.absent()
        if not path.is_file():
            return ObservedValue.failed(f"{path} is not a regular file")
        try:
            return ObservedValue.present(file_digest(path))
        except OSError as e:
            return ObservedValue.failed(f"cannot read {path}: {e.strerror or e}")

    def capture(self, setting_id: SettingID) -> SnapshotEntry:
        path = Path(setting_id)
        observed = self.probe(setting_id)
        payload = read_file_state(path) if observed.is_present else None
        return SnapshotEntry(setting_id, observed, payload=payload)

    def _notify(self, commands: Sequence[Sequence[str]]) -> Optional[str]:
        for cmd in commands:
            problem = self.run_checked(cmd, " ".join(cmd))
            if problem:
                return problem
        return None

    def apply(self, unit: ChangeUnit) -> None:
        path = Path(unit.setting_id)
        previous = read_file_state(path) if path.exists() else None
        try:
            atomic_write(path, unit.desired.value.encode("utf-8"), unit.desired.mode)
        except OSError as e:
            raise ApplyFailed(unit.setting_id, f"cannot write {path}: {e.strerror or e}") from e
        logger.info(f"Wrote {path}")

        problem = self._notify(unit.desired.notify)
        if problem:
            logger.error(f"{problem}; restoring previous {path}")
            try:
                cleanup = self._put_back(unit, path, previous)
            except OSError as e:
                raise ApplyFailed(unit.setting_id, f"{problem}; restoring {path} also failed: {e}") from e
            if cleanup:
                raise ApplyFailed(unit.setting_id, f"{problem}; after removing {path}, {cleanup}")
            raise ApplyFailed(unit.setting_id, problem)

    def verify(self, unit: ChangeUnit) -> VerifyResult:
        unit.after = self.probe(unit.setting_id)
        expected = sha256_text(unit.desired.value)
        if not unit.after.is_present:
            return VerifyResult.failed(f"{unit.setting_id} is {unit.after.describe()} after write")
        if unit.after.value != expected:
            return VerifyResult.failed(f"{unit.setting_id} content hash does not match the rendered template")
        return VerifyResult.passed()

    def _put_back(self, unit: ChangeUnit, path: Path, previous) -> Optional[str]:
        """
        Return path to its previous state.

        Old bytes are written back as they were. A file that did not exist is
        removed; its rollback_notify commands run first, while the file is
        still in place. Returns the first rollback_notify failure, if any.
        """
        if previous is not None:
            data, mode = previous
            atomic_write(path, data, mode)
            return None
        problem = self._notify(unit.desired.rollback_notify)
        path.unlink(missing_ok=True)
        return problem

    def rollback(self, unit: ChangeUnit, entry: SnapshotEntry) -> None:
        path = Path(unit.setting_id)
        try:
            problem = self._put_back(unit, path, entry.payload)
        except OSError as e:
            raise RollbackFailed(unit.setting_id, f"cannot restore {path}: {e.strerror or e}") from e
        if entry.payload is None:
            logger.info(f"Removed {path}")
            if problem:
                raise RollbackFailed(unit.setting_id, f"file removed but {problem}")
            return

        logger.info(f"Restored {path}")
        problem = self._notify(unit.desired.notify)
        if problem:
            raise RollbackFailed(unit.setting_id, f"file restored but {problem}")
