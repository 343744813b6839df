"""Live kernel tunables: sysctl keys under /proc/sys and sysfs attributes."""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from host_reconciler.appliers.base import ChangeApplier
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
from host_reconciler.values import matches, render

logger = logging.getLogger(__name__)

SYSFS_PREFIX = "sysfs:"
WILDCARDS = frozenset("*?[")


def _natural_key(path: Path) -> List:
    # cpu2 sorts before cpu10
    return [int(part) if part.isdigit() else part for part in re.split(r"(\d+)", str(path))]


class KernelParameterApplier(ChangeApplier):
    """
    Writes values straight to the live parameter interface.

    ``net.ipv4.tcp_fastopen`` maps to ``<sysctl_root>/net/ipv4/tcp_fastopen``;
    ``sysfs:block/sda/queue/scheduler`` maps to ``<sysfs_root>/block/sda/queue/scheduler``.
    A sysfs id may hold glob wildcards (``sysfs:devices/system/cpu/cpu[0-9]*/cpufreq/scaling_governor``)
    to address one attribute on every matching device; it is in sync only when
    every match holds the desired value.
    Persisting values across reboots is the job of a file-template setting
    (a sysctl.d drop-in), not of this backend.
    """

    backend = Backend.KERNEL_PARAMETER

    def __init__(
        self,
        sysctl_root: Path = Path("/proc/sys"),
        sysfs_root: Path = Path("/sys"),
        runner: CommandRunner = run_command,
        timeout: Optional[int] = None,
    ):
        super().__init__(runner, timeout)
        self.sysctl_root = Path(sysctl_root)
        self.sysfs_root = Path(sysfs_root)

    def path_for(self, setting_id: SettingID) -> Path:
        if setting_id.startswith(SYSFS_PREFIX):
            relative = setting_id[len(SYSFS_PREFIX):].lstrip("/")
            root = self.sysfs_root
        else:
            relative = setting_id.replace(".", "/")
            root = self.sysctl_root
            if WILDCARDS.intersection(relative):
                raise ValueError(f"wildcards are only allowed in sysfs attributes: {setting_id!r}")
        if not relative or ".." in Path(relative).parts:
            raise ValueError(f"invalid kernel parameter name: {setting_id!r}")
        return root / relative

    def paths_for(self, setting_id: SettingID) -> List[Path]:
        """Existing paths behind a setting id, in natural order."""
        path = self.path_for(setting_id)
        if not WILDCARDS.intersection(setting_id):
            return [path] if path.exists() else []
        relative = path.relative_to(self.sysfs_root)
        return sorted((p for p in self.sysfs_root.glob(str(relative)) if p.is_file()), key=_natural_key)

    @staticmethod
    def _read(path: Path, sysfs: bool) -> str:
        value = path.read_text().strip()
        if sysfs and "[" in value:
            # multiple-choice attributes list all options and bracket the active one
            start, end = value.find("["), value.find("]")
            if end > start:
                value = value[start + 1:end]
        return value

    def _read_all(self, setting_id: SettingID) -> Dict[Path, str]:
        sysfs = setting_id.startswith(SYSFS_PREFIX)
        return {path: self._read(path, sysfs) for path in self.paths_for(setting_id)}

    def probe(self, setting_id: SettingID) -> ObservedValue:
        try:
            values = self._read_all(setting_id)
        except ValueError as e:
            return ObservedValue.failed(str(e))
        except OSError as e:
            return ObservedValue.failed(f"cannot read {e.filename or setting_id}: {e.strerror or e}")
        if not values:
            return ObservedValue.absent()
        distinct = set(values.values())
        if len(distinct) == 1:
            return ObservedValue.present(distinct.pop())
        # differing devices never compare equal to a single desired value
        mixed = " ".join(f"{path.relative_to(self.sysfs_root)}={value}" for path, value in values.items())
        return ObservedValue.present(mixed)

    def capture(self, setting_id: SettingID) -> SnapshotEntry:
        observed = self.probe(setting_id)
        payload = None
        if observed.is_present:
            payload = self._read_all(setting_id)
        return SnapshotEntry(setting_id, observed, payload=payload)

    @staticmethod
    def _write(path: Path, value: str) -> None:
        with open(path, "w") as f:
            f.write(value + "\n")

    def apply(self, unit: ChangeUnit) -> None:
        try:
            paths = self.paths_for(unit.setting_id)
        except ValueError as e:
            raise ApplyFailed(unit.setting_id, str(e)) from e
        if not paths:
            raise ApplyFailed(unit.setting_id, f"{self.path_for(unit.setting_id)} is not exposed by this kernel")

        value = render(unit.desired)
        for path in paths:
            try:
                self._write(path, value)
            except OSError as e:
                raise ApplyFailed(unit.setting_id, f"cannot write {path}: {e.strerror or e}") from e
        logger.info(f"Set {unit.setting_id} = {value}")

    def verify(self, unit: ChangeUnit) -> VerifyResult:
        observed = self.probe(unit.setting_id)
        unit.after = observed
        if matches(unit.desired, observed):
            return VerifyResult.passed()
        return VerifyResult.failed(f"kernel reports {observed.describe()!r} after write")

    def rollback(self, unit: ChangeUnit, entry: SnapshotEntry) -> None:
        if not entry.observed.is_present:
            logger.debug(f"{unit.setting_id} was not present before; nothing to restore")
            return
        failed = []
        for path, value in entry.payload.items():
            try:
                self._write(path, value)
            except OSError as e:
                failed.append(f"{path}: {e.strerror or e}")
        if failed:
            raise RollbackFailed(unit.setting_id, f"cannot restore {'; '.join(failed)}")
        logger.info(f"Restored {unit.setting_id} = {entry.observed.value}")
