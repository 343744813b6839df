"""
Core data structures shared by the probe, diff, applier and transaction layers.

A ChangeUnit is the only mutable record here; everything describing desired
or observed state is frozen once created.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

SettingID = str


# ----------------------------------------------------------------
# Enumerations
# ----------------------------------------------------------------
class Backend(Enum):
    """Which applier handles a setting."""

    KERNEL_PARAMETER = "kernel-parameter"
    SERVICE_RELOAD_CONFIG = "service-reload-config"
    FILE_TEMPLATE = "file-template"

    @classmethod
    def from_tag(cls, tag: str) -> "Backend":
        """Convert a catalog backend tag to a Backend."""
        for member in cls:
            if member.value == tag:
                return member
        raise ValueError(f"unknown backend tag: {tag!r}")


class ObservedState(Enum):
    PRESENT = "present"
    ABSENT = "absent"
    PROBE_FAILED = "probe-failed"


class UnitStatus(Enum):
    """Lifecycle of one change unit inside a transaction."""

    PENDING = "pending"
    APPLIED = "applied"
    VERIFIED_OK = "verified-ok"
    VERIFY_FAILED = "verify-failed"
    APPLY_FAILED = "apply-failed"
    ROLLED_BACK = "rolled-back"
    ROLLBACK_FAILED = "rollback-failed"


class TransactionState(Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    APPLYING = "applying"
    VERIFYING = "verifying"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling-back"
    ROLLED_BACK = "rolled-back"
    ABORTED = "aborted"


# ----------------------------------------------------------------
# Values
# ----------------------------------------------------------------
@dataclass(frozen=True)
class DesiredValue:
    """
    Target value for one setting.

    Attributes:
        value: The typed value (str, int, bool, list, dict, or rendered file text)
        kind: Comparison kind, see host_reconciler.values
        backend: Applier that owns the setting
        mode: File permission bits (file-template only)
        notify: Commands run after a managed file changes (file-template only)
        rollback_notify: Commands run before rollback removes a managed file
            that did not exist beforehand (file-template only)
        repeat: Values per line for a directive that repeats, e.g. redis
            ``save <seconds> <changes>`` (service-reload-config only)
    """

    value: Any
    kind: str
    backend: Backend
    mode: Optional[int] = None
    notify: Tuple[Tuple[str, ...], ...] = ()
    rollback_notify: Tuple[Tuple[str, ...], ...] = ()
    repeat: Optional[int] = None


@dataclass(frozen=True)
class ObservedValue:
    """Result of probing a setting on the live host."""

    state: ObservedState
    value: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def present(cls, value: str) -> "ObservedValue":
        return cls(ObservedState.PRESENT, value=value)

    @classmethod
    def absent(cls) -> "ObservedValue":
        return cls(ObservedState.ABSENT)

    @classmethod
    def failed(cls, reason: str) -> "ObservedValue":
        return cls(ObservedState.PROBE_FAILED, reason=reason)

    @property
    def is_present(self) -> bool:
        return self.state is ObservedState.PRESENT

    @property
    def is_absent(self) -> bool:
        return self.state is ObservedState.ABSENT

    @property
    def is_failed(self) -> bool:
        return self.state is ObservedState.PROBE_FAILED

    def describe(self) -> str:
        """Short human-readable form used in reports."""
        if self.is_present:
            return self.value if self.value is not None else ""
        if self.is_absent:
            return "<absent>"
        return f"<probe failed: {self.reason}>"

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"state": self.state.value}
        if self.value is not None:
            data["value"] = self.value
        if self.reason is not None:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a post-apply check."""

    ok: bool
    reason: Optional[str] = None

    @classmethod
    def passed(cls) -> "VerifyResult":
        return cls(True)

    @classmethod
    def failed(cls, reason: str) -> "VerifyResult":
        return cls(False, reason)


# ----------------------------------------------------------------
# Change Units and Snapshots
# ----------------------------------------------------------------
@dataclass
class ChangeUnit:
    """One proposed mutation plus its lifecycle status."""

    setting_id: SettingID
    backend: Backend
    previous: ObservedValue
    desired: DesiredValue
    status: UnitStatus = UnitStatus.PENDING
    after: Optional[ObservedValue] = None
    error: Optional[str] = None
    rollback_error: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict, repr=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "backend" and "backend" in self.__dict__:
            raise AttributeError("backend tag of a change unit is fixed at creation")
        super().__setattr__(name, value)


@dataclass(frozen=True)
class SnapshotEntry:
    """
    Pre-transaction capture of one setting.

    The payload is whatever the owning applier needs to restore the setting
    (raw value, prior file bytes and mode, ...).
    """

    setting_id: SettingID
    observed: ObservedValue
    payload: Any = None


class Snapshot:
    """Ordered SettingID -> SnapshotEntry mapping owned by one transaction."""

    def __init__(self) -> None:
        self._entries: Dict[SettingID, SnapshotEntry] = {}
        self.taken_at: Optional[datetime] = None

    def add(self, entry: SnapshotEntry) -> None:
        if entry.setting_id in self._entries:
            raise ValueError(f"duplicate snapshot entry for {entry.setting_id}")
        self._entries[entry.setting_id] = entry

    def get(self, setting_id: SettingID) -> SnapshotEntry:
        return self._entries[setting_id]

    def __contains__(self, setting_id: object) -> bool:
        return setting_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SnapshotEntry]:
        return iter(self._entries.values())

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class TransactionResult:
    """Terminal outcome of one TransactionRunner.run() call."""

    transaction_id: str
    state: TransactionState
    units: List[ChangeUnit]
    started_at: datetime
    finished_at: Optional[datetime] = None
    cancelled: bool = False
    error: Optional[str] = None
    history: List[TransactionState] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.state is TransactionState.COMMITTED

    @property
    def rollback_failures(self) -> List[ChangeUnit]:
        return [u for u in self.units if u.status is UnitStatus.ROLLBACK_FAILED]
