"""Exception types raised across the reconciler."""

from typing import Optional


class ReconcilerError(Exception):
    """Base class for all reconciler errors."""


class CatalogError(ReconcilerError):
    """The desired-state document is malformed or inconsistent."""

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(f"{source}: {message}" if source else message)


class ApplyFailed(ReconcilerError):
    """A change unit could not be applied. Aborts forward progress."""

    def __init__(self, setting_id: str, reason: str):
        self.setting_id = setting_id
        self.reason = reason
        super().__init__(f"{setting_id}: {reason}")


class RollbackFailed(ReconcilerError):
    """Restoring a change unit failed. Logged and reported, never fatal."""

    def __init__(self, setting_id: str, reason: str):
        self.setting_id = setting_id
        self.reason = reason
        super().__init__(f"{setting_id}: {reason}")


class SnapshotFailed(ReconcilerError):
    """Pre-transaction state could not be captured for a setting."""

    def __init__(self, setting_id: str, reason: str):
        self.setting_id = setting_id
        self.reason = reason
        super().__init__(f"{setting_id}: {reason}")


class LockError(ReconcilerError):
    """Another transaction already holds the host lock."""


class PreflightError(ReconcilerError):
    """The host is not in a state where a transaction may start."""
