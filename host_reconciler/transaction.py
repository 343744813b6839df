"""
Transaction runner: snapshot, apply in order, verify, commit or roll back.

    idle -> snapshotting -> applying -> verifying -> committed
                 |             |            |
                 v             +------------+--> rolling-back -> rolled-back
              aborted

A run never raises for host-side failures; every outcome is returned as a
TransactionResult whose units carry their final status.
"""

import logging
import signal
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Mapping, Optional, Sequence

from host_reconciler.appliers.base import ChangeApplier
from host_reconciler.errors import ApplyFailed, RollbackFailed, SnapshotFailed
from host_reconciler.models import (
    Backend,
    ChangeUnit,
    Snapshot,
    TransactionResult,
    TransactionState,
    UnitStatus,
    VerifyResult,
)

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[TransactionState, tuple] = {
    TransactionState.IDLE: (TransactionState.SNAPSHOTTING,),
    TransactionState.SNAPSHOTTING: (TransactionState.APPLYING, TransactionState.ABORTED),
    TransactionState.APPLYING: (TransactionState.VERIFYING, TransactionState.ROLLING_BACK),
    TransactionState.VERIFYING: (TransactionState.COMMITTED, TransactionState.ROLLING_BACK),
    TransactionState.ROLLING_BACK: (TransactionState.ROLLED_BACK,),
    TransactionState.COMMITTED: (),
    TransactionState.ROLLED_BACK: (),
    TransactionState.ABORTED: (),
}

ROLLBACK_ELIGIBLE = (UnitStatus.APPLIED, UnitStatus.VERIFIED_OK, UnitStatus.VERIFY_FAILED)


# ----------------------------------------------------------------
# Cancellation
# ----------------------------------------------------------------
class CancelToken:
    """Cooperative cancellation flag checked between transaction steps."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@contextmanager
def cancel_on_signals(token: CancelToken, signals=(signal.SIGINT, signal.SIGTERM)) -> Iterator[CancelToken]:
    """
    Turn SIGINT/SIGTERM into a cancellation request for the duration of a run.

    The handler only sets the flag, so an in-progress rollback always finishes.
    """

    def handler(signum: int, frame) -> None:
        name = signal.Signals(signum).name
        logger.warning(f"Received {name}; finishing current step and rolling back")
        token.cancel(f"interrupted by {name}")

    previous = {sig: signal.signal(sig, handler) for sig in signals}
    try:
        yield token
    finally:
        for sig, old in previous.items():
            signal.signal(sig, old)


# ----------------------------------------------------------------
# Runner
# ----------------------------------------------------------------
class TransactionRunner:
    """Runs one change set as an all-or-nothing transaction."""

    def __init__(
        self,
        appliers: Mapping[Backend, ChangeApplier],
        cancel_token: Optional[CancelToken] = None,
    ):
        self.appliers = appliers
        self.cancel_token = cancel_token or CancelToken()
        self.transaction_id = uuid.uuid4().hex[:12]
        self.state = TransactionState.IDLE
        self.history: List[TransactionState] = [TransactionState.IDLE]
        self.snapshot = Snapshot()
        self._applied: List[ChangeUnit] = []
        self._failed = False

    def _transition(self, new_state: TransactionState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal transaction transition {self.state.value} -> {new_state.value}")
        logger.debug(f"[{self.transaction_id}] {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)

    def _applier(self, unit: ChangeUnit) -> ChangeApplier:
        try:
            return self.appliers[unit.backend]
        except KeyError:
            raise ApplyFailed(unit.setting_id, f"no applier for backend {unit.backend.value}") from None

    def run(self, units: Sequence[ChangeUnit]) -> TransactionResult:
        """Execute the change set. Can only be called once per runner."""
        if self.state is not TransactionState.IDLE:
            raise RuntimeError("a TransactionRunner executes exactly one transaction")

        units = list(units)
        result = TransactionResult(
            transaction_id=self.transaction_id,
            state=self.state,
            units=units,
            started_at=datetime.now(timezone.utc),
        )
        logger.info(f"Transaction {self.transaction_id}: {len(units)} change unit(s)")

        self._transition(TransactionState.SNAPSHOTTING)
        error = self._take_snapshot(units)
        if error is None and self.cancel_token.cancelled:
            error = f"{self.cancel_token.reason} before any change was applied"
            result.cancelled = True
        if error is not None:
            logger.error(f"Transaction {self.transaction_id} aborted: {error}")
            self._transition(TransactionState.ABORTED)
            self.snapshot.clear()
            return self._finish(result, error)

        self._transition(TransactionState.APPLYING)
        error = self._apply_all(units)
        if error is None and self.cancel_token.cancelled:
            error = f"{self.cancel_token.reason} after applying {len(self._applied)} unit(s)"
        if error is None:
            self._transition(TransactionState.VERIFYING)
            error = self._verify_all()
        if error is None and self.cancel_token.cancelled:
            error = f"{self.cancel_token.reason} before commit"

        if error is None:
            self._commit()
            return self._finish(result, None)

        result.cancelled = self.cancel_token.cancelled
        self._failed = True
        self._transition(TransactionState.ROLLING_BACK)
        self._rollback_all()
        self._transition(TransactionState.ROLLED_BACK)
        return self._finish(result, error)

    def _finish(self, result: TransactionResult, error: Optional[str]) -> TransactionResult:
        result.state = self.state
        result.error = error
        result.history = list(self.history)
        result.finished_at = datetime.now(timezone.utc)
        logger.info(f"Transaction {self.transaction_id} finished: {self.state.value}")
        return result

    # ------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------
    def _take_snapshot(self, units: List[ChangeUnit]) -> Optional[str]:
        """Capture every unit before any mutation; the first failure aborts."""
        for unit in units:
            try:
                applier = self._applier(unit)
                entry = applier.capture(unit.setting_id)
                if entry.observed.is_failed:
                    raise SnapshotFailed(unit.setting_id, entry.observed.reason or "probe failed")
                self.snapshot.add(entry)
            except ApplyFailed as e:
                return f"cannot snapshot {unit.setting_id}: {e.reason}"
            except SnapshotFailed as e:
                return f"cannot snapshot {e.setting_id}: {e.reason}"
            except Exception as e:
                return f"cannot snapshot {unit.setting_id}: {e}"
        self.snapshot.taken_at = datetime.now(timezone.utc)
        logger.debug(f"Snapshot holds {len(self.snapshot)} entr{'y' if len(self.snapshot) == 1 else 'ies'}")
        return None

    def _apply_all(self, units: List[ChangeUnit]) -> Optional[str]:
        for unit in units:
            if self.cancel_token.cancelled:
                return None
            try:
                self._applier(unit).apply(unit)
            except ApplyFailed as e:
                unit.status = UnitStatus.APPLY_FAILED
                unit.error = e.reason
                logger.error(f"Apply failed for {unit.setting_id}: {e.reason}")
                return f"apply failed for {unit.setting_id}: {e.reason}"
            except Exception as e:
                unit.status = UnitStatus.APPLY_FAILED
                unit.error = f"unexpected error: {e}"
                logger.exception(f"Unexpected error applying {unit.setting_id}")
                return f"apply failed for {unit.setting_id}: {e}"
            self._mark_applied(unit)
        return None

    def _mark_applied(self, unit: ChangeUnit) -> None:
        if self._failed:
            raise RuntimeError("cannot mark a unit applied after the transaction failed")
        unit.status = UnitStatus.APPLIED
        self._applied.append(unit)

    def _verify_all(self) -> Optional[str]:
        failures: List[str] = []
        for unit in self._applied:
            try:
                outcome = self._applier(unit).verify(unit)
            except Exception as e:
                outcome = VerifyResult.failed(f"verification raised: {e}")
            if outcome.ok:
                unit.status = UnitStatus.VERIFIED_OK
            else:
                unit.status = UnitStatus.VERIFY_FAILED
                unit.error = outcome.reason
                logger.error(f"Verification failed for {unit.setting_id}: {outcome.reason}")
                failures.append(unit.setting_id)
        if failures:
            return f"verification failed for {', '.join(failures)}"
        return None

    def _rollback_all(self) -> None:
        """Attempt restoration of every applied unit, newest first."""
        for unit in reversed(self._applied):
            if unit.status not in ROLLBACK_ELIGIBLE:
                continue
            entry = self.snapshot.get(unit.setting_id)
            try:
                self._applier(unit).rollback(unit, entry)
            except RollbackFailed as e:
                unit.status = UnitStatus.ROLLBACK_FAILED
                unit.rollback_error = e.reason
                logger.error(f"Rollback failed for {unit.setting_id}: {e.reason} (manual intervention required)")
                continue
            except Exception as e:
                unit.status = UnitStatus.ROLLBACK_FAILED
                unit.rollback_error = f"unexpected error: {e}"
                logger.exception(f"Unexpected error rolling back {unit.setting_id}")
                continue
            unit.status = UnitStatus.ROLLED_BACK
            try:
                unit.after = self._applier(unit).probe(unit.setting_id)
            except Exception as e:
                logger.debug(f"Post-rollback probe of {unit.setting_id} raised: {e!r}")

    def _commit(self) -> None:
        self._transition(TransactionState.COMMITTED)
        for unit in self._applied:
            try:
                self._applier(unit).discard(unit)
            except Exception as e:
                logger.warning(f"Cleanup after commit failed for {unit.setting_id}: {e}")
        self.snapshot.clear()
