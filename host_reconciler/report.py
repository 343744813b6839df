"""Transaction, plan and status reports for humans (rich) and machines (JSON)."""

import json
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from host_reconciler.diff import SettingStatus
from host_reconciler.models import ChangeUnit, DesiredValue, TransactionResult, TransactionState, UnitStatus
from host_reconciler.ui import NordColors, console as default_console
from host_reconciler.values import sha256_text

STATUS_STYLES: Dict[str, str] = {
    UnitStatus.PENDING.value: "debug",
    UnitStatus.APPLIED.value: "warning",
    UnitStatus.VERIFIED_OK.value: "success",
    UnitStatus.VERIFY_FAILED.value: "error",
    UnitStatus.APPLY_FAILED.value: "error",
    UnitStatus.ROLLED_BACK.value: "warning",
    UnitStatus.ROLLBACK_FAILED.value: "error",
}

STATE_STYLES: Dict[str, str] = {
    TransactionState.COMMITTED.value: NordColors.GREEN,
    TransactionState.ROLLED_BACK.value: NordColors.YELLOW,
    TransactionState.ABORTED.value: NordColors.RED,
    "plan": NordColors.FROST_2,
}


def describe_desired(desired: DesiredValue) -> str:
    if desired.kind == "file":
        return f"sha256:{sha256_text(desired.value)[:12]}"
    value = desired.value
    if isinstance(value, (list, tuple)):
        return " ".join(str(v) for v in value)
    if isinstance(value, dict):
        return " ".join(f"{k}={v}" for k, v in value.items())
    return str(value)


def _short(text: Optional[str]) -> str:
    if text is None:
        return ""
    if len(text) == 64 and all(c in "0123456789abcdef" for c in text):
        return f"sha256:{text[:12]}"
    return text


# ----------------------------------------------------------------
# Data Structures
# ----------------------------------------------------------------
@dataclass
class ReportRow:
    setting_id: str
    backend: str
    before: str
    desired: str
    after: Optional[str]
    status: str
    error: Optional[str] = None
    rollback_error: Optional[str] = None

    @classmethod
    def from_unit(cls, unit: ChangeUnit) -> "ReportRow":
        return cls(
            setting_id=unit.setting_id,
            backend=unit.backend.value,
            before=unit.previous.describe(),
            desired=describe_desired(unit.desired),
            after=unit.after.describe() if unit.after is not None else None,
            status=unit.status.value,
            error=unit.error,
            rollback_error=unit.rollback_error,
        )


@dataclass
class TransactionReport:
    """Ordered per-unit outcome plus the overall state of a run."""

    state: str
    rows: List[ReportRow] = field(default_factory=list)
    transaction_id: Optional[str] = None
    dry_run: bool = False
    cancelled: bool = False
    error: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @classmethod
    def from_result(cls, result: TransactionResult) -> "TransactionReport":
        return cls(
            state=result.state.value,
            rows=[ReportRow.from_unit(u) for u in result.units],
            transaction_id=result.transaction_id,
            cancelled=result.cancelled,
            error=result.error,
            started_at=result.started_at.isoformat(),
            finished_at=result.finished_at.isoformat() if result.finished_at else None,
        )

    @classmethod
    def from_plan(cls, units: Sequence[ChangeUnit]) -> "TransactionReport":
        return cls(state="plan", rows=[ReportRow.from_unit(u) for u in units], dry_run=True)

    @property
    def needs_attention(self) -> List[ReportRow]:
        return [r for r in self.rows if r.status == UnitStatus.ROLLBACK_FAILED.value]

    @property
    def exit_code(self) -> int:
        if self.dry_run:
            return 0
        return 0 if self.state == TransactionState.COMMITTED.value else 2

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["exit_code"] = self.exit_code
        data["needs_attention"] = [r.setting_id for r in self.needs_attention]
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


# ----------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------
def render_report(report: TransactionReport, out: Optional[Console] = None) -> None:
    """Print the per-unit table and a summary panel."""
    out = out or default_console
    title = "Planned Changes" if report.dry_run else f"Transaction {report.transaction_id}"

    if not report.rows:
        out.print(
            Panel(
                "[success]Host already matches the catalog; nothing to do.[/success]",
                title=f"[banner]{title}[/banner]",
                border_style=NordColors.FROST_3,
                box=box.ROUNDED,
            )
        )
        return

    table = Table(title=title, style="banner", box=box.ROUNDED)
    table.add_column("#", style="debug", justify="right")
    table.add_column("Setting", style="header")
    table.add_column("Backend", style="info")
    table.add_column("Before")
    table.add_column("Desired")
    if not report.dry_run:
        table.add_column("After")
        table.add_column("Status")

    for index, row in enumerate(report.rows, start=1):
        cells = [str(index), escape(row.setting_id), row.backend, escape(_short(row.before)), escape(row.desired)]
        if not report.dry_run:
            style = STATUS_STYLES.get(row.status, "info")
            status = f"[{style}]{row.status.upper()}[/{style}]"
            if row.error:
                status += f"\n[debug]{escape(row.error)}[/debug]"
            if row.rollback_error:
                status += f"\n[error]rollback: {escape(row.rollback_error)}[/error]"
            cells += [escape(_short(row.after)), status]
        table.add_row(*cells)

    out.print(table)
    if report.dry_run:
        out.print(f"[info]{len(report.rows)} change(s) would be applied.[/info]")
        return

    color = STATE_STYLES.get(report.state, NordColors.FROST_2)
    lines = [f"Outcome: {report.state.upper()}"]
    if report.cancelled:
        lines.append("The run was cancelled; applied changes were rolled back.")
    if report.error:
        lines.append(f"Reason: {report.error}")
    for row in report.needs_attention:
        lines.append(f"MANUAL INTERVENTION REQUIRED: {row.setting_id} could not be restored")
    out.print(
        Panel(
            escape("\n".join(lines)),
            title="[banner]Summary[/banner]",
            border_style=color,
            style=color,
            box=box.ROUNDED,
        )
    )


def status_rows(statuses: Sequence[SettingStatus]) -> List[Dict[str, Any]]:
    return [
        {
            "setting_id": s.setting_id,
            "backend": s.entry.backend.value,
            "desired": describe_desired(s.entry.desired),
            "observed": s.observed.to_dict(),
            "in_sync": s.in_sync,
            "skipped": s.skipped,
        }
        for s in statuses
    ]


def render_status(statuses: Sequence[SettingStatus], out: Optional[Console] = None) -> None:
    """Print every catalog entry with its live value and whether it matches."""
    out = out or default_console
    table = Table(title="Host Configuration Status", style="banner", box=box.ROUNDED)
    table.add_column("Setting", style="header")
    table.add_column("Backend", style="info")
    table.add_column("Desired")
    table.add_column("Observed")
    table.add_column("State")

    drift = 0
    for s in statuses:
        if s.in_sync:
            state = "[success]IN SYNC[/success]"
        elif s.skipped:
            state = "[debug]N/A[/debug]"
        else:
            drift += 1
            state = "[error]PROBE FAILED[/error]" if s.observed.is_failed else "[warning]DRIFT[/warning]"
        table.add_row(
            escape(s.setting_id),
            s.entry.backend.value,
            escape(describe_desired(s.entry.desired)),
            escape(_short(s.observed.describe())),
            state,
        )

    out.print(table)
    if drift:
        out.print(f"[warning]{drift} of {len(statuses)} setting(s) differ from the catalog.[/warning]")
    else:
        out.print(f"[success]All {len(statuses)} setting(s) match the catalog.[/success]")
