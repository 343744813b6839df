import io
import json
from datetime import datetime, timezone

from rich.console import Console

from host_reconciler.diff import compare
from host_reconciler.models import (
    Backend,
    ChangeUnit,
    DesiredValue,
    ObservedValue,
    TransactionResult,
    TransactionState,
    UnitStatus,
)
from host_reconciler.probe import HostProbe
from host_reconciler.report import TransactionReport, render_report, render_status, status_rows
from host_reconciler.ui import nord_theme
from host_reconciler.values import sha256_text


def recording_console():
    return Console(file=io.StringIO(), width=200, theme=nord_theme, color_system=None)


def make_result(state, statuses):
    units = []
    for index, status in enumerate(statuses):
        unit = ChangeUnit(
            setting_id=f"net.core.setting_{index}",
            backend=Backend.KERNEL_PARAMETER,
            previous=ObservedValue.present("1"),
            desired=DesiredValue(value=2, kind="integer", backend=Backend.KERNEL_PARAMETER),
            status=status,
        )
        if status is UnitStatus.ROLLBACK_FAILED:
            unit.rollback_error = "read-only file system"
        units.append(unit)
    now = datetime.now(timezone.utc)
    return TransactionResult("abc123", state, units, started_at=now, finished_at=now)


def test_committed_report_exits_zero():
    report = TransactionReport.from_result(make_result(TransactionState.COMMITTED, [UnitStatus.VERIFIED_OK]))
    assert report.exit_code == 0
    data = json.loads(report.to_json())
    assert data["state"] == "committed"
    assert data["rows"][0]["before"] == "1"
    assert data["rows"][0]["desired"] == "2"
    assert data["needs_attention"] == []


def test_rolled_back_report_flags_manual_intervention():
    result = make_result(
        TransactionState.ROLLED_BACK,
        [UnitStatus.ROLLED_BACK, UnitStatus.ROLLBACK_FAILED, UnitStatus.APPLY_FAILED],
    )
    report = TransactionReport.from_result(result)
    assert report.exit_code == 2
    assert [r.setting_id for r in report.needs_attention] == ["net.core.setting_1"]

    out = recording_console()
    render_report(report, out)
    text = out.file.getvalue()
    assert "MANUAL INTERVENTION REQUIRED: net.core.setting_1" in text
    assert "ROLLED-BACK" in text
    assert "read-only file system" in text


def test_aborted_report_exits_two():
    report = TransactionReport.from_result(make_result(TransactionState.ABORTED, [UnitStatus.PENDING]))
    assert report.exit_code == 2


def test_plan_report_is_dry_run():
    result = make_result(TransactionState.COMMITTED, [UnitStatus.PENDING])
    report = TransactionReport.from_plan(result.units)
    assert report.dry_run
    assert report.exit_code == 0
    out = recording_console()
    render_report(report, out)
    assert "1 change(s) would be applied" in out.file.getvalue()


def test_file_values_are_shown_as_digests():
    text = "[Unit]\nDescription=x\n"
    unit = ChangeUnit(
        setting_id="/etc/systemd/system/cpu-performance.service",
        backend=Backend.FILE_TEMPLATE,
        previous=ObservedValue.absent(),
        desired=DesiredValue(value=text, kind="file", backend=Backend.FILE_TEMPLATE),
    )
    row = TransactionReport.from_plan([unit]).rows[0]
    assert row.before == "<absent>"
    assert row.desired == f"sha256:{sha256_text(text)[:12]}"


def test_markup_in_values_is_not_interpreted():
    result = make_result(TransactionState.ROLLED_BACK, [UnitStatus.APPLY_FAILED])
    result.units[0].error = "unknown directive [bold]"
    out = recording_console()
    render_report(TransactionReport.from_result(result), out)
    assert "unknown directive [bold]" in out.file.getvalue()


def test_status_rows_and_render(make_catalog, appliers_for):
    catalog = make_catalog(
        [
            {"id": "net.core.rmem_max", "backend": "kernel-parameter", "value": 212992},
            {"id": "net.ipv4.tcp_fastopen", "backend": "kernel-parameter", "value": 3},
            {"id": "net.netfilter.nf_conntrack_max", "backend": "kernel-parameter", "value": 1, "when_present": True},
        ]
    )
    statuses = compare(catalog, HostProbe(catalog, appliers_for(catalog)))
    rows = status_rows(statuses)
    assert [r["in_sync"] for r in rows] == [True, False, False]
    assert rows[2]["skipped"]
    assert rows[1]["observed"] == {"state": "present", "value": "1"}

    out = recording_console()
    render_status(statuses, out)
    text = out.file.getvalue()
    assert "DRIFT" in text
    assert "1 of 3 setting(s) differ" in text
