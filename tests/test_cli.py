import json

import pytest
from click.testing import CliRunner

from conftest import read_sysctl
from host_reconciler.cli import main
from host_reconciler.locking import HostLock


@pytest.fixture
def cli(tmp_path, sysctl_root, sysfs_root):
    def invoke(*args):
        base = [
            "--log-file", str(tmp_path / "reconciler.log"),
            "--lock-file", str(tmp_path / "reconciler.lock"),
            "--sysctl-root", str(sysctl_root),
            "--sysfs-root", str(sysfs_root),
            "--no-root-check",
        ]
        return CliRunner().invoke(main, base + list(args))

    return invoke


@pytest.fixture
def write_catalog(tmp_path):
    def _write(settings):
        path = tmp_path / "catalog.json"
        path.write_text(json.dumps({"version": 1, "settings": settings}))
        return path

    return _write


KERNEL_SETTINGS = [
    {"id": "net.core.rmem_max", "backend": "kernel-parameter", "value": 134217728},
    {"id": "net.ipv4.tcp_fastopen", "backend": "kernel-parameter", "value": 3},
    {"id": "net.core.wmem_max", "backend": "kernel-parameter", "value": 212992},
]


def test_validate_bundled_catalog(cli):
    result = cli("validate")
    assert result.exit_code == 0, result.output
    assert "valid" in result.output


def test_validate_rejects_bad_catalog(cli, write_catalog):
    path = write_catalog([{"id": "x", "backend": "nope", "value": 1}])
    result = cli("validate", "--catalog", str(path))
    assert result.exit_code == 1


def test_plan_writes_report_without_changing_host(cli, write_catalog, sysctl_root, tmp_path):
    catalog = write_catalog(KERNEL_SETTINGS)
    report_file = tmp_path / "plan.json"
    result = cli("plan", "--catalog", str(catalog), "--json", "--report-file", str(report_file))

    assert result.exit_code == 0, result.output
    report = json.loads(report_file.read_text())
    assert report["dry_run"] is True
    assert [r["setting_id"] for r in report["rows"]] == ["net.core.rmem_max", "net.ipv4.tcp_fastopen"]
    assert read_sysctl(sysctl_root, "net.core.rmem_max") == "212992"


def test_status_reports_drift(cli, write_catalog, tmp_path):
    catalog = write_catalog(KERNEL_SETTINGS)
    report_file = tmp_path / "status.json"
    result = cli("status", "--catalog", str(catalog), "--report-file", str(report_file))

    assert result.exit_code == 0, result.output
    rows = json.loads(report_file.read_text())["settings"]
    assert [r["in_sync"] for r in rows] == [False, False, True]


def test_apply_commits_and_is_idempotent(cli, write_catalog, sysctl_root, tmp_path):
    catalog = write_catalog(KERNEL_SETTINGS)
    report_file = tmp_path / "apply.json"
    audit = tmp_path / "audit.jsonl"

    result = cli("--audit-log", str(audit), "apply", "--catalog", str(catalog), "--yes", "--report-file", str(report_file))
    assert result.exit_code == 0, result.output
    report = json.loads(report_file.read_text())
    assert report["state"] == "committed"
    assert read_sysctl(sysctl_root, "net.core.rmem_max") == "134217728"
    assert read_sysctl(sysctl_root, "net.ipv4.tcp_fastopen") == "3"
    assert len(audit.read_text().splitlines()) == 1

    result = cli("apply", "--catalog", str(catalog), "--yes", "--report-file", str(report_file))
    assert result.exit_code == 0, result.output
    assert json.loads(report_file.read_text())["rows"] == []


def test_apply_rolls_back_and_exits_two(cli, write_catalog, sysctl_root, tmp_path):
    catalog = write_catalog(KERNEL_SETTINGS + [{"id": "vm.swappiness", "backend": "kernel-parameter", "value": 10}])
    report_file = tmp_path / "apply.json"
    result = cli("apply", "--catalog", str(catalog), "--json", "--yes", "--report-file", str(report_file))

    assert result.exit_code == 2
    report = json.loads(report_file.read_text())
    assert report["state"] == "rolled-back"
    assert [r["status"] for r in report["rows"]] == ["rolled-back", "rolled-back", "apply-failed"]
    assert read_sysctl(sysctl_root, "net.core.rmem_max") == "212992"


def test_apply_refuses_when_lock_is_held(cli, write_catalog, tmp_path):
    catalog = write_catalog(KERNEL_SETTINGS)
    with HostLock(tmp_path / "reconciler.lock"):
        result = cli("apply", "--catalog", str(catalog), "--yes")
    assert result.exit_code == 1
    assert "another transaction" in result.output


def test_apply_declined_changes_nothing(cli, write_catalog, sysctl_root):
    catalog = write_catalog(KERNEL_SETTINGS)
    result = CliRunner().invoke(
        main,
        [
            "--log-file", "",
            "--sysctl-root", str(sysctl_root),
            "--lock-file", str(sysctl_root.parent / "lock"),
            "--no-root-check",
            "apply", "--catalog", str(catalog),
        ],
        input="n\n",
    )
    assert result.exit_code == 0, result.output
    assert read_sysctl(sysctl_root, "net.core.rmem_max") == "212992"


def test_apply_json_requires_yes(cli, write_catalog, sysctl_root):
    catalog = write_catalog(KERNEL_SETTINGS)
    result = cli("apply", "--catalog", str(catalog), "--json")
    assert result.exit_code == 1
    assert "--json requires --yes" in result.output
    assert read_sysctl(sysctl_root, "net.core.rmem_max") == "212992"


def test_debug_log_records_configuration(cli, write_catalog, tmp_path):
    catalog = write_catalog(KERNEL_SETTINGS)
    result = cli("validate", "--catalog", str(catalog))
    assert result.exit_code == 0, result.output
    log = (tmp_path / "reconciler.log").read_text()
    assert "'REQUIRE_ROOT': False" in log
    assert f"'SYSCTL_ROOT': '{tmp_path / 'proc' / 'sys'}'" in log
