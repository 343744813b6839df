from conftest import write_sysctl
from host_reconciler.diff import compare, diff
from host_reconciler.models import ObservedValue, UnitStatus
from host_reconciler.probe import HostProbe, StateProbe
from host_reconciler.transaction import TransactionRunner

SETTINGS = [
    {"id": "net.core.rmem_max", "backend": "kernel-parameter", "value": 134217728},
    {"id": "net.ipv4.tcp_fastopen", "backend": "kernel-parameter", "value": 3},
    {"id": "net.core.wmem_max", "backend": "kernel-parameter", "value": 212992},
    {"id": "net.netfilter.nf_conntrack_max", "backend": "kernel-parameter", "value": 131072, "when_present": True},
    {"id": "nginx:events.worker_connections", "backend": "service-reload-config", "value": 2048},
]


def test_diff_lists_only_drifted_settings_in_catalog_order(make_catalog, appliers_for):
    catalog = make_catalog(SETTINGS)
    units = diff(catalog, HostProbe(catalog, appliers_for(catalog)))

    assert [u.setting_id for u in units] == [
        "net.core.rmem_max",
        "net.ipv4.tcp_fastopen",
        "nginx:events.worker_connections",
    ]
    assert all(u.status is UnitStatus.PENDING for u in units)
    assert units[0].previous == ObservedValue.present("212992")


def test_compare_marks_unavailable_settings_skipped(make_catalog, appliers_for):
    catalog = make_catalog(SETTINGS)
    statuses = {s.setting_id: s for s in compare(catalog, HostProbe(catalog, appliers_for(catalog)))}
    assert statuses["net.core.wmem_max"].in_sync
    assert statuses["net.netfilter.nf_conntrack_max"].skipped
    assert not statuses["net.core.rmem_max"].in_sync


def test_absent_required_setting_is_a_change(make_catalog, appliers_for):
    catalog = make_catalog([{"id": "vm.swappiness", "backend": "kernel-parameter", "value": 10}])
    units = diff(catalog, HostProbe(catalog, appliers_for(catalog)))
    assert len(units) == 1
    assert units[0].previous.is_absent


def test_probe_failure_becomes_a_change(make_catalog, appliers_for):
    class BrokenProbe(StateProbe):
        def probe(self, setting_id):
            return ObservedValue.failed("permission denied")

    catalog = make_catalog(SETTINGS[:1])
    units = diff(catalog, BrokenProbe())
    assert units[0].previous.is_failed


def test_probe_of_unknown_setting_fails_soft(make_catalog, appliers_for):
    catalog = make_catalog(SETTINGS[:1])
    assert HostProbe(catalog, appliers_for(catalog)).probe("kernel.pid_max").is_failed


def test_second_diff_after_commit_is_empty(make_catalog, appliers_for, sysctl_root):
    catalog = make_catalog(SETTINGS[:3])
    appliers = appliers_for(catalog)
    probe = HostProbe(catalog, appliers)

    result = TransactionRunner(appliers).run(diff(catalog, probe))
    assert result.committed
    assert diff(catalog, probe) == []

    write_sysctl(sysctl_root, "net.ipv4.tcp_fastopen", "1")
    assert [u.setting_id for u in diff(catalog, probe)] == ["net.ipv4.tcp_fastopen"]
