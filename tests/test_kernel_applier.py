import pytest

from conftest import read_sysctl, write_sysctl
from host_reconciler.appliers.kernel import KernelParameterApplier
from host_reconciler.errors import ApplyFailed
from host_reconciler.models import Backend, ChangeUnit, DesiredValue, ObservedValue


@pytest.fixture
def applier(sysctl_root, sysfs_root):
    return KernelParameterApplier(sysctl_root=sysctl_root, sysfs_root=sysfs_root)


def unit_for(applier, setting_id, value, kind="integer"):
    return ChangeUnit(
        setting_id=setting_id,
        backend=Backend.KERNEL_PARAMETER,
        previous=applier.probe(setting_id),
        desired=DesiredValue(value=value, kind=kind, backend=Backend.KERNEL_PARAMETER),
    )


def test_path_mapping(applier, sysctl_root, sysfs_root):
    assert applier.path_for("net.ipv4.tcp_fastopen") == sysctl_root / "net" / "ipv4" / "tcp_fastopen"
    assert applier.path_for("sysfs:block/sda/queue/scheduler") == sysfs_root / "block" / "sda" / "queue" / "scheduler"
    with pytest.raises(ValueError):
        applier.path_for("sysfs:../etc/shadow")


def test_probe(applier):
    assert applier.probe("net.core.rmem_max") == ObservedValue.present("212992")
    assert applier.probe("net.netfilter.nf_conntrack_max").is_absent


def test_probe_reads_active_sysfs_choice(applier):
    assert applier.probe("sysfs:block/sda/queue/scheduler") == ObservedValue.present("mq-deadline")


def test_apply_verify_rollback(applier, sysctl_root):
    unit = unit_for(applier, "net.core.rmem_max", 134217728)
    entry = applier.capture(unit.setting_id)

    applier.apply(unit)
    assert read_sysctl(sysctl_root, "net.core.rmem_max") == "134217728"
    assert applier.verify(unit).ok
    assert unit.after == ObservedValue.present("134217728")

    applier.rollback(unit, entry)
    assert read_sysctl(sysctl_root, "net.core.rmem_max") == "212992"


def test_apply_list_value(applier, sysctl_root):
    unit = unit_for(applier, "net.ipv4.tcp_rmem", [4096, 87380, 134217728], kind="list")
    applier.apply(unit)
    assert read_sysctl(sysctl_root, "net.ipv4.tcp_rmem") == "4096 87380 134217728"
    assert applier.verify(unit).ok


def test_apply_to_missing_parameter_fails(applier):
    unit = unit_for(applier, "net.netfilter.nf_conntrack_max", 131072)
    with pytest.raises(ApplyFailed, match="not exposed"):
        applier.apply(unit)


def test_verify_detects_kernel_rejecting_value(applier, sysctl_root):
    unit = unit_for(applier, "net.ipv4.tcp_congestion_control", "bbr", kind="string")
    applier.apply(unit)
    # kernel without the bbr module keeps its previous algorithm
    write_sysctl(sysctl_root, "net.ipv4.tcp_congestion_control", "cubic")
    result = applier.verify(unit)
    assert not result.ok
    assert "cubic" in result.reason


GOVERNOR = "sysfs:devices/system/cpu/cpu[0-9]*/cpufreq/scaling_governor"


@pytest.fixture
def cpus(sysfs_root):
    governors = {}
    for cpu, governor in [("cpu0", "powersave"), ("cpu1", "powersave"), ("cpu2", "schedutil"), ("cpu10", "powersave")]:
        path = sysfs_root / "devices" / "system" / "cpu" / cpu / "cpufreq" / "scaling_governor"
        path.parent.mkdir(parents=True)
        path.write_text(governor + "\n")
        governors[cpu] = path
    # policy directory that the pattern must not pick up
    (sysfs_root / "devices" / "system" / "cpu" / "cpufreq" / "policy0").mkdir(parents=True)
    return governors


def test_wildcard_covers_every_core(applier, cpus):
    assert [p.parent.parent.name for p in applier.paths_for(GOVERNOR)] == ["cpu0", "cpu1", "cpu2", "cpu10"]

    unit = unit_for(applier, GOVERNOR, "performance", kind="string")
    assert unit.previous.is_present
    assert "cpu2/cpufreq/scaling_governor=schedutil" in unit.previous.value
    entry = applier.capture(GOVERNOR)

    applier.apply(unit)
    assert {p.read_text().strip() for p in cpus.values()} == {"performance"}
    assert applier.verify(unit).ok
    assert unit.after == ObservedValue.present("performance")

    applier.rollback(unit, entry)
    assert {cpu: p.read_text().strip() for cpu, p in cpus.items()} == {
        "cpu0": "powersave",
        "cpu1": "powersave",
        "cpu2": "schedutil",
        "cpu10": "powersave",
    }


def test_one_lagging_core_is_drift(applier, cpus):
    for path in cpus.values():
        path.write_text("performance\n")
    assert applier.probe(GOVERNOR) == ObservedValue.present("performance")
    cpus["cpu10"].write_text("powersave\n")
    unit = unit_for(applier, GOVERNOR, "performance", kind="string")
    assert not applier.verify(unit).ok


def test_wildcard_without_matches_is_absent(applier):
    assert applier.probe(GOVERNOR).is_absent


def test_wildcards_rejected_in_sysctl_names(applier):
    with pytest.raises(ValueError, match="wildcards"):
        applier.path_for("net.ipv4.conf.*.rp_filter")
