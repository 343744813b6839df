"""Backend appliers, one per backend tag."""

from typing import Dict

from host_reconciler.appliers.base import ChangeApplier
from host_reconciler.appliers.kernel import KernelParameterApplier
from host_reconciler.appliers.service import ServiceConfigApplier
from host_reconciler.appliers.template import FileTemplateApplier
from host_reconciler.catalog import DesiredStateCatalog
from host_reconciler.commands import CommandRunner, run_command
from host_reconciler.config import Config
from host_reconciler.models import Backend


def build_appliers(
    config: Config,
    catalog: DesiredStateCatalog,
    runner: CommandRunner = run_command,
) -> Dict[Backend, ChangeApplier]:
    """Instantiate every backend applier for a catalog."""
    return {
        Backend.KERNEL_PARAMETER: KernelParameterApplier(
            sysctl_root=config.SYSCTL_ROOT,
            sysfs_root=config.SYSFS_ROOT,
            runner=runner,
            timeout=config.OPERATION_TIMEOUT,
        ),
        Backend.SERVICE_RELOAD_CONFIG: ServiceConfigApplier(
            catalog,
            runner=runner,
            timeout=config.OPERATION_TIMEOUT,
            handshake_timeout=config.HANDSHAKE_TIMEOUT,
            keep_backups=config.KEEP_BACKUPS,
        ),
        Backend.FILE_TEMPLATE: FileTemplateApplier(runner=runner, timeout=config.OPERATION_TIMEOUT),
    }


__all__ = [
    "ChangeApplier",
    "FileTemplateApplier",
    "KernelParameterApplier",
    "ServiceConfigApplier",
    "build_appliers",
]
