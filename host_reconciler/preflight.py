"""Checks that must pass before a transaction may touch the host."""

import logging
import os
import subprocess
from typing import Iterable, List

from host_reconciler.catalog import DesiredStateCatalog
from host_reconciler.commands import CommandRunner, command_exists, run_command
from host_reconciler.config import Config
from host_reconciler.errors import PreflightError
from host_reconciler.models import Backend, ChangeUnit

logger = logging.getLogger(__name__)


def check_root(config: Config) -> None:
    """Verify the process runs with root privileges when the config demands it."""
    if config.REQUIRE_ROOT and os.geteuid() != 0:
        raise PreflightError("This command must be run as root (use sudo or --no-root-check)")
    logger.debug("Root privilege check passed")


def services_in(catalog: DesiredStateCatalog, units: Iterable[ChangeUnit]) -> List[str]:
    """Names of catalog services touched by a change set, in first-use order."""
    names: List[str] = []
    for unit in units:
        if unit.backend is not Backend.SERVICE_RELOAD_CONFIG:
            continue
        service, _ = catalog.service_for(unit.setting_id)
        if service.name not in names:
            names.append(service.name)
    return names


def check_services(
    catalog: DesiredStateCatalog,
    units: Iterable[ChangeUnit],
    runner: CommandRunner = run_command,
) -> None:
    """Every service about to be reconfigured must be installed and running."""
    names = services_in(catalog, units)
    if names and not command_exists("systemctl"):
        raise PreflightError("systemctl is not available; cannot confirm services are running")

    for name in names:
        unit_name = catalog.services[name].unit
        if not unit_name:
            logger.debug(f"Service {name} declares no systemd unit; skipping activity check")
            continue
        try:
            result = runner(["systemctl", "is-active", "--quiet", unit_name], timeout=30)
        except subprocess.TimeoutExpired as e:
            raise PreflightError(f"Timed out checking whether {unit_name} is active") from e
        if result.returncode != 0:
            raise PreflightError(f"{unit_name} is not installed or not running")
        logger.info(f"{unit_name} is active")
