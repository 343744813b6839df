"""
host-reconciler command line interface.

    host-reconciler status   show every catalog setting next to the live value
    host-reconciler plan     dry run: list the changes apply would make
    host-reconciler apply    apply the changes as one all-or-nothing transaction
    host-reconciler validate check a catalog document without touching the host

Exit codes: 0 success, 1 usage/catalog/preflight error, 2 transaction rolled
back or aborted, 130 interrupted.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.prompt import Confirm

from host_reconciler.appliers import build_appliers
from host_reconciler.audit import AuditJournal
from host_reconciler.catalog import DesiredStateCatalog, load_catalog
from host_reconciler.config import DEFAULT_CATALOG, VERSION, Config
from host_reconciler.diff import compare, diff
from host_reconciler.errors import ReconcilerError
from host_reconciler.locking import HostLock
from host_reconciler.preflight import check_root, check_services
from host_reconciler.probe import HostProbe
from host_reconciler.report import TransactionReport, render_report, render_status, status_rows
from host_reconciler.transaction import CancelToken, TransactionRunner, cancel_on_signals
from host_reconciler.ui import (
    NordColors,
    console,
    create_header,
    display_panel,
    print_error,
    print_section,
    print_step,
    print_success,
    print_warning,
    setup_logger,
)

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_INTERRUPTED = 130

catalog_option = click.option(
    "--catalog",
    "catalog_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=DEFAULT_CATALOG,
    show_default=True,
    help="Desired-state catalog (YAML or JSON)",
)
json_option = click.option("--json", "as_json", is_flag=True, help="Print a JSON report instead of tables")
report_file_option = click.option(
    "--report-file",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Also write the JSON report to this file",
)


def _load(catalog_path: Path) -> DesiredStateCatalog:
    catalog = load_catalog(catalog_path)
    logger.debug(f"Catalog {catalog_path}: {len(catalog)} settings")
    return catalog


def _write_report_file(path: Optional[Path], payload: str) -> None:
    if path is None:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(payload + "\n")
    logger.debug(f"Report written to {path}")


def _banner(as_json: bool) -> None:
    if not as_json:
        console.print(create_header())


# ----------------------------------------------------------------
# Main CLI Entry Point with Click
# ----------------------------------------------------------------
@click.group()
@click.version_option(VERSION, prog_name="host-reconciler")
@click.option("--log-file", default=Config.LOG_FILE, show_default=True, help="Debug log destination")
@click.option("--debug", is_flag=True, help="Enable debug logging on the console")
@click.option("--sysctl-root", type=click.Path(file_okay=False, path_type=Path), default=None, help="Root of the sysctl tree")
@click.option("--sysfs-root", type=click.Path(file_okay=False, path_type=Path), default=None, help="Root of the sysfs tree")
@click.option("--lock-file", default=Config.LOCK_FILE, show_default=True, help="Lock file serialising transactions")
@click.option("--audit-log", default=None, help="Append each transaction report to this JSON-lines file")
@click.option("--no-root-check", is_flag=True, help="Do not require root for apply")
@click.option("--keep-backups", is_flag=True, help="Keep previous service configurations after commit")
@click.pass_context
def main(
    ctx: click.Context,
    log_file: str,
    debug: bool,
    sysctl_root: Optional[Path],
    sysfs_root: Optional[Path],
    lock_file: str,
    audit_log: Optional[str],
    no_root_check: bool,
    keep_backups: bool,
) -> None:
    """Declarative host tuning: diff, apply and roll back kernel, service and file settings."""
    config = Config(
        LOG_FILE=log_file,
        LOCK_FILE=lock_file,
        AUDIT_LOG=audit_log,
        REQUIRE_ROOT=not no_root_check,
        KEEP_BACKUPS=keep_backups,
        DEBUG=debug,
    )
    if sysctl_root is not None:
        config.SYSCTL_ROOT = sysctl_root
    if sysfs_root is not None:
        config.SYSFS_ROOT = sysfs_root
    setup_logger(config.LOG_FILE, debug=debug)
    logger.debug(f"Configuration: {config.to_dict()}")
    ctx.obj = config


@main.command()
@catalog_option
@click.pass_obj
def validate(config: Config, catalog_path: Path) -> None:
    """Check a catalog document without touching the host."""
    try:
        catalog = _load(catalog_path)
    except ReconcilerError as e:
        print_error(str(e))
        sys.exit(EXIT_ERROR)

    print_success(f"{catalog_path} is valid: {len(catalog)} setting(s)")
    for backend in catalog.backends():
        count = sum(1 for entry in catalog if entry.backend is backend)
        print_step(f"{backend.value}: {count}")
    for name, service in catalog.services.items():
        print_step(f"service {name}: {service.config_path} ({service.dialect})")


@main.command()
@catalog_option
@json_option
@report_file_option
@click.pass_obj
def status(config: Config, catalog_path: Path, as_json: bool, report_file: Optional[Path]) -> None:
    """Show every catalog setting next to its live value."""
    try:
        catalog = _load(catalog_path)
    except ReconcilerError as e:
        print_error(str(e))
        sys.exit(EXIT_ERROR)

    _banner(as_json)
    probe = HostProbe(catalog, build_appliers(config, catalog))
    statuses = compare(catalog, probe)
    payload = json.dumps({"catalog": str(catalog_path), "settings": status_rows(statuses)}, indent=2)
    _write_report_file(report_file, payload)
    if as_json:
        click.echo(payload)
    else:
        render_status(statuses)


@main.command()
@catalog_option
@json_option
@report_file_option
@click.pass_obj
def plan(config: Config, catalog_path: Path, as_json: bool, report_file: Optional[Path]) -> None:
    """Dry run: list the changes apply would make."""
    try:
        catalog = _load(catalog_path)
    except ReconcilerError as e:
        print_error(str(e))
        sys.exit(EXIT_ERROR)

    _banner(as_json)
    probe = HostProbe(catalog, build_appliers(config, catalog))
    report = TransactionReport.from_plan(diff(catalog, probe))
    _write_report_file(report_file, report.to_json())
    if as_json:
        click.echo(report.to_json())
    else:
        render_report(report)


@main.command()
@catalog_option
@json_option
@report_file_option
@click.option("--yes", "-y", "assume_yes", is_flag=True, help="Apply without asking for confirmation")
@click.option("--skip-preflight", is_flag=True, help="Do not check that target services are running")
@click.pass_obj
def apply(
    config: Config,
    catalog_path: Path,
    as_json: bool,
    report_file: Optional[Path],
    assume_yes: bool,
    skip_preflight: bool,
) -> None:
    """Apply the changes as one all-or-nothing transaction."""
    if as_json and not assume_yes:
        # there is no prompt in JSON mode
        print_error("--json requires --yes for apply")
        sys.exit(EXIT_ERROR)

    _banner(as_json)
    try:
        check_root(config)
        catalog = _load(catalog_path)
        appliers = build_appliers(config, catalog)
        with HostLock(config.LOCK_FILE):
            units = diff(catalog, HostProbe(catalog, appliers))
            if units and not skip_preflight:
                check_services(catalog, units)

            if units and not assume_yes:
                render_report(TransactionReport.from_plan(units))
                if not Confirm.ask(f"Apply {len(units)} change(s)?", default=False):
                    display_panel("Aborted by user; nothing was changed.", NordColors.YELLOW, "Cancelled")
                    return

            if not as_json:
                print_section("Applying")
            token = CancelToken()
            with cancel_on_signals(token):
                result = TransactionRunner(appliers, token).run(units)
    except ReconcilerError as e:
        print_error(str(e))
        sys.exit(EXIT_ERROR)
    except KeyboardInterrupt:
        print_warning("Interrupted before the transaction started; nothing was changed.")
        sys.exit(EXIT_INTERRUPTED)

    report = TransactionReport.from_result(result)
    _write_report_file(report_file, report.to_json())
    if config.AUDIT_LOG:
        try:
            AuditJournal(config.AUDIT_LOG).record(report, str(catalog_path))
        except OSError as e:
            logger.warning(f"Could not write audit journal {config.AUDIT_LOG}: {e}")

    if as_json:
        click.echo(report.to_json())
    else:
        render_report(report)

    if report.exit_code != 0:
        sys.exit(report.exit_code)
