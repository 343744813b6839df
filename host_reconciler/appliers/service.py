"""
Service configuration directives applied through validate-then-swap.

For each unit the live artifact is re-rendered with the unit's directive
merged in, written to a temp file beside it and checked with the service's
own syntax checker. Only a clean check lets the temp file replace the live
artifact, which is then reloaded. The pre-swap artifact is kept aside so the
unit can be rolled back by renaming it into place and reloading again.
"""

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Sequence, Tuple

from host_reconciler.appliers.base import ChangeApplier, file_digest, read_file_state, write_temp_beside
from host_reconciler.appliers.dialects import ConfigDialect, get_dialect
from host_reconciler.catalog import DesiredStateCatalog, ServiceDefinition
from host_reconciler.commands import CommandRunner, describe_failure, run_command
from host_reconciler.config import HANDSHAKE_TIMEOUT
from host_reconciler.errors import ApplyFailed, RollbackFailed
from host_reconciler.models import (
    Backend,
    ChangeUnit,
    ObservedValue,
    SettingID,
    SnapshotEntry,
    VerifyResult,
)
from host_reconciler.values import matches, render

logger = logging.getLogger(__name__)

BACKUP_KEY = "backup_path"


def _expand(cmd: Sequence[str], path: Path) -> Tuple[str, ...]:
    return tuple(part.replace("{path}", str(path)) for part in cmd)


class ServiceConfigApplier(ChangeApplier):
    """Backend for service-reload-config settings."""

    backend = Backend.SERVICE_RELOAD_CONFIG

    def __init__(
        self,
        catalog: DesiredStateCatalog,
        runner: CommandRunner = run_command,
        timeout: Optional[int] = None,
        handshake_timeout: int = HANDSHAKE_TIMEOUT,
        keep_backups: bool = False,
    ):
        super().__init__(runner, timeout)
        self.catalog = catalog
        self.handshake_timeout = handshake_timeout
        self.keep_backups = keep_backups
        self._sequence = 0

    def _resolve(self, setting_id: SettingID) -> Tuple[ServiceDefinition, str, ConfigDialect]:
        service, directive = self.catalog.service_for(setting_id)
        return service, directive, get_dialect(service.dialect)

    def _repeat(self, setting_id: SettingID) -> Optional[int]:
        if setting_id not in self.catalog:
            return None
        return self.catalog.get(setting_id).desired.repeat

    def _read(self, dialect: ConfigDialect, content: str, setting_id: SettingID, directive: str) -> Optional[str]:
        if self._repeat(setting_id):
            values = dialect.get_all(content, directive)
            return " ".join(values) if values else None
        return dialect.get(content, directive)

    def _write(self, dialect: ConfigDialect, content: str, unit: ChangeUnit, directive: str, value: str) -> str:
        repeat = unit.desired.repeat
        if not repeat:
            return dialect.set(content, directive, value)
        tokens = value.split()
        lines = [" ".join(tokens[i:i + repeat]) for i in range(0, len(tokens), repeat)]
        return dialect.set_all(content, directive, lines)

    # ------------------------------------------------------------
    # Probe / Snapshot
    # ------------------------------------------------------------
    def probe(self, setting_id: SettingID) -> ObservedValue:
        try:
            service, directive, dialect = self._resolve(setting_id)
        except (KeyError, ValueError) as e:
            return ObservedValue.failed(str(e))
        try:
            content = service.config_path.read_text()
        except FileNotFoundError:
            return ObservedValue.absent()
        except OSError as e:
            return ObservedValue.failed(f"cannot read {service.config_path}: {e.strerror or e}")
        try:
            value = self._read(dialect, content, setting_id, directive)
        except ValueError as e:
            return ObservedValue.failed(f"cannot parse {service.config_path}: {e}")
        return ObservedValue.absent() if value is None else ObservedValue.present(value)

    def capture(self, setting_id: SettingID) -> SnapshotEntry:
        service, _, _ = self._resolve(setting_id)
        digest = file_digest(service.config_path) if service.config_path.exists() else None
        return SnapshotEntry(setting_id, self.probe(setting_id), payload=digest)

    # ------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------
    def _syntax_check(self, service: ServiceDefinition, dialect: ConfigDialect, path: Path) -> Optional[str]:
        """Return None when the artifact at path passes validation, else the reason."""
        try:
            dialect.validate(path.read_text())
        except (OSError, ValueError) as e:
            return f"{service.name} configuration does not parse: {e}"
        if service.check_command is None:
            return None
        return self.run_checked(_expand(service.check_command, path), f"{service.name} syntax check")

    def _reload(self, service: ServiceDefinition) -> Optional[str]:
        return self.run_checked(service.reload_command, f"{service.name} reload")

    def _backup_path(self, live: Path) -> Path:
        self._sequence += 1
        return live.with_name(f"{live.name}.reconcile-bak.{os.getpid()}.{self._sequence}")

    def apply(self, unit: ChangeUnit) -> None:
        setting_id = unit.setting_id
        try:
            service, directive, dialect = self._resolve(setting_id)
        except (KeyError, ValueError) as e:
            raise ApplyFailed(setting_id, str(e)) from e

        live = service.config_path
        current = read_file_state(live)
        if current is None:
            raise ApplyFailed(setting_id, f"{live} does not exist")
        data, mode = current

        value = render(unit.desired, dialect.true_word, dialect.false_word)
        try:
            rendered = self._write(dialect, data.decode("utf-8"), unit, directive, value)
        except (KeyError, ValueError, UnicodeDecodeError) as e:
            raise ApplyFailed(setting_id, f"cannot render {live}: {e}") from e

        try:
            candidate = write_temp_beside(live, rendered.encode("utf-8"), mode)
        except OSError as e:
            raise ApplyFailed(setting_id, f"cannot stage new {live}: {e}") from e

        problem = self._syntax_check(service, dialect, candidate)
        if problem:
            candidate.unlink(missing_ok=True)
            logger.error(f"Rejected {setting_id}: {problem}; live configuration left untouched")
            raise ApplyFailed(setting_id, problem)

        backup = self._backup_path(live)
        try:
            try:
                os.link(live, backup)
            except OSError:
                shutil.copy2(live, backup)
            os.replace(candidate, live)
        except OSError as e:
            candidate.unlink(missing_ok=True)
            backup.unlink(missing_ok=True)
            raise ApplyFailed(setting_id, f"cannot swap {live}: {e}") from e
        unit.context[BACKUP_KEY] = backup

        problem = self._reload(service)
        if problem:
            logger.error(f"{problem}; restoring previous {live}")
            unit.context.pop(BACKUP_KEY, None)
            try:
                self._restore(service, backup)
            except (OSError, RollbackFailed) as e:
                raise ApplyFailed(setting_id, f"{problem}; restoring {live} also failed: {e}") from e
            raise ApplyFailed(setting_id, problem)

        logger.info(f"Set {setting_id} = {value} and reloaded {service.name}")

    def _restore(self, service: ServiceDefinition, backup: Path) -> None:
        os.replace(backup, service.config_path)
        problem = self._reload(service)
        if problem:
            raise RollbackFailed(service.name, problem)

    # ------------------------------------------------------------
    # Verify / Rollback
    # ------------------------------------------------------------
    def _handshake(self, service: ServiceDefinition) -> Optional[str]:
        if service.handshake_command is None:
            return None
        try:
            result = self.run(service.handshake_command, timeout=self.handshake_timeout)
        except subprocess.TimeoutExpired:
            return f"{service.name} did not acknowledge the reload within {self.handshake_timeout}s"
        except OSError as e:
            return f"{service.name} handshake could not be started: {e}"
        if result.returncode != 0:
            return f"{service.name} handshake failed: {describe_failure(result)}"
        if service.handshake_expect and service.handshake_expect not in (result.stdout or ""):
            return f"{service.name} handshake did not answer {service.handshake_expect!r}"
        return None

    def verify(self, unit: ChangeUnit) -> VerifyResult:
        service, _, dialect = self._resolve(unit.setting_id)
        problem = self._handshake(service) or self._syntax_check(service, dialect, service.config_path)
        unit.after = self.probe(unit.setting_id)
        if problem:
            return VerifyResult.failed(problem)
        if not matches(unit.desired, unit.after):
            return VerifyResult.failed(f"{service.config_path} reports {unit.after.describe()!r}")
        return VerifyResult.passed()

    def rollback(self, unit: ChangeUnit, entry: SnapshotEntry) -> None:
        service, _, _ = self._resolve(unit.setting_id)
        backup = unit.context.get(BACKUP_KEY)
        if backup is None or not Path(backup).exists():
            raise RollbackFailed(unit.setting_id, f"no saved copy of {service.config_path} to restore")
        try:
            self._restore(service, Path(backup))
        except OSError as e:
            raise RollbackFailed(unit.setting_id, f"cannot restore {service.config_path}: {e}") from e
        except RollbackFailed as e:
            raise RollbackFailed(unit.setting_id, e.reason) from e
        unit.context.pop(BACKUP_KEY, None)
        logger.info(f"Restored previous {service.config_path} and reloaded {service.name}")

    def discard(self, unit: ChangeUnit) -> None:
        backup = unit.context.pop(BACKUP_KEY, None)
        if backup is None:
            return
        if self.keep_backups:
            logger.info(f"Kept previous configuration at {backup}")
            return
        try:
            Path(backup).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not remove backup {backup}: {e}")
