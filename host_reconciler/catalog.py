"""
Desired-state catalog loading and validation.

A catalog document (YAML or JSON) looks like::

    version: 1
    services:
      nginx:
        config_path: /etc/nginx/nginx.conf
        dialect: nginx
        unit: nginx
        check_command: [nginx, -t, -q, -c, "{path}"]
        reload_command: [systemctl, reload, nginx]
        handshake_command: [systemctl, is-active, --quiet, nginx]
    settings:
      - id: net.core.rmem_max
        backend: kernel-parameter
        value: 134217728
      - id: nginx:events.worker_connections
        backend: service-reload-config
        value: 2048
      - id: /etc/udev/rules.d/60-ssd-scheduler.rules
        backend: file-template
        value:
          template_file: templates/60-ssd-scheduler.rules
          notify: [[udevadm, control, --reload-rules], [udevadm, trigger]]

Settings keep their declaration order; that order is the apply order.
"""

import json
import logging
import shlex
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

import yaml

from host_reconciler.errors import CatalogError
from host_reconciler.models import Backend, DesiredValue, SettingID
from host_reconciler.values import KINDS, infer_kind, normalize

logger = logging.getLogger(__name__)

DIALECTS = ("nginx", "directive")
REPEATABLE_DIALECTS = ("directive",)
SUPPORTED_VERSIONS = (1,)

Command = Tuple[str, ...]


class _ConfigTemplate(string.Template):
    """string.Template variant using ``{{ name }}`` placeholders.

    Managed files (systemd units, shell snippets) are full of ``$``, so the
    default delimiter is unusable.
    """

    pattern = r"""
    \{\{\s*(?:
        (?P<named>[_a-z][_a-z0-9]*)\s*\}\}
      | (?P<braced>(?!))
      | (?P<escaped>(?!))
      | (?P<invalid>)
    )
    """


def render_template(text: str, variables: Mapping[str, Any]) -> str:
    """Substitute ``{{ name }}`` placeholders; missing names are an error."""
    return _ConfigTemplate(text).substitute(variables)


# ----------------------------------------------------------------
# Data Structures
# ----------------------------------------------------------------
@dataclass(frozen=True)
class ServiceDefinition:
    """How to validate, reload and probe one service's configuration artifact."""

    name: str
    config_path: Path
    dialect: str
    reload_command: Command
    unit: Optional[str] = None
    check_command: Optional[Command] = None
    handshake_command: Optional[Command] = None
    handshake_expect: Optional[str] = None


@dataclass(frozen=True)
class CatalogEntry:
    setting_id: SettingID
    desired: DesiredValue
    when_present: bool = False

    @property
    def backend(self) -> Backend:
        return self.desired.backend


def split_service_setting(setting_id: SettingID) -> Tuple[str, str]:
    """Split ``nginx:events.worker_connections`` into service and directive path."""
    service, sep, directive = setting_id.partition(":")
    if not sep or not service or not directive:
        raise ValueError(f"service setting must look like '<service>:<directive>': {setting_id!r}")
    return service, directive


class DesiredStateCatalog:
    """Ordered, immutable mapping of SettingID to desired value."""

    def __init__(
        self,
        entries: List[CatalogEntry],
        services: Optional[Mapping[str, ServiceDefinition]] = None,
        source: Optional[str] = None,
    ):
        self.source = source
        self.services: Dict[str, ServiceDefinition] = dict(services or {})
        self._entries: Dict[SettingID, CatalogEntry] = {}
        for entry in entries:
            if entry.setting_id in self._entries:
                raise CatalogError(f"duplicate setting id {entry.setting_id!r}", source)
            if entry.backend is Backend.SERVICE_RELOAD_CONFIG:
                try:
                    service, _ = split_service_setting(entry.setting_id)
                except ValueError as e:
                    raise CatalogError(str(e), source) from e
                if service not in self.services:
                    raise CatalogError(
                        f"{entry.setting_id!r} refers to undeclared service {service!r}", source
                    )
                if entry.desired.repeat and self.services[service].dialect not in REPEATABLE_DIALECTS:
                    raise CatalogError(
                        f"{entry.setting_id!r}: the {self.services[service].dialect} dialect has no repeated directives",
                        source,
                    )
            self._entries[entry.setting_id] = entry

    def __iter__(self) -> Iterator[CatalogEntry]:
        return iter(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, setting_id: object) -> bool:
        return setting_id in self._entries

    @property
    def entries(self) -> List[CatalogEntry]:
        return list(self._entries.values())

    def get(self, setting_id: SettingID) -> CatalogEntry:
        return self._entries[setting_id]

    def backend_of(self, setting_id: SettingID) -> Backend:
        return self._entries[setting_id].backend

    def service_for(self, setting_id: SettingID) -> Tuple[ServiceDefinition, str]:
        service, directive = split_service_setting(setting_id)
        return self.services[service], directive

    def backends(self) -> List[Backend]:
        """Backends used by this catalog, in first-use order."""
        seen: List[Backend] = []
        for entry in self:
            if entry.backend not in seen:
                seen.append(entry.backend)
        return seen

    @classmethod
    def from_document(
        cls,
        data: Any,
        source: Optional[str] = None,
        base_dir: Optional[Path] = None,
    ) -> "DesiredStateCatalog":
        """Build a catalog from an already-parsed YAML/JSON document."""
        if not isinstance(data, dict):
            raise CatalogError("catalog document must be a mapping", source)
        version = data.get("version", 1)
        if version not in SUPPORTED_VERSIONS:
            raise CatalogError(f"unsupported catalog version {version!r}", source)

        base_dir = base_dir or Path.cwd()
        services = {
            name: _parse_service(name, definition, source)
            for name, definition in (data.get("services") or {}).items()
        }

        settings = data.get("settings")
        if not isinstance(settings, list):
            raise CatalogError("'settings' must be a list", source)
        entries = [_parse_entry(index, raw, source, base_dir) for index, raw in enumerate(settings)]
        return cls(entries, services, source)


# ----------------------------------------------------------------
# Parsing Helpers
# ----------------------------------------------------------------
def _parse_command(raw: Any, what: str, source: Optional[str]) -> Optional[Command]:
    if raw is None:
        return None
    if isinstance(raw, str):
        argv = shlex.split(raw)
    elif isinstance(raw, list) and all(isinstance(part, (str, int)) for part in raw):
        argv = [str(part) for part in raw]
    else:
        raise CatalogError(f"{what} must be a string or a list of strings", source)
    if not argv:
        raise CatalogError(f"{what} must not be empty", source)
    return tuple(argv)


def _parse_commands(raw: Any, what: str, source: Optional[str]) -> Tuple[Command, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise CatalogError(f"{what} must be a list of commands", source)
    return tuple(_parse_command(cmd, what, source) for cmd in raw)


def _parse_service(name: str, definition: Any, source: Optional[str]) -> ServiceDefinition:
    if not isinstance(definition, dict):
        raise CatalogError(f"service {name!r} must be a mapping", source)
    for required in ("config_path", "dialect", "reload_command"):
        if not definition.get(required):
            raise CatalogError(f"service {name!r} is missing {required!r}", source)
    if definition["dialect"] not in DIALECTS:
        raise CatalogError(
            f"service {name!r} has unknown dialect {definition['dialect']!r} (expected one of {', '.join(DIALECTS)})",
            source,
        )
    return ServiceDefinition(
        name=name,
        config_path=Path(definition["config_path"]),
        dialect=definition["dialect"],
        reload_command=_parse_command(definition["reload_command"], f"{name}.reload_command", source),
        unit=definition.get("unit"),
        check_command=_parse_command(definition.get("check_command"), f"{name}.check_command", source),
        handshake_command=_parse_command(
            definition.get("handshake_command"), f"{name}.handshake_command", source
        ),
        handshake_expect=definition.get("handshake_expect"),
    )


def _parse_mode(raw: Any, setting_id: str, source: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    try:
        return int(str(raw), 8)
    except ValueError as e:
        raise CatalogError(f"{setting_id}: mode must be an octal string like '0644'", source) from e


def _parse_file_value(
    setting_id: str, raw: Any, source: Optional[str], base_dir: Path
) -> DesiredValue:
    if not setting_id.startswith("/"):
        raise CatalogError(f"file-template id must be an absolute path: {setting_id!r}", source)
    if not isinstance(raw, dict):
        raise CatalogError(f"{setting_id}: file-template value must be a mapping", source)

    if "template" in raw:
        text = raw["template"]
    elif "template_file" in raw:
        template_path = base_dir / raw["template_file"]
        try:
            text = template_path.read_text()
        except OSError as e:
            raise CatalogError(f"{setting_id}: cannot read template {template_path}: {e}", source) from e
    else:
        raise CatalogError(f"{setting_id}: needs 'template' or 'template_file'", source)
    if not isinstance(text, str):
        raise CatalogError(f"{setting_id}: template must be text", source)

    variables = raw.get("variables") or {}
    try:
        content = render_template(text, variables)
    except KeyError as e:
        raise CatalogError(f"{setting_id}: template variable {e.args[0]!r} is not defined", source) from e
    except ValueError as e:
        raise CatalogError(f"{setting_id}: {e}", source) from e

    notify = _parse_commands(raw.get("notify"), f"{setting_id}.notify", source)
    rollback_notify = _parse_commands(raw.get("rollback_notify"), f"{setting_id}.rollback_notify", source)
    return DesiredValue(
        value=content,
        kind="file",
        backend=Backend.FILE_TEMPLATE,
        mode=_parse_mode(raw.get("mode"), setting_id, source),
        notify=notify,
        rollback_notify=rollback_notify,
    )


def _parse_repeat(raw: Any, setting_id: str, backend: Backend, source: Optional[str]) -> Optional[int]:
    repeat = raw.get("repeat")
    if repeat is None:
        return None
    if isinstance(repeat, bool) or not isinstance(repeat, int) or repeat < 1:
        raise CatalogError(f"{setting_id}: repeat must be a positive integer", source)
    if backend is not Backend.SERVICE_RELOAD_CONFIG:
        raise CatalogError(f"{setting_id}: repeat only applies to service-reload-config settings", source)
    tokens = normalize("list", raw["value"])
    if not tokens or len(tokens) % repeat:
        raise CatalogError(f"{setting_id}: {len(tokens)} value(s) cannot be split into lines of {repeat}", source)
    return repeat


def _parse_entry(index: int, raw: Any, source: Optional[str], base_dir: Path) -> CatalogEntry:
    if not isinstance(raw, dict):
        raise CatalogError(f"settings[{index}] must be a mapping", source)
    setting_id = raw.get("id")
    if not setting_id or not isinstance(setting_id, str):
        raise CatalogError(f"settings[{index}] is missing a string 'id'", source)
    if "value" not in raw:
        raise CatalogError(f"{setting_id}: missing 'value'", source)
    try:
        backend = Backend.from_tag(raw.get("backend", ""))
    except ValueError as e:
        raise CatalogError(f"{setting_id}: {e}", source) from e

    if backend is Backend.FILE_TEMPLATE:
        desired = _parse_file_value(setting_id, raw["value"], source, base_dir)
    else:
        value = raw["value"]
        kind = raw.get("type") or infer_kind(value)
        if kind not in KINDS or kind == "file":
            raise CatalogError(f"{setting_id}: unsupported type {kind!r}", source)
        try:
            normalize(kind, value)
        except ValueError as e:
            raise CatalogError(f"{setting_id}: value does not fit type {kind!r}: {e}", source) from e
        repeat = _parse_repeat(raw, setting_id, backend, source)
        desired = DesiredValue(value=value, kind=kind, backend=backend, repeat=repeat)

    return CatalogEntry(setting_id=setting_id, desired=desired, when_present=bool(raw.get("when_present")))


# ----------------------------------------------------------------
# Loading
# ----------------------------------------------------------------
def load_catalog(path: Union[str, Path]) -> DesiredStateCatalog:
    """Load a catalog from a .yaml/.yml or .json file."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise CatalogError(f"cannot read catalog: {e}", str(path)) from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise CatalogError(f"cannot parse catalog: {e}", str(path)) from e

    catalog = DesiredStateCatalog.from_document(data, source=str(path), base_dir=path.parent)
    logger.debug(f"Loaded {len(catalog)} settings from {path}")
    return catalog
