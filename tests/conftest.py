import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pytest

from host_reconciler.appliers import build_appliers
from host_reconciler.catalog import DesiredStateCatalog
from host_reconciler.config import Config

NGINX_CONF = """\
user www-data;
worker_processes 1;
pid /run/nginx.pid;

events {
    worker_connections 768;
}

http {
    sendfile on;
    keepalive_timeout 75;
    # gzip off;
    include /etc/nginx/mime.types;
}
"""

REDIS_CONF = """\
bind 127.0.0.1
port 6379
# maxmemory <bytes>
maxmemory-policy noeviction
save 3600 1
save 300 100
appendfsync always
"""


class FakeRunner:
    """Records every command and answers from a list of prefix rules."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, ...]] = []
        self._rules: List[Tuple[Tuple[str, ...], Any]] = []

    def on(self, prefix: Sequence[str], returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        self._rules.insert(0, (tuple(prefix), (returncode, stdout, stderr)))

    def raise_on(self, prefix: Sequence[str], exc: BaseException) -> None:
        self._rules.insert(0, (tuple(prefix), exc))

    def ran(self, prefix: Sequence[str]) -> int:
        prefix = tuple(prefix)
        return sum(1 for call in self.calls if call[: len(prefix)] == prefix)

    def __call__(self, cmd: Sequence[str], timeout: Optional[int] = None, **kwargs) -> subprocess.CompletedProcess:
        argv = tuple(str(part) for part in cmd)
        self.calls.append(argv)
        for prefix, outcome in self._rules:
            if argv[: len(prefix)] == prefix:
                if isinstance(outcome, BaseException):
                    raise outcome
                returncode, stdout, stderr = outcome
                return subprocess.CompletedProcess(list(argv), returncode, stdout, stderr)
        return subprocess.CompletedProcess(list(argv), 0, "", "")


def write_sysctl(root: Path, name: str, value: str) -> Path:
    path = root / name.replace(".", "/")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(value + "\n")
    return path


def read_sysctl(root: Path, name: str) -> str:
    return (root / name.replace(".", "/")).read_text().strip()


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sysctl_root(tmp_path: Path) -> Path:
    root = tmp_path / "proc" / "sys"
    write_sysctl(root, "net.core.rmem_max", "212992")
    write_sysctl(root, "net.core.wmem_max", "212992")
    write_sysctl(root, "net.ipv4.tcp_rmem", "4096\t131072\t6291456")
    write_sysctl(root, "net.ipv4.tcp_fastopen", "1")
    write_sysctl(root, "net.ipv4.tcp_congestion_control", "cubic")
    return root


@pytest.fixture
def sysfs_root(tmp_path: Path) -> Path:
    root = tmp_path / "sys"
    scheduler = root / "block" / "sda" / "queue" / "scheduler"
    scheduler.parent.mkdir(parents=True)
    scheduler.write_text("[mq-deadline] none\n")
    return root


@pytest.fixture
def etc(tmp_path: Path) -> Path:
    root = tmp_path / "etc"
    (root / "nginx").mkdir(parents=True)
    (root / "nginx" / "nginx.conf").write_text(NGINX_CONF)
    (root / "redis").mkdir(parents=True)
    (root / "redis" / "redis.conf").write_text(REDIS_CONF)
    return root


@pytest.fixture
def services(etc: Path) -> Dict[str, Any]:
    return {
        "nginx": {
            "config_path": str(etc / "nginx" / "nginx.conf"),
            "dialect": "nginx",
            "unit": "nginx",
            "check_command": ["nginx", "-t", "-q", "-c", "{path}"],
            "reload_command": ["systemctl", "reload", "nginx"],
            "handshake_command": ["systemctl", "is-active", "--quiet", "nginx"],
        },
        "redis": {
            "config_path": str(etc / "redis" / "redis.conf"),
            "dialect": "directive",
            "unit": "redis-server",
            "reload_command": ["systemctl", "restart", "redis-server"],
            "handshake_command": ["redis-cli", "ping"],
            "handshake_expect": "PONG",
        },
    }


@pytest.fixture
def make_catalog(tmp_path: Path, services: Dict[str, Any]):
    def _make(settings: List[Dict[str, Any]]) -> DesiredStateCatalog:
        document = {"version": 1, "services": services, "settings": settings}
        return DesiredStateCatalog.from_document(document, source="test", base_dir=tmp_path)

    return _make


@pytest.fixture
def config(tmp_path: Path, sysctl_root: Path, sysfs_root: Path) -> Config:
    return Config(
        LOG_FILE=str(tmp_path / "reconciler.log"),
        LOCK_FILE=str(tmp_path / "reconciler.lock"),
        SYSCTL_ROOT=sysctl_root,
        SYSFS_ROOT=sysfs_root,
        REQUIRE_ROOT=False,
    )


@pytest.fixture
def appliers_for(config: Config, runner: FakeRunner):
    def _build(catalog: DesiredStateCatalog):
        return build_appliers(config, catalog, runner=runner)

    return _build
