"""Runtime configuration for the reconciler."""

from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

APP_NAME: str = "Host Reconciler"
VERSION: str = "1.0.0"

OPERATION_TIMEOUT: int = 120  # seconds allowed for syntax checks and reloads
HANDSHAKE_TIMEOUT: int = 30  # seconds to wait for a service to acknowledge a reload

DEFAULT_CATALOG: Path = Path(__file__).resolve().parent / "catalogs" / "ubuntu-performance.yaml"


# ----------------------------------------------------------------
# Data Structures
# ----------------------------------------------------------------
@dataclass
class Config:
    """Configuration for one reconciler invocation."""

    LOG_FILE: str = "/var/log/host_reconciler.log"
    LOCK_FILE: str = "/run/host_reconciler.lock"
    AUDIT_LOG: Optional[str] = None
    SYSCTL_ROOT: Path = field(default_factory=lambda: Path("/proc/sys"))
    SYSFS_ROOT: Path = field(default_factory=lambda: Path("/sys"))
    OPERATION_TIMEOUT: int = OPERATION_TIMEOUT
    HANDSHAKE_TIMEOUT: int = HANDSHAKE_TIMEOUT
    REQUIRE_ROOT: bool = True
    KEEP_BACKUPS: bool = False
    DEBUG: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert the config to a dictionary."""
        data = asdict(self)
        data["SYSCTL_ROOT"] = str(self.SYSCTL_ROOT)
        data["SYSFS_ROOT"] = str(self.SYSFS_ROOT)
        return data
