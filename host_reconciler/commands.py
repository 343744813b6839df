"""Command execution helpers shared by the appliers and preflight checks."""

import logging
import shutil
import subprocess
from typing import Callable, List, Optional, Sequence

from host_reconciler.config import OPERATION_TIMEOUT

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., subprocess.CompletedProcess]


# ----------------------------------------------------------------
# Command Execution Utilities
# ----------------------------------------------------------------
def run_command(
    cmd: Sequence[str],
    check: bool = False,
    capture_output: bool = True,
    timeout: Optional[int] = OPERATION_TIMEOUT,
) -> subprocess.CompletedProcess:
    """
    Run a system command and return the completed process.

    subprocess.TimeoutExpired and, with check=True, CalledProcessError are
    propagated to the caller.
    """
    argv: List[str] = [str(part) for part in cmd]
    logger.debug(f"Running command: {' '.join(argv)}")
    try:
        result = subprocess.run(
            argv,
            check=check,
            text=True,
            capture_output=capture_output,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout} seconds: {' '.join(argv)}")
        raise
    except subprocess.CalledProcessError as e:
        logger.debug(f"Command failed ({e.returncode}): {' '.join(argv)}")
        raise

    if result.returncode != 0:
        logger.debug(f"Command exited {result.returncode}: {' '.join(argv)}")
    return result


def command_exists(cmd: str) -> bool:
    """Check if a command exists in the system path."""
    return shutil.which(cmd) is not None


def describe_failure(result: subprocess.CompletedProcess) -> str:
    """Best single-line explanation of a failed command."""
    for stream in (result.stderr, result.stdout):
        if stream and stream.strip():
            return stream.strip().splitlines()[-1]
    return f"exit status {result.returncode}"
