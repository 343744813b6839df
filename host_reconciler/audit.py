"""Append-only JSON-lines journal of transaction reports."""

import json
import logging
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Union

from host_reconciler.report import TransactionReport

logger = logging.getLogger(__name__)


class AuditJournal:
    """One JSON object per line, one line per transaction."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def record(self, report: TransactionReport, catalog: str) -> None:
        entry: Dict[str, Any] = {
            "recorded_at": datetime.now(timezone.utc).isoformat(),
            "host": socket.gethostname(),
            "catalog": catalog,
            "report": report.to_dict(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        new_file = not self.path.exists()
        with open(self.path, "a") as f:
            f.write(json.dumps(entry, sort_keys=True) + "\n")
        if new_file:
            os.chmod(self.path, 0o600)
        logger.debug(f"Recorded transaction {report.transaction_id} in {self.path}")

    def entries(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with open(self.path) as f:
            return [json.loads(line) for line in f if line.strip()]
