"""Writes local-mode alert batches to a line-delimited JSON log file."""

from __future__ import annotations

import dataclasses
import json
import logging
import time
from pathlib import Path
from typing import Any

log = logging.getLogger(__name__)


def _default(obj: Any) -> Any:
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return dataclasses.asdict(obj)
    raise TypeError(f"cannot serialize {type(obj).__name__}")


class WebhookLogger:
    """Logs alert payloads as JSON lines."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._file = self.path.open("w", encoding="utf-8")
        log.info("logging webhook alerts to %s", self.path)

    @classmethod
    def open(cls, logs_dir: str | Path, log_file_name: str | None = None) -> "WebhookLogger":
        """Create the logs directory and a log file inside it."""
        directory = Path(logs_dir)
        directory.mkdir(parents=True, exist_ok=True)
        name = log_file_name or f"forta-local-alerts-logs-{int(time.time())}"
        return cls(directory / name)

    def send_alerts(self, payload: Any) -> None:
        self._file.write(json.dumps(payload, default=_default) + "\n")
        self._file.flush()

    def close(self) -> None:
        self._file.close()

    def __enter__(self) -> "WebhookLogger":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()