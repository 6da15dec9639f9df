from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class CommandLogFormatter(logging.Formatter):
    """
    One JSON object per line:
    {"timestamp": "2026-02-16T09:00:00.000Z", "level": "error",
     "command": "sync_calendar", "message": "..."}
    """

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc)
        entry: dict[str, Any] = {
            "timestamp": stamp.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname.lower(),
            "command": getattr(record, "command", ""),
            "message": record.getMessage(),
        }
        return json.dumps(entry, ensure_ascii=False)


class CommandLog:
    """Append-only operational log for the command surface."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).resolve()
        digest = hashlib.sha1(str(self.path).encode("utf-8")).hexdigest()[:12]
        self._logger = logging.getLogger(f"pomblock.commands.{digest}")
        self._logger.setLevel(logging.INFO)
        if not any(
            isinstance(h, logging.FileHandler) and h.baseFilename == str(self.path)
            for h in self._logger.handlers
        ):
            handler = logging.FileHandler(self.path, encoding="utf-8", delay=True)
            handler.setFormatter(CommandLogFormatter())
            self._logger.addHandler(handler)

    def info(self, command: str, message: str) -> None:
        self._logger.info(message, extra={"command": command})

    def error(self, command: str, message: str) -> None:
        self._logger.error(message, extra={"command": command})

    def close(self) -> None:
        for handler in list(self._logger.handlers):
            handler.close()
            self._logger.removeHandler(handler)


def read_entries(path: str | Path) -> list[dict[str, Any]]:
    p = Path(path)
    if not p.exists():
        return []
    return [json.loads(line) for line in p.read_text(encoding="utf-8").splitlines() if line.strip()]
