"""JSON-lines telemetry for install passes and generation turns."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

INSTALL_LOG_NAME = "install_events.jsonl"
GENERATION_LOG_NAME = "generation_events.jsonl"


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def log_json_line(
    path: Path,
    payload: Mapping[str, Any],
    *,
    logger: logging.Logger | None = None,
) -> None:
    """Append a JSON payload to the given log path."""
    if not payload:
        return
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    except Exception as exc:  # pragma: no cover - diagnostics only
        if logger:
            logger.debug("Failed to append json line to %s: %s", path, exc)


class TelemetrySink:
    """Route runtime events into per-topic JSONL files under one directory."""

    def __init__(self, log_dir: Path | None, *, logger: logging.Logger | None = None) -> None:
        self.log_dir = Path(log_dir) if log_dir is not None else None
        self._logger = logger or logging.getLogger("ember.telemetry")

    @property
    def enabled(self) -> bool:
        return self.log_dir is not None

    def install_event(self, event: str, **details: Any) -> None:
        self._write(INSTALL_LOG_NAME, event, details)

    def generation_event(self, event: str, **details: Any) -> None:
        self._write(GENERATION_LOG_NAME, event, details)

    def _write(self, file_name: str, event: str, details: Mapping[str, Any]) -> None:
        if self.log_dir is None:
            return
        payload = {"timestamp": utc_timestamp(), "event": event, **details}
        log_json_line(self.log_dir / file_name, payload, logger=self._logger)


__all__ = [
    "GENERATION_LOG_NAME",
    "INSTALL_LOG_NAME",
    "TelemetrySink",
    "log_json_line",
    "utc_timestamp",
]
