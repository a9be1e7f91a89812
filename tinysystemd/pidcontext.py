"""Persistent per-service start bookkeeping stored as a small JSON file."""

from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any


def _parse_time(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _format_time(value: datetime | None) -> str:
    if value is None:
        return ""
    return value.isoformat(timespec="milliseconds")


def _json_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return 0


@dataclass
class PidContext:
    """Restart count and last start time of a service, kept in ``context_file``."""

    context_file: str | os.PathLike = ""
    restart_count: int = 0
    last_start_time: datetime | None = None

    def load(self) -> None:
        """Read the context file; anything unreadable leaves a cleared context."""
        self.clear()
        try:
            data = Path(self.context_file).read_bytes()
        except OSError:
            return
        try:
            document = json.loads(data)
        except (ValueError, UnicodeDecodeError):
            return
        if not isinstance(document, dict):
            return
        self.last_start_time = _parse_time(document.get("lastStartTime"))
        self.restart_count = max(_json_int(document.get("restartCount")), 0)

    def clear(self) -> None:
        self.last_start_time = None
        self.restart_count = 0

    def increment_restart_count(self) -> None:
        self.restart_count += 1

    def sync(self) -> None:
        """Write the context as compact JSON; a file that cannot be written is skipped."""
        document = {
            "lastStartTime": _format_time(self.last_start_time),
            "restartCount": self.restart_count,
        }
        try:
            Path(self.context_file).write_text(
                json.dumps(document, separators=(",", ":")), encoding="utf-8"
            )
        except OSError:
            return