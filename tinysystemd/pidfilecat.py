"""Inspection of a pid lock file and the process it names."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

_INT_PATTERN = re.compile(r"[+-]?\d+")
_INT_MIN, _INT_MAX = -(2**31), 2**31 - 1


class PidState(Enum):
    NO_PERMISSION_ACCESS = "no-permission-access"
    PROCESS_RUNNING = "process-running"
    PROCESS_NOT_RUNNING = "process-not-running"


def _parse_pid(data: bytes) -> int:
    text = data.decode("utf-8", errors="replace").strip()
    if not _INT_PATTERN.fullmatch(text):
        return 0
    value = int(text)
    return value if _INT_MIN <= value <= _INT_MAX else 0


@dataclass
class PidFileCat:
    """Reads a pid file and tells whether the process it names is alive."""

    pid_lock_file_name: str = ""
    state: PidState = PidState.NO_PERMISSION_ACCESS
    pid: int = 0

    def sync(self) -> None:
        """Refresh ``state`` and ``pid``; a stale pid file is removed."""
        path = Path(self.pid_lock_file_name)
        if not self.pid_lock_file_name or not path.exists():
            self.state = PidState.PROCESS_NOT_RUNNING
            return
        try:
            data = path.read_bytes()
        except OSError:
            self.state = PidState.NO_PERMISSION_ACCESS
            return
        self.pid = _parse_pid(data)
        if self.is_pid_proc_alive(self.pid):
            self.state = PidState.PROCESS_RUNNING
        else:
            self.state = PidState.PROCESS_NOT_RUNNING
            self.remove_pid_file()

    @staticmethod
    def is_pid_proc_alive(pid: int) -> bool:
        return os.path.isdir(f"/proc/{pid}")

    def remove_pid_file(self) -> None:
        if not self.pid_lock_file_name:
            return
        try:
            os.remove(self.pid_lock_file_name)
        except OSError:
            pass