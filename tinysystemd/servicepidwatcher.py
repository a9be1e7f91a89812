"""Polling watcher that reports when supervised processes disappear."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable

log = logging.getLogger(__name__)

DeadCallback = Callable[[int], None]


class ServicePidWatcher:
    """Tracks pids through their ``/proc`` directories and reports dead ones."""

    def __init__(self, proc_root: str | os.PathLike = "/proc") -> None:
        self._proc_root = os.fspath(proc_root)
        self._watched: dict[str, int] = {}
        self._callbacks: list[DeadCallback] = []

    def _pid_dir(self, pid: int) -> str:
        return os.path.join(self._proc_root, str(pid))

    @property
    def watched_pids(self) -> set[int]:
        return set(self._watched.values())

    def add_pid(self, pid: int) -> None:
        if pid <= 0:
            return
        self._watched.setdefault(self._pid_dir(pid), pid)

    def remove_pid(self, pid: int) -> None:
        if pid <= 0:
            return
        self._watched.pop(self._pid_dir(pid), None)

    def subscribe(self, callback: DeadCallback) -> None:
        """Register ``callback`` to be called with each pid found dead."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unsubscribe(self, callback: DeadCallback) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def check_process(self) -> list[int]:
        """Drop every watched pid whose directory is gone and notify subscribers."""
        dead = {path: pid for path, pid in self._watched.items() if not os.path.isdir(path)}
        for path in dead:
            del self._watched[path]
        for pid in dead.values():
            for callback in list(self._callbacks):
                callback(pid)
        return list(dead.values())

    async def run(self, interval: float = 1.0) -> None:
        """Check the watched pids every ``interval`` seconds until cancelled."""
        while True:
            self.check_process()
            await asyncio.sleep(interval)