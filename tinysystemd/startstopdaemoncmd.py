"""Invocation of the start-stop-daemon helper program."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass, field
from enum import IntEnum

log = logging.getLogger(__name__)


class StatusCode(IntEnum):
    DONE = 0
    NOTHING_DONE = 1
    TROUBLE = 2
    WITH_RETRY = 3


@dataclass
class _Settings:
    program_name: str = "tinystartstopdaemon"


_settings = _Settings()


def set_program_name(name: str) -> None:
    _settings.program_name = name


def program_name() -> str:
    return _settings.program_name


def check_program() -> bool:
    """Run the helper with ``--version`` and report whether it works."""
    try:
        completed = subprocess.run(
            [program_name(), "--version"], capture_output=True, check=False
        )
    except OSError:
        log.warning("start-stop-daemon not found, please install it")
        return False
    if completed.returncode != 0:
        log.warning("start-stop-daemon not found, please install it")
        return False
    return True


@dataclass
class StartStopDaemonCmd:
    """Starts or stops one daemonised executable through the helper program."""

    pid_file: str
    exec_file: str
    working_directory: str = ""
    args: list[str] = field(default_factory=list)
    program: str = field(default_factory=program_name)
    command: str = field(default="", init=False)
    exit_code: int | None = field(default=None, init=False)

    def start_arguments(self) -> list[str]:
        arguments = [
            "--start",
            "--make-pidfile",
            "--pidfile",
            self.pid_file,
            "--background",
            "--exec",
            self.exec_file,
        ]
        if self.working_directory:
            arguments += ["--chdir", self.working_directory]
        if self.args:
            arguments += ["--", *self.args]
        return arguments

    def stop_arguments(self) -> list[str]:
        return ["--stop", "--pidfile", self.pid_file]

    def _execute(self, arguments: list[str]) -> int:
        self.command = " ".join([self.program, *arguments])
        try:
            completed = subprocess.run([self.program, *arguments], check=False)
        except OSError as exc:
            log.warning("cannot run %s: %s", self.program, exc)
            self.exit_code = StatusCode.TROUBLE
            return self.exit_code
        self.exit_code = completed.returncode
        return completed.returncode

    def start_daemon(self) -> bool:
        return self._execute(self.start_arguments()) in (StatusCode.DONE, StatusCode.NOTHING_DONE)

    def stop_daemon(self) -> bool:
        return self._execute(self.stop_arguments()) in (StatusCode.DONE, StatusCode.NOTHING_DONE)