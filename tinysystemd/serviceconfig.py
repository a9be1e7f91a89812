"""Service unit files, shared directory settings and pid helpers."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

log = logging.getLogger(__name__)

LOCAL_SERVER_NAME = "tiny_daemon.socket"

_INT_PATTERN = re.compile(r"[+-]?\d+")
_INT_MIN, _INT_MAX = -(2**31), 2**31 - 1


class ServiceConfigError(Exception):
    """A service file is missing or not valid."""


class AutoRestartType(Enum):
    DISABLE = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    ON_ABORT = "on-abort"


class ServiceType(Enum):
    SIMPLE = "simple"
    FORKING = "forking"
    NOTIFY = "notify"
    ONESHOT = "oneshot"


@dataclass
class _Locations:
    service_directory: str = "/etc/tiny_daemon/services"
    pid_directory: str = "/var/run/tiny_daemon"


_locations = _Locations()


def set_service_directory(path: str) -> None:
    _locations.service_directory = os.fspath(path)


def set_pid_directory(path: str) -> None:
    _locations.pid_directory = os.fspath(path)


def service_directory() -> str:
    return _locations.service_directory


def pid_directory() -> str:
    return _locations.pid_directory


def local_server_path() -> str:
    """Filesystem path of the control socket."""
    return os.path.join(tempfile.gettempdir(), LOCAL_SERVER_NAME)


def _parse_int(text: str) -> int | None:
    text = text.strip()
    if not _INT_PATTERN.fullmatch(text):
        return None
    value = int(text)
    return value if _INT_MIN <= value <= _INT_MAX else None


def _to_int(text: str) -> int:
    value = _parse_int(text)
    return 0 if value is None else value


def parse_arg_input_line(text: str) -> list[str]:
    """Split a command line on spaces, honouring double quotes and backslashes.

    An unterminated quote yields an empty list.
    """
    args: list[str] = []
    buf: list[str] = []
    in_quote = False
    chars = iter(text)
    for ch in chars:
        if ch == '"':
            in_quote = not in_quote
            continue
        if ch == " " and not in_quote:
            if buf:
                args.append("".join(buf))
                buf.clear()
            continue
        if ch == "\\":
            escaped = next(chars, None)
            if escaped is None:
                break
            ch = escaped
        buf.append(ch)
    if in_quote:
        return []
    if buf:
        args.append("".join(buf))
    return args


def read_pid_from_file(pid_file_name: str) -> int | None:
    """Return the positive pid stored in a file, or None."""
    try:
        text = Path(pid_file_name).read_bytes().decode("utf-8", errors="replace").strip()
    except OSError:
        return None
    pid = _parse_int(text)
    if pid is None:
        return None
    if pid <= 0:
        log.warning("pid file content is not valid: %s", text)
        return None
    return pid


def is_process_alive(pid: int) -> bool:
    return os.path.isdir(f"/proc/{pid}")


class _IniFormatError(Exception):
    pass


_ESCAPES = {"a": "\a", "b": "\b", "f": "\f", "n": "\n", "r": "\r", "t": "\t", "v": "\v"}


def _ini_value(raw: str) -> str:
    pieces: list[str] = []
    buf: list[str] = []
    in_quote = False
    chars = iter(raw.strip())
    for ch in chars:
        if ch == '"':
            in_quote = not in_quote
            continue
        if ch == "\\":
            escaped = next(chars, None)
            if escaped is None:
                break
            buf.append(_ESCAPES.get(escaped, escaped))
            continue
        if not in_quote:
            if ch == ";":
                break
            if ch == ",":
                pieces.append("".join(buf).strip())
                buf = []
                continue
        buf.append(ch)
    pieces.append("".join(buf).strip())
    # A comma-separated list does not read as a single string.
    return pieces[0] if len(pieces) == 1 else ""


def _read_ini(path: str) -> dict[str, str]:
    text = Path(path).read_bytes().decode("utf-8", errors="replace")
    values: dict[str, str] = {}
    section = ""
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped[0] in ";#":
            continue
        if stripped.startswith("["):
            if not stripped.endswith("]"):
                raise _IniFormatError(line)
            section = stripped[1:-1].strip()
            if section == "General":
                section = ""
            continue
        key, sep, raw = stripped.partition("=")
        key = key.strip()
        if not sep or not key:
            raise _IniFormatError(line)
        values[f"{section}/{key}" if section else key] = _ini_value(raw)
    return values


@dataclass
class ServiceConfig:
    """Settings of one service, read from a ``.service`` file."""

    service_name: str = ""
    service_file: str = ""
    description: str = ""
    type: ServiceType = ServiceType.SIMPLE
    executed_file: str = ""
    arguments: list[str] = field(default_factory=list)
    working_directory: str = ""
    auto_restart_type: AutoRestartType = AutoRestartType.DISABLE
    restart_sec: int = 0
    enabled: bool = False
    priority: int = 0
    pid_lock_file_name: str = ""
    context_file: str = ""

    @classmethod
    def from_file(cls, file_name: str) -> ServiceConfig:
        """Parse a service file; raise ServiceConfigError when it is not valid."""
        file_name = os.fspath(file_name)
        try:
            values = _read_ini(file_name)
        except (OSError, _IniFormatError) as exc:
            raise ServiceConfigError(f"File {file_name} is not valid") from exc

        type_text = values.get("Service/Type", "")
        if not type_text:
            raise ServiceConfigError("Service Type is not valid")
        try:
            service_type = ServiceType(type_text)
        except ValueError:
            service_type = ServiceType.SIMPLE

        args = parse_arg_input_line(values.get("Service/ExecStart", ""))
        if not args:
            raise ServiceConfigError("Service ExecStart is not valid")
        executable, *arguments = args
        working_directory = values.get("Service/WorkingDirectory", "/")
        if not (os.path.exists(executable) and os.access(executable, os.X_OK)):
            raise ServiceConfigError(
                f"Service Bin {executable} is not exist or not executable"
            )

        restart_sec = _to_int(values.get("Service/RestartSec", "5"))
        try:
            restart_type = AutoRestartType(values.get("Service/Restart", ""))
        except ValueError:
            restart_type = AutoRestartType.DISABLE
        if restart_type is not AutoRestartType.DISABLE and restart_sec <= 0:
            raise ServiceConfigError(f"RestartSec {restart_sec} is not valid")

        name = os.path.basename(file_name)
        pid_dir = os.path.abspath(pid_directory())
        return cls(
            service_name=name,
            service_file=file_name,
            description=values.get("Unit/Description", ""),
            type=service_type,
            executed_file=executable,
            arguments=arguments,
            working_directory=working_directory,
            auto_restart_type=restart_type,
            restart_sec=restart_sec,
            enabled=values.get("Service/Enabled", "true") == "true",
            priority=_to_int(values.get("Service/Priority", "0")),
            pid_lock_file_name=os.path.join(pid_dir, name + ".pid"),
            context_file=os.path.join(pid_dir, name + ".context"),
        )

    def _identity(self) -> tuple:
        return (
            self.description,
            self.type,
            self.executed_file,
            self.working_directory,
            self.restart_sec,
            self.auto_restart_type,
            self.enabled,
            self.service_file,
            self.service_name,
            self.priority,
        )

    def is_same(self, other: ServiceConfig) -> bool:
        """True when the settings that matter for supervision are unchanged."""
        return self._identity() == other._identity()


def load_service_config(file_name: str) -> ServiceConfig:
    """Load a service file, raising ServiceConfigError if it is missing or bad."""
    if not os.path.exists(file_name):
        raise ServiceConfigError(f"File {file_name} does not exist")
    return ServiceConfig.from_file(file_name)