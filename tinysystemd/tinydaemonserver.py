"""The supervisor server: loads services, supervises them and answers control requests."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
from pathlib import Path
from typing import Any, Callable

from tinysystemd.serviceconfig import (
    ServiceConfig,
    ServiceConfigError,
    is_process_alive,
    load_service_config,
    local_server_path,
    parse_arg_input_line,
    pid_directory,
    read_pid_from_file,
    service_directory,
    set_pid_directory,
    set_service_directory,
)
from tinysystemd.servicepidwatcher import ServicePidWatcher
from tinysystemd.serviceprocessdaemon import ServiceProcessDaemon
from tinysystemd.startstopdaemoncmd import check_program, program_name, set_program_name

log = logging.getLogger(__name__)

HELP_TEXT = (
    "Usage: tinysystemctl [command] service\n"
    "Commands:\n"
    "  start       Start a service\n"
    "  stop        Stop a service\n"
    "  restart     Restart a service\n"
    "  status      Show the status of a service\n"
)
VALID_COMMANDS = ("start", "stop", "restart", "status", "list", "reload")
SERVER_PID_FILE_NAME = "tiny-daemon-server.pid"
DEFAULT_DBUS_ADDRESS = "unix:path=/tmp/default-session-bus"
DEFAULT_WATCHDOG_PATH = "/dev/watchdog"

_FEED_DOG_INTERVAL = 30.0
_DBUS_MATCH_RULE = "type='signal',path='/event',interface='com.hdapp.system.event'"
_SHUTDOWN_MEMBERS = ("EventPowerDown", "EventRebootLater")
_READ_SIZE = 65536


def load_service_configs() -> dict[str, ServiceConfig]:
    """Load every valid ``.service`` file of the service directory, keyed by name."""
    configs: dict[str, ServiceConfig] = {}
    directory = os.path.abspath(service_directory())
    if not os.path.isdir(directory):
        return configs
    entries = sorted(os.scandir(directory), key=lambda entry: entry.name)
    for entry in entries:
        if not entry.is_file():
            continue
        log.debug("Loading service config: %s", entry.name)
        if not entry.name.endswith(".service"):
            continue
        try:
            config = load_service_config(os.path.join(directory, entry.name))
        except ServiceConfigError as exc:
            log.debug("Failed to load service config: %s err: %s", entry.name, exc)
            continue
        configs[config.service_name] = config
        log.debug(
            "Loading service config: %s success, server name: %s",
            entry.name,
            config.service_name,
        )
    return configs


class TinyDaemonServer:
    """Owns one supervisor per service and serves the control socket."""

    def __init__(
        self,
        *,
        socket_path: str | None = None,
        daemon_factory: Callable[..., Any] = ServiceProcessDaemon,
        watcher: ServicePidWatcher | None = None,
        watchdog_path: str | None = DEFAULT_WATCHDOG_PATH,
        dbus_address: str | None = DEFAULT_DBUS_ADDRESS,
        feed_interval: float = _FEED_DOG_INTERVAL,
    ) -> None:
        self.socket_path = socket_path or local_server_path()
        self.watcher = watcher if watcher is not None else ServicePidWatcher()
        self.watchdog_path = watchdog_path
        self.dbus_address = dbus_address
        self.feed_interval = feed_interval
        self.processes: dict[str, Any] = {}
        self.exit_code = 0
        self._daemon_factory = daemon_factory
        self._shutdown: asyncio.Event | None = None

    def prepare(self) -> None:
        """Check directories and the helper program and claim the server pid file.

        Raises RuntimeError when the server cannot run.
        """
        services = service_directory()
        pids = pid_directory()
        if not os.path.isdir(services):
            raise RuntimeError(f"{services} not exist, please create it")
        if not os.path.isdir(pids):
            log.debug("%s not exist, now create it", pids)
            try:
                os.makedirs(pids, exist_ok=True)
            except OSError as exc:
                raise RuntimeError(
                    f"{pids} create failed, please try run server as root"
                ) from exc
        if not check_program():
            raise RuntimeError(f"{program_name()} not found, please install it")

        pid_path = os.path.join(pids, SERVER_PID_FILE_NAME)
        if os.path.exists(pid_path):
            pid = read_pid_from_file(pid_path)
            if pid is not None and is_process_alive(pid):
                raise RuntimeError(f"tiny-daemon-server is already running, pid: {pid}")
        try:
            Path(pid_path).write_text(str(os.getpid()), encoding="utf-8")
        except OSError as exc:
            raise RuntimeError(
                f"can't read write file on {pids} please try run server as root"
            ) from exc

    def reload(self) -> None:
        """Synchronise supervisors with the service files on disk."""
        new_configs = load_service_configs()
        added: list[Any] = []
        for name, config in new_configs.items():
            existing = self.processes.get(name)
            if existing is not None:
                existing.reload(config)
                continue
            log.debug("New service config: %s", name)
            proc = self._daemon_factory(config, watcher=self.watcher)
            self.processes[name] = proc
            added.append(proc)
        for name in [name for name in self.processes if name not in new_configs]:
            log.debug("Remove service : %s", name)
            self.processes.pop(name).exit()
        for proc in sorted(added, key=lambda proc: proc.config.priority):
            proc.setup()

    def execute_client_command(self, args: list[str]) -> str:
        """Run one control command; ``args[0]`` is the client's program name."""
        if len(args) < 2:
            return HELP_TEXT
        command = args[1]
        if command not in VALID_COMMANDS:
            return f"Invalid command: {command}\n{HELP_TEXT}"
        if command == "list":
            return "".join(proc.status() for proc in self.processes.values())
        if command == "reload":
            self.reload()
            return "Service reloaded successfully\n"
        if len(args) < 3:
            return f"Service name is required\n{HELP_TEXT}"
        service_name = args[2]
        if not service_name.endswith(".service"):
            service_name += ".service"
        proc = self.processes.get(service_name)
        if proc is None:
            return f"Service not found: {service_name}\n"
        actions = {
            "start": proc.user_start,
            "stop": proc.user_stop,
            "restart": proc.user_restart,
            "status": proc.status,
        }
        return actions[command]()

    async def handle_client(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        """Read one request from a control connection, answer it and close."""
        try:
            data = await reader.read(_READ_SIZE)
            if not data:
                log.debug("No data received")
                return
            args = parse_arg_input_line(data.decode("utf-8", errors="replace"))
            writer.write(self.execute_client_command(args).encode("utf-8"))
            await writer.drain()
        finally:
            writer.close()
            with contextlib.suppress(OSError):
                await writer.wait_closed()

    async def serve(self) -> int:
        """Listen on the control socket and supervise services until shut down."""
        self._shutdown = asyncio.Event()
        with contextlib.suppress(FileNotFoundError):
            os.unlink(self.socket_path)
        server = await asyncio.start_unix_server(self.handle_client, path=self.socket_path)
        os.chmod(self.socket_path, 0o777)
        log.debug("Server started, listening on: %s", self.socket_path)
        tasks = [
            asyncio.create_task(self.watcher.run()),
            asyncio.create_task(self._feed_loop()),
        ]
        if self.dbus_address:
            tasks.append(asyncio.create_task(self._watch_dbus()))
        try:
            self.reload()
            await self._shutdown.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            server.close()
            await server.wait_closed()
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.socket_path)
        return self.exit_code

    def feed_watchdog(self) -> None:
        """Kick the hardware watchdog; failures are ignored."""
        if not self.watchdog_path:
            return
        try:
            with open(self.watchdog_path, "w", encoding="ascii") as watchdog:
                watchdog.write("V\n")
        except OSError as exc:
            log.debug("cannot feed watchdog %s: %s", self.watchdog_path, exc)

    async def _feed_loop(self) -> None:
        while True:
            await asyncio.sleep(self.feed_interval)
            self.feed_watchdog()

    async def _watch_dbus(self) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(
                "dbus-monitor",
                "--address",
                self.dbus_address,
                _DBUS_MATCH_RULE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            log.warning("Failed to connect to D-Bus session bus %s", exc)
            return
        log.info("Connected to EventPowerDown and EventRebootLater signals")
        try:
            assert proc.stdout is not None
            async for line in proc.stdout:
                text = line.decode("utf-8", errors="replace")
                if any(f"member={member}" in text for member in _SHUTDOWN_MEMBERS):
                    self._on_system_power_down_or_reboot()
                    break
        finally:
            if proc.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()

    def _on_system_power_down_or_reboot(self) -> None:
        log.debug("System power down or reboot signal received, exit now")
        self.exit_code = 0
        if self._shutdown is not None:
            self._shutdown.set()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="tinysystemd")
    parser.add_argument("--services_dir", default=service_directory(), help="set services directory")
    parser.add_argument("--pid_dir", default=pid_directory(), help="set pid directory")
    parser.add_argument(
        "--daemon_tool", default=program_name(), help="set start-stop-daemon program"
    )
    options, _ = parser.parse_known_args(argv)
    logging.basicConfig(level=logging.DEBUG)
    log.debug(
        " -- use services_dir   : %s\n -- pid_dir            : %s\n -- daemon program     : %s",
        options.services_dir,
        options.pid_dir,
        options.daemon_tool,
    )
    set_service_directory(options.services_dir)
    set_pid_directory(options.pid_dir)
    set_program_name(options.daemon_tool)

    server = TinyDaemonServer()
    try:
        server.prepare()
    except RuntimeError as exc:
        log.warning("%s", exc)
        return 1
    try:
        return asyncio.run(server.serve())
    except KeyboardInterrupt:
        return 0