"""Supervision state machine for a single service."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import signal
from datetime import datetime
from enum import Enum, auto
from typing import Any, Callable

from tinysystemd.pidcontext import PidContext
from tinysystemd.pidfilecat import PidFileCat, PidState
from tinysystemd.servicepidwatcher import ServicePidWatcher
from tinysystemd.serviceconfig import AutoRestartType, ServiceConfig, ServiceType
from tinysystemd.startstopdaemoncmd import StartStopDaemonCmd

log = logging.getLogger(__name__)

_START_CHECK_DELAY = 0.1


class DaemonEvent(Enum):
    CONTROLLER_DISABLE = auto()
    PROCESS_RUNNING = auto()
    PROCESS_DEAD = auto()
    PROCESS_DEAD_BUT_DISABLE = auto()
    START_FAILED = auto()
    STARTED = auto()
    AUTO_START_DISABLE = auto()
    PROCESS_ONESHOT_DEAD = auto()
    EXIT_RESTART_TO_STOP = auto()
    EXIT_DAEMON_TO_STOP = auto()
    EXIT_DAEMON_TO_START = auto()
    USER_START = auto()
    RESTART_TIMEOUT = auto()


class Status(Enum):
    INACTIVE = 0
    IN_SETUP = 1
    IN_START = 2
    IN_RESTART = 3
    IN_DAEMON = 4
    IN_STOP = 5
    IN_TERMINAL = 6


_TRANSITIONS: dict[tuple[Status, DaemonEvent], Status] = {
    (Status.IN_SETUP, DaemonEvent.CONTROLLER_DISABLE): Status.IN_TERMINAL,
    (Status.IN_SETUP, DaemonEvent.PROCESS_RUNNING): Status.IN_DAEMON,
    (Status.IN_SETUP, DaemonEvent.PROCESS_DEAD): Status.IN_START,
    (Status.IN_SETUP, DaemonEvent.PROCESS_DEAD_BUT_DISABLE): Status.IN_STOP,
    (Status.IN_START, DaemonEvent.STARTED): Status.IN_DAEMON,
    (Status.IN_START, DaemonEvent.START_FAILED): Status.IN_RESTART,
    (Status.IN_RESTART, DaemonEvent.RESTART_TIMEOUT): Status.IN_START,
    (Status.IN_RESTART, DaemonEvent.AUTO_START_DISABLE): Status.IN_STOP,
    (Status.IN_RESTART, DaemonEvent.EXIT_RESTART_TO_STOP): Status.IN_STOP,
    (Status.IN_DAEMON, DaemonEvent.PROCESS_DEAD): Status.IN_RESTART,
    (Status.IN_DAEMON, DaemonEvent.PROCESS_ONESHOT_DEAD): Status.IN_TERMINAL,
    (Status.IN_DAEMON, DaemonEvent.EXIT_DAEMON_TO_STOP): Status.IN_STOP,
    (Status.IN_DAEMON, DaemonEvent.EXIT_DAEMON_TO_START): Status.IN_START,
    (Status.IN_STOP, DaemonEvent.USER_START): Status.IN_START,
}

_INACTIVE_TEXT = {
    Status.INACTIVE: "inactive (dead, in terminal)\n",
    Status.IN_SETUP: "inactive (dead, in setup)\n",
    Status.IN_START: "inactive (dead, in restart)\n",
    Status.IN_RESTART: "inactive (dead, wait restart)\n",
    Status.IN_DAEMON: "inactive (dead, bug!!: in daemon)\n",
    Status.IN_STOP: "inactive (dead, in stop mode)\n",
    Status.IN_TERMINAL: "inactive (dead, in terminal)\n",
}

_SETUP_RETRY = "service is in setup state, please retry later\n"
_START_RETRY = "service is in start state, please retry later\n"
_TERMINAL = "service is in terminal state, cannot control\n"


@functools.lru_cache(maxsize=None)
def _shared_watcher() -> ServicePidWatcher:
    return ServicePidWatcher()


def _mtime(path: str) -> int | None:
    try:
        return os.stat(path).st_mtime_ns
    except OSError:
        return None


class ServiceProcessDaemon:
    """Starts, watches and restarts one service according to its config."""

    def __init__(
        self,
        config: ServiceConfig,
        *,
        watcher: ServicePidWatcher | None = None,
        loop: Any = None,
        command_factory: Callable[..., Any] = StartStopDaemonCmd,
        kill: Callable[[int, int], None] = os.kill,
    ) -> None:
        self.config = config
        self.watcher = watcher if watcher is not None else _shared_watcher()
        self._loop = loop
        self._command_factory = command_factory
        self._kill = kill
        self._state = Status.INACTIVE
        self._running = False
        self._restart_timer: Any = None
        self.pid_file = PidFileCat(config.pid_lock_file_name)
        self.context = PidContext(config.context_file)
        self.context.load()
        self._exec_mtime = _mtime(config.executed_file)
        self.watcher.subscribe(self._on_watcher_dead)

    @property
    def state(self) -> Status:
        return self._state

    @property
    def loop(self) -> Any:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _log(self, level: int, message: str, *args: Any) -> None:
        log.log(level, "[%s] " + message, self.config.service_name, *args)

    # -- machine ----------------------------------------------------------

    def setup(self) -> None:
        """Start the state machine; it begins by inspecting the pid file."""
        if self._running:
            return
        self._running = True
        self.loop.call_soon(self._enter, Status.IN_SETUP)

    def exit(self) -> None:
        """Stop the service if supervised and shut the state machine down."""
        self.user_stop()
        if self._running:
            self._running = False
            self._cancel_restart_timer()
        self.watcher.unsubscribe(self._on_watcher_dead)

    def post_event(self, event: DaemonEvent) -> None:
        self.loop.call_soon(self._dispatch, event)

    def _dispatch(self, event: DaemonEvent) -> None:
        if not self._running:
            return
        target = _TRANSITIONS.get((self._state, event))
        if target is None:
            self._log(logging.DEBUG, "event %s ignored in %s", event.name, self._state.name)
            return
        if self._state is Status.IN_RESTART:
            self._cancel_restart_timer()
        self._enter(target)

    def _enter(self, target: Status) -> None:
        if not self._running:
            return
        self._state = target
        handlers = {
            Status.IN_SETUP: self._on_setup_entry,
            Status.IN_START: self._on_start_entry,
            Status.IN_RESTART: self._on_restart_entry,
            Status.IN_DAEMON: self._on_daemon_entry,
            Status.IN_STOP: self._on_stop_entry,
            Status.IN_TERMINAL: self._on_terminal_entry,
        }
        handlers[target]()

    def _cancel_restart_timer(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()
            self._restart_timer = None

    # -- state entries ----------------------------------------------------

    def _on_setup_entry(self) -> None:
        self.pid_file.sync()
        if self.pid_file.state is PidState.NO_PERMISSION_ACCESS:
            self._log(logging.ERROR, "is not controller able")
            self.post_event(DaemonEvent.CONTROLLER_DISABLE)
        elif self.pid_file.state is PidState.PROCESS_NOT_RUNNING:
            self._log(logging.INFO, "is not running")
            if self.config.enabled:
                self.post_event(DaemonEvent.PROCESS_DEAD)
            else:
                self.post_event(DaemonEvent.PROCESS_DEAD_BUT_DISABLE)
        else:
            self._log(logging.INFO, "is running")
            self.post_event(DaemonEvent.PROCESS_RUNNING)

    def _new_command(self) -> Any:
        return self._command_factory(
            pid_file=self.config.pid_lock_file_name,
            exec_file=self.config.executed_file,
            working_directory=self.config.working_directory,
            args=list(self.config.arguments),
        )

    def _on_start_entry(self) -> None:
        cmd = self._new_command()
        cmd.start_daemon()
        self._log(logging.DEBUG, "exec: %s code: %s", cmd.command, cmd.exit_code)
        self.loop.call_later(_START_CHECK_DELAY, self._check_started)

    def _check_started(self) -> None:
        self.pid_file.sync()
        if self.pid_file.state is PidState.PROCESS_RUNNING:
            self._log(logging.DEBUG, "start success")
            self.context.increment_restart_count()
            self.context.last_start_time = datetime.now()
            self.context.sync()
            self.post_event(DaemonEvent.STARTED)
        else:
            self.post_event(DaemonEvent.START_FAILED)

    def _on_restart_entry(self) -> None:
        if self.config.auto_restart_type is not AutoRestartType.DISABLE:
            self._log(logging.INFO, "try to restart after %s seconds", self.config.restart_sec)
            self._cancel_restart_timer()
            self._restart_timer = self.loop.call_later(
                self.config.restart_sec, self._dispatch, DaemonEvent.RESTART_TIMEOUT
            )
        else:
            self._log(logging.INFO, "dead, but restart is disable, to stop state")
            self.post_event(DaemonEvent.AUTO_START_DISABLE)

    def _on_daemon_entry(self) -> None:
        self.watcher.add_pid(self.pid_file.pid)

    def _on_stop_entry(self) -> None:
        self._log(logging.INFO, "stop mode")

    def _on_terminal_entry(self) -> None:
        self._log(logging.INFO, "terminal mode")

    # -- process control --------------------------------------------------

    def _kill_process(self) -> None:
        self._new_command().stop_daemon()
        pid = self.pid_file.pid
        if pid > 0:
            try:
                self._kill(pid, signal.SIGKILL)
            except OSError:
                pass

    def _tear_down_daemon(self) -> None:
        self.watcher.remove_pid(self.pid_file.pid)
        self._kill_process()
        self.pid_file.remove_pid_file()

    def _on_watcher_dead(self, pid: int) -> None:
        self.loop.call_soon(self.on_pid_dead, pid)

    def on_pid_dead(self, pid: int) -> None:
        """React to a watched process vanishing, unless ours is still running."""
        self.pid_file.sync()
        if self.pid_file.state is PidState.PROCESS_RUNNING:
            return
        self._log(logging.WARNING, "daemon %s is dead", pid)
        if self.config.type is ServiceType.ONESHOT:
            self._log(logging.INFO, "one shot finished")
            self.post_event(DaemonEvent.PROCESS_ONESHOT_DEAD)
            return
        self.post_event(DaemonEvent.PROCESS_DEAD)

    def reload(self, config: ServiceConfig) -> None:
        """Apply a new config, restarting the process if it changed."""
        if self.config.is_same(config):
            new_mtime = _mtime(config.executed_file)
            if new_mtime == self._exec_mtime:
                return
            self._log(logging.INFO, "reload by exec file modified")
            self._exec_mtime = new_mtime
        else:
            self._log(logging.INFO, "reload by config modified")
        if self._state is Status.IN_DAEMON:
            self._tear_down_daemon()
            self.post_event(DaemonEvent.EXIT_DAEMON_TO_START)
        elif self._state is Status.IN_STOP:
            if not self.config.enabled and config.enabled:
                self.post_event(DaemonEvent.USER_START)
        self.config = config

    # -- user commands ----------------------------------------------------

    def user_stop(self) -> str:
        state = self._state
        if state in (Status.INACTIVE, Status.IN_SETUP):
            return _SETUP_RETRY
        if state is Status.IN_START:
            return _START_RETRY
        if state is Status.IN_RESTART:
            self._log(logging.INFO, "user stop")
            self._cancel_restart_timer()
            self.post_event(DaemonEvent.EXIT_RESTART_TO_STOP)
            return "service stop successfully\n"
        if state is Status.IN_DAEMON:
            self._log(logging.INFO, "user stop")
            self._tear_down_daemon()
            self.post_event(DaemonEvent.EXIT_DAEMON_TO_STOP)
            return "service stop successfully\n"
        if state is Status.IN_STOP:
            return "service is already in stop state\n"
        return _TERMINAL

    def user_start(self) -> str:
        state = self._state
        if state in (Status.INACTIVE, Status.IN_SETUP):
            return _SETUP_RETRY
        if state is Status.IN_START:
            return _START_RETRY
        if state is Status.IN_RESTART:
            return "service is in restart state, please stop first\n"
        if state is Status.IN_DAEMON:
            return "service is already in daemon state\n"
        if state is Status.IN_STOP:
            self._log(logging.INFO, "user start")
            self.post_event(DaemonEvent.USER_START)
            return "service start successfully\n"
        return _TERMINAL

    def user_restart(self) -> str:
        state = self._state
        if state in (Status.INACTIVE, Status.IN_SETUP):
            return _SETUP_RETRY
        if state is Status.IN_START:
            return _START_RETRY
        if state is Status.IN_RESTART:
            return "service is already in restart state\n"
        if state is Status.IN_DAEMON:
            self._log(logging.INFO, "user restart")
            self._tear_down_daemon()
            self.post_event(DaemonEvent.EXIT_DAEMON_TO_START)
            return "service restart successfully\n"
        if state is Status.IN_STOP:
            self._log(logging.INFO, "user restart")
            self.post_event(DaemonEvent.USER_START)
            return "service restart successfully\n"
        return _TERMINAL

    def status(self) -> str:
        """Human-readable status report of the service."""
        self.pid_file.sync()
        conf = self.config
        lines = [
            f">> {conf.service_name} - {conf.description}\n",
            f"  Loaded: loaded ({conf.service_file}; "
            f"{'enabled' if conf.enabled else 'disabled'}; vendor preset: enabled)\n",
            "  Active: ",
        ]
        if self.pid_file.state is PidState.PROCESS_RUNNING:
            started = self.context.last_start_time
            since = started.strftime("%Y-%m-%d %H:%M:%S") if started else ""
            lines.append(f"active (running) since {since}\n")
            lines.append(
                f"  Main PID: {self.pid_file.pid} "
                f"({conf.executed_file} {' '.join(conf.arguments)})\n"
            )
        else:
            lines.append(_INACTIVE_TEXT[self._state])
        return "".join(lines)