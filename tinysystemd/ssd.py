"""Start or stop a daemon process, finding running instances through /proc."""

from __future__ import annotations

import errno
import grp
import os
import pwd
import re
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TextIO

from tinysystemd.ssd_options import (
    Options,
    ScheduleType,
    UsageError,
    help_text,
    parse_options,
    version_text,
)

MIN_POLL_INTERVAL = 0.02
_MAX_RATIO = 10
_WHAT_STOP_LIMIT = 1023
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class FatalError(Exception):
    """An unrecoverable error; the program exits with status 2."""

    exit_status = 2


def _scan_int(text: str) -> int | None:
    match = _LEADING_INT.match(text)
    return int(match.group(1)) if match else None


def _progname() -> str:
    return os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "start-stop-daemon"


@dataclass
class ProcessMatcher:
    """Decides which pids belong to the daemon and finds them."""

    execname: str | None = None
    user_id: int | None = None
    cmdname: str | None = None
    proc_root: str = "/proc"
    send_signal: Callable[[int, int], None] = field(default=os.kill)

    def __post_init__(self) -> None:
        self._exec_stat: os.stat_result | None = None
        if self.execname is not None:
            try:
                self._exec_stat = os.stat(self.execname)
            except OSError as exc:
                raise FatalError(f"stat {self.execname}: {exc.strerror}") from exc

    def _proc_path(self, pid: int, *parts: str) -> str:
        return os.path.join(self.proc_root, str(pid), *parts)

    def pid_is_exec(self, pid: int) -> bool:
        if self._exec_stat is None:
            return False
        try:
            found = os.stat(self._proc_path(pid, "exe"))
        except OSError:
            return False
        return (found.st_dev, found.st_ino) == (self._exec_stat.st_dev, self._exec_stat.st_ino)

    def pid_is_user(self, pid: int) -> bool:
        try:
            return os.stat(self._proc_path(pid)).st_uid == self.user_id
        except OSError:
            return False

    def pid_is_cmd(self, pid: int) -> bool:
        try:
            with open(self._proc_path(pid, "stat"), "rb") as stat_file:
                data = stat_file.read().decode("latin-1")
        except OSError:
            return False
        start = data.find("(")
        if start < 0 or self.cmdname is None:
            return False
        # Comparing up to the closing parenthesis copes with names holding ')'.
        return data[start + 1 :].startswith(self.cmdname + ")")

    def matches(self, pid: int) -> bool:
        if self.execname is not None and not self.pid_is_exec(pid):
            return False
        if self.user_id is not None and not self.pid_is_user(pid):
            return False
        if self.cmdname is not None and not self.pid_is_cmd(pid):
            return False
        return True

    def find(self, pidfile: str | None) -> list[int]:
        """Matching pids, from the pid file if one is given, else from all of /proc."""
        found: list[int] = []
        if pidfile is not None:
            try:
                with open(pidfile, encoding="utf-8", errors="replace") as handle:
                    pid = _scan_int(handle.read())
            except OSError as exc:
                if exc.errno == errno.ENOENT:
                    return found
                raise FatalError(f"open pidfile {pidfile}: {exc.strerror}") from exc
            if pid is not None and self.matches(pid):
                found.insert(0, pid)
            return found
        try:
            entries = os.listdir(self.proc_root)
        except OSError as exc:
            raise FatalError(f"opendir {self.proc_root}: {exc.strerror}") from exc
        any_found = False
        for name in entries:
            pid = _scan_int(name)
            if pid is None:
                continue
            any_found = True
            if self.matches(pid):
                found.insert(0, pid)
        if not any_found:
            raise FatalError(f"nothing in {self.proc_root} - not mounted?")
        return found


def describe_target(options: Options) -> str:
    """The phrase naming what is being stopped, for messages."""
    if options.cmdname is not None:
        return options.cmdname[:_WHAT_STOP_LIMIT]
    if options.execname is not None:
        return options.execname[:_WHAT_STOP_LIMIT]
    if options.pidfile is not None:
        return f"process in pidfile `{options.pidfile[:200]}'"
    if options.userspec is not None:
        return f"process(es) owned by `{options.userspec[:200]}'"
    raise FatalError("internal error, please report")


def do_stop(
    options: Options,
    matcher: ProcessMatcher,
    signal_nr: int,
    quiet: int,
    retry_nr: int,
    out: TextIO,
) -> tuple[int, int]:
    """Signal every matching process; return (signalled, failed) counts."""
    found = matcher.find(options.pidfile)
    if not found:
        return 0, 0
    killed: list[int] = []
    not_killed = 0
    for pid in found:
        if options.test_mode:
            out.write(f"Would send signal {signal_nr} to {pid}.\n")
            continue
        try:
            matcher.send_signal(pid, signal_nr)
        except OSError as exc:
            out.write(f"{_progname()}: warning: failed to kill {pid}: {exc.strerror}\n")
            not_killed += 1
        else:
            killed.insert(0, pid)
    if quiet < 0 and killed:
        pids = "".join(f" {pid}" for pid in killed)
        retry = f", retry #{retry_nr}" if retry_nr > 0 else ""
        out.write(f"Stopped {describe_target(options)} (pid{pids}){retry}.\n")
    return len(killed), not_killed


def _wait_for_exit(
    options: Options, matcher: ProcessMatcher, timeout: int, out: TextIO
) -> tuple[bool, int]:
    """Poll until the processes are gone or ``timeout`` seconds pass.

    Returns whether they are gone and how many still answered the last poll.
    """
    deadline = time.monotonic() + timeout
    ratio = 1
    n_killed = 0
    while True:
        before = time.monotonic()
        if before > deadline:
            return False, n_killed
        n_killed, _ = do_stop(options, matcher, 0, 1, 0, out)
        if not n_killed:
            return True, 0
        after = time.monotonic()
        if after >= deadline:
            return False, n_killed
        if ratio < _MAX_RATIO:
            ratio += 1
        interval = min(ratio * (after - before), deadline - after)
        time.sleep(max(interval, MIN_POLL_INTERVAL))


def run_stop_schedule(options: Options, matcher: ProcessMatcher, out: TextIO) -> int:
    """Stop the daemon following the retry schedule; return the exit status."""
    schedule = options.schedule
    if options.test_mode and schedule is not None:
        out.write("Ignoring --retry in test mode\n")
        schedule = None
    what_stop = describe_target(options)
    any_killed = False
    finished = False
    n_killed = 0

    if schedule is None:
        n_killed, n_not_killed = do_stop(options, matcher, options.signal_nr, options.quiet, 0, out)
        if n_not_killed > 0 and options.quiet <= 0:
            out.write(f"{n_not_killed} pids were not killed\n")
        any_killed = n_killed > 0
        finished = True
    else:
        retry_nr = 0
        position = 0
        while position < len(schedule):
            item = schedule[position]
            if item.type is ScheduleType.GOTO:
                position = item.value
                continue
            if item.type is ScheduleType.SIGNAL:
                n_killed, _ = do_stop(options, matcher, item.value, options.quiet, retry_nr, out)
                retry_nr += 1
                if not n_killed:
                    finished = True
                    break
                any_killed = True
            elif item.type is ScheduleType.TIMEOUT:
                gone, n_killed = _wait_for_exit(options, matcher, item.value, out)
                if gone:
                    finished = True
                    break
            else:
                raise FatalError("schedule item type must be valid")
            position += 1

    if not finished:
        if options.quiet <= 0:
            out.write(f"Program {what_stop}, {n_killed} process(es), refused to die.\n")
        return 2
    if not any_killed:
        if options.quiet <= 0:
            out.write(f"No {what_stop} found running; none killed.\n")
        return options.exitnodo
    return 0


def _resolve_user(userspec: str) -> int:
    uid = _scan_int(userspec)
    if uid is not None:
        return uid
    try:
        return pwd.getpwnam(userspec).pw_uid
    except KeyError:
        raise FatalError(f"user `{userspec}' not found") from None


def _resolve_runas(options: Options) -> tuple[int, int, str | None]:
    """Resolve ``--chuid`` into (uid, gid, group name); -1 where unset."""
    runas_uid = runas_gid = -1
    changegroup = options.changegroup
    if changegroup is not None:
        gid = _scan_int(changegroup)
        if gid is None:
            try:
                gid = grp.getgrnam(changegroup).gr_gid
            except KeyError:
                raise FatalError(f"group `{changegroup}' not found") from None
        runas_gid = gid
    if options.changeuser is not None:
        uid = _scan_int(options.changeuser)
        if uid is None:
            try:
                entry = pwd.getpwnam(options.changeuser)
            except KeyError:
                raise FatalError(f"user `{options.changeuser}' not found") from None
            uid = entry.pw_uid
            if changegroup is None:
                changegroup = ""
                runas_gid = entry.pw_gid
        runas_uid = uid
    return runas_uid, runas_gid, changegroup


def _describe_start(
    options: Options, runas_uid: int, runas_gid: int, changegroup: str | None
) -> str:
    parts = [f"Would start {options.startas} "]
    parts.extend(f"{arg} " for arg in options.args)
    if options.changeuser is not None:
        parts.append(f" (as user {options.changeuser}[{runas_uid}]")
        if changegroup is not None:
            parts.append(f", and group {changegroup}[{runas_gid}])")
        else:
            parts.append(")")
    if options.changeroot is not None:
        parts.append(f" in directory {options.changeroot}")
    if options.changedir is not None:
        parts.append(f" change directory {options.changedir}")
    if options.nicelevel:
        parts.append(f", and add {options.nicelevel} to the priority")
    parts.append(".\n")
    return "".join(parts)


def _detach(options: Options) -> None:
    """Turn the current (child) process into a session-less background process."""
    os.closerange(0, os.sysconf("SC_OPEN_MAX"))
    try:
        import fcntl
        import termios

        tty = os.open("/dev/tty", os.O_RDWR)
        try:
            fcntl.ioctl(tty, termios.TIOCNOTTY, 0)
        finally:
            os.close(tty)
    except OSError:
        pass
    try:
        os.chdir(options.changedir if options.changedir is not None else "/")
    except OSError:
        os.chdir("/")
    os.umask(0o022)
    os.setpgid(0, 0)
    null = os.open(os.devnull, os.O_RDWR)
    os.dup(null)
    os.dup(null)


def start_process(options: Options, matcher: ProcessMatcher, out: TextIO) -> int:
    """Start the daemon unless it runs already; on success this process is replaced."""
    runas_uid, runas_gid, changegroup = _resolve_runas(options)
    if matcher.find(options.pidfile):
        if options.quiet <= 0:
            out.write(f"{options.execname} already running.\n")
        return options.exitnodo
    if options.test_mode:
        out.write(_describe_start(options, runas_uid, runas_gid, changegroup))
        return 0
    startas = options.startas or ""
    if options.quiet < 0:
        out.write(f"Starting {startas}...\n")
    if options.changeroot is not None:
        try:
            os.chdir(options.changeroot)
        except OSError:
            raise FatalError(f"Unable to chdir() to {options.changeroot}") from None
        try:
            os.chroot(options.changeroot)
        except OSError:
            raise FatalError(f"Unable to chroot() to {options.changeroot}") from None
    if options.changedir is not None:
        try:
            os.chdir(options.changedir)
        except OSError:
            raise FatalError(f"Unable to chdir() to {options.changedir}") from None
    if options.changeuser is not None:
        try:
            os.setgid(runas_gid)
        except OSError:
            raise FatalError(f"Unable to set gid to {runas_gid}") from None
        try:
            os.initgroups(options.changeuser, runas_gid)
        except OSError:
            raise FatalError(f"Unable to set initgroups() with gid {runas_gid}") from None
        try:
            os.setuid(runas_uid)
        except OSError:
            raise FatalError(f"Unable to set uid to {options.changeuser}") from None

    if options.background:
        if options.quiet < 0:
            out.write(f"Detatching to start {startas}...")
        out.flush()
        try:
            child = os.fork()
        except OSError:
            raise FatalError("Unable to fork.") from None
        if child:
            if options.quiet < 0:
                out.write("done.\n")
            out.flush()
            return 0
        _detach(options)

    if options.nicelevel:
        try:
            os.nice(options.nicelevel)
        except OSError as exc:
            raise FatalError(
                f"Unable to alter nice level by {options.nicelevel}: {exc.strerror}"
            ) from exc
    if options.make_pidfile and options.pidfile is not None:
        try:
            with open(options.pidfile, "w", encoding="ascii") as handle:
                handle.write(f"{os.getpid()}\n")
        except OSError as exc:
            raise FatalError(
                f"Unable to open pidfile `{options.pidfile}' for writing: {exc.strerror}"
            ) from exc
    try:
        os.execv(startas, [startas, *options.args])
    except OSError as exc:
        raise FatalError(f"Unable to start {startas}: {exc.strerror}") from exc
    return 0


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    progname = _progname()
    out = sys.stdout
    try:
        options = parse_options(args)
    except UsageError as exc:
        if exc.message:
            sys.stderr.write(f"{progname}: {exc.message}\n")
        sys.stderr.write(f"Try `{progname} --help' for more information.\n")
        return 3
    if options.show_help:
        out.write(help_text())
        return 0
    if options.show_version:
        out.write(version_text())
        return 0
    try:
        user_id = _resolve_user(options.userspec) if options.userspec is not None else None
        matcher = ProcessMatcher(
            execname=options.execname, user_id=user_id, cmdname=options.cmdname
        )
        if options.stop:
            _resolve_runas(options)
            return run_stop_schedule(options, matcher, out)
        return start_process(options, matcher, out)
    except FatalError as exc:
        out.flush()
        sys.stderr.write(f"{progname}: {exc}\n")
        return FatalError.exit_status
    finally:
        out.flush()