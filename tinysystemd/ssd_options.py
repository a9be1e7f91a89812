"""Command-line options and stop schedules of the start-stop-daemon helper."""

from __future__ import annotations

import re
import signal
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

VERSION = "1.9.18"
INT_MAX = 2**31 - 1

_INTEGER = re.compile(r"\s*\+?\d+")
_ATOI = re.compile(r"\s*([+-]?\d+)")
_MAX_ITEM_LENGTH = 20

SIGNALS: dict[str, int] = {
    "ABRT": signal.SIGABRT,
    "ALRM": signal.SIGALRM,
    "FPE": signal.SIGFPE,
    "HUP": signal.SIGHUP,
    "ILL": signal.SIGILL,
    "INT": signal.SIGINT,
    "KILL": signal.SIGKILL,
    "PIPE": signal.SIGPIPE,
    "QUIT": signal.SIGQUIT,
    "SEGV": signal.SIGSEGV,
    "TERM": signal.SIGTERM,
    "USR1": signal.SIGUSR1,
    "USR2": signal.SIGUSR2,
    "CHLD": signal.SIGCHLD,
    "CONT": signal.SIGCONT,
    "STOP": signal.SIGSTOP,
    "TSTP": signal.SIGTSTP,
    "TTIN": signal.SIGTTIN,
    "TTOU": signal.SIGTTOU,
}

_SHORT_OPTIONS = "HKSVa:n:op:qr:d:s:tu:vx:c:N:bmR:"

_LONG_OPTIONS: dict[str, tuple[str, bool]] = {
    "help": ("H", False),
    "stop": ("K", False),
    "start": ("S", False),
    "version": ("V", False),
    "startas": ("a", True),
    "name": ("n", True),
    "oknodo": ("o", False),
    "pidfile": ("p", True),
    "quiet": ("q", False),
    "signal": ("s", True),
    "test": ("t", False),
    "user": ("u", True),
    "chroot": ("r", True),
    "chdir": ("d", True),
    "verbose": ("v", False),
    "exec": ("x", True),
    "chuid": ("c", True),
    "nicelevel": ("N", True),
    "background": ("b", False),
    "make-pidfile": ("m", False),
    "retry": ("R", True),
}


def _short_table(spec: str) -> dict[str, bool]:
    table: dict[str, bool] = {}
    for ch in spec:
        if ch == ":":
            table[last] = True
        else:
            last = ch
            table[ch] = False
    return table


_SHORT_TABLE = _short_table(_SHORT_OPTIONS)


class UsageError(Exception):
    """The command line is not valid; ``message`` may be None."""

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or "")
        self.message = message


class ScheduleType(Enum):
    TIMEOUT = "timeout"
    SIGNAL = "signal"
    GOTO = "goto"
    FOREVER = "forever"


@dataclass(frozen=True)
class ScheduleItem:
    """One step of a stop schedule: seconds, a signal number or a jump target."""

    type: ScheduleType
    value: int = 0


@dataclass
class Options:
    """Everything the command line selects."""

    test_mode: bool = False
    quiet: int = 0
    exitnodo: int = 1
    start: bool = False
    stop: bool = False
    background: bool = False
    make_pidfile: bool = False
    signal_nr: int = signal.SIGTERM
    signal_str: str | None = None
    userspec: str | None = None
    changeuser: str | None = None
    changegroup: str | None = None
    changeroot: str | None = None
    changedir: str | None = None
    cmdname: str | None = None
    execname: str | None = None
    startas: str | None = None
    pidfile: str | None = None
    schedule_str: str | None = None
    schedule: list[ScheduleItem] | None = None
    nicelevel: int = 0
    args: list[str] = field(default_factory=list)
    show_help: bool = False
    show_version: bool = False


def parse_integer(text: str) -> int:
    """Parse a non-negative decimal no larger than INT_MAX; raise ValueError otherwise."""
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"not an integer: {text!r}")
    value = int(text)
    if value > INT_MAX:
        raise ValueError(f"integer out of range: {text!r}")
    return value


def parse_signal(text: str) -> int:
    """Return the signal number for a number or a name such as ``TERM``."""
    try:
        return parse_integer(text)
    except ValueError:
        pass
    try:
        return SIGNALS[text]
    except KeyError:
        raise ValueError(f"unknown signal: {text!r}") from None


def parse_schedule_item(text: str) -> ScheduleItem:
    if text == "forever":
        return ScheduleItem(ScheduleType.FOREVER)
    if text[:1].isdigit() and text[:1].isascii():
        try:
            return ScheduleItem(ScheduleType.TIMEOUT, parse_integer(text))
        except ValueError:
            raise UsageError("invalid timeout value in schedule") from None
    name = text[1:] if text.startswith("-") else text
    try:
        return ScheduleItem(ScheduleType.SIGNAL, parse_signal(name))
    except ValueError:
        raise UsageError(
            "invalid schedule item (must be [-]<signal-name>, "
            "-<signal-number>, <timeout> or `forever'"
        ) from None


def parse_schedule(text: str, signal_nr: int) -> list[ScheduleItem]:
    """Turn a ``--retry`` value into a list of schedule steps.

    A lone timeout expands to ``signal_nr/timeout/KILL/timeout``; ``forever``
    becomes a trailing jump back to the step that followed it.
    """
    if "/" not in text:
        timeout = parse_schedule_item(text)
        if timeout.type is not ScheduleType.TIMEOUT:
            raise UsageError(
                "--retry takes timeout, or schedule list of at least two items"
            )
        return [
            ScheduleItem(ScheduleType.SIGNAL, signal_nr),
            timeout,
            ScheduleItem(ScheduleType.SIGNAL, signal.SIGKILL),
            timeout,
        ]
    schedule: list[ScheduleItem] = []
    repeat_at: int | None = None
    for piece in text.split("/"):
        if len(piece) >= _MAX_ITEM_LENGTH:
            raise UsageError(
                "invalid schedule item: far too long (you must delimit items with slashes)"
            )
        item = parse_schedule_item(piece)
        if item.type is ScheduleType.FOREVER:
            if repeat_at is not None:
                raise UsageError("invalid schedule: `forever' appears more than once")
            repeat_at = len(schedule)
            continue
        schedule.append(item)
    if repeat_at is not None:
        schedule.append(ScheduleItem(ScheduleType.GOTO, repeat_at))
    return schedule


def _match_long(name: str) -> str:
    if name in _LONG_OPTIONS:
        return name
    candidates = [option for option in _LONG_OPTIONS if option.startswith(name)]
    if not candidates:
        raise UsageError(f"unrecognized option '--{name}'")
    if len(candidates) > 1:
        raise UsageError(f"option '--{name}' is ambiguous")
    return candidates[0]


def _scan(argv: list[str]) -> Iterator[tuple[str | None, str | None]]:
    """Yield ``(code, value)`` per option and ``(None, arg)`` per operand, in order."""
    position = 0
    while position < len(argv):
        arg = argv[position]
        position += 1
        if arg == "--":
            for rest in argv[position:]:
                yield None, rest
            return
        if arg.startswith("--"):
            name, has_value, value = arg[2:].partition("=")
            key = _match_long(name)
            code, takes_value = _LONG_OPTIONS[key]
            if not takes_value:
                if has_value:
                    raise UsageError(f"option '--{key}' doesn't allow an argument")
                yield code, None
                continue
            if not has_value:
                if position >= len(argv):
                    raise UsageError(f"option '--{key}' requires an argument")
                value = argv[position]
                position += 1
            yield code, value
        elif arg.startswith("-") and arg != "-":
            for offset, ch in enumerate(arg[1:], start=2):
                if ch not in _SHORT_TABLE:
                    raise UsageError(f"invalid option -- '{ch}'")
                if not _SHORT_TABLE[ch]:
                    yield ch, None
                    continue
                if offset < len(arg):
                    value = arg[offset:]
                elif position < len(argv):
                    value = argv[position]
                    position += 1
                else:
                    raise UsageError(f"option requires an argument -- '{ch}'")
                yield ch, value
                break
        else:
            yield None, arg


def _atoi(text: str) -> int:
    match = _ATOI.match(text)
    return int(match.group(1)) if match else 0


def _apply(options: Options, code: str, value: str | None) -> None:
    if code == "K":
        options.stop = True
    elif code == "S":
        options.start = True
    elif code == "a":
        options.startas = value
    elif code == "n":
        options.cmdname = value
    elif code == "o":
        options.exitnodo = 0
    elif code == "p":
        options.pidfile = value
    elif code == "q":
        options.quiet = 1
    elif code == "s":
        options.signal_str = value
    elif code == "t":
        options.test_mode = True
    elif code == "u":
        options.userspec = value
    elif code == "v":
        options.quiet = -1
    elif code == "x":
        options.execname = value
    elif code == "c":
        tokens = [token for token in (value or "").split(":") if token]
        options.changeuser = tokens[0] if tokens else None
        options.changegroup = tokens[1] if len(tokens) > 1 else None
    elif code == "r":
        options.changeroot = value
    elif code == "d":
        options.changedir = value
    elif code == "N":
        options.nicelevel = _atoi(value or "")
    elif code == "b":
        options.background = True
    elif code == "m":
        options.make_pidfile = True
    elif code == "R":
        options.schedule_str = value


def parse_options(argv: list[str]) -> Options:
    """Parse the arguments after the program name; raise UsageError when invalid.

    ``--help`` and ``--version`` stop parsing at once and are reported through
    ``show_help`` and ``show_version``.
    """
    options = Options()
    for code, value in _scan(list(argv)):
        if code is None:
            options.args.append(value or "")
        elif code == "H":
            options.show_help = True
            return options
        elif code == "V":
            options.show_version = True
            return options
        else:
            _apply(options, code, value)

    if options.signal_str is not None:
        try:
            options.signal_nr = parse_signal(options.signal_str)
        except ValueError:
            raise UsageError(
                "signal value must be numeric or name of signal (KILL, INTR, ...)"
            ) from None
    if options.schedule_str is not None:
        options.schedule = parse_schedule(options.schedule_str, options.signal_nr)
    if options.start == options.stop:
        raise UsageError("need one of --start or --stop")
    if (
        options.execname is None
        and options.pidfile is None
        and options.userspec is None
        and options.cmdname is None
    ):
        raise UsageError("need at least one of --exec, --pidfile, --user or --name")
    if options.startas is None:
        options.startas = options.execname
    if options.start and options.startas is None:
        raise UsageError("--start needs --exec or --startas")
    if options.make_pidfile and options.pidfile is None:
        raise UsageError("--make-pidfile is only relevant with --pidfile")
    if options.background and not options.start:
        raise UsageError("--background is only relevant with --start")
    return options


def version_text() -> str:
    return f"start-stop-daemon {VERSION}\n"


def help_text() -> str:
    return (
        f"start-stop-daemon {VERSION} for Debian - small and fast version.\n"
        "\n"
        "Usage:\n"
        "  start-stop-daemon -S|--start options ... -- arguments ...\n"
        "  start-stop-daemon -K|--stop options ...\n"
        "  start-stop-daemon -H|--help\n"
        "  start-stop-daemon -V|--version\n"
        "\n"
        "Options (at least one of --exec|--pidfile|--user is required):\n"
        "  -x|--exec <executable>        program to start/check if it is running\n"
        "  -p|--pidfile <pid-file>       pid file to check\n"
        "  -c|--chuid <name|uid[:group|gid]>\n"
        "  \t\tchange to this user/group before starting process\n"
        "  -u|--user <username>|<uid>    stop processes owned by this user\n"
        "  -n|--name <process-name>      stop processes with this name\n"
        "  -s|--signal <signal>          signal to send (default TERM)\n"
        "  -a|--startas <pathname>       program to start (default is <executable>)\n"
        "  -r |--chroot <directory>\t\t\t chroot to <directory> before starting\n"
        "  -d|--chdir <directory>\t\t\t change to <directory> (default is /)\n"
        "  -N|--nicelevel <incr>         add incr to the process's nice level\n"
        "  -b|--background               force the process to detach\n"
        "  -m|--make-pidfile             create the pidfile before starting\n"
        "  -R|--retry <schedule>         check whether processes die, and retry\n"
        "  -t|--test                     test mode, don't do anything\n"
        "  -o|--oknodo                   exit status 0 (not 1) if nothing done\n"
        "  -q|--quiet                    be more quiet\n"
        "  -v|--verbose                  be more verbose\n"
        "Retry <schedule> is <item>|/<item>/... where <item> is one of\n"
        " -<signal-num>|[-]<signal-name>  send that signal\n"
        " <timeout>                       wait that many seconds\n"
        " forever                         repeat remainder forever\n"
        "or <schedule> may be just <timeout>, meaning <signal>/<timeout>/KILL/<timeout>\n"
        "\n"
        "Exit status:  0 = done      1 = nothing done (=> 0 if --oknodo)\n"
        "              3 = trouble   2 = with --retry, processes wouldn't die\n"
    )