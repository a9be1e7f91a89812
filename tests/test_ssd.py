import errno
import io
import os
import shutil
import signal
import subprocess

import pytest

from tinysystemd.ssd import (
    FatalError,
    ProcessMatcher,
    describe_target,
    do_stop,
    main,
    run_stop_schedule,
    start_process,
)
from tinysystemd.ssd_options import Options, parse_options


class FakeKill:
    def __init__(self, proc_root, die=True, error=None):
        self.proc_root = proc_root
        self.die = die
        self.error = error
        self.calls = []

    def __call__(self, pid, sig):
        self.calls.append((pid, sig))
        path = self.proc_root / str(pid)
        if not path.exists():
            raise ProcessLookupError(errno.ESRCH, "No such process")
        if self.error is not None:
            raise self.error
        if sig != 0 and self.die:
            shutil.rmtree(path)


@pytest.fixture
def proc(tmp_path):
    root = tmp_path / "proc"
    root.mkdir()
    return root


def add_proc(root, pid, comm="mydaemon"):
    directory = root / str(pid)
    directory.mkdir()
    (directory / "stat").write_text(f"{pid} ({comm}) S 1 1 1\n")
    return directory


def pidfile_for(tmp_path, pid):
    path = tmp_path / "svc.pid"
    path.write_text(f"{pid}\n")
    return str(path)


def test_describe_target_prefers_name_then_exec():
    assert describe_target(Options(cmdname="foo", execname="/bin/x")) == "foo"
    assert describe_target(Options(execname="/bin/x", pidfile="/p")) == "/bin/x"


def test_describe_target_pidfile_and_user():
    assert describe_target(Options(pidfile="/run/a.pid")) == "process in pidfile `/run/a.pid'"
    assert describe_target(Options(userspec="nobody")) == "process(es) owned by `nobody'"


def test_describe_target_without_target_is_fatal():
    with pytest.raises(FatalError):
        describe_target(Options())


def test_pid_is_cmd(proc):
    add_proc(proc, 123, "mydaemon")
    add_proc(proc, 124, "a)b")
    matcher = ProcessMatcher(cmdname="mydaemon", proc_root=str(proc))
    assert matcher.pid_is_cmd(123) is True
    assert ProcessMatcher(cmdname="mydae", proc_root=str(proc)).pid_is_cmd(123) is False
    assert ProcessMatcher(cmdname="a)b", proc_root=str(proc)).pid_is_cmd(124) is True
    assert matcher.pid_is_cmd(999) is False


def test_pid_is_exec(tmp_path, proc):
    exe = tmp_path / "daemon"
    exe.write_text("")
    other = tmp_path / "other"
    other.write_text("")
    os.symlink(exe, add_proc(proc, 10) / "exe")
    os.symlink(other, add_proc(proc, 11) / "exe")
    matcher = ProcessMatcher(execname=str(exe), proc_root=str(proc))
    assert matcher.pid_is_exec(10) is True
    assert matcher.pid_is_exec(11) is False
    assert matcher.pid_is_exec(12) is False


def test_missing_executable_is_fatal(tmp_path):
    with pytest.raises(FatalError, match="stat"):
        ProcessMatcher(execname=str(tmp_path / "absent"))


def test_pid_is_user(proc):
    add_proc(proc, 7)
    assert ProcessMatcher(user_id=os.getuid(), proc_root=str(proc)).pid_is_user(7) is True
    assert ProcessMatcher(user_id=os.getuid() + 1, proc_root=str(proc)).pid_is_user(7) is False


def test_find_from_pidfile(tmp_path, proc):
    matcher = ProcessMatcher(proc_root=str(proc))
    assert matcher.find(pidfile_for(tmp_path, 123)) == [123]
    assert matcher.find(str(tmp_path / "missing.pid")) == []
    garbage = tmp_path / "garbage.pid"
    garbage.write_text("not a pid")
    assert matcher.find(str(garbage)) == []


def test_find_scans_proc(proc):
    add_proc(proc, 10, "other")
    add_proc(proc, 20, "mydaemon")
    (proc / "self-info").mkdir()
    matcher = ProcessMatcher(cmdname="mydaemon", proc_root=str(proc))
    assert matcher.find(None) == [20]


def test_find_empty_proc_is_fatal(proc):
    with pytest.raises(FatalError, match="not mounted"):
        ProcessMatcher(proc_root=str(proc)).find(None)


def test_do_stop_test_mode_sends_nothing(tmp_path, proc):
    kill = FakeKill(proc)
    matcher = ProcessMatcher(proc_root=str(proc), send_signal=kill)
    options = Options(stop=True, test_mode=True, pidfile=pidfile_for(tmp_path, 123))
    out = io.StringIO()
    assert do_stop(options, matcher, 15, 0, 0, out) == (0, 0)
    assert out.getvalue() == "Would send signal 15 to 123.\n"
    assert kill.calls == []


def test_do_stop_signals_and_reports(tmp_path, proc):
    add_proc(proc, 123)
    kill = FakeKill(proc)
    matcher = ProcessMatcher(proc_root=str(proc), send_signal=kill)
    options = Options(stop=True, cmdname="mydaemon", pidfile=pidfile_for(tmp_path, 123))
    out = io.StringIO()
    assert do_stop(options, matcher, signal.SIGTERM, -1, 0, out) == (1, 0)
    assert kill.calls == [(123, signal.SIGTERM)]
    assert out.getvalue() == "Stopped mydaemon (pid 123).\n"


def test_do_stop_counts_failures(tmp_path, proc):
    add_proc(proc, 123)
    kill = FakeKill(proc, error=PermissionError(errno.EPERM, "Operation not permitted"))
    matcher = ProcessMatcher(proc_root=str(proc), send_signal=kill)
    options = Options(stop=True, pidfile=pidfile_for(tmp_path, 123))
    out = io.StringIO()
    assert do_stop(options, matcher, signal.SIGTERM, 0, 0, out) == (0, 1)
    assert "warning: failed to kill 123" in out.getvalue()


def test_stop_nothing_running(tmp_path, proc):
    pidfile = str(tmp_path / "none.pid")
    matcher = ProcessMatcher(proc_root=str(proc), send_signal=FakeKill(proc))
    out = io.StringIO()
    status = run_stop_schedule(parse_options(["--stop", "--pidfile", pidfile]), matcher, out)
    assert status == 1
    assert out.getvalue() == f"No process in pidfile `{pidfile}' found running; none killed.\n"
    oknodo = parse_options(["--stop", "--oknodo", "--pidfile", pidfile])
    assert run_stop_schedule(oknodo, matcher, io.StringIO()) == 0


def test_stop_kills_running_process(tmp_path, proc):
    add_proc(proc, 123)
    kill = FakeKill(proc)
    matcher = ProcessMatcher(proc_root=str(proc), send_signal=kill)
    options = parse_options(["--stop", "--pidfile", pidfile_for(tmp_path, 123)])
    assert run_stop_schedule(options, matcher, io.StringIO()) == 0
    assert kill.calls == [(123, signal.SIGTERM)]


def test_stop_schedule_polls_until_gone(tmp_path, proc):
    add_proc(proc, 123)
    kill = FakeKill(proc)
    matcher = ProcessMatcher(proc_root=str(proc), send_signal=kill)
    options = parse_options(
        ["--stop", "--pidfile", pidfile_for(tmp_path, 123), "--retry", "TERM/1"]
    )
    assert run_stop_schedule(options, matcher, io.StringIO()) == 0
    assert kill.calls == [(123, signal.SIGTERM), (123, 0)]


def test_stop_schedule_refused_to_die(tmp_path, proc):
    add_proc(proc, 123)
    kill = FakeKill(proc, die=False)
    matcher = ProcessMatcher(proc_root=str(proc), send_signal=kill)
    options = parse_options(
        ["--stop", "--pidfile", pidfile_for(tmp_path, 123), "--retry", "TERM/0"]
    )
    out = io.StringIO()
    assert run_stop_schedule(options, matcher, out) == 2
    assert "refused to die" in out.getvalue()


def test_stop_schedule_ignored_in_test_mode(tmp_path, proc):
    matcher = ProcessMatcher(proc_root=str(proc), send_signal=FakeKill(proc))
    options = parse_options(
        ["--stop", "--test", "--pidfile", pidfile_for(tmp_path, 123), "--retry", "5"]
    )
    out = io.StringIO()
    run_stop_schedule(options, matcher, out)
    assert out.getvalue().startswith("Ignoring --retry in test mode\n")


def test_start_when_already_running(tmp_path, proc):
    add_proc(proc, 123)
    matcher = ProcessMatcher(proc_root=str(proc))
    options = parse_options(
        ["--start", "--startas", "/bin/true", "--pidfile", pidfile_for(tmp_path, 123)]
    )
    out = io.StringIO()
    assert start_process(options, matcher, out) == 1
    assert "already running." in out.getvalue()


def test_start_in_test_mode(tmp_path, proc):
    exe = tmp_path / "daemon"
    exe.write_text("")
    add_proc(proc, 5, "unrelated")
    matcher = ProcessMatcher(execname=str(exe), proc_root=str(proc))
    options = parse_options(["--start", "--test", "--exec", str(exe), "--", "a", "b"])
    out = io.StringIO()
    assert start_process(options, matcher, out) == 0
    text = out.getvalue()
    assert text.startswith(f"Would start {exe} a b ")
    assert text.endswith(".\n")


def test_main_usage_error(capsys):
    assert main([]) == 3
    assert "need one of --start or --stop" in capsys.readouterr().err


def test_main_version(capsys):
    assert main(["--version"]) == 0
    assert capsys.readouterr().out == "start-stop-daemon 1.9.18\n"


def test_main_missing_exec_is_fatal(tmp_path, capsys):
    assert main(["--stop", "--exec", str(tmp_path / "absent")]) == 2
    assert "stat" in capsys.readouterr().err


def test_main_stops_real_process(tmp_path):
    child = subprocess.Popen(["sleep", "30"])
    try:
        pidfile = pidfile_for(tmp_path, child.pid)
        assert main(["--stop", "--quiet", "--pidfile", pidfile]) == 0
        assert child.wait(timeout=5) == -signal.SIGTERM
    finally:
        if child.poll() is None:
            child.kill()
            child.wait()