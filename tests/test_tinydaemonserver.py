import asyncio
import os
import sys
import tempfile

import pytest

from tinysystemd.serviceconfig import (
    pid_directory,
    service_directory,
    set_pid_directory,
    set_service_directory,
)
from tinysystemd.startstopdaemoncmd import program_name, set_program_name
from tinysystemd.tinydaemonserver import (
    HELP_TEXT,
    SERVER_PID_FILE_NAME,
    TinyDaemonServer,
    load_service_configs,
    main,
)


@pytest.fixture
def dirs(tmp_path):
    old = (service_directory(), pid_directory(), program_name())
    services = tmp_path / "services"
    services.mkdir()
    pids = tmp_path / "run"
    set_service_directory(str(services))
    set_pid_directory(str(pids))
    set_program_name(sys.executable)
    yield services, pids
    set_service_directory(old[0])
    set_pid_directory(old[1])
    set_program_name(old[2])


@pytest.fixture
def executable(tmp_path):
    script = tmp_path / "svc.sh"
    script.write_text("#!/bin/sh\nsleep 100\n")
    script.chmod(0o755)
    return script


def write_service(directory, name, executable, priority=0):
    path = directory / name
    path.write_text(
        "[Unit]\nDescription=demo\n[Service]\nType=simple\n"
        f"ExecStart={executable} --flag\nPriority={priority}\n"
    )
    return path


class FakeDaemon:
    def __init__(self, config, watcher=None, events=None):
        self.config = config
        self.watcher = watcher
        self.events = events if events is not None else []
        self.reloaded_with = None
        self.exited = False

    def setup(self):
        self.events.append(("setup", self.config.service_name))

    def reload(self, config):
        self.reloaded_with = config

    def exit(self):
        self.exited = True

    def status(self):
        return f"status {self.config.service_name}\n"

    def user_start(self):
        return "started\n"

    def user_stop(self):
        return "stopped\n"

    def user_restart(self):
        return "restarted\n"


@pytest.fixture
def server():
    events = []

    def factory(config, watcher=None):
        return FakeDaemon(config, watcher, events)

    srv = TinyDaemonServer(daemon_factory=factory, watchdog_path=None, dbus_address=None)
    srv.events = events
    return srv


def test_load_service_configs_skips_invalid_and_foreign(dirs, executable):
    services, _ = dirs
    write_service(services, "web.service", executable)
    (services / "bad.service").write_text("[Service]\nExecStart=/bin/true\n")
    (services / "notes.txt").write_text("nothing")
    configs = load_service_configs()
    assert set(configs) == {"web.service"}
    assert configs["web.service"].executed_file == str(executable)
    assert configs["web.service"].arguments == ["--flag"]


def test_load_service_configs_missing_directory(dirs, tmp_path):
    set_service_directory(str(tmp_path / "absent"))
    assert load_service_configs() == {}


def test_help_when_no_command(server):
    assert server.execute_client_command(["tinysystemctl"]) == HELP_TEXT


def test_invalid_command(server):
    result = server.execute_client_command(["tinysystemctl", "bogus"])
    assert result == "Invalid command: bogus\n" + HELP_TEXT


def test_service_name_required(server):
    result = server.execute_client_command(["tinysystemctl", "start"])
    assert result == "Service name is required\n" + HELP_TEXT


def test_service_not_found_appends_suffix(server):
    result = server.execute_client_command(["tinysystemctl", "stop", "nope"])
    assert result == "Service not found: nope.service\n"


def test_commands_dispatch_to_daemon(server, dirs, executable):
    services, _ = dirs
    write_service(services, "web.service", executable)
    server.reload()
    assert server.execute_client_command(["c", "start", "web"]) == "started\n"
    assert server.execute_client_command(["c", "stop", "web.service"]) == "stopped\n"
    assert server.execute_client_command(["c", "restart", "web"]) == "restarted\n"
    assert server.execute_client_command(["c", "status", "web"]) == "status web.service\n"


def test_list_concatenates_statuses(server, dirs, executable):
    services, _ = dirs
    write_service(services, "a.service", executable)
    write_service(services, "b.service", executable)
    server.reload()
    result = server.execute_client_command(["c", "list"])
    assert result == "status a.service\nstatus b.service\n"


def test_reload_command_creates_and_sets_up(server, dirs, executable):
    services, _ = dirs
    write_service(services, "web.service", executable)
    result = server.execute_client_command(["c", "reload"])
    assert result == "Service reloaded successfully\n"
    assert list(server.processes) == ["web.service"]
    assert server.events == [("setup", "web.service")]
    assert server.processes["web.service"].watcher is server.watcher


def test_reload_updates_existing_and_removes_deleted(server, dirs, executable):
    services, _ = dirs
    path = write_service(services, "web.service", executable)
    server.reload()
    proc = server.processes["web.service"]
    server.reload()
    assert proc.reloaded_with.service_name == "web.service"
    assert server.events == [("setup", "web.service")]
    path.unlink()
    server.reload()
    assert proc.exited
    assert server.processes == {}


def test_reload_sets_up_by_priority(server, dirs, executable):
    services, _ = dirs
    write_service(services, "a.service", executable, priority=5)
    write_service(services, "b.service", executable, priority=1)
    server.reload()
    assert server.events == [("setup", "b.service"), ("setup", "a.service")]


def test_prepare_writes_own_pid(server, dirs):
    _, pids = dirs
    server.prepare()
    assert (pids / SERVER_PID_FILE_NAME).read_text() == str(os.getpid())


def test_prepare_overwrites_stale_pid_file(server, dirs):
    _, pids = dirs
    pids.mkdir()
    (pids / SERVER_PID_FILE_NAME).write_text("garbage")
    server.prepare()
    assert (pids / SERVER_PID_FILE_NAME).read_text() == str(os.getpid())


def test_prepare_refuses_when_running(server, dirs):
    _, pids = dirs
    pids.mkdir()
    (pids / SERVER_PID_FILE_NAME).write_text(str(os.getpid()))
    with pytest.raises(RuntimeError, match="already running"):
        server.prepare()


def test_prepare_missing_services_dir(server, dirs, tmp_path):
    set_service_directory(str(tmp_path / "absent"))
    with pytest.raises(RuntimeError, match="not exist"):
        server.prepare()


def test_prepare_missing_helper_program(server, dirs, tmp_path):
    set_program_name(str(tmp_path / "no-such-tool"))
    with pytest.raises(RuntimeError, match="not found"):
        server.prepare()


def test_feed_watchdog_writes_marker(tmp_path):
    target = tmp_path / "watchdog"
    TinyDaemonServer(watchdog_path=str(target), dbus_address=None).feed_watchdog()
    assert target.read_text() == "V\n"


def test_feed_watchdog_ignores_unwritable(tmp_path):
    target = tmp_path / "missing" / "watchdog"
    TinyDaemonServer(watchdog_path=str(target), dbus_address=None).feed_watchdog()
    assert not target.exists()


def test_main_fails_without_services_dir(dirs, tmp_path):
    code = main(["--services_dir", str(tmp_path / "absent"), "--pid_dir", str(tmp_path / "r")])
    assert code == 1
    assert service_directory() == str(tmp_path / "absent")


@pytest.mark.asyncio
async def test_serve_answers_over_socket(dirs):
    with tempfile.TemporaryDirectory() as short:
        path = os.path.join(short, "ctl.sock")
        srv = TinyDaemonServer(
            socket_path=path,
            daemon_factory=FakeDaemon,
            watchdog_path=None,
            dbus_address=None,
        )
        task = asyncio.create_task(srv.serve())
        for _ in range(200):
            if os.path.exists(path):
                break
            await asyncio.sleep(0.01)
        reader, writer = await asyncio.open_unix_connection(path)
        writer.write(b"tinysystemctl bogus")
        await writer.drain()
        answer = await reader.read()
        writer.close()
        await writer.wait_closed()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert answer.decode() == "Invalid command: bogus\n" + HELP_TEXT
        assert not os.path.exists(path)