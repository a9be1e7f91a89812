# tinysystemd

A small service supervisor for Linux. It has three parts:

- **`tinysystemd`** is the supervisor. It reads service files, starts each
  enabled service in the background, watches its process through `/proc`,
  and restarts it when its restart policy asks for that.
- **`tinysystemctl`** is the control client. It sends one command to a
  running supervisor over a Unix socket and prints the reply.
- **`tinystartstopdaemon`** starts and stops background programs through a
  pid file. The supervisor runs it to launch and stop services.

## Installing

```
pip install .
```

Python 3.10 or newer is required. There are no third-party dependencies.
The tests need the `test` extra (`pytest`, `pytest-asyncio`).

## Service files

The supervisor reads every file ending in `.service` from its services
directory. The default is `/etc/tiny_daemon/services`. A service file is in
INI format:

```ini
[Unit]
Description=Sample service

[Service]
Type=simple
ExecStart=/usr/local/bin/sample-service --port 8080 \"a quoted argument\"
WorkingDirectory=/
Restart=always
RestartSec=5
Enabled=true
Priority=0
```

| Key | Meaning |
| --- | --- |
| `Type` | Required. `simple`, `forking`, `notify` or `oneshot`; an unknown value counts as `simple`. When a `oneshot` service's process exits it is not restarted. |
| `ExecStart` | Required. The program and its arguments, split on spaces. The program must exist and be executable. |
| `WorkingDirectory` | Directory the program runs in. The default is `/`. |
| `Restart` | `always`, `on-failure` or `on-abort` turn automatic restart on; all three restart the service whenever its process dies. Any other value, or none, turns it off. |
| `RestartSec` | Seconds to wait before a restart. The default is 5. It must be greater than zero when restart is on. |
| `Enabled` | `true` starts the service when the supervisor starts. The default is `true`. |
| `Priority` | New services are started in ascending order of priority. The default is 0. |

The service name is the file name, for example `sample.service`.

Values are read the INI way: a plain `"` only quotes part of a value and is
removed, `;` outside quotes starts a comment, and an unquoted `,` makes the
value a list, which reads as empty. Inside `ExecStart`, words are grouped
with double quotes and a backslash escapes the next character; since the INI
layer removes plain quotes and consumes backslashes, write them as `\"` and
`\\` in the file, as in the example above.

## Running the supervisor

```
tinysystemd --services_dir /etc/tiny_daemon/services --pid_dir /var/run/tiny_daemon --daemon_tool tinystartstopdaemon
```

All three options are optional and the values above are the defaults.

Before it starts, the supervisor checks that the services directory exists,
creates the pid directory if it is missing, and runs the helper program with
`--version` to see that it works. It refuses to run twice: it records its own
pid in `tiny-daemon-server.pid` in the pid directory. Each service gets a
`.pid` file and a `.context` file there; the context file keeps the time of
the last start and the number of starts as JSON.

While it runs, the supervisor:

- listens on the Unix socket `tiny_daemon.socket` in the system temporary
  directory (usually `/tmp/tiny_daemon.socket`);
- checks every second whether the supervised processes are still alive;
- writes `V` to `/dev/watchdog` every 30 seconds, ignoring failures;
- runs `dbus-monitor` on the bus `unix:path=/tmp/default-session-bus` and
  exits when an `EventPowerDown` or `EventRebootLater` signal of the
  interface `com.hdapp.system.event` arrives on path `/event`. Without
  `dbus-monitor` this is skipped with a warning.

## Controlling services

```
tinysystemctl status sample
tinysystemctl start sample
tinysystemctl stop sample
tinysystemctl restart sample
tinysystemctl list
tinysystemctl reload
```

The `.service` suffix may be left off a service name. `list` shows the
status of every service. `reload` reads the services directory again: new
services are started, removed services are stopped, and a running service is
restarted when its settings or the modification time of its program changed.
Changing only the arguments of `ExecStart` does not restart it. A stopped
service whose `Enabled` turned from `false` to `true` is started.

`start` works only on a stopped service, `stop` on a running service or one
waiting to be restarted, and `restart` on a running or stopped service;
otherwise the reply says why nothing was done.

A status report looks like this:

```
>> sample.service - Sample service
  Loaded: loaded (/etc/tiny_daemon/services/sample.service; enabled; vendor preset: enabled)
  Active: active (running) since 2025-05-11 17:56:00
  Main PID: 1234 (/usr/local/bin/sample-service --port 8080)
```

`tinysystemd.systemctl.request(args, socket_path, timeout)` sends a command
from Python and returns the reply as a string.

## Starting and stopping programs by hand

```
tinystartstopdaemon --start --make-pidfile --pidfile /tmp/sample.pid --background --exec /usr/local/bin/sample-service -- --port 8080
tinystartstopdaemon --stop --pidfile /tmp/sample.pid --retry 5
```

At least one of `--exec`, `--pidfile`, `--user` or `--name` is required,
and exactly one of `--start` or `--stop`. `--retry` takes a timeout in
seconds, meaning "send the signal, wait, send KILL, wait", or a schedule such
as `TERM/10/KILL/5`, where `forever` repeats the rest of the schedule. Other
options are `--signal`, `--startas`, `--chuid`, `--chroot`, `--chdir`,
`--nicelevel`, `--test`, `--oknodo`, `--quiet` and `--verbose`. Run
`tinystartstopdaemon --help` for the full list.

Exit status: 0 when done, 1 when nothing was done (0 with `--oknodo`),
2 when processes would not die under `--retry` or on a fatal error,
3 on a usage error.

## Helper programs

- `tiny-exe-simple` is a sample long-running service. It appends a line with
  its start time, arguments and working directory to the file named by
  `TINYSYSTEMD_RECORD_FILE` (default `start_record.txt` in the temporary
  directory), then prints `Hello, world!` to standard error every second
  until it is stopped.
- `tiny-pipetest` runs `ps aux` piped into `grep bash --color=auto`.

## Limitations

- `forking` and `notify` services are supervised exactly like `simple` ones:
  there is no readiness notification.
- Process liveness is judged by the `/proc/<pid>` directory, so the
  supervisor and `tinystartstopdaemon` work on Linux only.
- `tinystartstopdaemon` does not enter Linux namespaces.