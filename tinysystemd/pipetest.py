"""Connect two programs with a pipe, as a shell ``a | b`` would."""

from __future__ import annotations

import subprocess
import sys


def run_pipeline(producer: list[str], consumer: list[str]) -> int:
    """Pipe ``producer``'s output into ``consumer`` and return the consumer's exit code."""
    with subprocess.Popen(producer, stdout=subprocess.PIPE) as source:
        assert source.stdout is not None
        with subprocess.Popen(consumer, stdin=source.stdout) as sink:
            source.stdout.close()
            sink.wait()
        source.wait()
    return sink.returncode


def main(argv: list[str] | None = None) -> int:
    try:
        return run_pipeline(["ps", "aux"], ["grep", "bash", "--color=auto"])
    except OSError as exc:
        print(f"pipe create failed: {exc}", file=sys.stderr)
        return 1