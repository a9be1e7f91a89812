"""A trivial long-running service that records each start and idles."""

from __future__ import annotations

import logging
import os
import sys
import tempfile
import time
from datetime import datetime

log = logging.getLogger(__name__)

RECORD_FILE_ENV = "TINYSYSTEMD_RECORD_FILE"


def record_start(record_file: str | os.PathLike, argv: list[str], cwd: str) -> str:
    """Append a line describing this start to ``record_file`` and return it."""
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
    line = f"start at {stamp}, args{' '.join(argv)} cwd = {cwd}\n"
    with open(record_file, "a", encoding="utf-8") as record:
        record.write(line)
    return line


def main(argv: list[str] | None = None) -> None:
    args = list(sys.argv) if argv is None else [sys.argv[0], *argv]
    record_file = os.environ.get(
        RECORD_FILE_ENV, os.path.join(tempfile.gettempdir(), "start_record.txt")
    )
    try:
        record_start(record_file, args, os.getcwd())
    except OSError as exc:
        log.debug("cannot record start in %s: %s", record_file, exc)
    while True:
        time.sleep(1)
        print("Hello, world!", file=sys.stderr, flush=True)