"""Command-line client that sends one control command to the server."""

from __future__ import annotations

import logging
import socket
import sys

from tinysystemd.serviceconfig import local_server_path

log = logging.getLogger(__name__)

PROGRAM_NAME = "tinysystemctl"

_READ_TIMEOUT = 10.0
_READ_SIZE = 65536


def request(args: list[str], socket_path: str | None = None, timeout: float = 2.0) -> str:
    """Send ``args`` joined by spaces and return everything the server answers.

    Raises OSError when the server cannot be reached within ``timeout`` seconds.
    """
    path = socket_path or local_server_path()
    chunks: list[bytes] = []
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        sock.connect(path)
        sock.sendall(" ".join(args).encode("utf-8"))
        sock.settimeout(_READ_TIMEOUT)
        while True:
            try:
                chunk = sock.recv(_READ_SIZE)
            except TimeoutError:
                continue
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks).decode("utf-8", errors="replace")


def main(argv: list[str] | None = None) -> int:
    args = list(sys.argv[1:] if argv is None else argv)
    if not args:
        log.warning("No arguments provided")
        return 1
    try:
        response = request([PROGRAM_NAME, *args])
    except OSError as exc:
        log.warning("Failed to connect to server: %s", exc)
        return 1
    sys.stdout.write(response + "\n")
    sys.stdout.flush()
    return 0