"""A small service supervisor, its control client and a start-stop-daemon tool."""

__version__ = "0.1.0"