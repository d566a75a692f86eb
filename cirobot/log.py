"""
CI Robot Logging - Centralized logging configuration.

Two loggers plus a per-run file log:
- logger: internal diagnostics -> stderr, format: [CIROBOT] LEVEL: message
- console: CLI user output -> stdout, no prefix/timestamp
- RunEventLog: robot.log inside a run directory, format: timestamp | EVENT | details
"""
import logging
import os
import sys
from datetime import datetime


class _LazyStreamHandler(logging.StreamHandler):
    """StreamHandler that resolves the stream lazily from sys module.

    This ensures pytest capture works correctly, because pytest
    replaces sys.stderr/sys.stdout per-test.
    """

    def __init__(self, stream_attr: str):
        super().__init__()
        self._stream_attr = stream_attr  # "stderr" or "stdout"

    @property
    def stream(self):
        return getattr(sys, self._stream_attr)

    @stream.setter
    def stream(self, value):
        pass  # Ignore; always use current sys stream


def get_logger(name: str = "cirobot") -> logging.Logger:
    """Get the internal logger ([CIROBOT] prefix, stderr)."""
    log = logging.getLogger(name)
    if not log.handlers:
        handler = _LazyStreamHandler("stderr")
        handler.setFormatter(logging.Formatter("[CIROBOT] %(levelname)s: %(message)s"))
        log.addHandler(handler)
        log.setLevel(logging.INFO)
        log.propagate = False
    return log


def get_console(name: str = "cirobot.console") -> logging.Logger:
    """Get the console logger for CLI output (stdout, no timestamp)."""
    log = logging.getLogger(name)
    if not log.handlers:
        handler = _LazyStreamHandler("stdout")
        handler.setFormatter(logging.Formatter("%(message)s"))
        log.addHandler(handler)
        log.setLevel(logging.INFO)
        log.propagate = False
    return log


class RunEventLog:
    """Append-only event log for a single run (robot.log)."""

    def __init__(self, run_dir: str, filename: str = "robot.log"):
        self.path = os.path.join(run_dir, filename)

    def write(self, event: str, details: str = "") -> None:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]
        line = f"{timestamp} | {event}"
        if details:
            line += f" | {details}"
        try:
            os.makedirs(os.path.dirname(self.path), exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line + "\n")
        except OSError as e:
            get_logger(__name__).warning("[ARTIFACTS] Could not write run log: %s", e)
