"""
CI Robot Process Executor - spawn external tools with timeout and output capture.

Every tool runner goes through ProcessExecutor.run(). A run never raises for
process-level problems: a missing binary, a non-zero exit or a timeout all come
back as a ProcessResult. On timeout the whole process tree is killed and the
output captured so far is returned.
"""
import asyncio
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import psutil

from cirobot.log import get_logger
from cirobot.models import ProcessResult

logger = get_logger(__name__)

DEFAULT_TIMEOUT_MS = 600000
_STREAM_LIMIT = 1024 * 1024

EXIT_STOPPED = "stopped"
EXIT_CRASHED = "crashed"
EXIT_KILLED = "killed"


@dataclass
class ExitStatus:
    """How a supervised process ended"""
    exit_code: Optional[int]
    signal: Optional[int]
    kind: str  # stopped, crashed, killed


def split_returncode(returncode: Optional[int]) -> Tuple[Optional[int], Optional[int]]:
    """asyncio reports death-by-signal N as returncode -N."""
    if returncode is None:
        return None, None
    if returncode < 0:
        return None, -returncode
    return returncode, None


def classify_exit(exit_code: Optional[int], signal: Optional[int], kill_requested: bool) -> str:
    """Classify a process exit.

    Args:
        exit_code: Exit code, None when the process died from a signal
        signal: Signal number, None for a normal exit
        kill_requested: True if we asked for the kill (timeout or forced shutdown)

    Returns:
        "killed" when we requested the kill, "stopped" for a clean exit 0,
        "crashed" for anything else
    """
    if kill_requested:
        return EXIT_KILLED
    if signal is None and exit_code == 0:
        return EXIT_STOPPED
    return EXIT_CRASHED


def kill_process_tree(pid: int) -> None:
    """Kill a process and all of its children."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return
    try:
        children = parent.children(recursive=True)
    except psutil.Error:
        children = []
    for child in children:
        try:
            child.kill()
        except psutil.Error:
            pass
    try:
        parent.kill()
    except psutil.Error:
        pass


class ProcessExecutor:
    """Runs external commands asynchronously"""

    def __init__(self, cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        self.cwd = cwd
        self.env = env or {}

    async def run(
        self,
        command: str,
        args: Optional[List[str]] = None,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        log_file: Optional[str] = None,
        input_text: Optional[str] = None,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> ProcessResult:
        """
        Run a command to completion or until its timeout.

        Args:
            command: Executable path or name
            args: Command-line arguments
            timeout: Timeout in milliseconds (default 10 minutes)
            cwd: Working directory (falls back to executor default)
            env: Extra environment variables merged over os.environ
            log_file: Optional file receiving live output ([STDERR] prefixed for stderr)
            input_text: Optional text written to stdin
            on_line: Optional callback invoked with each stdout line

        Returns:
            ProcessResult with exit code, captured output and duration (ms)
        """
        args = [str(a) for a in (args or [])]
        timeout = timeout or DEFAULT_TIMEOUT_MS
        start = time.monotonic()
        merged_env = {**os.environ, **self.env, **(env or {})}

        logger.debug("[PROC] Running: %s %s", command, " ".join(args))

        try:
            proc = await asyncio.create_subprocess_exec(
                command, *args,
                stdin=asyncio.subprocess.PIPE if input_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd or self.cwd,
                env=merged_env,
                limit=_STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            logger.error("[PROC] Failed to start %s: %s", command, e)
            return ProcessResult(
                exit_code=1,
                stderr=f"\nProcess error: {e}",
                duration=_elapsed_ms(start),
                log_path=log_file,
            )

        stdout_chunks: List[str] = []
        stderr_chunks: List[str] = []
        log_handle = None
        if log_file:
            try:
                os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
                log_handle = open(log_file, "w")
            except OSError as e:
                logger.error("[PROC] Failed to open log file %s: %s", log_file, e)

        async def pump(stream, chunks: List[str], prefix: str, callback):
            while True:
                try:
                    raw = await stream.readline()
                except ValueError:
                    raw = await stream.read(_STREAM_LIMIT)
                if not raw:
                    break
                text = raw.decode("utf-8", errors="replace")
                chunks.append(text)
                if log_handle:
                    log_handle.write(prefix + text)
                    log_handle.flush()
                if callback:
                    callback(text)

        if input_text is not None and proc.stdin:
            try:
                proc.stdin.write(input_text.encode("utf-8"))
                await proc.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                pass
            proc.stdin.close()

        timed_out = False
        try:
            await asyncio.wait_for(
                asyncio.gather(
                    pump(proc.stdout, stdout_chunks, "", on_line),
                    pump(proc.stderr, stderr_chunks, "[STDERR] ", None),
                    proc.wait(),
                ),
                timeout=timeout / 1000,
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning("[PROC] Timeout after %dms, killing %s (pid=%s)", timeout, command, proc.pid)
            kill_process_tree(proc.pid)
            await proc.wait()
        except asyncio.CancelledError:
            # caller gave up (workflow timeout); do not leave the child behind
            kill_process_tree(proc.pid)
            raise
        finally:
            if log_handle:
                log_handle.close()

        exit_code = proc.returncode if proc.returncode is not None else 1
        if timed_out and exit_code == 0:
            exit_code = 1
        stderr = "".join(stderr_chunks)
        if timed_out:
            stderr += f"\nProcess timed out after {timeout}ms"

        return ProcessResult(
            exit_code=exit_code,
            stdout="".join(stdout_chunks),
            stderr=stderr,
            duration=_elapsed_ms(start),
            timed_out=timed_out,
            log_path=log_file,
        )


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)
