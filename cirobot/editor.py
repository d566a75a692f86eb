"""
CI Robot Editor Process Manager - owns the single supervised editor process.

Lifecycle notifications are EditorEvent values pushed to every subscribed
asyncio.Queue: started, ready, stopped, crashed. The exit of a process is
observed exactly once and produces exactly one stopped/crashed event.

spawn, shutdown and restart are serialised by an asyncio.Lock; a second spawn
while a process is owned raises EditorAlreadyRunningError.
"""
import asyncio
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

import psutil

from cirobot.determinism import DeterminismManager
from cirobot.log import get_logger
from cirobot.models import EditorStatus, utc_now_iso
from cirobot.process import (
    EXIT_CRASHED, EXIT_STOPPED, ExitStatus, classify_exit, kill_process_tree, split_returncode,
)
from cirobot.uat import editor_binary_dir, resolve_engine_path

logger = get_logger(__name__)

READY_MARKERS = ("MCP Automation Bridge ready", "WebSocket server listening")
DEFAULT_GRACE_MS = 30000
DEFAULT_READY_TIMEOUT_MS = 60000
KILL_WAIT_SECONDS = 10

EVENT_STARTED = "started"
EVENT_READY = "ready"
EVENT_STOPPED = "stopped"
EVENT_CRASHED = "crashed"


class EditorAlreadyRunningError(RuntimeError):
    pass


@dataclass
class EditorEvent:
    kind: str  # started, ready, stopped, crashed
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    signal: Optional[int] = None
    timestamp: str = field(default_factory=utc_now_iso)


@dataclass
class EditorConfig:
    project_path: str
    engine_path: str = ""
    additional_args: List[str] = field(default_factory=list)
    timeout: Optional[int] = None  # graceful shutdown grace, ms
    determinism_profile: Optional[str] = None
    executable: Optional[str] = None  # overrides the engine's editor binary


def editor_executable(engine_path: str) -> str:
    name = "UnrealEditor.exe" if sys.platform == "win32" else "UnrealEditor"
    return os.path.join(editor_binary_dir(resolve_engine_path(engine_path)), name)


class EditorProcessManager:
    """Spawn, readiness, graceful shutdown, force kill and restart of the editor"""

    def __init__(self, config: EditorConfig,
                 quit_handler: Optional[Callable[[bool], Awaitable[None]]] = None):
        """
        Args:
            config: Editor launch configuration
            quit_handler: Optional coroutine asking the editor to quit (arg: save);
                          without one, shutdown sends a terminate signal
        """
        self.config = config
        self.quit_handler = quit_handler
        self.determinism = DeterminismManager(config.project_path)

        self._proc: Optional[asyncio.subprocess.Process] = None
        self._lock = asyncio.Lock()
        self._subscribers: List[asyncio.Queue] = []
        self._ready = asyncio.Event()
        self._exit_future: Optional[asyncio.Future] = None
        self._watch_task: Optional[asyncio.Task] = None
        self._kill_requested = False
        self._stop_requested = False
        self._connected = False
        self._started_at: Optional[float] = None
        self.last_heartbeat: Optional[str] = None
        self.last_exit: Optional[ExitStatus] = None
        self.last_spawn_args: List[str] = []

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    def _emit(self, event: EditorEvent) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(event)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid if self._proc else None

    def is_running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def spawn(self, additional_args: Optional[List[str]] = None) -> int:
        """Start the editor and return its pid.

        Raises:
            EditorAlreadyRunningError: a process is already owned
            OSError: the executable could not be started
        """
        async with self._lock:
            return await self._spawn_locked(additional_args or [])

    async def _spawn_locked(self, additional_args: List[str]) -> int:
        if self._proc is not None:
            raise EditorAlreadyRunningError("Editor already running. Call shutdown() first.")
        self.last_spawn_args = list(additional_args)

        executable = self.config.executable or editor_executable(self.config.engine_path)
        args = [self.config.project_path, *self.config.additional_args, *additional_args]
        if self.config.determinism_profile:
            args.extend(self.determinism.apply_profile(self.config.determinism_profile))

        logger.info("[EDITOR] Starting: %s", executable)
        logger.debug("[EDITOR] Args: %s", " ".join(args))

        proc = await asyncio.create_subprocess_exec(
            executable, *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        self._proc = proc
        self._started_at = time.monotonic()
        self._connected = False
        self._kill_requested = False
        self._stop_requested = False
        self._ready = asyncio.Event()
        self._exit_future = asyncio.get_running_loop().create_future()
        self._watch_task = asyncio.create_task(self._watch(proc, self._exit_future))

        logger.info("[EDITOR] Started pid=%d", proc.pid)
        self._emit(EditorEvent(kind=EVENT_STARTED, pid=proc.pid))
        return proc.pid

    async def _watch(self, proc: asyncio.subprocess.Process, exit_future: asyncio.Future) -> None:
        """Scan output for the ready marker, then observe the exit once."""

        async def read_stdout():
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace")
                if not self._connected and any(m in text for m in READY_MARKERS):
                    self._connected = True
                    self._ready.set()
                    logger.info("[EDITOR] Ready (pid=%d)", proc.pid)
                    self._emit(EditorEvent(kind=EVENT_READY, pid=proc.pid))

        async def read_stderr():
            while True:
                line = await proc.stderr.readline()
                if not line:
                    break
                logger.debug("[EDITOR] stderr: %s", line.decode("utf-8", errors="replace").rstrip())

        await asyncio.gather(read_stdout(), read_stderr())
        returncode = await proc.wait()

        exit_code, signal = split_returncode(returncode)
        kind = classify_exit(exit_code, signal, self._kill_requested)
        if kind == EXIT_CRASHED and self._stop_requested:
            kind = EXIT_STOPPED
        status = ExitStatus(exit_code=exit_code, signal=signal, kind=kind)
        logger.info("[EDITOR] Process %d exited (code=%s, signal=%s, %s)", proc.pid, exit_code, signal, kind)

        if self._proc is proc:
            self._proc = None
            self._connected = False
            self._started_at = None
        self.last_exit = status
        if not exit_future.done():
            exit_future.set_result(status)

        event_kind = EVENT_CRASHED if kind == EXIT_CRASHED else EVENT_STOPPED
        self._emit(EditorEvent(kind=event_kind, pid=proc.pid, exit_code=exit_code, signal=signal))

    async def wait_for_exit(self) -> Optional[ExitStatus]:
        """Wait for the current process to exit; returns the last exit when none is running."""
        if self._exit_future is None:
            return self.last_exit
        return await asyncio.shield(self._exit_future)

    async def wait_for_ready(self, timeout: int = DEFAULT_READY_TIMEOUT_MS) -> bool:
        """True once a ready marker was seen; False on timeout or if the process exits first."""
        if self._connected:
            return True
        if self._proc is None or self._exit_future is None:
            return False

        ready_task = asyncio.create_task(self._ready.wait())
        try:
            await asyncio.wait({ready_task, self._exit_future}, timeout=timeout / 1000,
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            ready_task.cancel()
        return self._connected

    async def shutdown(self, save: bool = True) -> bool:
        """Graceful stop; force kill after the grace period.

        Returns:
            True if the process stopped on its own, False if it had to be killed
        """
        async with self._lock:
            return await self._shutdown_locked(save)

    async def _shutdown_locked(self, save: bool) -> bool:
        proc = self._proc
        if proc is None or self._exit_future is None:
            return True

        logger.info("[EDITOR] Requesting graceful shutdown (save=%s)", save)
        self._stop_requested = True
        if self.quit_handler:
            try:
                await self.quit_handler(save)
            except Exception as e:
                logger.warning("[EDITOR] Quit request failed: %s", e)
        else:
            try:
                proc.terminate()
            except ProcessLookupError:
                pass

        grace = (self.config.timeout or DEFAULT_GRACE_MS) / 1000
        try:
            await asyncio.wait_for(asyncio.shield(self._exit_future), timeout=grace)
            return True
        except asyncio.TimeoutError:
            logger.warning("[EDITOR] Graceful shutdown timeout, force killing")
            await self.kill()
            return False

    async def kill(self) -> None:
        """Force kill the process tree and wait for the exit to be observed."""
        proc = self._proc
        if proc is None:
            return
        logger.info("[EDITOR] Force killing editor process %d", proc.pid)
        self._kill_requested = True
        kill_process_tree(proc.pid)
        if self._exit_future is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._exit_future), timeout=KILL_WAIT_SECONDS)
            except asyncio.TimeoutError:
                logger.error("[EDITOR] Process %d did not exit after kill", proc.pid)

    async def restart(self, additional_args: Optional[List[str]] = None) -> int:
        """Shut down if running and spawn again. None reuses the args of the last spawn."""
        async with self._lock:
            if self.is_running():
                await self._shutdown_locked(True)
            args = self.last_spawn_args if additional_args is None else additional_args
            return await self._spawn_locked(list(args))

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def record_heartbeat(self) -> None:
        self.last_heartbeat = utc_now_iso()

    def get_status(self) -> EditorStatus:
        status = EditorStatus(
            running=self.is_running(),
            connected=self._connected,
            pid=self.pid,
            uptime=round(time.monotonic() - self._started_at, 3) if self._started_at else None,
            last_heartbeat=self.last_heartbeat,
        )
        if status.running and status.pid:
            try:
                p = psutil.Process(status.pid)
                status.cpu_percent = p.cpu_percent(interval=None)
                status.memory_mb = round(p.memory_info().rss / (1024 * 1024), 1)
            except psutil.Error:
                pass
        return status


def create_robot_mode_editor(project_path: str, engine_path: str = "",
                             additional_args: Optional[List[str]] = None) -> EditorProcessManager:
    return EditorProcessManager(EditorConfig(
        project_path=project_path,
        engine_path=engine_path,
        determinism_profile="robot",
        additional_args=list(additional_args or []),
    ))
