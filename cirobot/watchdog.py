"""
CI Robot Watchdog - heartbeat monitoring, crash triage and capped auto-restart.

States:
    idle -> monitoring -> crash_detected -> monitoring   (restarted, under cap)
                                         -> stopped      (cap reached)

The watchdog consumes EditorEvent values from the manager's queue and publishes
WatchdogEvent values on its own `notifications` queue: timeout, crash, restart,
max_crashes_reached. While suspended (explicit editor control by the daemon)
editor events are ignored and heartbeat checks are skipped.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from cirobot.editor import EVENT_CRASHED, EVENT_READY, EVENT_STOPPED, EditorEvent, EditorProcessManager
from cirobot.log import get_logger
from cirobot.models import CrashReport, utc_now_iso
from cirobot.triage import CrashTriager

logger = get_logger(__name__)

STATE_IDLE = "idle"
STATE_MONITORING = "monitoring"
STATE_CRASH_DETECTED = "crash_detected"
STATE_STOPPED = "stopped"


@dataclass
class WatchdogConfig:
    heartbeat_interval: int = 5000  # ms
    heartbeat_timeout: int = 30000  # ms
    max_crash_count: int = 3
    auto_restart: bool = True
    crash_log_dir: str = ""


@dataclass
class WatchdogEvent:
    kind: str  # timeout, crash, restart, max_crashes_reached
    crash_count: int = 0
    report: Optional[CrashReport] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        data = {"kind": self.kind, "crashCount": self.crash_count, "timestamp": self.timestamp}
        if self.report:
            data["report"] = self.report.to_dict()
        return data


def fallback_crash_report() -> CrashReport:
    return CrashReport(type="UNKNOWN", next_actions=["Check crash logs manually"])


class Watchdog:
    """Supervises an EditorProcessManager"""

    def __init__(self, config: Optional[WatchdogConfig] = None, triager: Optional[CrashTriager] = None):
        self.config = config or WatchdogConfig()
        self.triager = triager
        if self.triager is None and self.config.crash_log_dir:
            self.triager = CrashTriager(self.config.crash_log_dir)

        self.state = STATE_IDLE
        self.crash_count = 0
        self.notifications: asyncio.Queue = asyncio.Queue()
        self.manager: Optional[EditorProcessManager] = None
        self._events: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._timer: Optional[asyncio.Task] = None
        self._last_heartbeat: Optional[float] = None
        self._timeout_reported = False
        self._suspended = False

    def start(self, manager: EditorProcessManager) -> None:
        """Begin monitoring. Must be called from a running event loop."""
        if self.is_active():
            self.stop()

        self.manager = manager
        self.crash_count = 0
        self._last_heartbeat = time.monotonic()
        self._timeout_reported = False
        self._suspended = False
        self.state = STATE_MONITORING

        self._events = manager.subscribe()
        self._consumer = asyncio.create_task(self._consume(self._events))
        self._timer = asyncio.create_task(self._tick())
        logger.info("[WATCHDOG] Monitoring started")

    def stop(self) -> None:
        current = asyncio.current_task() if _loop_running() else None
        for task in (self._consumer, self._timer):
            if task and task is not current and not task.done():
                task.cancel()
        self._consumer = None
        self._timer = None

        if self.manager and self._events:
            self.manager.unsubscribe(self._events)
        self._events = None
        self.manager = None
        if self.state != STATE_IDLE:
            self.state = STATE_STOPPED
        logger.info("[WATCHDOG] Monitoring stopped")

    def is_active(self) -> bool:
        return self.state in (STATE_MONITORING, STATE_CRASH_DETECTED)

    def suspend(self) -> None:
        self._suspended = True
        logger.debug("[WATCHDOG] Suspended")

    def resume(self) -> None:
        """Resume monitoring; editor events raised while suspended are dropped."""
        if self._events:
            while not self._events.empty():
                self._events.get_nowait()
        self._suspended = False
        self._last_heartbeat = time.monotonic()
        self._timeout_reported = False
        logger.debug("[WATCHDOG] Resumed")

    @property
    def suspended(self) -> bool:
        return self._suspended

    def record_heartbeat(self) -> None:
        self._last_heartbeat = time.monotonic()
        self._timeout_reported = False
        if self.manager:
            self.manager.record_heartbeat()

    def time_since_heartbeat(self) -> Optional[int]:
        """Milliseconds since the last heartbeat, None if there is none."""
        if self._last_heartbeat is None:
            return None
        return int((time.monotonic() - self._last_heartbeat) * 1000)

    def reset_crash_count(self) -> None:
        self.crash_count = 0

    def health_check(self) -> Dict[str, Any]:
        editor_running = bool(self.manager and self.manager.is_running())
        elapsed = self.time_since_heartbeat()
        healthy = editor_running and (elapsed is None or elapsed < self.config.heartbeat_timeout)
        return {
            "healthy": healthy,
            "editor_running": editor_running,
            "time_since_heartbeat": elapsed,
            "crash_count": self.crash_count,
        }

    async def check_heartbeat(self) -> bool:
        """One timer tick. Returns True if crash handling was triggered."""
        if self.state != STATE_MONITORING or self._suspended:
            return False
        elapsed = self.time_since_heartbeat()
        if elapsed is None or elapsed <= self.config.heartbeat_timeout:
            return False

        if not self._timeout_reported:
            logger.warning("[WATCHDOG] Heartbeat timeout (%dms)", elapsed)
            self._timeout_reported = True
            self._notify(WatchdogEvent(kind="timeout", crash_count=self.crash_count))

        if self.manager and not self.manager.is_running():
            await self.handle_crash()
            return True
        return False

    async def handle_crash(self) -> None:
        """Triage, notify, then restart unless the crash cap is reached."""
        if self.state == STATE_CRASH_DETECTED:
            return
        self.state = STATE_CRASH_DETECTED
        self.crash_count += 1

        report = None
        if self.triager:
            try:
                report = await asyncio.to_thread(self.triager.triage)
                logger.info("[WATCHDOG] Crash triage: %s", report.type)
            except Exception as e:
                logger.error("[WATCHDOG] Crash triage failed: %s", e)
        if report is None:
            report = fallback_crash_report()

        self._notify(WatchdogEvent(kind="crash", crash_count=self.crash_count, report=report))

        if self.crash_count >= self.config.max_crash_count:
            logger.error("[WATCHDOG] Max crash count reached (%d)", self.crash_count)
            self._notify(WatchdogEvent(kind="max_crashes_reached", crash_count=self.crash_count))
            self.stop()
            return

        if self.config.auto_restart and self.manager:
            logger.warning("[WATCHDOG] Auto-restarting (attempt %d/%d)",
                           self.crash_count, self.config.max_crash_count)
            self._notify(WatchdogEvent(kind="restart", crash_count=self.crash_count))
            try:
                await self.manager.restart()
                self._last_heartbeat = time.monotonic()
                self._timeout_reported = False
            except Exception as e:
                logger.error("[WATCHDOG] Restart failed: %s", e)
        else:
            # wait for a fresh heartbeat before timing out again
            self._last_heartbeat = None

        if self.state == STATE_CRASH_DETECTED:
            self.state = STATE_MONITORING

    def _notify(self, event: WatchdogEvent) -> None:
        self.notifications.put_nowait(event)

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            event: EditorEvent = await queue.get()
            if self._suspended:
                logger.debug("[WATCHDOG] Ignoring %s while suspended", event.kind)
                continue
            if event.kind == EVENT_READY:
                self.record_heartbeat()
            elif event.kind == EVENT_CRASHED:
                logger.warning("[WATCHDOG] Editor crashed with code %s, signal %s", event.exit_code, event.signal)
                await self.handle_crash()
            elif event.kind == EVENT_STOPPED:
                logger.info("[WATCHDOG] Editor stopped")
                self.stop()
            if self._events is not queue:
                return

    async def _tick(self) -> None:
        while self.is_active():
            await asyncio.sleep(self.config.heartbeat_interval / 1000)
            await self.check_heartbeat()


def _loop_running() -> bool:
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return False
    return True


def attach_watchdog(manager: EditorProcessManager, config: Optional[WatchdogConfig] = None) -> Watchdog:
    watchdog = Watchdog(config)
    watchdog.start(manager)
    return watchdog
