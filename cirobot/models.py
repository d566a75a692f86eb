"""
CI Robot Models - Data classes for run state and results
"""
import random
import string
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import List, Optional, Any, Dict


# Crash types: CPU, GPU, HANG, ASSERT, UNKNOWN
CRASH_TYPES = ("CPU", "GPU", "HANG", "ASSERT", "UNKNOWN")
# GPU error types: DEVICE_LOST, OUT_OF_MEMORY, SHADER, UNKNOWN
GPU_ERROR_TYPES = ("DEVICE_LOST", "OUT_OF_MEMORY", "SHADER", "UNKNOWN")

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_run_id() -> str:
    """Generate a run id: run-{base36 ms timestamp}-{6 random base36 chars}"""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(random.choices(_BASE36, k=6))
    return f"run-{timestamp}-{suffix}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _drop_none(data: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


@dataclass
class ProcessResult:
    """Outcome of one external process invocation"""
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: int = 0  # milliseconds
    timed_out: bool = False
    log_path: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


@dataclass
class ArtifactInfo:
    """A file produced by a run; derived from a directory scan"""
    name: str
    path: str
    size: Optional[int] = None
    type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(asdict(self))


@dataclass
class StepResult:
    type: str
    action: str
    success: bool
    duration: int = 0
    output: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none(asdict(self))


@dataclass
class PhaseResult:
    name: str
    success: bool
    steps: List[StepResult] = field(default_factory=list)
    duration: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "success": self.success,
            "steps": [s.to_dict() for s in self.steps],
            "duration": self.duration,
        }


@dataclass
class WorkflowResult:
    run_id: str
    success: bool
    phases: List[PhaseResult] = field(default_factory=list)
    summary: str = ""
    duration: int = 0
    artifacts: List[ArtifactInfo] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "runId": self.run_id,
            "success": self.success,
            "phases": [p.to_dict() for p in self.phases],
            "summary": self.summary,
            "duration": self.duration,
            "artifacts": [a.to_dict() for a in self.artifacts],
        }
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class SCMAttempt:
    """One isolated unit of SCM change: a branch (git) or a changelist (perforce)"""
    run_id: str
    branch: Optional[str] = None
    changelist: Optional[int] = None
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def label(self) -> str:
        if self.branch:
            return self.branch
        if self.changelist is not None:
            return f"CL {self.changelist}"
        return "(none)"


@dataclass
class SCMCommitResult:
    success: bool
    message: str
    commit_hash: Optional[str] = None
    changelist: Optional[int] = None


@dataclass
class CrashReport:
    type: str = "UNKNOWN"
    callstack: List[str] = field(default_factory=list)
    relevant_logs: List[str] = field(default_factory=list)
    next_actions: List[str] = field(default_factory=list)
    minidump_path: Optional[str] = None
    gpu_crash_dump: Optional[str] = None
    gpu_breadcrumbs: Optional[List[str]] = None
    gpu_error_type: Optional[str] = None
    suggested_cause: Optional[str] = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "type": self.type,
            "callstack": self.callstack,
            "relevantLogs": self.relevant_logs,
            "nextActions": self.next_actions,
            "minidumpPath": self.minidump_path,
            "gpuCrashDump": self.gpu_crash_dump,
            "gpuBreadcrumbs": self.gpu_breadcrumbs,
            "gpuErrorType": self.gpu_error_type,
            "suggestedCause": self.suggested_cause,
            "timestamp": self.timestamp,
        })


@dataclass
class EditorStatus:
    running: bool
    connected: bool = False
    pid: Optional[int] = None
    uptime: Optional[float] = None  # seconds
    last_heartbeat: Optional[str] = None
    cpu_percent: float = 0.0
    memory_mb: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "running": self.running,
            "connected": self.connected,
            "pid": self.pid,
            "uptime": self.uptime,
            "lastHeartbeat": self.last_heartbeat,
            "cpuPercent": self.cpu_percent,
            "memoryMb": self.memory_mb,
        })


@dataclass
class DaemonStatus:
    running: bool
    started_at: str
    uptime: float
    editor: EditorStatus
    workflows_executed: int = 0
    workflows_succeeded: int = 0
    workflows_failed: int = 0
    current_workflow: Optional[str] = None
    security_profile: str = "dev"

    def to_dict(self) -> Dict[str, Any]:
        return _drop_none({
            "running": self.running,
            "startedAt": self.started_at,
            "uptime": self.uptime,
            "editor": self.editor.to_dict(),
            "workflowsExecuted": self.workflows_executed,
            "workflowsSucceeded": self.workflows_succeeded,
            "workflowsFailed": self.workflows_failed,
            "currentWorkflow": self.current_workflow,
            "securityProfile": self.security_profile,
        })


# ---------------------------------------------------------------------------
# Tool runner results
# ---------------------------------------------------------------------------

@dataclass
class TestFailure:
    __test__ = False  # not a pytest class

    name: str
    message: str
    stack: Optional[str] = None
    screenshot: Optional[str] = None


@dataclass
class TestResult:
    __test__ = False

    success: bool
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
    duration: int = 0
    report: Optional[str] = None
    html: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    failures: List[TestFailure] = field(default_factory=list)


@dataclass
class ScenarioMetrics:
    avg_fps: float = 0.0
    min_fps: float = 0.0
    max_fps: float = 0.0
    error_count: int = 0
    stuck_frames: int = 0
    duration: int = 0


@dataclass
class GauntletResult(TestResult):
    test_name: str = ""
    platform: str = "Win64"
    configuration: str = "Development"
    retry_count: int = 0
    metrics: Optional[ScenarioMetrics] = None


@dataclass
class NodeResult:
    name: str
    success: bool
    duration: int = 0
    output: str = ""


@dataclass
class BuildGraphResult:
    success: bool
    exit_code: int
    nodes: List[NodeResult] = field(default_factory=list)
    artifacts: List[ArtifactInfo] = field(default_factory=list)
    duration: int = 0
    stdout: str = ""
    stderr: str = ""


@dataclass
class BuildGraphValidation:
    valid: bool
    available_nodes: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class ImageDifference:
    name: str
    difference: float
    threshold: float
    passed: bool
    diff_image_path: Optional[str] = None


@dataclass
class VisualComparisonResult:
    success: bool
    max_difference: float = 0.0
    differences: List[ImageDifference] = field(default_factory=list)
    baseline_dir: str = ""
    current_dir: str = ""
    diff_images: List[str] = field(default_factory=list)
    report: str = ""


@dataclass
class BaselineResult:
    baseline_path: str
    screenshot_count: int = 0
    screenshots: List[str] = field(default_factory=list)


@dataclass
class AssertionResult:
    type: str
    passed: bool
    message: str
    actual: Any = None
    expected: Any = None


@dataclass
class ScenarioResult:
    success: bool
    metrics: ScenarioMetrics
    assertions: List[AssertionResult] = field(default_factory=list)
    artifacts: List[ArtifactInfo] = field(default_factory=list)


@dataclass
class PolicyViolation:
    rule: str
    attempted: str
    allowed: List[str] = field(default_factory=list)
