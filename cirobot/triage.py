"""
CI Robot Crash Triage - classify a crash directory and suggest next actions.

Classification order, first match wins:
    GPU patterns -> ASSERT patterns -> HANG patterns -> minidump present (CPU) -> UNKNOWN

CPU callstacks are rarely useful for GPU crashes, so GPU reports carry
breadcrumbs and a GPU error subtype instead. Minidumps are never decoded here;
the report only points at the dump and the external tools that can read it.
"""
import os
from typing import List, Optional

from cirobot.log import get_logger
from cirobot.models import CrashReport

logger = get_logger(__name__)

MAX_RELEVANT_LINES = 50
MAX_FORMATTED_FRAMES = 20

GPU_CRASH_PATTERNS = (
    "GPU crashed",
    "D3D Device Lost",
    "DXGI_ERROR",
    "GPU hang",
    "TDR",
    "Timeout Detection and Recovery",
    "VK_ERROR_DEVICE_LOST",
    "GPU Breadcrumb",
    "DXGI_ERROR_DEVICE_REMOVED",
    "DXGI_ERROR_DEVICE_HUNG",
    "DXGI_ERROR_DEVICE_RESET",
)

ASSERT_PATTERNS = (
    "Assertion failed",
    "check failed",
    "ensure failed",
    "Fatal error",
    "Unhandled Exception",
)

HANG_PATTERNS = ("hang", "deadlock", "not responding")

RELEVANT_KEYWORDS = ("error", "fatal", "crash", "exception", "assert", "failed", "gpu", "d3d", "dxgi")

GPU_NEXT_ACTIONS = [
    "Enable GPU crash debugging: r.GPUCrashDebugging=1",
    "Check shader compilation errors in log",
    "Verify GPU memory usage (VRAM exhaustion?)",
    "Test with -d3ddebug for D3D validation",
    "Check driver version and stability",
]

# gpu error type -> (hint placed first, hints placed last)
GPU_HINTS = {
    "DEVICE_LOST": (
        "D3D Device Lost - often driver timeout (TDR)",
        ["Consider increasing TDR timeout in registry", "Check for infinite shader loops"],
    ),
    "OUT_OF_MEMORY": (
        "GPU out of memory - reduce texture/mesh quality",
        ["Profile VRAM usage with RenderDoc or PIX", "Check for texture streaming issues"],
    ),
    "SHADER": (
        "Shader error - check material/shader code",
        ["Validate shader with FXC/DXC compiler", "Check for shader permutation explosions"],
    ),
}

COMMON_NEXT_ACTIONS = [
    "Check UE crash reporter uploads at crashreporter.epicgames.com",
    "Review Saved/Logs/ for additional context",
]


class CrashTriager:
    """Analyzes crash directories"""

    def __init__(self, crash_dir: str = ""):
        self.crash_dir = crash_dir

    def triage(self, crash_dir: Optional[str] = None) -> CrashReport:
        """
        Triage a crash directory. Never raises: internal failures leave the
        report UNKNOWN with a "Triage error" entry in next_actions.
        """
        directory = crash_dir or self.crash_dir
        report = CrashReport()

        try:
            logs = read_logs(directory)
            report.relevant_logs = extract_relevant_lines(logs)
            joined = "\n".join(logs).lower()

            if _contains_any(joined, GPU_CRASH_PATTERNS):
                report.type = "GPU"
                self._triage_gpu(directory, logs, joined, report)
            elif _contains_any(joined, ASSERT_PATTERNS):
                report.type = "ASSERT"
                report.suggested_cause = extract_assert_message(logs)
                report.next_actions = [
                    "Check assert condition in source code",
                    "Review stack trace for context",
                    "Check recent code changes affecting this area",
                ]
                report.callstack = extract_callstack(logs)
            elif _contains_any(joined, HANG_PATTERNS):
                report.type = "HANG"
                report.suggested_cause = "Application hang detected (possible deadlock or infinite loop)"
                report.next_actions = [
                    "Check for deadlocks in threading code",
                    "Look for infinite loops in recent changes",
                    "Profile CPU usage to find hotspots",
                    "Check for blocking I/O operations",
                ]
            else:
                minidump = find_file(directory, lambda f: f.endswith((".dmp", ".mdmp")))
                if minidump:
                    report.type = "CPU"
                    report.minidump_path = minidump
                    report.callstack = minidump_instructions(minidump)
                    report.next_actions = [
                        "Analyze callstack for null pointer dereference",
                        "Check for memory corruption",
                        "Review recent code changes",
                        "Run with AddressSanitizer if reproducible",
                    ]

            report.next_actions.extend(COMMON_NEXT_ACTIONS)
        except Exception as e:
            logger.error("[TRIAGE] Triage of %s failed: %s", directory, e)
            report.next_actions.append(f"Triage error: {e}")

        logger.info("[TRIAGE] %s classified as %s", directory, report.type)
        return report

    def _triage_gpu(self, directory: str, logs: List[str], joined: str, report: CrashReport) -> None:
        report.suggested_cause = "GPU crash - CPU callstack may not be useful"
        report.gpu_crash_dump = find_file(
            directory, lambda f: "gpu" in f or "d3d" in f or f.endswith(".gpudmp"))
        report.gpu_breadcrumbs = [
            line.strip() for line in logs
            if "breadcrumb" in line.lower() or "gpu marker" in line.lower()
        ]
        report.gpu_error_type = classify_gpu_error(joined)

        actions = list(GPU_NEXT_ACTIONS)
        if report.gpu_error_type in GPU_HINTS:
            first, last = GPU_HINTS[report.gpu_error_type]
            actions = [first] + actions + last
        report.next_actions = actions


def classify_gpu_error(joined_lower: str) -> str:
    if ("dxgi_error_device_removed" in joined_lower or "vk_error_device_lost" in joined_lower
            or "device lost" in joined_lower):
        return "DEVICE_LOST"
    if "out of memory" in joined_lower or "dxgi_error_device_hung" in joined_lower or "vram" in joined_lower:
        return "OUT_OF_MEMORY"
    if "shader" in joined_lower and ("error" in joined_lower or "failed" in joined_lower):
        return "SHADER"
    return "UNKNOWN"


def read_logs(directory: str) -> List[str]:
    """All lines of the *.log / *.txt files in a directory; missing directory gives []"""
    lines: List[str] = []
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return lines
    for name in names:
        if name.endswith((".log", ".txt")):
            with open(os.path.join(directory, name), encoding="utf-8", errors="replace") as f:
                lines.extend(f.read().split("\n"))
    return lines


def extract_relevant_lines(logs: List[str]) -> List[str]:
    relevant = [line.strip() for line in logs if _contains_any(line.lower(), RELEVANT_KEYWORDS)]
    return relevant[-MAX_RELEVANT_LINES:]


def extract_callstack(logs: List[str]) -> List[str]:
    callstack: List[str] = []
    in_callstack = False
    for line in logs:
        if "Call stack" in line or "Stack trace" in line:
            in_callstack = True
            continue
        if in_callstack:
            if not line.strip() or "---" in line:
                in_callstack = False
                continue
            callstack.append(line.strip())
    return callstack


def extract_assert_message(logs: List[str]) -> str:
    for line in logs:
        lower = line.lower()
        if "assert" in lower or "check failed" in lower:
            return line.strip()
    return "Assert condition not found in logs"


def minidump_instructions(dump_path: str) -> List[str]:
    return [
        f"Minidump found at: {dump_path}",
        "Use WinDbg or Visual Studio to analyze:",
        f'  windbg -z "{dump_path}"',
        "Or use minidump-stackwalk with symbols",
    ]


def find_file(directory: str, predicate) -> Optional[str]:
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return None
    for name in names:
        if predicate(name):
            return os.path.join(directory, name)
    return None


def _contains_any(text_lower: str, patterns) -> bool:
    return any(p.lower() in text_lower for p in patterns)


def triage_crash(crash_dir: str) -> CrashReport:
    return CrashTriager(crash_dir).triage()


def format_crash_report(report: CrashReport) -> str:
    """Human-readable report text"""
    lines = [
        "=== CRASH TRIAGE REPORT ===",
        f"Type: {report.type}",
        f"Timestamp: {report.timestamp or 'Unknown'}",
        "",
    ]
    if report.suggested_cause:
        lines += [f"Suggested Cause: {report.suggested_cause}", ""]
    if report.gpu_error_type and report.gpu_error_type != "UNKNOWN":
        lines += [f"GPU Error Type: {report.gpu_error_type}", ""]
    if report.callstack:
        lines.append("Callstack:")
        lines += [f"  {frame}" for frame in report.callstack[:MAX_FORMATTED_FRAMES]]
        lines.append("")
    if report.gpu_breadcrumbs:
        lines.append("GPU Breadcrumbs:")
        lines += [f"  {crumb}" for crumb in report.gpu_breadcrumbs]
        lines.append("")
    lines.append("Next Actions:")
    lines += [f"  - {action}" for action in report.next_actions]
    return "\n".join(lines)
