"""
CI Robot Automation Tests - run the engine's automation test framework headlessly.

Tests run through the editor command binary with "Automation RunTest <filter>;Quit".
"""
import json
import os
import re
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from cirobot.determinism import HEADLESS_MODE, ROBOT_MODE
from cirobot.log import get_logger
from cirobot.models import TestFailure, TestResult
from cirobot.process import ProcessExecutor
from cirobot.uat import editor_cmd_path, resolve_engine_path

logger = get_logger(__name__)

LIST_TIMEOUT_MS = 120000
_TEST_NAME = re.compile(r"^\s+(.+\.[\w]+)$")


@dataclass
class AutomationTestConfig:
    project_path: str
    filter: str
    artifact_dir: str
    timeout: int = 600000  # ms
    requires_rendering: bool = False
    engine_path: str = ""


def build_command_args(config: AutomationTestConfig, report_path: str) -> List[str]:
    """Editor args for a test run; -NullRHI only when rendering is not needed."""
    args = [
        config.project_path,
        f"-ExecCmds=Automation RunTest {config.filter};Quit",
        f"-ReportExportPath={report_path}",
        "-unattended",
        "-nosplash",
        "-ResumeRunTest",
    ]
    if not config.requires_rendering:
        args.append("-NullRHI")

    profile = ROBOT_MODE if config.requires_rendering else HEADLESS_MODE
    skip = ("nullrhi", "unattended", "nosplash")
    args.extend(a for a in profile.editor_args if not any(s in a.lower() for s in skip))
    return args


async def run_automation_tests(config: AutomationTestConfig,
                               executor: Optional[ProcessExecutor] = None) -> TestResult:
    """
    Run automation tests matching config.filter.

    Returns:
        TestResult; success means every counted test passed and none failed
    """
    start = time.monotonic()
    executor = executor or ProcessExecutor()
    report_path = os.path.join(config.artifact_dir, "automation-report")
    os.makedirs(report_path, exist_ok=True)

    editor = editor_cmd_path(resolve_engine_path(config.engine_path))
    logger.info("[AUTOMATION] Running: %s", config.filter)
    logger.info("[AUTOMATION] Report path: %s", report_path)

    log_path = os.path.join(config.artifact_dir, "automation.log")
    result = await executor.run(
        editor, build_command_args(config, report_path),
        timeout=config.timeout,
        log_file=log_path,
    )
    if result.timed_out:
        logger.warning("[AUTOMATION] Timed out after %dms", config.timeout)

    report = parse_automation_report(report_path)
    return TestResult(
        success=report["passed"] == report["total"] and report["failed"] == 0,
        passed=report["passed"],
        failed=report["failed"],
        skipped=report["skipped"],
        total=report["total"],
        duration=int((time.monotonic() - start) * 1000),
        report=os.path.join(report_path, "index.json"),
        html=os.path.join(report_path, "index.html"),
        logs=[result.log_path] if result.log_path else [],
        failures=report["failures"],
    )


def parse_automation_report(report_path: str) -> Dict[str, object]:
    """Parse index.json (per-test states or summary counts), falling back to log text."""
    counts = {"passed": 0, "failed": 0, "skipped": 0, "total": 0, "failures": []}

    try:
        with open(os.path.join(report_path, "index.json")) as f:
            report = json.load(f)
    except (OSError, ValueError) as e:
        logger.info("[AUTOMATION] Could not parse report: %s", e)
        _parse_log_counts(report_path, counts)
        return counts

    tests = report.get("tests") if isinstance(report, dict) else None
    if isinstance(tests, list):
        for test in tests:
            counts["total"] += 1
            state = test.get("state")
            if state in ("success", "passed"):
                counts["passed"] += 1
            elif state == "skipped":
                counts["skipped"] += 1
            else:
                counts["failed"] += 1
                counts["failures"].append(TestFailure(
                    name=test.get("name") or test.get("testName") or "Unknown",
                    message=test.get("message") or test.get("error") or "Test failed",
                    stack=test.get("stack"),
                ))
    elif isinstance(report, dict) and "passed" in report:
        counts["passed"] = report.get("passed") or 0
        counts["failed"] = report.get("failed") or 0
        counts["skipped"] = report.get("skipped") or 0
        counts["total"] = counts["passed"] + counts["failed"] + counts["skipped"]
    return counts


def _parse_log_counts(report_path: str, counts: Dict[str, object]) -> None:
    try:
        names = sorted(os.listdir(report_path))
    except OSError:
        return
    for name in names:
        if not name.endswith((".log", ".txt")):
            continue
        with open(os.path.join(report_path, name), errors="replace") as f:
            content = f.read()
        passed = re.search(r"(\d+)\s+tests?\s+passed", content, re.IGNORECASE)
        failed = re.search(r"(\d+)\s+tests?\s+failed", content, re.IGNORECASE)
        if passed:
            counts["passed"] = int(passed.group(1))
        if failed:
            counts["failed"] = int(failed.group(1))
        counts["total"] = counts["passed"] + counts["failed"] + counts["skipped"]
        break


async def list_automation_tests(project_path: str, engine_path: str = "",
                                executor: Optional[ProcessExecutor] = None) -> List[str]:
    executor = executor or ProcessExecutor()
    args = [project_path, "-ExecCmds=Automation List;Quit", "-unattended", "-nosplash", "-NullRHI"]
    result = await executor.run(editor_cmd_path(resolve_engine_path(engine_path)), args,
                                timeout=LIST_TIMEOUT_MS)
    return parse_test_list(result.stdout)


def parse_test_list(stdout: str) -> List[str]:
    tests = []
    for line in stdout.split("\n"):
        match = _TEST_NAME.match(line.rstrip("\r"))
        if match:
            tests.append(match.group(1).strip())
    return tests
