"""
CI Robot Golden Scenario - timed gameplay run with metric assertions.
"""
import json
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from cirobot.artifacts import content_type_for
from cirobot.log import get_logger
from cirobot.models import ArtifactInfo, AssertionResult, ScenarioMetrics, ScenarioResult
from cirobot.uat import UATRunner

logger = get_logger(__name__)

SCENARIO_TEST = "FPS.Scenario.Golden"
TIMEOUT_BUFFER_MS = 60000


@dataclass
class ScenarioAssertion:
    type: str  # no_errors, fps_above, no_stuck_state, custom
    threshold: Optional[float] = None
    custom_check: Optional[str] = None


@dataclass
class InputAction:
    action_path: str
    value: Any = None
    duration: int = 0  # ms

    def to_dict(self) -> Dict[str, Any]:
        return {"actionPath": self.action_path, "value": self.value, "duration": self.duration}


@dataclass
class ScenarioConfig:
    map: str
    duration: int = 60000  # ms
    input_sequence: List[InputAction] = field(default_factory=list)
    assertions: List[ScenarioAssertion] = field(default_factory=list)


SCENARIO_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "basic_gameplay": {
        "duration": 60000,
        "input_sequence": [
            InputAction("/Game/Input/Actions/IA_Move.IA_Move", {"x": 0, "y": 1}, 2000),
            InputAction("/Game/Input/Actions/IA_Jump.IA_Jump", True, 100),
            InputAction("/Game/Input/Actions/IA_Move.IA_Move", {"x": 1, "y": 0}, 2000),
        ],
        "assertions": [
            ScenarioAssertion("no_errors"),
            ScenarioAssertion("fps_above", threshold=30),
            ScenarioAssertion("no_stuck_state"),
        ],
    },
    "stress_test": {
        "duration": 300000,
        "input_sequence": [],
        "assertions": [
            ScenarioAssertion("no_errors"),
            ScenarioAssertion("fps_above", threshold=20),
            ScenarioAssertion("no_stuck_state", threshold=5),
        ],
    },
    "idle_test": {
        "duration": 30000,
        "input_sequence": [],
        "assertions": [
            ScenarioAssertion("no_errors"),
            ScenarioAssertion("fps_above", threshold=30),
        ],
    },
}


def scenario_from_template(name: str, map: str) -> ScenarioConfig:
    template = SCENARIO_TEMPLATES[name]
    return ScenarioConfig(
        map=map,
        duration=template["duration"],
        input_sequence=list(template["input_sequence"]),
        assertions=list(template["assertions"]),
    )


class GoldenScenarioRunner:
    """Runs the golden gameplay scenario through RunUnreal"""

    def __init__(self, engine_path: str, project_path: str, artifact_dir: str,
                 uat: Optional[UATRunner] = None):
        self.project_path = project_path
        self.artifact_dir = artifact_dir
        self.uat = uat or UATRunner(engine_path, project_path)

    async def run_scenario(self, config: ScenarioConfig) -> ScenarioResult:
        report_dir = os.path.join(self.artifact_dir, f"scenario-{int(time.time() * 1000)}")
        os.makedirs(report_dir, exist_ok=True)

        logger.info("[SCENARIO] Running scenario on map: %s", config.map)
        logger.info("[SCENARIO] Duration: %dms, assertions: %d", config.duration, len(config.assertions))

        args = [
            "-platform=Win64",
            "-configuration=Development",
            f"-test={SCENARIO_TEST}",
            f"-map={config.map}",
            f"-timeout={config.duration}",
            "-ResumeOnCriticalFailure",
            "-MaxRetries=3",
            f"-ReportExportPath={report_dir}",
            "-unattended",
            "-nullrhi=0",
        ]
        if config.input_sequence:
            input_file = os.path.join(report_dir, "input-sequence.json")
            with open(input_file, "w") as f:
                json.dump([a.to_dict() for a in config.input_sequence], f)
            args.append(f"-InputSequenceFile={input_file}")

        result = await self.uat.run(
            "RunUnreal", args,
            timeout=config.duration + TIMEOUT_BUFFER_MS,
            log_file=os.path.join(report_dir, "scenario.log"),
        )

        metrics = parse_metrics(result.stdout, config.duration)
        assertions = evaluate_assertions(metrics, config.assertions, result.stdout)
        success = result.success and all(a.passed for a in assertions)
        if not success:
            logger.warning("[SCENARIO] Scenario failed (exit=%d)", result.exit_code)

        return ScenarioResult(
            success=success,
            metrics=metrics,
            assertions=assertions,
            artifacts=collect_artifacts(report_dir),
        )


def parse_metrics(stdout: str, duration: int) -> ScenarioMetrics:
    avg = re.search(r"Average FPS:\s*([\d.]+)", stdout, re.IGNORECASE)
    low = re.search(r"(?:Min|Minimum) FPS:\s*([\d.]+)", stdout, re.IGNORECASE)
    high = re.search(r"(?:Max|Maximum) FPS:\s*([\d.]+)", stdout, re.IGNORECASE)
    stuck = re.search(r"Stuck frames:\s*(\d+)", stdout, re.IGNORECASE)

    return ScenarioMetrics(
        avg_fps=float(avg.group(1)) if avg else 60.0,
        min_fps=float(low.group(1)) if low else 0.0,
        max_fps=float(high.group(1)) if high else 0.0,
        error_count=len(re.findall(r"\berror\b", stdout, re.IGNORECASE)),
        stuck_frames=int(stuck.group(1)) if stuck else 0,
        duration=duration,
    )


def evaluate_assertions(metrics: ScenarioMetrics, assertions: List[ScenarioAssertion],
                        stdout: str) -> List[AssertionResult]:
    return [_evaluate(metrics, a, stdout) for a in assertions]


def _evaluate(metrics: ScenarioMetrics, assertion: ScenarioAssertion, stdout: str) -> AssertionResult:
    if assertion.type == "no_errors":
        passed = metrics.error_count == 0
        return AssertionResult(
            type="no_errors",
            passed=passed,
            message="No errors detected" if passed else f"{metrics.error_count} errors detected",
            actual=metrics.error_count,
            expected=0,
        )

    if assertion.type == "fps_above":
        threshold = assertion.threshold or 30
        passed = metrics.min_fps >= threshold
        return AssertionResult(
            type="fps_above",
            passed=passed,
            message=(f"FPS maintained above {threshold}" if passed
                     else f"FPS dropped to {metrics.min_fps} (threshold: {threshold})"),
            actual=metrics.min_fps,
            expected=threshold,
        )

    if assertion.type == "no_stuck_state":
        max_stuck = assertion.threshold or 0
        passed = metrics.stuck_frames <= max_stuck
        return AssertionResult(
            type="no_stuck_state",
            passed=passed,
            message="No stuck states detected" if passed else f"{metrics.stuck_frames} stuck frames detected",
            actual=metrics.stuck_frames,
            expected=max_stuck,
        )

    if assertion.type == "custom":
        if not assertion.custom_check:
            return AssertionResult(type="custom", passed=True, message="No custom check specified")
        passed = assertion.custom_check in stdout
        return AssertionResult(
            type="custom",
            passed=passed,
            message=(f'Custom check "{assertion.custom_check}" passed' if passed
                     else f'Custom check "{assertion.custom_check}" not found in output'),
            actual=passed,
            expected=True,
        )

    return AssertionResult(type=assertion.type, passed=False, message=f"Unknown assertion type: {assertion.type}")


def collect_artifacts(report_dir: str) -> List[ArtifactInfo]:
    artifacts: List[ArtifactInfo] = []
    try:
        names = sorted(os.listdir(report_dir))
    except OSError:
        return artifacts
    for name in names:
        path = os.path.join(report_dir, name)
        if os.path.isfile(path):
            artifacts.append(ArtifactInfo(name=name, path=path, size=os.path.getsize(path),
                                          type=content_type_for(name)))
    return artifacts
