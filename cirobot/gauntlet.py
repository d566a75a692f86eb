"""
CI Robot Gauntlet Runner - gameplay test tiers (smoke / full / stress) with per-test retry.
"""
import os
import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional

from cirobot.log import get_logger
from cirobot.models import GauntletResult, ProcessResult, ScenarioMetrics, TestFailure
from cirobot.uat import UATRunner

logger = get_logger(__name__)

MAX_REPORTED_FAILURES = 10


@dataclass
class GauntletTestConfig:
    test: str
    platform: Optional[str] = None
    configuration: Optional[str] = None
    timeout: Optional[int] = None  # ms
    max_retries: int = 0
    map: Optional[str] = None
    additional_args: List[str] = field(default_factory=list)
    report_dir: Optional[str] = None


TEST_TIERS: Dict[str, List[GauntletTestConfig]] = {
    "smoke": [
        GauntletTestConfig(test="FPS.Smoke.Startup", timeout=60000),
        GauntletTestConfig(test="FPS.Smoke.LoadMap", timeout=120000),
    ],
    "full": [
        GauntletTestConfig(test="FPS.Gameplay.Movement", timeout=300000),
        GauntletTestConfig(test="FPS.Gameplay.Combat", timeout=300000),
        GauntletTestConfig(test="FPS.Visual.Baseline", timeout=300000),
    ],
    "stress": [
        GauntletTestConfig(test="FPS.Stress.ManyActors", timeout=600000),
        GauntletTestConfig(test="FPS.Stress.LongDuration", timeout=1800000),
    ],
}


class GauntletRunner:
    """Runs Gauntlet tests through RunUnreal"""

    default_platform = "Win64"
    default_configuration = "Development"

    def __init__(self, engine_path: str, project_path: str, uat: Optional[UATRunner] = None):
        self.project_path = project_path
        self.uat = uat or UATRunner(engine_path, project_path)

    async def run_test(self, config: GauntletTestConfig) -> GauntletResult:
        """Run one test, retrying up to config.max_retries times on failure."""
        platform = config.platform or self.default_platform
        configuration = config.configuration or self.default_configuration
        max_retries = config.max_retries or 0

        result: Optional[GauntletResult] = None
        retry_count = 0
        while retry_count <= max_retries:
            logger.info("[GAUNTLET] Running test: %s (attempt %d/%d)",
                        config.test, retry_count + 1, max_retries + 1)

            log_file = None
            if config.report_dir:
                log_file = os.path.join(config.report_dir, f"{config.test}_{retry_count}.log")

            uat_result = await self.uat.run(
                "RunUnreal",
                self.build_test_args(config, platform, configuration),
                timeout=config.timeout or 600000,
                log_file=log_file,
            )
            result = parse_gauntlet_result(config.test, uat_result, platform, configuration, retry_count)
            if result.success:
                logger.info("[GAUNTLET] Test %s PASSED", config.test)
                return result

            retry_count += 1
            if retry_count <= max_retries:
                logger.warning("[GAUNTLET] Test %s FAILED, retrying...", config.test)

        logger.error("[GAUNTLET] Test %s FAILED after %d attempts", config.test, retry_count)
        return result

    def build_test_args(self, config: GauntletTestConfig, platform: str, configuration: str) -> List[str]:
        args = [
            f"-test={config.test}",
            f"-platform={platform}",
            f"-configuration={configuration}",
            "-unattended",
            "-nullrhi=0",  # gameplay tests render
            "-ResumeOnCriticalFailure",
        ]
        if config.map:
            args.append(f"-map={config.map}")
        if config.max_retries:
            args.append(f"-MaxRetries={config.max_retries}")
        if config.report_dir:
            args.append(f"-ReportExportPath={config.report_dir}")
        args.extend(config.additional_args)
        return args

    async def run_tier(self, tier: str, report_dir: Optional[str] = None) -> List[GauntletResult]:
        """Run every test of a tier in order. A smoke failure aborts the tier."""
        tests = TEST_TIERS[tier]
        logger.info("[GAUNTLET] Running %s tier: %d tests", tier, len(tests))

        results = []
        for test_config in tests:
            config = replace(test_config, report_dir=report_dir or test_config.report_dir)
            result = await self.run_test(config)
            results.append(result)
            if tier == "smoke" and not result.success:
                logger.error("[GAUNTLET] Smoke test failed, aborting tier")
                break
        return results

    async def run_all_tiers(self, report_dir: Optional[str] = None) -> Dict[str, object]:
        """smoke -> full -> stress, each gated on the previous tier passing.

        Stress results are reported but do not affect overall_success.
        """
        outcome = {"smoke": [], "full": [], "stress": [], "overall_success": False}

        outcome["smoke"] = await self.run_tier("smoke", report_dir)
        if not all(r.success for r in outcome["smoke"]):
            return outcome

        outcome["full"] = await self.run_tier("full", report_dir)
        if not all(r.success for r in outcome["full"]):
            return outcome

        outcome["stress"] = await self.run_tier("stress", report_dir)
        outcome["overall_success"] = True
        return outcome


def parse_gauntlet_result(test_name: str, uat_result: ProcessResult, platform: str,
                          configuration: str, retry_count: int) -> GauntletResult:
    stdout = uat_result.stdout
    pass_match = re.search(r"(\d+) test\(s\) passed", stdout, re.IGNORECASE)
    fail_match = re.search(r"(\d+) test\(s\) failed", stdout, re.IGNORECASE)
    skip_match = re.search(r"(\d+) test\(s\) skipped", stdout, re.IGNORECASE)

    passed = int(pass_match.group(1)) if pass_match else (1 if uat_result.success else 0)
    failed = int(fail_match.group(1)) if fail_match else (0 if uat_result.success else 1)
    skipped = int(skip_match.group(1)) if skip_match else 0

    return GauntletResult(
        success=uat_result.success,
        passed=passed,
        failed=failed,
        skipped=skipped,
        total=passed + failed + skipped,
        duration=uat_result.duration,
        logs=[uat_result.log_path] if uat_result.log_path else [],
        failures=parse_failures(stdout, uat_result.stderr),
        test_name=test_name,
        platform=platform,
        configuration=configuration,
        retry_count=retry_count,
        metrics=parse_metrics(stdout),
    )


def parse_metrics(stdout: str) -> Optional[ScenarioMetrics]:
    avg = re.search(r"Average FPS:\s*([\d.]+)", stdout, re.IGNORECASE)
    low = re.search(r"Minimum FPS:\s*([\d.]+)", stdout, re.IGNORECASE)
    high = re.search(r"Maximum FPS:\s*([\d.]+)", stdout, re.IGNORECASE)
    if not (avg or low):
        return None
    return ScenarioMetrics(
        avg_fps=float(avg.group(1)) if avg else 0.0,
        min_fps=float(low.group(1)) if low else 0.0,
        max_fps=float(high.group(1)) if high else 0.0,
        error_count=len(re.findall(r"error", stdout, re.IGNORECASE)),
    )


def parse_failures(stdout: str, stderr: str) -> List[TestFailure]:
    lines = (stdout + "\n" + stderr).split("\n")
    matches = [
        line.strip() for line in lines
        if "failed" in line.lower() or "error:" in line.lower() or "assertion" in line.lower()
    ]
    return [TestFailure(name="TestFailure", message=m) for m in matches[:MAX_REPORTED_FAILURES]]
