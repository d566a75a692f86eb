"""
CI Robot Visual Regression - capture screenshot baselines and compare against them.

Rendering must stay on for these runs, so the VISUAL_TEST_MODE profile is used
and -NullRHI is never passed.
"""
import json
import os
import shutil
from typing import Dict, List, Optional, Tuple

from cirobot.determinism import VISUAL_TEST_MODE
from cirobot.log import get_logger
from cirobot.models import BaselineResult, ImageDifference, ProcessResult, VisualComparisonResult
from cirobot.process import ProcessExecutor
from cirobot.uat import editor_cmd_path, resolve_engine_path

logger = get_logger(__name__)

DEFAULT_THRESHOLD = 0.01
CAPTURE_TIMEOUT_MS = 600000
SCREENSHOT_EXTENSIONS = (".png", ".jpg", ".bmp")


class VisualRegressionRunner:
    """Screenshot baseline capture and comparison"""

    def __init__(
        self,
        project_path: str,
        engine_path: str,
        baseline_dir: str,
        artifact_dir: str,
        comparison_threshold: Optional[float] = None,
        executor: Optional[ProcessExecutor] = None,
    ):
        self.project_path = project_path
        self.engine_path = resolve_engine_path(engine_path)
        self.baseline_dir = baseline_dir
        self.artifact_dir = artifact_dir
        self.comparison_threshold = DEFAULT_THRESHOLD if comparison_threshold is None else comparison_threshold
        self.executor = executor or ProcessExecutor()

    async def capture_baseline(self, map: str, test_suite: str,
                               resolution: Tuple[int, int] = (1920, 1080)) -> BaselineResult:
        os.makedirs(self.baseline_dir, exist_ok=True)
        width, height = resolution
        args = [
            self.project_path,
            f"-ExecCmds=Automation RunTest {test_suite};Quit",
            f"-Map={map}",
            f"-ScreenshotFolder={self.baseline_dir}",
            f"-ResX={width}",
            f"-ResY={height}",
            "-unattended",
            "-nosplash",
            *VISUAL_TEST_MODE.editor_args,
        ]

        logger.info("[VISUAL] Capturing baseline for: %s", test_suite)
        logger.info("[VISUAL] Resolution: %dx%d", width, height)
        logger.info("[VISUAL] Output: %s", self.baseline_dir)

        await self._run_editor(args)
        screenshots = list_screenshots(self.baseline_dir)
        return BaselineResult(
            baseline_path=self.baseline_dir,
            screenshot_count=len(screenshots),
            screenshots=screenshots,
        )

    async def compare(self, map: str, test_suite: str, global_threshold: Optional[float] = None,
                      per_image: Optional[Dict[str, float]] = None) -> VisualComparisonResult:
        """
        Run the suite against the baseline and evaluate per-image differences.

        success is max_difference < global threshold; each image additionally
        passes when its difference is <= its own threshold.
        """
        current_dir = os.path.join(self.artifact_dir, "current-screenshots")
        report_dir = os.path.join(self.artifact_dir, "visual-report")
        os.makedirs(current_dir, exist_ok=True)
        os.makedirs(report_dir, exist_ok=True)

        args = [
            self.project_path,
            f"-ExecCmds=Automation RunTest {test_suite};Quit",
            f"-Map={map}",
            f"-ScreenshotFolder={current_dir}",
            f"-ScreenshotComparisonFolder={self.baseline_dir}",
            f"-ReportExportPath={report_dir}",
            "-unattended",
            "-nosplash",
            *VISUAL_TEST_MODE.editor_args,
        ]

        logger.info("[VISUAL] Comparing against baseline")
        await self._run_editor(args)

        threshold = self.comparison_threshold if global_threshold is None else global_threshold
        per_image = per_image or {}
        differences: List[ImageDifference] = []
        max_difference = 0.0

        for name, diff in self.parse_comparison_report(report_dir).items():
            image_threshold = per_image.get(name, threshold)
            max_difference = max(max_difference, diff)
            differences.append(ImageDifference(
                name=name,
                difference=diff,
                threshold=image_threshold,
                passed=diff <= image_threshold,
                diff_image_path=os.path.join(report_dir, f"diff_{name}"),
            ))

        return VisualComparisonResult(
            success=max_difference < threshold,
            max_difference=max_difference,
            differences=differences,
            baseline_dir=self.baseline_dir,
            current_dir=current_dir,
            diff_images=[d.diff_image_path for d in differences if not d.passed and d.diff_image_path],
            report=os.path.join(report_dir, "index.html"),
        )

    async def update_baseline(self, map: str, test_suite: str,
                              resolution: Tuple[int, int] = (1920, 1080)) -> BaselineResult:
        """Drop the current baseline and capture a fresh one."""
        shutil.rmtree(self.baseline_dir, ignore_errors=True)
        return await self.capture_baseline(map, test_suite, resolution)

    def parse_comparison_report(self, report_dir: str) -> Dict[str, float]:
        """Read ComparisonReport.json; without one every baseline image counts as identical."""
        report_path = os.path.join(report_dir, "ComparisonReport.json")
        try:
            with open(report_path) as f:
                report = json.load(f)
        except (OSError, ValueError):
            return {name: 0.0 for name in list_screenshots(self.baseline_dir)}

        differences: Dict[str, float] = {}
        for comp in report.get("comparisons") or []:
            diff = comp.get("difference", comp.get("pixelDifference", 0)) or 0
            differences[comp.get("name") or comp.get("imageName")] = float(diff)
        return differences

    async def _run_editor(self, args: List[str]) -> ProcessResult:
        result = await self.executor.run(editor_cmd_path(self.engine_path), args, timeout=CAPTURE_TIMEOUT_MS)
        if not result.success:
            logger.warning("[VISUAL] Editor exited with code %d", result.exit_code)
        return result


def list_screenshots(directory: str) -> List[str]:
    try:
        names = os.listdir(directory)
    except OSError:
        return []
    return sorted(n for n in names if n.lower().endswith(SCREENSHOT_EXTENSIONS))
