"""
CI Robot UAT Runner - generic executor for the engine's automation tool (RunUAT).
"""
import os
import sys
from typing import Dict, List, Optional

from cirobot.log import get_logger
from cirobot.models import ProcessResult
from cirobot.process import ProcessExecutor, DEFAULT_TIMEOUT_MS

logger = get_logger(__name__)


def resolve_engine_path(engine_path: str = "") -> str:
    """Explicit path, then UE_ENGINE_PATH, then a platform default."""
    if engine_path:
        return engine_path
    env_path = os.environ.get("UE_ENGINE_PATH")
    if env_path:
        return env_path
    if sys.platform == "win32":
        return r"C:\Program Files\Epic Games\UE_5.7\Engine"
    return "/opt/UnrealEngine/Engine"


def editor_binary_dir(engine_path: str) -> str:
    if sys.platform == "win32":
        return os.path.join(engine_path, "Binaries", "Win64")
    if sys.platform == "darwin":
        return os.path.join(engine_path, "Binaries", "Mac")
    return os.path.join(engine_path, "Binaries", "Linux")


def editor_cmd_path(engine_path: str) -> str:
    """Path to the headless editor command binary (UnrealEditor-Cmd)."""
    name = "UnrealEditor-Cmd.exe" if sys.platform == "win32" else "UnrealEditor-Cmd"
    return os.path.join(editor_binary_dir(engine_path), name)


class UATRunner:
    """Runs RunUAT commands (BuildCookRun, BuildGraph, RunUnreal, ...)"""

    def __init__(self, engine_path: str, project_path: Optional[str] = None,
                 executor: Optional[ProcessExecutor] = None):
        self.engine_path = resolve_engine_path(engine_path)
        self.project_path = project_path
        self.executor = executor or ProcessExecutor()

    def get_uat_path(self) -> str:
        script = "RunUAT.bat" if sys.platform == "win32" else "RunUAT.sh"
        return os.path.join(self.engine_path, "Build", "BatchFiles", script)

    async def run(
        self,
        command: str,
        args: Optional[List[str]] = None,
        timeout: Optional[int] = None,
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        log_file: Optional[str] = None,
    ) -> ProcessResult:
        """
        Run a UAT command.

        Args:
            command: UAT command name (e.g. BuildCookRun)
            args: Command arguments; -project= is appended when missing
            timeout: Timeout in milliseconds (default 600000)
            cwd: Working directory (default: project directory)
            env: Extra environment variables
            log_file: Optional log file for live output

        Returns:
            ProcessResult
        """
        full_args = [command] + list(args or [])
        if self.project_path and not any("-project=" in a for a in full_args):
            full_args.append(f"-project={self.project_path}")

        uat_path = self.get_uat_path()
        logger.info("[UAT] Running: %s %s", uat_path, " ".join(full_args))

        work_dir = cwd or os.path.dirname(self.project_path or self.engine_path) or None
        if work_dir and not os.path.isdir(work_dir):
            work_dir = None

        result = await self.executor.run(
            uat_path, full_args,
            timeout=timeout or DEFAULT_TIMEOUT_MS,
            cwd=work_dir,
            env=env,
            log_file=log_file,
        )
        logger.info("[UAT] Completed in %dms with exit code %d", result.duration, result.exit_code)
        return result

    async def build_cook_run(
        self,
        platform: Optional[str] = None,
        configuration: Optional[str] = None,
        cook: bool = False,
        stage: bool = False,
        pak: bool = False,
        archive: bool = False,
        archive_dir: Optional[str] = None,
    ) -> ProcessResult:
        args = []
        if platform:
            args.append(f"-platform={platform}")
        if configuration:
            args.append(f"-configuration={configuration}")
        if cook:
            args.append("-cook")
        if stage:
            args.append("-stage")
        if pak:
            args.append("-pak")
        if archive:
            args.append("-archive")
        if archive_dir:
            args.append(f"-archivedirectory={archive_dir}")
        args += ["-unattended", "-utf8output"]
        return await self.run("BuildCookRun", args)

    async def run_automation_tests(self, filter: str, report_dir: Optional[str] = None,
                                   null_rhi: bool = False) -> ProcessResult:
        args = [f"-ExecCmds=Automation RunTest {filter};Quit", "-unattended"]
        if report_dir:
            args.append(f"-ReportExportPath={report_dir}")
        if null_rhi:
            args.append("-NullRHI")
        return await self.run("RunUnreal", args)

    async def run_gauntlet(self, test: str, platform: str = "Win64", configuration: str = "Development",
                           timeout: Optional[int] = None, max_retries: int = 0) -> ProcessResult:
        args = [f"-test={test}", f"-platform={platform}", f"-configuration={configuration}"]
        if max_retries:
            args.append(f"-MaxRetries={max_retries}")
        return await self.run("RunUnreal", args, timeout=timeout)

    async def compile_all_blueprints(self) -> ProcessResult:
        return await self.run("CompileAllBlueprints", ["-unattended"])

    async def resave_packages(self, package_filter: Optional[str] = None) -> ProcessResult:
        args = ["-unattended"]
        if package_filter:
            args.append(f"-PackageFilter={package_filter}")
        return await self.run("ResavePackages", args)

    async def fill_ddc(self, maps: List[str]) -> ProcessResult:
        return await self.run("DerivedDataCache", ["-fill", f"-Map={'+'.join(maps)}"])
