"""
CI Robot Daemon - the workflow engine and the long-lived process around it.

One run at a time:
    create run dir -> SCM attempt -> phases in order -> commit (success) or
    crash.log + optional rollback (failure) -> WorkflowResult

run_workflow never raises; every failure ends up in the returned result.
A second submission while a run is in progress is rejected with an error result.

Live events are broadcast as JSON to WebSocket clients when the feed is enabled.
"""
import asyncio
import json
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import websockets
from pydantic import ValidationError as PydanticValidationError

from cirobot.artifacts import ArtifactStore, RunArtifacts
from cirobot.automation import AutomationTestConfig, run_automation_tests
from cirobot.buildgraph import BuildGraphExecutor
from cirobot.config import DaemonConfig
from cirobot.ddc import DDCConfig, DDCManager
from cirobot.determinism import DeterminismManager
from cirobot.editor import EditorConfig, EditorProcessManager
from cirobot.gauntlet import GauntletRunner, GauntletTestConfig
from cirobot.log import RunEventLog, get_logger
from cirobot.models import (
    CrashReport, DaemonStatus, PhaseResult, SCMAttempt, StepResult, WorkflowResult,
    generate_run_id, utc_now_iso,
)
from cirobot.policy import PolicyEnforcer, PolicyViolationError, enforce_policy
from cirobot.process import ProcessExecutor
from cirobot.scenario import GoldenScenarioRunner, InputAction, ScenarioAssertion, ScenarioConfig
from cirobot.scm import SCMClient, SCMError, create_scm_client
from cirobot.triage import CrashTriager
from cirobot.uat import UATRunner
from cirobot.visual import VisualRegressionRunner
from cirobot.watchdog import Watchdog, WatchdogConfig, WatchdogEvent
from models.workflow import (
    BuildStep, CookStep, CustomStep, DeployStep, PackageStep, PhaseSpec, TestStep, WorkflowSpec,
)

logger = get_logger(__name__)

ENGINE_VERSION = "UE 5.7"
PLUGIN_VERSION = "1.0.0"
DEFAULT_BUILDGRAPH_SCRIPT = "Build/BuildGraph_CI.xml"
DEFAULT_TEST_TIMEOUT_MS = 600000
ERROR_TAIL_CHARS = 2000
OUTPUT_TAIL_CHARS = 2000

SUPPORTED_ACTIONS = [
    "build", "cook", "test", "package", "deploy",
    "visual_regression", "golden_scenario", "buildgraph",
]


class StepError(Exception):
    """A step handler failed; the message becomes StepResult.error"""

    def __init__(self, message: str, output: str = ""):
        super().__init__(message)
        self.output = output


class PhaseFailedError(Exception):
    """A phase failed without continueOnError; aborts the remaining phases"""

    def __init__(self, phase: str, reason: str = ""):
        message = f'Phase "{phase}" failed'
        if reason:
            message += f": {reason}"
        super().__init__(message)
        self.phase = phase


@dataclass
class RunContext:
    """Everything one run owns, passed through phase and step execution"""
    run_id: str
    workflow: WorkflowSpec
    artifacts: RunArtifacts
    events: RunEventLog
    started: float = field(default_factory=time.monotonic)
    attempt: Optional[SCMAttempt] = None
    phases: List[PhaseResult] = field(default_factory=list)

    def step_name(self, phase: PhaseSpec, index: int, step) -> str:
        return f"steps/{_slug(phase.name)}/{index + 1:02d}-{step.type}-{_slug(step.action)}"

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def _slug(value: str) -> str:
    return re.sub(r"[^\w.-]+", "_", value).strip("_") or "_"


def _tail(text: str, limit: int) -> str:
    text = (text or "").strip()
    return text[-limit:]


def _failure_detail(stderr: str, exit_code: int) -> str:
    return _tail(stderr, ERROR_TAIL_CHARS) or f"exit code {exit_code}"


def _save_artifact(artifacts: RunArtifacts, filename: str, data: Any) -> None:
    """Write text or JSON into the run; a failed write is logged, not raised."""
    try:
        if isinstance(data, str):
            artifacts.write(filename, data)
        else:
            artifacts.write_json(filename, data)
    except OSError as e:
        logger.warning("[DAEMON] Could not write %s: %s", filename, e)


def parse_workflow(workflow: Union[WorkflowSpec, Dict[str, Any]]) -> WorkflowSpec:
    """
    Raises:
        pydantic.ValidationError: the mapping is not a valid workflow
    """
    if isinstance(workflow, WorkflowSpec):
        return workflow
    return WorkflowSpec.model_validate(workflow)


StepHandler = Callable[[Any, RunContext, str], Awaitable[str]]


class RobotDaemon:
    """
    Owns the collaborators of the CI robot and runs workflows against them.

    Every collaborator can be injected; anything not given is built from the config.
    """

    def __init__(
        self,
        config: DaemonConfig,
        store: Optional[ArtifactStore] = None,
        scm: Optional[SCMClient] = None,
        policy: Optional[PolicyEnforcer] = None,
        ddc: Optional[DDCManager] = None,
        editor: Optional[EditorProcessManager] = None,
        watchdog: Optional[Watchdog] = None,
        triager: Optional[CrashTriager] = None,
        executor: Optional[ProcessExecutor] = None,
    ):
        self.config = config
        self.project_path = config.project_path
        self.engine_path = config.engine_path
        self.project_dir = os.path.dirname(os.path.abspath(config.project_path)) if config.project_path else os.getcwd()
        self.artifact_dir = config.resolved_artifact_dir()

        self.executor = executor or ProcessExecutor()
        self.store = store or ArtifactStore(self.artifact_dir)
        self.policy = policy or PolicyEnforcer(config.resolved_security_profile(), self.project_dir, self.engine_path)
        self.scm = scm if scm is not None else self._create_scm()
        self.ddc = ddc or DDCManager(
            DDCConfig(
                mode=config.ddc_mode,
                shared_storage_path=config.shared_storage_path or None,
                zen_server_url=config.zen_server_url or None,
                cloud_ddc_endpoint=config.cloud_ddc_endpoint or None,
            ),
            self.project_path, self.engine_path, self.executor,
        )

        self.uat = UATRunner(self.engine_path, self.project_path, self.executor)
        self.buildgraph = BuildGraphExecutor(self.engine_path, self.project_path, uat=self.uat)
        self.gauntlet = GauntletRunner(self.engine_path, self.project_path, uat=self.uat)
        self.determinism = DeterminismManager(self.project_path)
        self.baseline_dir = os.path.join(self.artifact_dir, "visual-baselines")

        crash_dir = os.path.join(self.artifact_dir, "crashes")
        self.triager = triager or CrashTriager(crash_dir)
        self.editor = editor or EditorProcessManager(EditorConfig(
            project_path=self.project_path,
            engine_path=self.engine_path,
            additional_args=list(config.editor_args or []),
            timeout=config.editor_timeout * 1000 if config.editor_timeout else None,
            determinism_profile=config.determinism_profile or None,
        ))
        self.watchdog = watchdog or Watchdog(WatchdogConfig(
            heartbeat_interval=config.heartbeat_interval * 1000,
            heartbeat_timeout=config.heartbeat_timeout * 1000,
            max_crash_count=config.max_crash_count,
            auto_restart=config.auto_restart,
            crash_log_dir=crash_dir,
        ), triager=self.triager)

        self._handlers: Dict[str, StepHandler] = {
            "build": self._run_build_step,
            "test": self._run_test_step,
            "cook": self._run_cook_step,
            "package": self._run_package_step,
            "deploy": self._run_deploy_step,
            "custom": self._run_custom_step,
        }

        self.running = False
        self.started_at = utc_now_iso()
        self._start_time = time.monotonic()
        self.workflows_executed = 0
        self.workflows_succeeded = 0
        self.workflows_failed = 0
        self.current_run: Optional[RunContext] = None
        self._run_lock = asyncio.Lock()

        self.report_server = None
        self._ws_server = None
        self._ws_clients: Set = set()
        self._forwarder: Optional[asyncio.Task] = None

    def _create_scm(self) -> Optional[SCMClient]:
        if self.config.scm_type in ("", "none"):
            return None
        exclude = []
        rel = os.path.relpath(os.path.abspath(self.artifact_dir), self.project_dir)
        if not rel.startswith(".."):
            exclude.append(rel.replace(os.sep, "/"))
        return create_scm_client(
            self.config.scm_type, self.project_dir,
            main_branch=self.config.main_branch,
            p4_port=self.config.p4_port,
            p4_user=self.config.p4_user,
            p4_client=self.config.p4_client,
            exclude_paths=exclude,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            logger.info("[DAEMON] Already running")
            return

        logger.info("[DAEMON] Starting CI Robot daemon...")
        self.running = True
        self.started_at = utc_now_iso()
        self._start_time = time.monotonic()
        self._forwarder = asyncio.create_task(self._forward_watchdog_events())

        if self.config.enable_report_server:
            from cirobot.report_server import ReportServer
            self.report_server = ReportServer(
                self.store, host=self.config.report_server_host, port=self.config.report_server_port)
            await self.report_server.start()

        if self.config.enable_ws:
            try:
                self._ws_server = await websockets.serve(
                    self.ws_handler, self.config.report_server_host, self.config.ws_port)
                logger.info("[DAEMON] WebSocket server started on port %d", self.config.ws_port)
            except OSError as e:
                logger.error("[DAEMON] WebSocket failed: %s", e)
                self._ws_server = None

        logger.info("[DAEMON] Daemon started")
        logger.info("[DAEMON] Security profile: %s", self.policy.profile_name)
        logger.info("[DAEMON] DDC mode: %s", self.ddc.mode)
        if self.ddc.mode == "zen":
            logger.warning("[DAEMON] WARNING: Zen DDC is UNAUTHENTICATED - use on trusted LAN/VPN only!")

    async def stop(self) -> None:
        if not self.running:
            logger.info("[DAEMON] Not running")
            return

        logger.info("[DAEMON] Stopping CI Robot daemon...")
        self.watchdog.stop()

        if self._forwarder:
            self._forwarder.cancel()
            self._forwarder = None

        if self.report_server:
            await self.report_server.stop()
            self.report_server = None

        if self._ws_server:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

        if self.editor.is_running():
            await self.editor.shutdown()

        self.running = False
        logger.info("[DAEMON] Daemon stopped")

    def get_status(self) -> DaemonStatus:
        return DaemonStatus(
            running=self.running,
            started_at=self.started_at,
            uptime=round(time.monotonic() - self._start_time, 3),
            editor=self.editor.get_status(),
            workflows_executed=self.workflows_executed,
            workflows_succeeded=self.workflows_succeeded,
            workflows_failed=self.workflows_failed,
            current_workflow=self.current_run.run_id if self.current_run else None,
            security_profile=self.policy.profile_name,
        )

    def get_capabilities(self) -> Dict[str, Any]:
        profile = self.determinism.current_profile
        return {
            "engineVersion": ENGINE_VERSION,
            "pluginVersion": PLUGIN_VERSION,
            "securityProfile": self.policy.profile_name,
            "ddcConfig": {
                "mode": self.ddc.mode,
                "networkWarning": self.ddc.get_network_warning(),
            },
            "determinismProfile": profile.name if profile else self.config.determinism_profile,
            "supportedActions": list(SUPPORTED_ACTIONS),
            "allowlistedPaths": self.policy.get_allowlisted_paths(),
            "allowlistedCommands": self.policy.get_allowlisted_commands(),
        }

    # ------------------------------------------------------------------
    # Workflow execution
    # ------------------------------------------------------------------

    async def run_workflow(self, workflow: Union[WorkflowSpec, Dict[str, Any]]) -> WorkflowResult:
        """
        Run a workflow to completion.

        Args:
            workflow: WorkflowSpec or its mapping form (as loaded from YAML)

        Returns:
            WorkflowResult; never raises
        """
        run_id = generate_run_id()
        self.workflows_executed += 1

        try:
            spec = parse_workflow(workflow)
        except PydanticValidationError as e:
            name = workflow.get("name", "?") if isinstance(workflow, dict) else "?"
            message = f"Invalid workflow: {e.error_count()} validation error(s): {e.errors()[0]['msg']}"
            logger.error("[DAEMON] %s", message)
            self.workflows_failed += 1
            return WorkflowResult(run_id=run_id, success=False,
                                  summary=f'Workflow "{name}" failed: {message}', error=message)

        if self._run_lock.locked():
            active = self.current_run.run_id if self.current_run else "unknown"
            message = f"Workflow rejected: run {active} is already in progress"
            logger.warning("[DAEMON] %s", message)
            self.workflows_failed += 1
            return WorkflowResult(run_id=run_id, success=False,
                                  summary=f'Workflow "{spec.name}" failed: {message}', error=message)

        async with self._run_lock:
            return await self._run_locked(run_id, spec)

    async def _run_locked(self, run_id: str, workflow: WorkflowSpec) -> WorkflowResult:
        logger.info('[DAEMON] Starting workflow "%s" (%s)', workflow.name, run_id)

        try:
            artifacts = self.store.create_run(run_id)
        except OSError as e:
            message = f"Could not create run directory: {e}"
            logger.error("[DAEMON] %s", message)
            self.workflows_failed += 1
            return WorkflowResult(run_id=run_id, success=False,
                                  summary=f'Workflow "{workflow.name}" failed: {message}', error=message)

        ctx = RunContext(run_id=run_id, workflow=workflow, artifacts=artifacts,
                         events=RunEventLog(artifacts.run_dir))
        self.current_run = ctx
        ctx.events.write("WORKFLOW START", f"{workflow.name} | {run_id}")
        _save_artifact(artifacts, "workflow.json", workflow.model_dump(by_alias=True, exclude_none=True))
        await self.ws_broadcast({"type": "workflow_start", "run_id": run_id, "name": workflow.name})

        error: Optional[str] = None
        try:
            if workflow.timeout:
                await asyncio.wait_for(self._execute(ctx), timeout=workflow.timeout / 1000)
            else:
                await self._execute(ctx)
        except asyncio.TimeoutError:
            error = f"Workflow timed out after {workflow.timeout}ms"
        except (SCMError, PhaseFailedError) as e:
            error = str(e)
        except Exception as e:
            logger.exception("[DAEMON] Unexpected error in workflow %s", run_id)
            error = str(e) or type(e).__name__

        if error is None:
            summary = f'Workflow "{workflow.name}" completed successfully'
            await self._commit(ctx, summary)
        else:
            summary = f'Workflow "{workflow.name}" failed: {error}'
            logger.error("[DAEMON] Workflow failed: %s", error)
            _save_artifact(artifacts, "crash.log", error)
            ctx.events.write("WORKFLOW FAILED", error)
            if workflow.rollback_on_failure and ctx.attempt:
                await self._rollback(ctx)

        self._collect_workflow_artifacts(ctx)

        result = WorkflowResult(
            run_id=run_id,
            success=error is None,
            phases=list(ctx.phases),
            summary=summary,
            duration=ctx.elapsed_ms(),
            error=error,
        )
        if result.success:
            self.workflows_succeeded += 1
            ctx.events.write("WORKFLOW DONE", f"{result.duration}ms")
        else:
            self.workflows_failed += 1

        result.artifacts = artifacts.list_artifacts()
        _save_artifact(artifacts, "result.json", result.to_dict())
        try:
            self.store.update_run_status(run_id, "completed" if result.success else "failed")
        except OSError as e:
            logger.error("[DAEMON] Could not update status of run %s: %s", run_id, e)
        result.artifacts = artifacts.list_artifacts()

        self.current_run = None
        await self.ws_broadcast({
            "type": "workflow_done", "run_id": run_id,
            "success": result.success, "summary": summary,
        })
        logger.info("[DAEMON] %s (%dms)", summary, result.duration)
        return result

    async def _execute(self, ctx: RunContext) -> None:
        if self.scm:
            ctx.attempt = await self.scm.create_attempt(ctx.run_id)
            logger.info("[DAEMON] SCM attempt created: %s", ctx.attempt.label)

        if self.config.determinism_profile:
            self.determinism.apply_profile(self.config.determinism_profile)

        for phase in ctx.workflow.phases:
            logger.info("[DAEMON] Starting phase: %s", phase.name)
            result = await self._execute_phase(phase, ctx)
            ctx.phases.append(result)

            if not result.success and not phase.continue_on_error:
                reason = next((s.error for s in result.steps if not s.success and s.error), "")
                raise PhaseFailedError(phase.name, reason)

    async def _execute_phase(self, phase: PhaseSpec, ctx: RunContext) -> PhaseResult:
        start = time.monotonic()
        ctx.events.write("PHASE START", f"{phase.name} | {len(phase.steps)} steps"
                         + (" | parallel" if phase.parallel else ""))
        await self.ws_broadcast({"type": "phase_start", "run_id": ctx.run_id, "phase": phase.name})

        if phase.parallel:
            steps = await asyncio.gather(*(
                self._execute_step(step, index, phase, ctx) for index, step in enumerate(phase.steps)
            ))
            results = list(steps)
        else:
            results = []
            for index, step in enumerate(phase.steps):
                result = await self._execute_step(step, index, phase, ctx)
                results.append(result)
                if not result.success and not phase.continue_on_error:
                    break

        phase_result = PhaseResult(
            name=phase.name,
            success=all(r.success for r in results),
            steps=results,
            duration=int((time.monotonic() - start) * 1000),
        )
        ctx.events.write("PHASE DONE", f"{phase.name} | success={phase_result.success}")
        return phase_result

    async def _execute_step(self, step, index: int, phase: PhaseSpec, ctx: RunContext) -> StepResult:
        start = time.monotonic()
        name = ctx.step_name(phase, index, step)
        work_dir = ctx.artifacts.get_path(name)
        logger.info("[DAEMON] Executing step: %s/%s", step.type, step.action)

        output = ""
        error: Optional[str] = None
        handler = self._handlers.get(step.type)
        try:
            if handler is None:
                raise StepError(f"Unknown step type: {step.type}")
            output = await handler(step, ctx, work_dir)
        except StepError as e:
            error, output = str(e), e.output
        except PolicyViolationError as e:
            error = str(e)
        except Exception as e:
            logger.exception("[DAEMON] Step %s/%s raised", step.type, step.action)
            error = str(e) or type(e).__name__

        tail = _tail(output, OUTPUT_TAIL_CHARS)
        result = StepResult(
            type=step.type,
            action=step.action,
            success=error is None,
            duration=int((time.monotonic() - start) * 1000),
            output=tail if error is None else (tail or None),
            error=error,
        )
        self._write_step_log(ctx, name, result, output)

        if result.success:
            ctx.events.write("STEP DONE", f"{phase.name} | {step.type}/{step.action} | {result.duration}ms")
        else:
            ctx.events.write("STEP FAILED", f"{phase.name} | {step.type}/{step.action} | {error}")
            logger.warning("[DAEMON] Step %s/%s failed: %s", step.type, step.action, error)
        await self.ws_broadcast({
            "type": "step_done", "run_id": ctx.run_id, "phase": phase.name, "step": result.to_dict(),
        })
        return result

    def _write_step_log(self, ctx: RunContext, name: str, result: StepResult, output: str) -> None:
        lines = [
            f"type: {result.type}",
            f"action: {result.action}",
            f"success: {str(result.success).lower()}",
            f"duration: {result.duration}ms",
        ]
        if output:
            lines += ["", "--- output ---", output.rstrip()]
        if result.error:
            lines += ["", "--- error ---", result.error]
        try:
            ctx.artifacts.write(f"{name}.log", "\n".join(lines) + "\n")
        except OSError as e:
            logger.warning("[DAEMON] Could not write step log %s: %s", name, e)

    async def _commit(self, ctx: RunContext, summary: str) -> None:
        if not (self.scm and ctx.attempt):
            return
        commit = await self.scm.commit_attempt(ctx.attempt, summary)
        _save_artifact(ctx.artifacts, "scm-commit.json", {
            "success": commit.success,
            "message": commit.message,
            "commitHash": commit.commit_hash,
            "changelist": commit.changelist,
        })
        if commit.success:
            logger.info("[DAEMON] SCM changes committed: %s", commit.message)
        else:
            logger.error("[DAEMON] SCM commit failed: %s", commit.message)

    async def _rollback(self, ctx: RunContext) -> None:
        """Best effort; a failed rollback never replaces the workflow error."""
        logger.info("[DAEMON] Attempting rollback of %s", ctx.attempt.label)
        try:
            reverted = await self.scm.revert_attempt(ctx.attempt)
        except Exception as e:
            logger.error("[DAEMON] Rollback failed: %s", e)
            ctx.events.write("ROLLBACK", f"failed | {e}")
            return
        if reverted:
            logger.info("[DAEMON] Rollback successful")
            ctx.events.write("ROLLBACK", ctx.attempt.label)
        else:
            logger.error("[DAEMON] Rollback failed for %s", ctx.attempt.label)
            ctx.events.write("ROLLBACK", f"failed | {ctx.attempt.label}")

    def _collect_workflow_artifacts(self, ctx: RunContext) -> None:
        """Copy the workflow's artifact paths (relative to the project dir) into collected/."""
        for entry in ctx.workflow.artifacts:
            source = entry if os.path.isabs(entry) else os.path.join(self.project_dir, entry)
            violation = self.policy.validate_path(source)
            if violation:
                logger.warning("[DAEMON] Artifact path not allowlisted: %s", entry)
                continue
            dest = f"collected/{os.path.basename(os.path.normpath(source))}"
            try:
                if os.path.isdir(source):
                    ctx.artifacts.copy_dir(source, dest)
                elif os.path.isfile(source):
                    ctx.artifacts.copy_file(source, dest)
                else:
                    logger.warning("[DAEMON] Artifact path not found: %s", source)
            except OSError as e:
                logger.warning("[DAEMON] Could not collect %s: %s", source, e)

    # ------------------------------------------------------------------
    # Step handlers
    # ------------------------------------------------------------------

    async def _run_build_step(self, step: BuildStep, ctx: RunContext, work_dir: str) -> str:
        params = step.params
        options = dict(params.options)
        options.setdefault("platform", params.platform)
        if params.configuration:
            options.setdefault("configuration", params.configuration)
        if step.timeout:
            options["timeout"] = step.timeout

        if step.action in ("compile", "compile_editor"):
            script, targets, label = DEFAULT_BUILDGRAPH_SCRIPT, ["CompileEditor"], "Build"
        elif step.action == "compile_game":
            script, targets, label = DEFAULT_BUILDGRAPH_SCRIPT, ["CompileGame"], "Game build"
        elif step.action == "buildgraph":
            script, targets, label = params.script or DEFAULT_BUILDGRAPH_SCRIPT, params.targets or ["Build"], "BuildGraph"
        else:
            raise StepError(f"Unknown build action: {step.action}")

        result = await self.buildgraph.execute(script, targets, options)
        if not result.success:
            raise StepError(f"{label} failed: {_failure_detail(result.stderr, result.exit_code)}", result.stdout)
        return result.stdout

    async def _run_test_step(self, step: TestStep, ctx: RunContext, work_dir: str) -> str:
        params = step.params
        action = step.action

        if action in ("automation", "run_automation"):
            result = await run_automation_tests(AutomationTestConfig(
                project_path=self.project_path,
                engine_path=self.engine_path,
                filter=params.filter,
                artifact_dir=work_dir,
                timeout=step.timeout or DEFAULT_TEST_TIMEOUT_MS,
                requires_rendering=params.requires_rendering,
            ), executor=self.executor)
            if not result.success:
                raise StepError(f"Tests failed: {result.failed}/{result.total}")
            return f"Tests passed: {result.passed}/{result.total}"

        if action in ("visual_regression", "compare_visuals"):
            runner = VisualRegressionRunner(self.project_path, self.engine_path, self.baseline_dir, work_dir,
                                            executor=self.executor)
            visual = await runner.compare(params.map, params.test_suite,
                                          global_threshold=params.threshold,
                                          per_image=params.thresholds or None)
            if not visual.success:
                raise StepError(f"Visual regression failed: {visual.max_difference * 100:.2f}% difference")
            return f"Visual comparison passed ({len(visual.differences)} images)"

        if action == "golden_scenario":
            assertions = [ScenarioAssertion(a.type, a.threshold, a.custom_check) for a in params.assertions or []]
            if params.assertions is None:
                assertions = [ScenarioAssertion("no_errors"), ScenarioAssertion("fps_above", threshold=30)]
            runner = GoldenScenarioRunner(self.engine_path, self.project_path, work_dir, uat=self.uat)
            scenario = await runner.run_scenario(ScenarioConfig(
                map=params.map,
                duration=params.duration,
                input_sequence=[InputAction(i.action_path, i.value, i.duration) for i in params.input_sequence],
                assertions=assertions,
            ))
            if not scenario.success:
                failed = [a.message for a in scenario.assertions if not a.passed]
                raise StepError("Golden scenario failed" + (f": {'; '.join(failed)}" if failed else ""))
            return f"Golden scenario passed (avg FPS {scenario.metrics.avg_fps:.1f})"

        if action == "gauntlet":
            if params.tier:
                results = await self.gauntlet.run_tier(params.tier, report_dir=work_dir)
                failed = [r.test_name for r in results if not r.success]
                if failed:
                    raise StepError(f"Gauntlet tier {params.tier} failed: {', '.join(failed)}")
                return f"Gauntlet tier {params.tier} passed ({len(results)} tests)"

            gauntlet = await self.gauntlet.run_test(GauntletTestConfig(
                test=params.test_name or params.test or "DefaultTest",
                platform=params.platform,
                configuration=params.configuration,
                timeout=step.timeout or DEFAULT_TEST_TIMEOUT_MS,
                max_retries=params.max_retries,
                report_dir=work_dir,
            ))
            if not gauntlet.success:
                raise StepError(f"Gauntlet test failed: {gauntlet.failed} tests failed")
            return f"Gauntlet test passed: {gauntlet.passed}/{gauntlet.total}"

        raise StepError(f"Unknown test action: {action}")

    async def _run_cook_step(self, step: CookStep, ctx: RunContext, work_dir: str) -> str:
        params = step.params
        args = [f"-platform={params.platform}"]
        if params.configuration:
            args.append(f"-clientconfig={params.configuration}")
        args.append("-cook")
        if params.iterate:
            args.append("-iterate")
        args += ["-unattended", "-utf8output"]
        return await self._run_uat("BuildCookRun", args, step.timeout, "Cook")

    async def _run_package_step(self, step: PackageStep, ctx: RunContext, work_dir: str) -> str:
        params = step.params
        args = [f"-platform={params.platform}"]
        if params.configuration:
            args.append(f"-clientconfig={params.configuration}")
        args += ["-cook", "-stage", "-package", "-pak"]
        if params.archive_dir:
            args += ["-archive", f"-archivedirectory={params.archive_dir}"]
        args += ["-unattended", "-utf8output"]
        return await self._run_uat("BuildCookRun", args, step.timeout, "Package")

    async def _run_deploy_step(self, step: DeployStep, ctx: RunContext, work_dir: str) -> str:
        params = step.params
        args = [f"-platform={params.platform}"]
        if params.configuration:
            args.append(f"-clientconfig={params.configuration}")
        args += ["-skipcook", "-skipstage", "-deploy"]
        if params.device:
            args.append(f"-device={params.device}")
        args += ["-unattended", "-utf8output"]
        return await self._run_uat("BuildCookRun", args, step.timeout, "Deploy")

    async def _run_custom_step(self, step: CustomStep, ctx: RunContext, work_dir: str) -> str:
        enforce_policy(self.policy, "command", step.action)
        for path in step.params.paths:
            enforce_policy(self.policy, "path", path)
        return await self._run_uat(step.action, list(step.params.args), step.timeout, "Custom step")

    async def _run_uat(self, command: str, args: List[str], timeout: Optional[int], label: str) -> str:
        result = await self.uat.run(command, args, timeout=timeout)
        if not result.success:
            raise StepError(f"{label} failed: {_failure_detail(result.stderr, result.exit_code)}", result.stdout)
        return result.stdout

    # ------------------------------------------------------------------
    # Editor control
    # ------------------------------------------------------------------

    async def start_editor(self, additional_args: Optional[List[str]] = None) -> int:
        """Spawn the editor with the DDC args and put it under the watchdog."""
        args = self.get_ddc_args() + list(additional_args or [])
        pid = await self.editor.spawn(args)
        self.watchdog.start(self.editor)
        return pid

    async def stop_editor(self, save: bool = True) -> bool:
        self.watchdog.stop()
        return await self.editor.shutdown(save)

    async def restart_editor(self, additional_args: Optional[List[str]] = None) -> int:
        """Explicit restart; the watchdog is suspended so it does not react to the exit."""
        self.watchdog.suspend()
        try:
            return await self.editor.restart(self.get_ddc_args() + list(additional_args or []))
        finally:
            self.watchdog.resume()

    async def triage_crash(self, crash_dir: str) -> CrashReport:
        report = await asyncio.to_thread(self.triager.triage, crash_dir)
        logger.info("[DAEMON] Crash triaged: %s", report.type)
        logger.info("[DAEMON] Suggested cause: %s", report.suggested_cause)
        logger.info("[DAEMON] Next actions: %s", ", ".join(report.next_actions))
        return report

    def get_ddc_args(self) -> List[str]:
        return self.ddc.get_editor_args()

    async def _forward_watchdog_events(self) -> None:
        """Log watchdog notifications, attach crash reports to the current run, broadcast."""
        while True:
            event: WatchdogEvent = await self.watchdog.notifications.get()
            logger.info("[DAEMON] Watchdog: %s (crashes=%d)", event.kind, event.crash_count)
            ctx = self.current_run
            if ctx and event.report:
                _save_artifact(ctx.artifacts, f"crashes/crash-{event.crash_count}.json", event.report.to_dict())
                ctx.events.write("EDITOR CRASH", f"{event.report.type} | count={event.crash_count}")
            await self.ws_broadcast({"type": "watchdog", **event.to_dict()})

    # ------------------------------------------------------------------
    # WebSocket feed
    # ------------------------------------------------------------------

    async def ws_broadcast(self, event: Dict[str, Any]) -> None:
        """Broadcast event to all connected WebSocket clients."""
        if not self._ws_clients:
            return
        message = json.dumps(event, default=str)
        disconnected = set()
        for ws in list(self._ws_clients):
            try:
                await ws.send(message)
            except websockets.ConnectionClosed:
                disconnected.add(ws)
        self._ws_clients.difference_update(disconnected)

    async def ws_handler(self, websocket) -> None:
        """Handle WebSocket connection."""
        self._ws_clients.add(websocket)
        remote = websocket.remote_address
        logger.info("[WS] Client connected: %s", remote)
        try:
            await websocket.send(json.dumps({"type": "connected", "message": "CI Robot Daemon"}))
            await websocket.send(json.dumps({"type": "status", **self.get_status().to_dict()}))
            async for message in websocket:
                await websocket.send(json.dumps(self.ws_reply(message), default=str))
        except websockets.ConnectionClosed as e:
            logger.info("[WS] Connection closed: %s", e)
        finally:
            self._ws_clients.discard(websocket)
            logger.info("[WS] Client disconnected: %s", remote)

    def ws_reply(self, message: str) -> Dict[str, Any]:
        """Answer one client request: {"type": "status"} or {"type": "run", "run_id": ...}."""
        try:
            request = json.loads(message)
        except ValueError:
            return {"type": "error", "message": "Invalid JSON"}
        if not isinstance(request, dict):
            return {"type": "error", "message": "Request must be an object"}

        kind = request.get("type")
        if kind == "status":
            return {"type": "status", **self.get_status().to_dict()}
        if kind == "run":
            run_id = str(request.get("run_id", ""))
            metadata = self.store.get_metadata(run_id) if run_id else None
            if metadata is None:
                return {"type": "error", "message": f"Run not found: {run_id}"}
            return {"type": "run", "run_id": run_id, "metadata": metadata}
        return {"type": "error", "message": f"Unknown request type: {kind}"}


def run_daemon(config: DaemonConfig) -> None:
    """Run the daemon (report server, optional WebSocket feed) until interrupted."""
    async def main():
        daemon = RobotDaemon(config)
        await daemon.start()
        try:
            await asyncio.Event().wait()
        finally:
            await daemon.stop()

    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("[DAEMON] Shutting down...")
