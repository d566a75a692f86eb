"""Tests for cirobot/daemon.py - workflow execution end to end with a fake tool executor"""
import asyncio
import json
import os
import subprocess

import pytest
import websockets

from conftest import FakeExecutor
from cirobot.artifacts import RunArtifacts
from cirobot.config import DaemonConfig
from cirobot.daemon import PhaseFailedError, RobotDaemon, SUPPORTED_ACTIONS
from cirobot.models import CrashReport, EditorStatus, ProcessResult
from cirobot.watchdog import WatchdogEvent


def _daemon(project_dir, executor=None, **overrides):
    os.makedirs(project_dir, exist_ok=True)
    options = {"scm_type": "none", "security_profile": "dev", "enable_report_server": False}
    options.update(overrides)
    config = DaemonConfig(project_path=os.path.join(project_dir, "Game.uproject"), engine_path="/opt/UE/Engine",
                          **options)
    return RobotDaemon(config, executor=executor or FakeExecutor())


def _branch(repo):
    return subprocess.run(["git", "rev-parse", "--abbrev-ref", "HEAD"], cwd=repo, check=True,
                          capture_output=True, text=True).stdout.strip()


class RecordingClient:
    """Stands in for a connected WebSocket client"""

    def __init__(self, closed=False):
        self.messages = []
        self.closed = closed

    async def send(self, message):
        if self.closed:
            raise websockets.ConnectionClosed(None, None)
        self.messages.append(json.loads(message))


class WritingExecutor(FakeExecutor):
    """Writes a file into the project on every call, like a real build would"""

    def __init__(self, project_dir, responses=None):
        super().__init__(responses)
        self.project_dir = project_dir

    async def run(self, command, args=None, **kwargs):
        path = os.path.join(self.project_dir, "Saved", f"output-{len(self.calls)}.txt")
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            f.write("built\n")
        return await super().run(command, args, **kwargs)


class BlockingExecutor(FakeExecutor):
    """Holds every call until released"""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def run(self, command, args=None, **kwargs):
        self.entered.set()
        await self.release.wait()
        return await super().run(command, args, **kwargs)


# =============================================================================
# Successful runs
# =============================================================================

class TestWorkflowSuccess:
    """Phases in order, parallel and sequential steps"""

    async def test_two_phases_three_steps(self, tmp_dir, sample_workflow):
        executor = FakeExecutor()
        daemon = _daemon(tmp_dir, executor)

        result = await daemon.run_workflow(sample_workflow)

        assert result.success, result.error
        assert result.run_id.startswith("run-")
        assert result.summary == 'Workflow "nightly" completed successfully'
        assert [p.name for p in result.phases] == ["build", "test"]
        assert [len(p.steps) for p in result.phases] == [1, 2]
        assert [s.action for s in result.phases[1].steps] == ["automation", "cook"]
        assert daemon.workflows_succeeded == 1
        assert daemon.current_run is None

        lines = executor.lines()
        assert any("BuildGraph" in line and "-Target=CompileEditor" in line for line in lines)
        assert any("UnrealEditor-Cmd" in line and "Automation RunTest Project.Smoke" in line for line in lines)
        assert any("BuildCookRun" in line and "-cook" in line for line in lines)

    async def test_run_directory_contents(self, tmp_dir, sample_workflow):
        daemon = _daemon(tmp_dir)
        result = await daemon.run_workflow(sample_workflow)
        run = daemon.store.get_run(result.run_id)

        assert run.read_json("workflow.json")["name"] == "nightly"
        saved = run.read_json("result.json")
        assert saved["runId"] == result.run_id
        assert saved["success"] is True
        assert daemon.store.get_metadata(result.run_id)["status"] == "completed"

        paths = {a.path for a in result.artifacts}
        assert "steps/build/01-build-compile.log" in paths
        assert "steps/test/01-test-automation.log" in paths
        assert "steps/test/02-cook-cook.log" in paths
        assert not run.exists("crash.log")

        step_log = run.read("steps/build/01-build-compile.log")
        assert step_log.startswith("type: build\naction: compile\nsuccess: true\n")

        events = run.read("robot.log")
        for marker in ("WORKFLOW START", "PHASE START", "STEP DONE", "PHASE DONE", "WORKFLOW DONE"):
            assert marker in events

    async def test_step_output_recorded(self, tmp_dir):
        executor = FakeExecutor({"BuildCookRun": ProcessResult(exit_code=0, stdout="x" * 5000)})
        daemon = _daemon(tmp_dir, executor)
        result = await daemon.run_workflow({
            "name": "cook-only",
            "phases": [{"name": "cook", "steps": [{"type": "cook", "action": "cook"}]}],
        })
        output = result.phases[0].steps[0].output
        assert len(output) == 2000

    async def test_collects_workflow_artifacts(self, tmp_dir):
        logs = os.path.join(tmp_dir, "Saved", "Logs")
        os.makedirs(logs)
        with open(os.path.join(logs, "Game.log"), "w") as f:
            f.write("LogInit: ok\n")
        daemon = _daemon(tmp_dir)

        result = await daemon.run_workflow({
            "name": "collect",
            "artifacts": ["Saved/Logs", "Saved/Missing.txt"],
            "phases": [{"name": "noop", "steps": []}],
        })

        assert result.success
        assert "collected/Logs/Game.log" in {a.path for a in result.artifacts}

    async def test_deploy_args(self, tmp_dir):
        executor = FakeExecutor()
        daemon = _daemon(tmp_dir, executor)
        await daemon.run_workflow({
            "name": "deploy",
            "phases": [{"name": "ship", "steps": [
                {"type": "deploy", "action": "deploy", "params": {"platform": "Android", "device": "Pixel8"}},
            ]}],
        })
        args = executor.calls[0]["args"]
        assert args[0] == "BuildCookRun"
        assert args[1:6] == ["-platform=Android", "-skipcook", "-skipstage", "-deploy", "-device=Pixel8"]


# =============================================================================
# Failures
# =============================================================================

class TestWorkflowFailure:
    """Failed steps, short-circuiting, invalid input"""

    async def test_failed_build_stops_workflow(self, tmp_dir, sample_workflow):
        executor = FakeExecutor({"BuildGraph": ProcessResult(exit_code=6, stderr="error C2065: 'Foo': undeclared")})
        daemon = _daemon(tmp_dir, executor)

        result = await daemon.run_workflow(sample_workflow)

        assert not result.success
        assert result.error == 'Phase "build" failed: Build failed: error C2065: \'Foo\': undeclared'
        assert result.summary == f'Workflow "nightly" failed: {result.error}'
        assert len(result.phases) == 1
        assert len(executor.calls) == 1

        run = daemon.store.get_run(result.run_id)
        assert run.read("crash.log") == result.error
        assert daemon.store.get_metadata(result.run_id)["status"] == "failed"
        assert daemon.workflows_failed == 1

    async def test_exit_code_when_stderr_empty(self, tmp_dir):
        daemon = _daemon(tmp_dir, FakeExecutor({"BuildCookRun": ProcessResult(exit_code=25)}))
        result = await daemon.run_workflow({
            "name": "pkg",
            "phases": [{"name": "package", "steps": [{"type": "package", "action": "package"}]}],
        })
        assert result.phases[0].steps[0].error == "Package failed: exit code 25"

    async def test_failed_step_keeps_partial_output(self, tmp_dir):
        timed_out = ProcessResult(exit_code=-1, stdout="Cooking Arena.umap\nCooking Lobby.umap\n",
                                  stderr="Process timed out after 1000ms", timed_out=True)
        daemon = _daemon(tmp_dir, FakeExecutor({"BuildCookRun": timed_out}))
        result = await daemon.run_workflow({
            "name": "cook",
            "phases": [{"name": "cook", "steps": [{"type": "cook", "action": "cook"}]}],
        })
        step = result.phases[0].steps[0]
        assert not step.success
        assert step.error == "Cook failed: Process timed out after 1000ms"
        assert step.output == "Cooking Arena.umap\nCooking Lobby.umap"

    async def test_failed_step_without_output(self, tmp_dir):
        daemon = _daemon(tmp_dir, FakeExecutor({"BuildCookRun": ProcessResult(exit_code=25)}))
        result = await daemon.run_workflow({
            "name": "pkg",
            "phases": [{"name": "package", "steps": [{"type": "package", "action": "package"}]}],
        })
        assert result.phases[0].steps[0].output is None

    async def test_sequential_phase_short_circuits(self, tmp_dir):
        executor = FakeExecutor({"BuildGraph": ProcessResult(exit_code=1, stderr="boom")})
        daemon = _daemon(tmp_dir, executor)
        result = await daemon.run_workflow({
            "name": "seq",
            "phases": [{"name": "build", "steps": [
                {"type": "build", "action": "compile"},
                {"type": "cook", "action": "cook"},
            ]}],
        })
        assert [s.action for s in result.phases[0].steps] == ["compile"]
        assert not any("BuildCookRun" in line for line in executor.lines())

    async def test_continue_on_error(self, tmp_dir):
        executor = FakeExecutor({"BuildGraph": ProcessResult(exit_code=1, stderr="boom")})
        daemon = _daemon(tmp_dir, executor)
        result = await daemon.run_workflow({
            "name": "lenient",
            "phases": [
                {"name": "build", "continueOnError": True, "steps": [
                    {"type": "build", "action": "compile"},
                    {"type": "cook", "action": "cook"},
                ]},
                {"name": "after", "steps": [{"type": "cook", "action": "cook"}]},
            ],
        })
        assert result.success
        assert not result.phases[0].success
        assert len(result.phases[0].steps) == 2
        assert result.phases[1].success

    async def test_parallel_phase_runs_every_step(self, tmp_dir, sample_workflow):
        executor = FakeExecutor({"BuildCookRun": ProcessResult(exit_code=1, stderr="cook crashed")})
        daemon = _daemon(tmp_dir, executor)
        result = await daemon.run_workflow(sample_workflow)

        test_phase = result.phases[1]
        assert [s.success for s in test_phase.steps] == [True, False]
        assert result.error == 'Phase "test" failed: Cook failed: cook crashed'

    async def test_unknown_build_action(self, tmp_dir):
        result = await _daemon(tmp_dir).run_workflow({
            "name": "odd",
            "phases": [{"name": "build", "steps": [{"type": "build", "action": "compile_server"}]}],
        })
        assert result.phases[0].steps[0].error == "Unknown build action: compile_server"

    async def test_invalid_workflow_dict(self, tmp_dir):
        daemon = _daemon(tmp_dir)
        result = await daemon.run_workflow({"name": "empty", "phases": []})
        assert not result.success
        assert result.error.startswith("Invalid workflow: 1 validation error(s):")
        assert result.summary.startswith('Workflow "empty" failed: Invalid workflow')
        assert daemon.workflows_executed == 1
        assert daemon.workflows_failed == 1
        assert daemon.store.list_runs() == []

    async def test_disk_full_during_bookkeeping(self, tmp_dir, sample_workflow, monkeypatch):
        def disk_full(*args, **kwargs):
            raise OSError(28, "No space left on device")

        daemon = _daemon(tmp_dir, FakeExecutor({"BuildGraph": ProcessResult(exit_code=1, stderr="boom")}))
        monkeypatch.setattr(RunArtifacts, "write", disk_full)
        monkeypatch.setattr(daemon.store, "update_run_status", disk_full)

        result = await daemon.run_workflow(sample_workflow)

        assert not result.success
        assert result.error == 'Phase "build" failed: Build failed: boom'
        assert daemon.current_run is None
        assert daemon.workflows_failed == 1

    async def test_workflow_timeout(self, tmp_dir):
        executor = BlockingExecutor()
        daemon = _daemon(tmp_dir, executor)
        result = await daemon.run_workflow({
            "name": "slow",
            "timeout": 50,
            "phases": [{"name": "cook", "steps": [{"type": "cook", "action": "cook"}]}],
        })
        assert result.error == "Workflow timed out after 50ms"

    def test_phase_failed_message(self):
        assert str(PhaseFailedError("build")) == 'Phase "build" failed'
        assert str(PhaseFailedError("build", "x")) == 'Phase "build" failed: x'


class TestPolicy:
    """Custom steps are checked against the security profile"""

    async def test_command_not_allowlisted(self, tmp_dir):
        executor = FakeExecutor()
        daemon = _daemon(tmp_dir, executor, security_profile="ci")
        result = await daemon.run_workflow({
            "name": "sneaky",
            "phases": [{"name": "custom", "steps": [{"type": "custom", "action": "curl"}]}],
        })
        assert result.phases[0].steps[0].error == "Policy violation: COMMAND_NOT_ALLOWLISTED - attempted: curl"
        assert executor.calls == []

    async def test_allowlisted_custom_command(self, tmp_dir):
        executor = FakeExecutor()
        daemon = _daemon(tmp_dir, executor, security_profile="ci")
        result = await daemon.run_workflow({
            "name": "blueprints",
            "phases": [{"name": "custom", "steps": [
                {"type": "custom", "action": "CompileAllBlueprints", "params": {"args": ["-unattended"]}},
            ]}],
        })
        assert result.success, result.error
        assert executor.calls[0]["args"][:2] == ["CompileAllBlueprints", "-unattended"]

    async def test_artifacts_outside_project_not_collected(self, tmp_dir):
        secret = os.path.join(tmp_dir, "secret")
        os.makedirs(secret)
        with open(os.path.join(secret, "key.txt"), "w") as f:
            f.write("do not collect")
        project = os.path.join(tmp_dir, "project")
        os.makedirs(os.path.join(project, "Saved"))
        with open(os.path.join(project, "Saved", "Game.log"), "w") as f:
            f.write("LogInit: ok\n")
        daemon = _daemon(project, security_profile="ci")

        result = await daemon.run_workflow({
            "name": "collect",
            "artifacts": ["../secret", "Saved/../../secret/key.txt", "Saved/Game.log"],
            "phases": [{"name": "noop", "steps": []}],
        })

        assert result.success, result.error
        paths = {a.path for a in result.artifacts}
        assert "collected/Game.log" in paths
        assert not any("key.txt" in p or p.startswith("collected/secret") for p in paths)


class TestConcurrency:

    async def test_second_run_rejected(self, tmp_dir):
        executor = BlockingExecutor()
        daemon = _daemon(tmp_dir, executor)
        workflow = {"name": "cook", "phases": [{"name": "cook", "steps": [{"type": "cook", "action": "cook"}]}]}

        first = asyncio.create_task(daemon.run_workflow(workflow))
        await asyncio.wait_for(executor.entered.wait(), timeout=5)
        active = daemon.current_run.run_id

        second = await daemon.run_workflow(workflow)
        assert not second.success
        assert second.error == f"Workflow rejected: run {active} is already in progress"

        executor.release.set()
        assert (await first).success
        assert daemon.workflows_executed == 2
        assert daemon.workflows_succeeded == 1
        assert daemon.workflows_failed == 1


# =============================================================================
# SCM integration (real git repository)
# =============================================================================

class TestScmIntegration:
    """Attempt branches committed on success, rolled back on failure"""

    async def test_success_commits_to_main(self, git_repo, sample_workflow):
        daemon = _daemon(git_repo, WritingExecutor(git_repo), scm_type="git")

        result = await daemon.run_workflow(sample_workflow)

        assert result.success, result.error
        assert _branch(git_repo) == "main"
        log = subprocess.run(["git", "log", "--format=%s"], cwd=git_repo, check=True,
                             capture_output=True, text=True).stdout
        assert '[MCP Robot] Workflow "nightly" completed successfully' in log
        commit = daemon.store.get_run(result.run_id).read_json("scm-commit.json")
        assert commit["success"] is True
        tracked = subprocess.run(["git", "ls-files"], cwd=git_repo, check=True,
                                 capture_output=True, text=True).stdout
        assert "Saved/output-0.txt" in tracked
        assert ".mcp-artifacts" not in tracked

    async def test_failure_rolls_back(self, git_repo, sample_workflow):
        executor = WritingExecutor(git_repo, {"BuildGraph": ProcessResult(exit_code=1, stderr="link error")})
        daemon = _daemon(git_repo, executor, scm_type="git")

        result = await daemon.run_workflow(sample_workflow)

        assert not result.success
        assert _branch(git_repo) == "main"
        assert not os.path.exists(os.path.join(git_repo, "Saved", "output-0.txt"))
        run = daemon.store.get_run(result.run_id)
        assert run.exists("crash.log")
        assert "ROLLBACK" in run.read("robot.log")

    async def test_failure_without_rollback_keeps_attempt(self, git_repo, sample_workflow):
        sample_workflow["rollbackOnFailure"] = False
        executor = FakeExecutor({"BuildGraph": ProcessResult(exit_code=1)})
        daemon = _daemon(git_repo, executor, scm_type="git")
        result = await daemon.run_workflow(sample_workflow)
        assert _branch(git_repo) == f"mcp-attempt/{result.run_id}"


# =============================================================================
# Status, capabilities, editor control
# =============================================================================

class StubEditor:
    """Records editor control calls; enough of EditorProcessManager for the watchdog"""

    def __init__(self):
        self.spawn_args = None
        self.restart_args = None
        self.shutdowns = []
        self.queues = []

    async def spawn(self, args):
        self.spawn_args = args
        return 98

    async def restart(self, args):
        self.restart_args = args
        return 99

    async def shutdown(self, save=True):
        self.shutdowns.append(save)
        return True

    def subscribe(self):
        queue = asyncio.Queue()
        self.queues.append(queue)
        return queue

    def unsubscribe(self, queue):
        self.queues.remove(queue)

    def is_running(self):
        return False

    def record_heartbeat(self):
        pass

    def get_status(self):
        return EditorStatus(running=False)


class TestDaemonInfo:

    def test_capabilities(self, tmp_dir):
        caps = _daemon(tmp_dir, security_profile="ci").get_capabilities()
        assert caps["engineVersion"] == "UE 5.7"
        assert caps["securityProfile"] == "ci"
        assert caps["ddcConfig"]["mode"] == "local"
        assert caps["supportedActions"] == SUPPORTED_ACTIONS
        assert "BuildCookRun" in caps["allowlistedCommands"]
        assert caps["determinismProfile"] == "robot"

    def test_status(self, tmp_dir):
        status = _daemon(tmp_dir).get_status().to_dict()
        assert status["running"] is False
        assert status["workflowsExecuted"] == 0
        assert status["securityProfile"] == "dev"

    def test_git_excludes_artifact_dir(self, tmp_dir):
        daemon = _daemon(tmp_dir, scm_type="git")
        assert daemon.scm.exclude_paths == [".mcp-artifacts"]

    async def test_restart_editor_passes_ddc_args(self, tmp_dir):
        editor = StubEditor()
        daemon = RobotDaemon(
            DaemonConfig(project_path=os.path.join(tmp_dir, "Game.uproject"), scm_type="none",
                         ddc_mode="zen", zen_server_url="http://zen:8558", enable_report_server=False),
            editor=editor, executor=FakeExecutor(),
        )
        assert await daemon.restart_editor(["-log"]) == 99
        assert editor.restart_args == ["-ZenStoreURL=http://zen:8558", "-log"]
        assert not daemon.watchdog.suspended

    async def test_start_and_stop_editor_manage_watchdog(self, tmp_dir):
        editor = StubEditor()
        daemon = RobotDaemon(
            DaemonConfig(project_path=os.path.join(tmp_dir, "Game.uproject"), scm_type="none",
                         enable_report_server=False),
            editor=editor, executor=FakeExecutor(),
        )
        assert await daemon.start_editor(["-log"]) == 98
        assert editor.spawn_args == ["-log"]
        assert daemon.watchdog.is_active()
        assert len(editor.queues) == 1

        assert await daemon.stop_editor(save=False) is True
        assert editor.shutdowns == [False]
        assert not daemon.watchdog.is_active()
        assert editor.queues == []

    async def test_triage_crash(self, tmp_dir):
        crash_dir = os.path.join(tmp_dir, "crash")
        os.makedirs(crash_dir)
        with open(os.path.join(crash_dir, "Game.log"), "w") as f:
            f.write("Assertion failed: Ptr != nullptr\n")
        report = await _daemon(tmp_dir).triage_crash(crash_dir)
        assert report.type == "ASSERT"


# =============================================================================
# Live feed
# =============================================================================

class TestLiveFeed:
    """Broadcast events and request/reply over the WebSocket feed"""

    async def test_events_broadcast(self, tmp_dir, sample_workflow):
        daemon = _daemon(tmp_dir)
        client, gone = RecordingClient(), RecordingClient(closed=True)
        daemon._ws_clients.update({client, gone})

        result = await daemon.run_workflow(sample_workflow)

        kinds = [m["type"] for m in client.messages]
        assert kinds[0] == "workflow_start"
        assert kinds[-1] == "workflow_done"
        assert kinds.count("phase_start") == 2
        assert kinds.count("step_done") == 3
        assert client.messages[-1]["run_id"] == result.run_id
        assert gone not in daemon._ws_clients

    async def test_watchdog_events_forwarded(self, tmp_dir):
        daemon = _daemon(tmp_dir)
        client = RecordingClient()
        daemon._ws_clients.add(client)
        await daemon.start()
        try:
            daemon.watchdog.notifications.put_nowait(
                WatchdogEvent(kind="crash", crash_count=1, report=CrashReport(type="GPU")))
            for _ in range(50):
                if client.messages:
                    break
                await asyncio.sleep(0.01)
        finally:
            await daemon.stop()
        assert client.messages[0]["type"] == "watchdog"
        assert client.messages[0]["kind"] == "crash"
        assert client.messages[0]["report"]["type"] == "GPU"

    async def test_reply_status_and_run(self, tmp_dir, sample_workflow):
        daemon = _daemon(tmp_dir)
        result = await daemon.run_workflow(sample_workflow)

        status = daemon.ws_reply('{"type": "status"}')
        assert status["type"] == "status"
        assert status["workflowsSucceeded"] == 1

        run = daemon.ws_reply(json.dumps({"type": "run", "run_id": result.run_id}))
        assert run["metadata"]["status"] == "completed"

    @pytest.mark.parametrize("message,error", [
        ("not json", "Invalid JSON"),
        ("[1, 2]", "Request must be an object"),
        ('{"type": "run", "run_id": "run-nope"}', "Run not found: run-nope"),
        ('{"type": "shutdown"}', "Unknown request type: shutdown"),
    ])
    def test_reply_errors(self, tmp_dir, message, error):
        assert _daemon(tmp_dir).ws_reply(message) == {"type": "error", "message": error}
