"""Tests for cirobot.mcp_server - MCP tool functions."""
import json
import os
from unittest.mock import patch

import pytest
import yaml

from conftest import FakeExecutor
from cirobot import mcp_server
from cirobot.config import DaemonConfig
from cirobot.daemon import RobotDaemon
from cirobot.mcp_server import (
    get_capabilities,
    get_run,
    list_runs,
    run_workflow,
    triage_crash,
    validate_workflow,
)
from cirobot.models import ProcessResult


@pytest.fixture
def daemon(tmp_dir, monkeypatch):
    """Install a daemon backed by a fake tool executor as the server's daemon."""
    config = DaemonConfig(project_path=os.path.join(tmp_dir, "Game.uproject"), engine_path="/opt/UE/Engine",
                          scm_type="none", security_profile="dev", enable_report_server=False)
    daemon = RobotDaemon(config, executor=FakeExecutor())
    monkeypatch.setattr(mcp_server, "_daemon", daemon)
    return daemon


@pytest.fixture
def workflow_yaml(sample_workflow):
    return yaml.dump(sample_workflow)


# =============================================================================
# Workflow input
# =============================================================================

class TestWorkflowInput:
    """Exactly one of workflow_path / workflow_yaml"""

    def test_neither(self):
        data = json.loads(validate_workflow())
        assert data["errors"][0]["message"] == "Provide exactly one of workflow_path or workflow_yaml"

    def test_both(self, sample_workflow_file, workflow_yaml):
        data = json.loads(validate_workflow(sample_workflow_file, workflow_yaml))
        assert data["valid"] is False

    def test_missing_file(self, tmp_dir):
        path = os.path.join(tmp_dir, "nope.yaml")
        data = json.loads(validate_workflow(workflow_path=path))
        assert data["errors"][0]["message"] == f"Workflow file not found: {path}"

    def test_invalid_yaml(self):
        data = json.loads(validate_workflow(workflow_yaml="name: [unclosed"))
        assert data["errors"][0]["message"].startswith("Invalid YAML")

    def test_not_a_mapping(self):
        data = json.loads(validate_workflow(workflow_yaml="- just\n- a list\n"))
        assert data["errors"][0]["message"] == "Workflow must be a YAML object"


class TestValidateWorkflow:

    def test_valid_from_file(self, sample_workflow_file):
        data = json.loads(validate_workflow(workflow_path=sample_workflow_file))
        assert data["valid"] is True
        assert data["errors"] == []

    def test_invalid_reports_fields(self):
        data = json.loads(validate_workflow(workflow_yaml="name: x\nphases: []\n"))
        assert data["valid"] is False
        assert data["errors"]


# =============================================================================
# Running
# =============================================================================

class TestRunWorkflow:
    """run_workflow returns the WorkflowResult as JSON"""

    async def test_success(self, daemon, workflow_yaml):
        data = json.loads(await run_workflow(workflow_yaml=workflow_yaml))
        assert data["success"] is True
        assert data["summary"] == 'Workflow "nightly" completed successfully'
        assert [p["name"] for p in data["phases"]] == ["build", "test"]
        assert daemon.store.has_run(data["runId"])

    async def test_failure_result(self, daemon, workflow_yaml):
        daemon.executor.responses["BuildGraph"] = ProcessResult(exit_code=2, stderr="fatal error LNK1120")
        data = json.loads(await run_workflow(workflow_yaml=workflow_yaml))
        assert data["success"] is False
        assert data["error"] == 'Phase "build" failed: Build failed: fatal error LNK1120'

    async def test_invalid_workflow_not_run(self, daemon):
        data = json.loads(await run_workflow(workflow_yaml="name: x\nphases: []\n"))
        assert data["error"] == "Workflow validation failed"
        assert daemon.executor.calls == []
        assert daemon.workflows_executed == 0

    async def test_bad_daemon_config(self, monkeypatch, workflow_yaml):
        monkeypatch.setattr(mcp_server, "_daemon", None)
        with patch.dict(os.environ, {"CIROBOT_CONFIG": ""}):
            with patch.object(mcp_server, "RobotDaemon", side_effect=ValueError("Unknown DDC mode: s3")):
                data = json.loads(await run_workflow(workflow_yaml=workflow_yaml))
        assert data["error"] == "Invalid daemon configuration: Unknown DDC mode: s3"


# =============================================================================
# Runs, triage, capabilities
# =============================================================================

class TestRunTools:

    async def test_list_and_get(self, daemon, workflow_yaml):
        run_id = json.loads(await run_workflow(workflow_yaml=workflow_yaml))["runId"]

        runs = json.loads(list_runs())["runs"]
        assert [r["runId"] for r in runs] == [run_id]

        detail = json.loads(get_run(run_id))
        assert detail["metadata"]["status"] == "completed"
        assert detail["result"]["success"] is True
        assert "robot.log" in {a["path"] for a in detail["artifacts"]}

    @pytest.mark.parametrize("run_id", ["run-missing", "../etc", "..", ""])
    def test_get_unknown_run(self, daemon, run_id):
        assert json.loads(get_run(run_id)) == {"error": f"Run not found: {run_id}"}


class TestTriageAndCapabilities:

    async def test_triage(self, daemon, tmp_dir):
        with open(os.path.join(tmp_dir, "Game.log"), "w") as f:
            f.write("DXGI_ERROR_DEVICE_HUNG\n")
        data = json.loads(await triage_crash(tmp_dir))
        assert data["type"] == "GPU"

    async def test_triage_missing_dir(self, daemon, tmp_dir):
        path = os.path.join(tmp_dir, "nope")
        assert json.loads(await triage_crash(path)) == {"error": f"Crash directory not found: {path}"}

    def test_capabilities(self, daemon):
        caps = json.loads(get_capabilities())
        assert caps["securityProfile"] == "dev"
        assert caps["ddcConfig"]["mode"] == "local"


class TestServerDaemon:

    def test_daemon_built_once_from_config_file(self, tmp_dir, monkeypatch):
        config_path = os.path.join(tmp_dir, "cirobot.yaml")
        with open(config_path, "w") as f:
            yaml.dump({"project_path": os.path.join(tmp_dir, "Game.uproject"), "scm_type": "none"}, f)
        monkeypatch.setattr(mcp_server, "_daemon", None)
        monkeypatch.setenv("CIROBOT_CONFIG", config_path)

        first = mcp_server._get_daemon()

        assert first is mcp_server._get_daemon()
        assert first.config.enable_report_server is False
        assert first.scm is None
