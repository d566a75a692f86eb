"""
CI Robot MCP Server - Expose the CI robot as MCP tools.

Run via stdio:
    python -m cirobot.mcp_server

Or via SSE for web clients:
    python -m cirobot.mcp_server --sse

Configure in an MCP client:
    {
      "mcpServers": {
        "cirobot": {
          "command": "cirobot-mcp",
          "env": {
            "UE_PROJECT_PATH": "/path/to/Game.uproject",
            "UE_ENGINE_PATH": "/path/to/UE_5.7",
            "CIROBOT_CONFIG": "/path/to/cirobot.yaml"
          }
        }
      }
    }
"""
import json
import os
import sys
from typing import Optional

import yaml
from mcp.server.fastmcp import FastMCP

from cirobot.config import DaemonConfig, load_daemon_config
from cirobot.daemon import RobotDaemon
from models import ValidationEngine

mcp = FastMCP(
    "CI Robot",
    instructions=(
        "CI Robot runs build/cook/test/package workflows for an Unreal project "
        "inside an isolated SCM attempt. Use these tools to validate and run "
        "workflows, browse run artifacts and triage editor crashes."
    ),
)

_daemon: Optional[RobotDaemon] = None


def _load_config() -> DaemonConfig:
    config = load_daemon_config(os.environ.get("CIROBOT_CONFIG") or None)
    config.enable_report_server = False
    return config


def _get_daemon() -> RobotDaemon:
    """One daemon per server process, so concurrent runs see each other."""
    global _daemon
    if _daemon is None:
        _daemon = RobotDaemon(_load_config())
    return _daemon


def _parse_workflow(workflow_path: str, workflow_yaml: str):
    """Returns (data, error); exactly one of them is None."""
    if bool(workflow_path) == bool(workflow_yaml):
        return None, "Provide exactly one of workflow_path or workflow_yaml"
    try:
        if workflow_path:
            with open(workflow_path) as f:
                data = yaml.safe_load(f)
        else:
            data = yaml.safe_load(workflow_yaml)
    except FileNotFoundError:
        return None, f"Workflow file not found: {workflow_path}"
    except yaml.YAMLError as e:
        return None, f"Invalid YAML: {e}"
    if not isinstance(data, dict):
        return None, "Workflow must be a YAML object"
    return data, None


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@mcp.tool()
async def run_workflow(workflow_path: str = "", workflow_yaml: str = "") -> str:
    """Run a CI workflow (phases of build/cook/test/package/deploy/custom steps).

    The run happens inside a fresh SCM attempt: committed on success,
    rolled back on failure when rollbackOnFailure is set.

    Args:
        workflow_path: Path to a workflow YAML file
        workflow_yaml: Workflow definition as YAML text (alternative to workflow_path)
    """
    data, error = _parse_workflow(workflow_path, workflow_yaml)
    if error:
        return json.dumps({"success": False, "error": error})

    validation = ValidationEngine().validate_data(data)
    if not validation.is_valid:
        return json.dumps({
            "success": False,
            "error": "Workflow validation failed",
            "errors": [{"field": e.field, "message": e.message} for e in validation.errors],
        })

    try:
        daemon = _get_daemon()
    except ValueError as e:
        return json.dumps({"success": False, "error": f"Invalid daemon configuration: {e}"})

    result = await daemon.run_workflow(data)
    return json.dumps(result.to_dict(), default=str)


@mcp.tool()
def validate_workflow(workflow_path: str = "", workflow_yaml: str = "") -> str:
    """Validate a workflow without running it. Returns errors, warnings and metadata.

    Args:
        workflow_path: Path to a workflow YAML file
        workflow_yaml: Workflow definition as YAML text (alternative to workflow_path)
    """
    data, error = _parse_workflow(workflow_path, workflow_yaml)
    if error:
        return json.dumps({"valid": False, "errors": [{"field": "file", "message": error}]})

    result = ValidationEngine().validate_data(data)
    return json.dumps({
        "valid": result.is_valid,
        "errors": [{"field": e.field, "message": e.message} for e in result.errors],
        "warnings": [{"field": w.field, "message": w.message} for w in result.warnings],
        "metadata": result.metadata,
    })


@mcp.tool()
def list_runs() -> str:
    """List recorded runs, newest first, with their status."""
    try:
        store = _get_daemon().store
    except ValueError as e:
        return json.dumps({"error": f"Invalid daemon configuration: {e}"})
    return json.dumps({"runs": store.list_runs()})


@mcp.tool()
def get_run(run_id: str) -> str:
    """Get the metadata and artifact list of one run.

    Args:
        run_id: Run ID as returned by run_workflow or list_runs
    """
    try:
        store = _get_daemon().store
    except ValueError as e:
        return json.dumps({"error": f"Invalid daemon configuration: {e}"})
    if os.sep in run_id or "/" in run_id or run_id in ("", ".", "..") or not store.has_run(run_id):
        return json.dumps({"error": f"Run not found: {run_id}"})

    run = store.get_run(run_id)
    result = {
        "runId": run_id,
        "metadata": store.get_metadata(run_id),
        "artifacts": [a.to_dict() for a in run.list_artifacts()],
    }
    if run.exists("result.json"):
        result["result"] = run.read_json("result.json")
    return json.dumps(result, default=str)


@mcp.tool()
async def triage_crash(crash_dir: str) -> str:
    """Classify an editor crash from its crash directory (logs, minidumps, GPU dumps).

    Args:
        crash_dir: Directory containing the crash logs
    """
    if not os.path.isdir(crash_dir):
        return json.dumps({"error": f"Crash directory not found: {crash_dir}"})
    try:
        daemon = _get_daemon()
    except ValueError as e:
        return json.dumps({"error": f"Invalid daemon configuration: {e}"})
    report = await daemon.triage_crash(crash_dir)
    return json.dumps(report.to_dict())


@mcp.tool()
def get_capabilities() -> str:
    """Engine version, security profile, DDC mode, supported actions and allowlists."""
    try:
        return json.dumps(_get_daemon().get_capabilities())
    except ValueError as e:
        return json.dumps({"error": f"Invalid daemon configuration: {e}"})


def main():
    transport = "stdio"
    if "--sse" in sys.argv:
        transport = "sse"
    if "--streamable-http" in sys.argv:
        transport = "streamable-http"
    mcp.run(transport=transport)


if __name__ == "__main__":
    main()
