"""
CI Robot - autonomous build/test orchestrator for Unreal Engine projects

Modules:
- models: Result dataclasses and run IDs
- config: Daemon configuration and workflow loader
- process / uat: External process execution and UAT invocation
- buildgraph, gauntlet, automation, visual, scenario: Tool runners
- scm: Git and Perforce attempt isolation
- policy / determinism / ddc: Security profiles, editor determinism args, DDC backends
- editor / watchdog / triage: Editor supervision and crash triage
- artifacts: Per-run artifact store
- daemon: Workflow engine
- report_server, cli, mcp_server: Outer surfaces
"""

from .models import WorkflowResult, PhaseResult, StepResult, generate_run_id
from .config import ConfigLoader, DaemonConfig, load_daemon_config
from .artifacts import ArtifactStore, RunArtifacts
from .policy import PolicyEnforcer, PolicyViolationError
from .triage import CrashTriager

__version__ = "1.0.0"

__all__ = [
    "WorkflowResult",
    "PhaseResult",
    "StepResult",
    "generate_run_id",
    "ConfigLoader",
    "DaemonConfig",
    "load_daemon_config",
    "ArtifactStore",
    "RunArtifacts",
    "PolicyEnforcer",
    "PolicyViolationError",
    "CrashTriager",
]
