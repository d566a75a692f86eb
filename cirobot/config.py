"""
CI Robot Config - daemon settings and workflow file loading.

Daemon settings come from an optional YAML file, then environment overrides:
    UE_PROJECT_PATH, UE_ENGINE_PATH, CIROBOT_ARTIFACT_DIR, CIROBOT_SECURITY_PROFILE,
    CIROBOT_SCM, CIROBOT_DDC_MODE, CIROBOT_ZEN_URL, CIROBOT_REPORT_PORT
"""
import os
from dataclasses import dataclass, fields
from typing import Any, Callable, Dict, Optional

import yaml

from cirobot.policy import is_ci_environment
from cirobot.uat import resolve_engine_path

ENV_OVERRIDES = {
    "UE_PROJECT_PATH": "project_path",
    "UE_ENGINE_PATH": "engine_path",
    "CIROBOT_ARTIFACT_DIR": "artifact_dir",
    "CIROBOT_SECURITY_PROFILE": "security_profile",
    "CIROBOT_SCM": "scm_type",
    "CIROBOT_DDC_MODE": "ddc_mode",
    "CIROBOT_ZEN_URL": "zen_server_url",
    "CIROBOT_REPORT_PORT": "report_server_port",
}


@dataclass
class DaemonConfig:
    project_path: str = ""
    engine_path: str = ""
    artifact_dir: str = ""
    security_profile: str = ""  # dev / ci; empty = detect from environment

    enable_report_server: bool = True
    report_server_host: str = "127.0.0.1"
    report_server_port: int = 8080
    enable_ws: bool = False
    ws_port: int = 8765

    scm_type: str = "git"  # git / perforce / none
    main_branch: str = "main"
    p4_port: str = ""
    p4_user: str = ""
    p4_client: str = ""

    ddc_mode: str = "local"
    zen_server_url: str = ""
    shared_storage_path: str = ""
    cloud_ddc_endpoint: str = ""

    editor_timeout: Optional[int] = None  # graceful shutdown, seconds
    editor_args: Optional[list] = None
    determinism_profile: str = "robot"

    heartbeat_interval: int = 5  # seconds
    heartbeat_timeout: int = 30  # seconds
    max_crash_count: int = 3
    auto_restart: bool = True

    def resolved_artifact_dir(self) -> str:
        if self.artifact_dir:
            return self.artifact_dir
        return os.path.join(os.path.dirname(self.project_path) or os.getcwd(), ".mcp-artifacts")

    def resolved_security_profile(self) -> str:
        if self.security_profile:
            return self.security_profile
        return "ci" if is_ci_environment() else "dev"


def _coerce(value: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int) and not isinstance(value, int):
        return int(value)
    return value


def load_daemon_config(path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None) -> DaemonConfig:
    """
    Build a DaemonConfig from YAML, environment and explicit overrides (in that order).

    Raises:
        ValueError: unknown keys in the YAML file
    """
    data: Dict[str, Any] = {}
    if path:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Daemon config must be a mapping: {path}")

    config = DaemonConfig()
    known = {f.name: f for f in fields(DaemonConfig)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ValueError(f"Unknown daemon config keys: {', '.join(unknown)}")

    for key, value in data.items():
        setattr(config, key, _coerce(value, getattr(config, key)) if value is not None else None)

    for env_name, attr in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            setattr(config, attr, _coerce(value, getattr(config, attr)))

    for key, value in (overrides or {}).items():
        if value is not None and key in known:
            setattr(config, key, value)

    config.engine_path = resolve_engine_path(config.engine_path)
    config.p4_port = config.p4_port or os.environ.get("P4PORT", "")
    config.p4_user = config.p4_user or os.environ.get("P4USER", "")
    config.p4_client = config.p4_client or os.environ.get("P4CLIENT", "")
    return config


class ConfigLoader:
    """Loader for workflow files"""

    def __init__(self, logger: Optional[Callable[[str], None]] = None):
        self.logger = logger or (lambda x: None)

    def load_workflow(self, path: str) -> Dict[str, Any]:
        """
        Load workflow YAML file

        Args:
            path: Path to workflow YAML file

        Returns:
            Parsed workflow dict
        """
        with open(path) as f:
            config = yaml.safe_load(f)
        if not isinstance(config, dict):
            raise ValueError(f"Workflow file must contain a mapping: {path}")
        self.logger(f"WORKFLOW LOADED | {path}")
        return config

    def load_env_file(self, workflow_dir: str) -> bool:
        """
        Load a .env file from the workflow directory into the environment

        Returns:
            True if env file was loaded, False otherwise
        """
        env_file = os.path.join(workflow_dir, ".env")
        if not os.path.exists(env_file):
            self.logger("ENV NOT FOUND | using system env")
            return False
        try:
            with open(env_file) as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        key, value = line.split("=", 1)
                        os.environ[key.strip()] = value.strip()
        except OSError as e:
            self.logger(f"ENV LOAD ERROR | {e}")
            return False
        self.logger(f"ENV LOADED | {env_file}")
        return True
