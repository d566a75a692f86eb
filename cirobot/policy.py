"""
CI Robot Security Policy - allowlists for commands, paths and Python execution.

Two profiles:
- dev: permissive, for local development
- ci: restrictive, for automated pipelines
"""
import os
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from cirobot.log import get_logger
from cirobot.models import PolicyViolation

logger = get_logger(__name__)

CI_ENV_VARS = ("CI", "JENKINS_HOME", "GITHUB_ACTIONS", "GITLAB_CI", "TF_BUILD", "BUILDKITE")
PYTHON_PREVIEW_CHARS = 100


@dataclass
class SecurityProfile:
    name: str
    allowlisted_commands: List[str] = field(default_factory=list)
    allowlisted_paths: List[str] = field(default_factory=list)
    allow_arbitrary_python: bool = False
    require_confirmation_for: List[str] = field(default_factory=list)
    log_level: str = "normal"


DEV_PROFILE = SecurityProfile(
    name="dev",
    allowlisted_commands=["*"],
    allowlisted_paths=["*"],
    allow_arbitrary_python=True,
    require_confirmation_for=["quit_editor", "delete_asset", "delete_actor"],
    log_level="verbose",
)

CI_PROFILE = SecurityProfile(
    name="ci",
    allowlisted_commands=[
        "Automation",
        "Cook",
        "CompileAllBlueprints",
        "ResavePackages",
        "DerivedDataCache",
        "BuildGraph",
        "RunUnreal",
        "RunAutomation",
        "BuildCookRun",
    ],
    allowlisted_paths=[
        "${PROJECT_DIR}/**",
        "${ENGINE_DIR}/Build/**",
        "${ENGINE_DIR}/Binaries/**",
    ],
    allow_arbitrary_python=False,
    require_confirmation_for=["*"],
    log_level="normal",
)

SECURITY_PROFILES: Dict[str, SecurityProfile] = {"dev": DEV_PROFILE, "ci": CI_PROFILE}


class PolicyViolationError(Exception):
    """Raised by enforce_policy when a value is not allowed"""

    def __init__(self, violation: PolicyViolation):
        super().__init__(f"Policy violation: {violation.rule} - attempted: {violation.attempted}")
        self.violation = violation


class PolicyEnforcer:
    """Validates commands and paths against a security profile"""

    def __init__(self, profile: Union[SecurityProfile, str], project_dir: str = "", engine_dir: str = ""):
        if isinstance(profile, str):
            if profile not in SECURITY_PROFILES:
                raise ValueError(f"Unknown security profile: {profile}")
            profile = SECURITY_PROFILES[profile]
        self.profile = profile
        self.project_dir = project_dir
        self.engine_dir = engine_dir

    @property
    def profile_name(self) -> str:
        return self.profile.name

    def validate_command(self, command: str) -> Optional[PolicyViolation]:
        """Exact match, "prefix*" match, or "<allowed> <args>"."""
        allowed = self.profile.allowlisted_commands
        if "*" in allowed:
            return None

        for entry in allowed:
            if entry.endswith("*"):
                if command.startswith(entry[:-1]):
                    return None
            elif command == entry or command.startswith(entry + " "):
                return None

        return PolicyViolation(rule="COMMAND_NOT_ALLOWLISTED", attempted=command, allowed=list(allowed))

    def validate_path(self, file_path: str) -> Optional[PolicyViolation]:
        allowed = self.profile.allowlisted_paths
        if "*" in allowed:
            return None

        normalized = _normalize(file_path)
        if normalized is None:
            return PolicyViolation(rule="PATH_NOT_ALLOWLISTED", attempted=file_path, allowed=list(allowed))
        if any(self._match_path(normalized, pattern) for pattern in allowed):
            return None
        return PolicyViolation(rule="PATH_NOT_ALLOWLISTED", attempted=file_path, allowed=list(allowed))

    def validate_python(self, code: str) -> Optional[PolicyViolation]:
        if self.profile.allow_arbitrary_python:
            return None
        preview = code[:PYTHON_PREVIEW_CHARS] + ("..." if len(code) > PYTHON_PREVIEW_CHARS else "")
        return PolicyViolation(rule="PYTHON_NOT_ALLOWED", attempted=preview, allowed=[])

    def allows_python(self) -> bool:
        return self.profile.allow_arbitrary_python

    def requires_confirmation(self, action: str) -> bool:
        required = self.profile.require_confirmation_for
        return "*" in required or action in required

    def get_allowlisted_commands(self) -> List[str]:
        return list(self.profile.allowlisted_commands)

    def get_allowlisted_paths(self) -> List[str]:
        return [self._expand(p) for p in self.profile.allowlisted_paths]

    def get_security_report(self) -> Dict[str, Any]:
        return {
            "profile": self.profile.name,
            "allowlistedCommands": self.get_allowlisted_commands(),
            "allowlistedPaths": self.get_allowlisted_paths(),
            "allowArbitraryPython": self.profile.allow_arbitrary_python,
            "confirmationRequired": list(self.profile.require_confirmation_for),
            "logLevel": self.profile.log_level,
        }

    def _expand(self, pattern: str) -> str:
        return pattern.replace("${PROJECT_DIR}", self.project_dir).replace("${ENGINE_DIR}", self.engine_dir)

    def _match_path(self, path: str, pattern: str) -> bool:
        # ** crosses directories, * stays within one
        expanded = self._expand(pattern).replace("\\", "/")
        prefix, sep, rest = expanded.partition("*")
        if prefix:
            base = _normalize(prefix)
            if base is not None:
                expanded = base.rstrip("/") + ("/" if prefix.endswith("/") else "") + sep + rest
        parts = []
        for i, chunk in enumerate(expanded.split("**")):
            if i:
                parts.append(".*")
            parts.append("[^/]*".join(re.escape(s) for s in chunk.split("*")))
        return re.match("^" + "".join(parts) + "$", path, re.IGNORECASE) is not None


def _normalize(path: str) -> Optional[str]:
    """Collapse "." and ".." segments; None when ".." would still escape the path."""
    normalized = posixpath.normpath(path.replace("\\", "/"))
    if ".." in normalized.split("/"):
        return None
    return normalized


def is_ci_environment() -> bool:
    return any(os.environ.get(name) for name in CI_ENV_VARS)


def create_policy_enforcer_from_env(project_dir: str = "", engine_dir: str = "") -> PolicyEnforcer:
    """ci profile when a CI environment is detected, dev otherwise."""
    is_ci = is_ci_environment()
    name = "ci" if is_ci else "dev"
    logger.info("[POLICY] Using %s profile (CI detected: %s)", name, is_ci)
    return PolicyEnforcer(name, project_dir, engine_dir)


def enforce_policy(enforcer: PolicyEnforcer, kind: str, value: str) -> None:
    """
    Validate a value and raise on violation.

    Args:
        kind: "command", "path" or "python"

    Raises:
        PolicyViolationError
    """
    if kind == "command":
        violation = enforcer.validate_command(value)
    elif kind == "path":
        violation = enforcer.validate_path(value)
    elif kind == "python":
        violation = enforcer.validate_python(value)
    else:
        raise ValueError(f"Unknown policy check: {kind}")

    if violation:
        logger.warning("[POLICY] %s rejected: %s", violation.rule, violation.attempted)
        raise PolicyViolationError(violation)
