"""Shared fixtures for the CI Robot test suite."""
import os
import shutil
import subprocess
import tempfile
from typing import Dict, List, Optional

import pytest
import yaml

from cirobot.models import ProcessResult


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory, cleaned up after the test."""
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def sample_workflow():
    """Return a minimal valid workflow dict."""
    return {
        "name": "nightly",
        "description": "Compile and run smoke tests",
        "rollbackOnFailure": True,
        "phases": [
            {
                "name": "build",
                "steps": [
                    {"type": "build", "action": "compile", "params": {"platform": "Win64"}},
                ],
            },
            {
                "name": "test",
                "parallel": True,
                "steps": [
                    {"type": "test", "action": "automation", "params": {"filter": "Project.Smoke"}},
                    {"type": "cook", "action": "cook", "params": {"platform": "Win64"}},
                ],
            },
        ],
    }


@pytest.fixture
def sample_workflow_file(tmp_dir, sample_workflow):
    """Write sample_workflow to a YAML file and return its path."""
    path = os.path.join(tmp_dir, "workflow.yaml")
    with open(path, "w") as f:
        yaml.dump(sample_workflow, f)
    return path


def _git(cwd, *args):
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def git_repo(tmp_dir):
    """A git repository on branch main with one commit; skipped without git."""
    if shutil.which("git") is None:
        pytest.skip("git not available")
    repo = os.path.join(tmp_dir, "repo")
    os.makedirs(repo)
    _git(repo, "init", "-q")
    _git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    _git(repo, "config", "user.email", "robot@example.com")
    _git(repo, "config", "user.name", "CI Robot")
    _git(repo, "config", "commit.gpgsign", "false")
    with open(os.path.join(repo, "Game.uproject"), "w") as f:
        f.write('{"FileVersion": 3}\n')
    _git(repo, "add", "-A")
    _git(repo, "commit", "-q", "-m", "initial")
    return repo


class FakeExecutor:
    """Records invocations and answers from a list of canned results.

    responses maps a substring of "command args..." to a ProcessResult;
    the first matching key wins, anything else succeeds with empty output.
    """

    def __init__(self, responses: Optional[Dict[str, ProcessResult]] = None):
        self.responses = responses or {}
        self.calls: List[dict] = []

    async def run(self, command, args=None, timeout=None, cwd=None, env=None, log_file=None,
                  input_text=None, on_line=None):
        args = [str(a) for a in (args or [])]
        line = " ".join([command] + args)
        self.calls.append({"command": command, "args": args, "timeout": timeout, "cwd": cwd,
                           "env": env, "log_file": log_file, "input_text": input_text, "line": line})
        for key, result in self.responses.items():
            if key in line:
                return result
        return ProcessResult(exit_code=0)

    def lines(self) -> List[str]:
        return [c["line"] for c in self.calls]


@pytest.fixture
def fake_executor():
    return FakeExecutor()
