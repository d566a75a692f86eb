"""
CI Robot SCM Client - one isolated attempt per run, committed on success, reverted on failure.

Git: attempt = branch mcp-attempt/<run_id>
Perforce: attempt = pending changelist

Apart from create_attempt (which raises SCMError), operations report failure
through their return values.
"""
import os
import re
from typing import Dict, List, Optional

from cirobot.log import get_logger
from cirobot.models import ProcessResult, SCMAttempt, SCMCommitResult
from cirobot.process import ProcessExecutor

logger = get_logger(__name__)

SCM_TIMEOUT_MS = 300000
ATTEMPT_BRANCH_PREFIX = "mcp-attempt/"
COMMIT_PREFIX = "[MCP Robot]"


class SCMError(Exception):
    """An attempt could not be created"""


class SCMClient:
    """Shared contract for source control variants"""

    scm_type = ""

    def __init__(self, working_dir: str, executor: Optional[ProcessExecutor] = None):
        self.working_dir = working_dir
        self.executor = executor or ProcessExecutor()

    async def create_attempt(self, run_id: str) -> SCMAttempt:
        raise NotImplementedError

    async def commit_attempt(self, attempt: SCMAttempt, summary: str) -> SCMCommitResult:
        raise NotImplementedError

    async def revert_attempt(self, attempt: SCMAttempt) -> bool:
        raise NotImplementedError

    async def get_current_branch(self) -> str:
        raise NotImplementedError

    async def has_uncommitted_changes(self) -> bool:
        raise NotImplementedError

    def _env(self) -> Dict[str, str]:
        return {}

    async def _exec(self, command: str, args: List[str], input_text: Optional[str] = None) -> ProcessResult:
        result = await self.executor.run(
            command, args,
            timeout=SCM_TIMEOUT_MS,
            cwd=self.working_dir,
            env=self._env(),
            input_text=input_text,
        )
        if result.exit_code != 0:
            logger.debug("[SCM] %s %s exited %d: %s", command, " ".join(args), result.exit_code,
                         result.stderr.strip())
        return result


class GitClient(SCMClient):
    """Branch-per-attempt git workflow"""

    scm_type = "git"

    def __init__(self, working_dir: str, main_branch: str = "main", remote_name: str = "origin",
                 exclude_paths: Optional[List[str]] = None, executor: Optional[ProcessExecutor] = None):
        """
        Args:
            exclude_paths: Paths relative to working_dir that are never staged or
                           cleaned (e.g. an artifact directory inside the repo)
        """
        super().__init__(working_dir, executor)
        self.main_branch = main_branch
        self.remote_name = remote_name
        self.exclude_paths = list(exclude_paths or [])

    def _add_args(self) -> List[str]:
        args = ["add", "-A", "--", "."]
        args.extend(f":(exclude){p}" for p in self.exclude_paths)
        return args

    def _clean_args(self) -> List[str]:
        args = ["clean", "-fd"]
        for p in self.exclude_paths:
            args.extend(["-e", p])
        return args

    async def create_attempt(self, run_id: str) -> SCMAttempt:
        branch = f"{ATTEMPT_BRANCH_PREFIX}{run_id}"
        result = await self._exec("git", ["checkout", "-b", branch])
        if result.exit_code != 0:
            raise SCMError(f"Failed to create attempt branch: {result.stderr.strip()}")
        logger.info("[SCM] Created attempt branch %s", branch)
        return SCMAttempt(run_id=run_id, branch=branch)

    async def commit_attempt(self, attempt: SCMAttempt, summary: str) -> SCMCommitResult:
        """Stage all, commit, merge --no-ff into main, delete the attempt branch."""
        await self._exec("git", self._add_args())

        staged = await self._exec("git", ["diff", "--cached", "--name-only"])
        if not staged.stdout.strip():
            logger.info("[SCM] No changes to commit for %s", attempt.run_id)
            checkout = await self._exec("git", ["checkout", self.main_branch])
            if checkout.exit_code == 0:
                await self._exec("git", ["branch", "-D", attempt.branch])
            return SCMCommitResult(success=True, message="No changes to commit")

        message = f"{COMMIT_PREFIX} {summary}\n\nRun ID: {attempt.run_id}"
        commit = await self._exec("git", ["commit", "-m", message])
        if commit.exit_code != 0:
            return SCMCommitResult(success=False, message=f"Commit failed: {commit.stderr.strip()}")

        head = await self._exec("git", ["rev-parse", "HEAD"])
        commit_hash = head.stdout.strip()

        checkout = await self._exec("git", ["checkout", self.main_branch])
        if checkout.exit_code != 0:
            logger.error("[SCM] Failed to checkout %s: %s", self.main_branch, checkout.stderr.strip())
            return SCMCommitResult(
                success=False,
                commit_hash=commit_hash,
                message=f"Failed to checkout {self.main_branch}: {checkout.stderr.strip()}",
            )
        merge =await self._exec("git", ["merge", attempt.branch, "--no-ff", "-m", f"Merge {attempt.branch}"])
        if merge.exit_code != 0:
            await self._exec("git", ["merge", "--abort"])
            logger.error("[SCM] Merge of %s into %s failed", attempt.branch, self.main_branch)
            return SCMCommitResult(
                success=False,
                commit_hash=commit_hash,
                message=f"Merge to {self.main_branch} failed: {merge.stderr.strip()}",
            )

        await self._exec("git", ["branch", "-d", attempt.branch])
        logger.info("[SCM] Committed %s and merged into %s", commit_hash[:12], self.main_branch)
        return SCMCommitResult(
            success=True,
            commit_hash=commit_hash,
            message=f"Successfully committed and merged to {self.main_branch}",
        )

    async def revert_attempt(self, attempt: SCMAttempt) -> bool:
        """Discard work, return to main, drop the attempt branch. False only if checkout fails."""
        await self._exec("git", ["reset", "--hard"])
        await self._exec("git", self._clean_args())

        checkout = await self._exec("git", ["checkout", self.main_branch])
        if checkout.exit_code != 0:
            logger.error("[SCM] Failed to checkout %s: %s", self.main_branch, checkout.stderr.strip())
            return False

        if attempt.branch:
            await self._exec("git", ["branch", "-D", attempt.branch])
        logger.info("[SCM] Reverted attempt %s", attempt.label)
        return True

    async def get_current_branch(self) -> str:
        result = await self._exec("git", ["rev-parse", "--abbrev-ref", "HEAD"])
        return result.stdout.strip()

    async def has_uncommitted_changes(self) -> bool:
        result = await self._exec("git", ["status", "--porcelain"])
        return bool(result.stdout.strip())

    async def get_recent_commits(self, count: int = 10) -> List[Dict[str, str]]:
        result = await self._exec("git", ["log", "--format=%H|%s|%ci", f"-{count}"])
        commits = []
        for line in result.stdout.strip().split("\n"):
            if not line.strip():
                continue
            hash_, message, date = (line.split("|", 2) + ["", ""])[:3]
            commits.append({"hash": hash_, "message": message, "date": date})
        return commits


class PerforceClient(SCMClient):
    """Changelist-per-attempt Perforce workflow"""

    scm_type = "perforce"

    def __init__(self, working_dir: str, p4_port: str = "", p4_user: str = "", p4_client: str = "",
                 executor: Optional[ProcessExecutor] = None):
        super().__init__(working_dir, executor)
        self.p4_port = p4_port or os.environ.get("P4PORT", "")
        self.p4_user = p4_user or os.environ.get("P4USER", "")
        self.p4_client = p4_client or os.environ.get("P4CLIENT", "")

    def _env(self) -> Dict[str, str]:
        env = {}
        if self.p4_port:
            env["P4PORT"] = self.p4_port
        if self.p4_user:
            env["P4USER"] = self.p4_user
        if self.p4_client:
            env["P4CLIENT"] = self.p4_client
        return env

    async def create_attempt(self, run_id: str) -> SCMAttempt:
        """Create a pending changelist from the edited `p4 change -o` template."""
        template = await self._exec("p4", ["change", "-o"])
        if template.exit_code != 0:
            raise SCMError(f"Failed to get changelist template: {template.stderr.strip()}")

        spec = template.stdout.replace("<enter description here>", f"{COMMIT_PREFIX} Attempt {run_id}", 1)
        created = await self._exec("p4", ["change", "-i"], input_text=spec)
        if created.exit_code != 0:
            raise SCMError(f"Failed to create changelist: {created.stderr.strip()}")

        match = re.search(r"Change (\d+) created", created.stdout)
        changelist = int(match.group(1)) if match else None
        logger.info("[SCM] Created changelist %s for %s", changelist, run_id)
        return SCMAttempt(run_id=run_id, changelist=changelist)

    async def commit_attempt(self, attempt: SCMAttempt, summary: str) -> SCMCommitResult:
        if not attempt.changelist:
            return SCMCommitResult(success=False, message="No changelist number in attempt")

        number = str(attempt.changelist)
        current = await self._exec("p4", ["change", "-o", number])
        if current.exit_code == 0 and summary:
            updated = re.sub(
                r"(Description:\s*\n)(?:\t.*\n?)*",
                lambda m: f"{m.group(1)}\t{COMMIT_PREFIX} {summary}\n\tRun ID: {attempt.run_id}\n",
                current.stdout,
                count=1,
            )
            await self._exec("p4", ["change", "-i"], input_text=updated)

        submit = await self._exec("p4", ["submit", "-c", number])
        if submit.exit_code != 0:
            return SCMCommitResult(success=False, changelist=attempt.changelist,
                                   message=f"Submit failed: {submit.stderr.strip()}")
        return SCMCommitResult(success=True, changelist=attempt.changelist,
                               message=f"Changelist {number} submitted")

    async def revert_attempt(self, attempt: SCMAttempt) -> bool:
        if not attempt.changelist:
            return False
        number = str(attempt.changelist)
        await self._exec("p4", ["revert", "-c", number, "//..."])
        deleted = await self._exec("p4", ["change", "-d", number])
        return deleted.exit_code == 0

    async def get_current_branch(self) -> str:
        # no branches; the client workspace plays that role
        return self.p4_client

    async def has_uncommitted_changes(self) -> bool:
        result = await self._exec("p4", ["opened"])
        return bool(result.stdout.strip())


def create_scm_client(scm_type: str, working_dir: str, main_branch: str = "main",
                      p4_port: str = "", p4_user: str = "", p4_client: str = "",
                      exclude_paths: Optional[List[str]] = None,
                      executor: Optional[ProcessExecutor] = None) -> SCMClient:
    if scm_type == "git":
        return GitClient(working_dir, main_branch=main_branch, exclude_paths=exclude_paths, executor=executor)
    if scm_type == "perforce":
        return PerforceClient(working_dir, p4_port, p4_user, p4_client, executor=executor)
    raise ValueError(f"Unsupported SCM type: {scm_type}")


def detect_scm_type(working_dir: str) -> Optional[str]:
    """git when a .git entry exists, perforce when P4PORT/P4CLIENT are set, else None."""
    if os.path.exists(os.path.join(working_dir, ".git")):
        return "git"
    if os.environ.get("P4PORT") or os.environ.get("P4CLIENT"):
        return "perforce"
    return None
