#!/usr/bin/env python3
"""
Git worktree and branch operations for mrm

Every method takes the repository path explicitly so one manager can serve all
repositories of a project. Mutating operations raise GitOperationError; pure
queries swallow git failures and answer False / empty instead.
"""

import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Union

from mrm_errors import BranchNotMergedError, GitOperationError, RemoteParseError
from mrm_models import DEFAULT_REMOTE

logger = logging.getLogger("mrm")

PathLike = Union[str, Path]

# ssh://git@github.com/{org}/{repo}.git, ssh://git@host:2222/{org}/{repo}
_SSH_URL_RE = re.compile(r"^ssh://(?:[^@/]+@)?[^/]+/([^/]+)/[^/]")
# git@github.com:{org}/{repo}.git
_SCP_URL_RE = re.compile(r"^[\w.-]+@[^:/]+:/?([^/]+)/[^/]")
# https://github.com/{org}/{repo}.git
_HTTPS_URL_RE = re.compile(r"^https?://(?:[^@/]+@)?[^/]+/([^/]+)/[^/]")


def parse_org_from_url(url: str) -> str:
    """
    Extract the organization / namespace segment from a remote URL

    Raises:
        RemoteParseError: If the URL matches none of the supported forms
    """
    url = (url or "").strip()
    for pattern in (_SSH_URL_RE, _SCP_URL_RE, _HTTPS_URL_RE):
        match = pattern.match(url)
        if match:
            return match.group(1)

    raise RemoteParseError(f"Failed to parse org from remote URL: {url!r}")


class GitWorktreeManager:
    """Git worktree management across many repositories"""

    def __init__(self, timeout: Optional[float] = 120):
        self.timeout = timeout

    def fetch(self, repo_path: PathLike, remote: str = DEFAULT_REMOTE):
        """Fetch remote refs"""
        self._run_checked(repo_path, ["fetch", remote], f"Failed to fetch '{remote}'")

    def create_worktree(
        self,
        repo_path: PathLike,
        worktree_path: PathLike,
        branch_name: str,
        base_branch: str = "main",
        remote: str = DEFAULT_REMOTE,
    ) -> Path:
        """
        Create a worktree on a new branch based on <remote>/<base_branch>

        An existing local branch that is not checked out anywhere is reused
        rather than recreated.
        """
        worktree_path = Path(worktree_path)

        if self._is_registered(repo_path, worktree_path):
            raise GitOperationError(f"Worktree already registered at {worktree_path}")

        if worktree_path.exists():
            if not worktree_path.is_dir():
                raise GitOperationError(f"Worktree path is not a directory: {worktree_path}")
            if any(worktree_path.iterdir()):
                raise GitOperationError(f"Worktree path is not empty: {worktree_path}")

        self.fetch(repo_path, remote)
        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        if self.branch_exists(repo_path, branch_name):
            if self.is_branch_checked_out(repo_path, branch_name):
                raise GitOperationError(
                    f"Branch '{branch_name}' is already checked out in another worktree"
                )

            logger.debug(f"Reusing existing branch {branch_name} in {repo_path}")
            self._run_checked(
                repo_path,
                ["worktree", "add", str(worktree_path), branch_name],
                f"Failed to create worktree with existing branch '{branch_name}'",
            )
        else:
            self._run_checked(
                repo_path,
                [
                    "worktree",
                    "add",
                    "-b",
                    branch_name,
                    str(worktree_path),
                    f"{remote}/{base_branch}",
                ],
                f"Failed to create new branch '{branch_name}'",
            )

        return worktree_path

    def remove_worktree(self, repo_path: PathLike, worktree_path: PathLike):
        """Force-remove a worktree; prune the registration if its directory is gone"""
        worktree_path = Path(worktree_path)

        if not worktree_path.exists():
            logger.debug(f"Worktree {worktree_path} already gone, pruning registrations")
            self._run_checked(repo_path, ["worktree", "prune"], "Failed to prune worktrees")
            return

        self._run_checked(
            repo_path,
            ["worktree", "remove", "--force", str(worktree_path)],
            f"Failed to remove worktree {worktree_path}",
        )

    def delete_branch(self, repo_path: PathLike, branch_name: str, force: bool = False):
        """Delete a local branch (-D when forced, -d otherwise)"""
        cmd = ["branch", "-D" if force else "-d", branch_name]
        try:
            self._run_git(repo_path, cmd)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr or ""
            if not force and "not fully merged" in stderr:
                raise BranchNotMergedError(f"Branch '{branch_name}' is not fully merged", stderr)
            raise GitOperationError(f"Failed to delete branch '{branch_name}'", stderr)
        except (subprocess.TimeoutExpired, OSError) as e:
            raise GitOperationError(f"Failed to delete branch '{branch_name}': {e}")

    def branch_exists(self, repo_path: PathLike, branch_name: str) -> bool:
        """Check if a local branch exists"""
        return self._succeeds(
            repo_path, ["show-ref", "--verify", "--quiet", f"refs/heads/{branch_name}"]
        )

    def is_branch_checked_out(self, repo_path: PathLike, branch_name: str) -> bool:
        """Check if a branch is already checked out in any worktree"""
        return any(wt.get("branch") == branch_name for wt in self.list_worktrees(repo_path))

    @staticmethod
    def worktree_exists(worktree_path: PathLike) -> bool:
        """A worktree checkout has a .git file at its root"""
        return (Path(worktree_path) / ".git").exists()

    def list_worktrees(self, repo_path: PathLike) -> List[Dict[str, str]]:
        """List all worktrees of a repository"""
        try:
            result = self._run_git(repo_path, ["worktree", "list", "--porcelain"])
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
            logger.debug(f"Failed to list worktrees for {repo_path}: {e}")
            return []

        worktrees = []
        current_tree: Dict[str, str] = {}

        for line in result.stdout.strip().split("\n"):
            if line.startswith("worktree "):
                if current_tree:
                    worktrees.append(current_tree)
                current_tree = {"path": line.split(" ", 1)[1]}
            elif line.startswith("HEAD "):
                current_tree["commit"] = line.split(" ", 1)[1]
            elif line.startswith("branch "):
                ref = line.split(" ", 1)[1]
                current_tree["branch"] = ref.split("refs/heads/", 1)[-1]
            elif line == "bare":
                current_tree["bare"] = "True"
            elif line == "detached":
                current_tree["detached"] = "True"

        if current_tree:
            worktrees.append(current_tree)

        return worktrees

    def get_branch_status(
        self, repo_path: PathLike, branch_name: str, remote: str = DEFAULT_REMOTE
    ) -> Dict[str, bool]:
        """Local existence and whether a same-named branch exists on the remote"""
        created = self.branch_exists(repo_path, branch_name)
        pushed = False

        if created:
            try:
                result = self._run_git(
                    repo_path, ["ls-remote", "--heads", remote, f"refs/heads/{branch_name}"]
                )
                pushed = bool(result.stdout.strip())
            except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError) as e:
                logger.debug(f"Could not query {remote} for {branch_name}: {e}")
                pushed = False

        return {"created": created, "pushed": pushed}

    def get_remote_url(self, repo_path: PathLike, remote: str = DEFAULT_REMOTE) -> str:
        """Configured URL of a remote, as written in the repository config"""
        try:
            result = self._run_git(repo_path, ["config", "--get", f"remote.{remote}.url"])
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
            raise RemoteParseError(f"Remote '{remote}' not configured in {repo_path}")
        return result.stdout.strip()

    def get_org_from_remote(self, repo_path: PathLike, remote: str = DEFAULT_REMOTE) -> str:
        return parse_org_from_url(self.get_remote_url(repo_path, remote))

    def is_valid_repository(self, repo_path: PathLike) -> bool:
        """Check that the path is an initialized git repository"""
        if not Path(repo_path).is_dir():
            return False
        return self._succeeds(repo_path, ["rev-parse", "--git-dir"])

    def _is_registered(self, repo_path: PathLike, worktree_path: Path) -> bool:
        target = worktree_path.resolve()
        for wt in self.list_worktrees(repo_path):
            if Path(wt["path"]).resolve() == target:
                return True
        return False

    def _succeeds(self, repo_path: PathLike, args: List[str]) -> bool:
        try:
            self._run_git(repo_path, args)
            return True
        except (subprocess.CalledProcessError, subprocess.TimeoutExpired, OSError):
            return False

    def _run_checked(self, repo_path: PathLike, args: List[str], message: str):
        """Run git, converting any failure into GitOperationError"""
        try:
            return self._run_git(repo_path, args)
        except subprocess.CalledProcessError as e:
            raise GitOperationError(message, e.stderr or "")
        except subprocess.TimeoutExpired:
            raise GitOperationError(f"{message}: timed out after {self.timeout}s")
        except OSError as e:
            raise GitOperationError(f"{message}: {e}")

    def _run_git(self, repo_path: PathLike, args: List[str]) -> subprocess.CompletedProcess:
        """Run git command"""
        cmd = ["git", "-C", str(repo_path)] + args
        logger.debug(f"Running: {' '.join(cmd)}")
        # stderr is matched against English messages
        env = dict(os.environ, LC_ALL="C")
        try:
            return subprocess.run(
                cmd, check=True, capture_output=True, text=True, timeout=self.timeout, env=env
            )
        except subprocess.CalledProcessError as e:
            logger.debug(f"git {args[0]} failed ({e.returncode}): {(e.stderr or '').strip()}")
            raise
