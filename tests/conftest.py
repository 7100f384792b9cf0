#!/usr/bin/env python3
"""
Shared fixtures: temporary directories and real git repositories whose
"origin" points at a host-style URL but fetches from a local bare repo
"""

import subprocess
import sys
import tempfile
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

SCP_PREFIX = "git@github.com:"
HTTPS_PREFIX = "https://github.com/"


def git(cwd, *args):
    """Run a git command for test setup"""
    return subprocess.run(
        ["git", *args], cwd=cwd, check=True, capture_output=True, text=True
    )


@pytest.fixture
def temp_dir():
    """Create a temporary directory for tests"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir).resolve()


@pytest.fixture
def make_repo(temp_dir):
    """
    Factory creating a cloned-style repository with one commit on main

    The remote URL is stored verbatim (so org parsing sees the host form) and
    url.<base>.insteadOf rewrites it to a bare repository under temp_dir.
    """
    remotes_dir = temp_dir / "remotes"

    def _make(name, remote_url=None):
        remote_url = remote_url or f"{SCP_PREFIX}acme/{name}.git"
        if remote_url.startswith(SCP_PREFIX):
            remote_path = remote_url[len(SCP_PREFIX):]
        else:
            remote_path = remote_url[len(HTTPS_PREFIX):]

        bare_dir = remotes_dir / remote_path
        bare_dir.mkdir(parents=True)
        git(bare_dir, "init", "--bare")

        repo_dir = temp_dir / "repos" / name
        repo_dir.mkdir(parents=True)
        git(repo_dir, "init")
        git(repo_dir, "config", "user.email", "test@example.com")
        git(repo_dir, "config", "user.name", "Test User")
        (repo_dir / "README.md").write_text(f"# {name}\n")
        git(repo_dir, "add", "README.md")
        git(repo_dir, "commit", "-m", "Initial commit")
        git(repo_dir, "branch", "-M", "main")

        git(repo_dir, "remote", "add", "origin", remote_url)
        git(repo_dir, "config", f"url.{remotes_dir}/.insteadOf", SCP_PREFIX)
        git(repo_dir, "config", "--add", f"url.{remotes_dir}/.insteadOf", HTTPS_PREFIX)
        git(repo_dir, "push", "origin", "main")

        return repo_dir

    return _make
