#!/usr/bin/env python3
"""
Tests for IssueOrchestrator: creation with rollback, best-effort deletion,
status refresh and orphan reconciliation
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from conftest import git
from mrm import IssueOrchestrator
from mrm_config import Config, ProjectStore
from mrm_errors import (
    GitOperationError,
    InvalidIssueId,
    InvalidRepository,
    IssueNotFound,
    MrmError,
    ProjectNotFound,
)
from mrm_git import GitWorktreeManager
from mrm_models import BranchNaming, Repository


def fake_create_worktree(repo_path, worktree_path, branch_name, base_branch, remote="origin"):
    """Stand-in for create_worktree that only lays out the directory"""
    worktree_path = Path(worktree_path)
    worktree_path.mkdir(parents=True)
    (worktree_path / ".git").write_text("gitdir: /dev/null\n")
    return worktree_path


@pytest.fixture
def config(temp_dir):
    return Config(temp_dir / "config", temp_dir / "ws")


@pytest.fixture
def mock_git():
    git_manager = MagicMock(spec=GitWorktreeManager)
    git_manager.is_valid_repository.return_value = True
    git_manager.get_org_from_remote.return_value = "acme"
    git_manager.branch_exists.return_value = False
    git_manager.get_branch_status.return_value = {"created": True, "pushed": False}
    git_manager.worktree_exists.side_effect = lambda path: (Path(path) / ".git").exists()
    git_manager.create_worktree.side_effect = fake_create_worktree
    return git_manager


def add_project(config, project_id, repo_names, **kwargs):
    repos = [Repository(name, f"/src/{name}") for name in repo_names]
    ProjectStore(config.config_dir).create_project(project_id, project_id, repos, **kwargs)
    return repos


class TestCreateIssueScenario:
    """End-to-end issue lifecycle against real git repositories"""

    @pytest.fixture
    def orchestrator(self, config, make_repo):
        frontend = make_repo("frontend", "git@github.com:acme/frontend.git")
        backend = make_repo("backend", "https://github.com/acme/backend.git")
        ProjectStore(config.config_dir).create_project(
            "web-app",
            "Web App",
            [Repository("frontend", str(frontend)), Repository("backend", str(backend))],
        )
        return IssueOrchestrator(config)

    def test_create_issue(self, orchestrator, config):
        issue = orchestrator.create_issue("web-app", "SHOP-456", title="Checkout")

        issue_dir = config.workspace_dir / "web-app" / "SHOP-456"
        assert issue.workspace_dir == str(issue_dir)
        assert issue.status == "active"
        assert [r.branch for r in issue.repos] == ["feature/SHOP-456", "feature/SHOP-456"]
        assert [r.worktree_path for r in issue.repos] == [
            str(issue_dir / "acme" / "frontend"),
            str(issue_dir / "acme" / "backend"),
        ]
        assert all(r.created and not r.pushed for r in issue.repos)

        current = git(issue_dir / "acme" / "frontend", "branch", "--show-current")
        assert current.stdout.strip() == "feature/SHOP-456"

        descriptor = json.loads((issue_dir / "SHOP-456.code-workspace").read_text())
        assert [f["path"] for f in descriptor["folders"]] == [
            ".", "./acme/frontend", "./acme/backend"
        ]
        assert "Checkout" in (issue_dir / ".claude.md").read_text()

        assert orchestrator.get_issue("web-app", "SHOP-456") == issue

    def test_create_then_delete_with_branches(self, orchestrator, config):
        issue = orchestrator.create_issue("web-app", "SHOP-456")
        frontend = orchestrator.get_project("web-app").repository("frontend")

        report = orchestrator.delete_issue("web-app", "SHOP-456", delete_branches=True)

        assert report.ok
        assert not Path(issue.workspace_dir).exists()
        assert orchestrator.list_issues("web-app") == []
        assert not orchestrator.git.branch_exists(frontend.path, "feature/SHOP-456")

    def test_delete_keeps_branches_by_default(self, orchestrator):
        orchestrator.create_issue("web-app", "SHOP-456")
        frontend = orchestrator.get_project("web-app").repository("frontend")

        orchestrator.delete_issue("web-app", "SHOP-456")

        assert orchestrator.git.branch_exists(frontend.path, "feature/SHOP-456")

    def test_refresh_reports_pushed_branch(self, orchestrator):
        issue = orchestrator.create_issue("web-app", "SHOP-456")
        git(issue.repos[0].worktree_path, "push", "origin", "feature/SHOP-456")

        refreshed = orchestrator.refresh_issue("web-app", "SHOP-456")

        assert [r.pushed for r in refreshed.repos] == [True, False]
        assert orchestrator.get_issue("web-app", "SHOP-456").repos[0].pushed is True
        assert refreshed.updated_at >= issue.updated_at

    def test_second_create_after_rollback_succeeds(self, orchestrator, config):
        with patch.object(
            GitWorktreeManager, "get_branch_status", side_effect=GitOperationError("boom")
        ):
            with pytest.raises(GitOperationError):
                orchestrator.create_issue("web-app", "SHOP-456")

        issue = orchestrator.create_issue("web-app", "SHOP-456")
        assert len(issue.repos) == 2


class TestCreateIssue:
    """Creation semantics with a mocked git layer"""

    def test_unknown_project(self, config, mock_git):
        orchestrator = IssueOrchestrator(config, git=mock_git)
        with pytest.raises(ProjectNotFound):
            orchestrator.create_issue("missing", "SHOP-1")

    def test_invalid_issue_id_has_no_side_effects(self, config, mock_git):
        add_project(config, "web-app", ["frontend"])
        orchestrator = IssueOrchestrator(config, git=mock_git)

        with pytest.raises(InvalidIssueId):
            orchestrator.create_issue("web-app", "../escape")

        assert not (config.workspace_dir / "web-app").exists()
        mock_git.create_worktree.assert_not_called()

    def test_repos_follow_project_order(self, config, mock_git):
        add_project(config, "web-app", ["zeta", "alpha", "mid"])
        orchestrator = IssueOrchestrator(config, git=mock_git)

        issue = orchestrator.create_issue("web-app", "SHOP-1")

        assert [r.name for r in issue.repos] == ["zeta", "alpha", "mid"]
        created_paths = [c.args[1] for c in mock_git.create_worktree.call_args_list]
        assert [p.name for p in created_paths] == ["zeta", "alpha", "mid"]

    def test_project_branch_naming_and_separator(self, config, mock_git):
        add_project(
            config, "web-app", ["frontend"],
            branch_naming=BranchNaming("bugfix/{issue_id}", "_"),
        )
        orchestrator = IssueOrchestrator(config, git=mock_git)

        issue = orchestrator.create_issue("web-app", "login broken")

        assert issue.repos[0].branch == "bugfix/login_broken"

    def test_create_is_idempotent(self, config, mock_git):
        add_project(config, "web-app", ["frontend", "backend"])
        orchestrator = IssueOrchestrator(config, git=mock_git)
        first = orchestrator.create_issue("web-app", "SHOP-1")
        mock_git.reset_mock()

        second = orchestrator.create_issue("web-app", "SHOP-1", title="Ignored")

        assert second == first
        assert mock_git.method_calls == []

    def test_existing_issue_returned_even_if_worktrees_vanished(self, config, mock_git):
        add_project(config, "web-app", ["frontend"])
        orchestrator = IssueOrchestrator(config, git=mock_git)
        first = orchestrator.create_issue("web-app", "SHOP-1")
        orchestrator.workspace.remove_issue_directory(Path(first.workspace_dir))

        assert orchestrator.create_issue("web-app", "SHOP-1") == first
        assert not Path(first.workspace_dir).exists()

    @pytest.mark.parametrize("total,failing", [
        (1, 1), (2, 1), (2, 2), (3, 1), (3, 2), (3, 3),
    ])
    def test_rollback_completeness(self, config, mock_git, total, failing):
        names = [f"repo{i}" for i in range(1, total + 1)]
        repos = add_project(config, "web-app", names)
        calls = []

        def create(repo_path, worktree_path, *args, **kwargs):
            calls.append((repo_path, worktree_path))
            if len(calls) == failing:
                raise GitOperationError(f"cannot create {worktree_path}")
            return fake_create_worktree(repo_path, worktree_path, *args, **kwargs)

        mock_git.create_worktree.side_effect = create
        orchestrator = IssueOrchestrator(config, git=mock_git)

        with pytest.raises(GitOperationError, match="cannot create"):
            orchestrator.create_issue("web-app", "SHOP-1")

        removed = [c.args for c in mock_git.remove_worktree.call_args_list]
        assert sorted(removed) == sorted(calls[:failing - 1])
        assert {r[0] for r in removed} <= {r.path for r in repos[:failing - 1]}
        assert not (config.workspace_dir / "web-app" / "SHOP-1").exists()
        assert orchestrator.list_issues("web-app") == []
        assert not orchestrator.state.get_issues_file_path("web-app").exists()

    def test_rollback_deletes_only_branches_it_created(self, config, mock_git):
        add_project(config, "web-app", ["existing", "fresh", "broken"])
        mock_git.branch_exists.side_effect = lambda repo_path, branch: repo_path.endswith("existing")
        mock_git.create_worktree.side_effect = [
            Path("/unused"), Path("/unused"), GitOperationError("fail")
        ]
        orchestrator = IssueOrchestrator(config, git=mock_git)

        with pytest.raises(GitOperationError):
            orchestrator.create_issue("web-app", "SHOP-1")

        mock_git.delete_branch.assert_called_once_with("/src/fresh", "feature/SHOP-1", force=True)

    def test_rollback_continues_past_failures(self, config, mock_git):
        add_project(config, "web-app", ["a", "b", "c"])
        mock_git.create_worktree.side_effect = [
            Path("/unused"), Path("/unused"), GitOperationError("fail")
        ]
        mock_git.remove_worktree.side_effect = [GitOperationError("stuck"), None]
        orchestrator = IssueOrchestrator(config, git=mock_git)

        with patch("mrm.logger") as mock_logger:
            with pytest.raises(GitOperationError, match="fail"):
                orchestrator.create_issue("web-app", "SHOP-1")

        assert mock_git.remove_worktree.call_count == 2
        mock_logger.warning.assert_called_once()
        assert "stuck" in str(mock_logger.warning.call_args)
        assert not (config.workspace_dir / "web-app" / "SHOP-1").exists()

    def test_invalid_repository_fails_fast(self, config, mock_git):
        add_project(config, "web-app", ["good", "bad", "never"])
        mock_git.is_valid_repository.side_effect = lambda path: path != "/src/bad"
        orchestrator = IssueOrchestrator(config, git=mock_git)

        with pytest.raises(InvalidRepository):
            orchestrator.create_issue("web-app", "SHOP-1")

        assert mock_git.create_worktree.call_count == 1
        assert mock_git.remove_worktree.call_count == 1
        assert orchestrator.list_issues("web-app") == []

    def test_failure_after_worktrees_rolls_back(self, config, mock_git):
        add_project(config, "web-app", ["a", "b"])
        orchestrator = IssueOrchestrator(config, git=mock_git)

        with patch.object(orchestrator.state, "save_issue", side_effect=OSError("disk full")):
            with pytest.raises(OSError):
                orchestrator.create_issue("web-app", "SHOP-1")

        assert mock_git.remove_worktree.call_count == 2
        assert not (config.workspace_dir / "web-app" / "SHOP-1").exists()


class TestDeleteIssue:
    """Best-effort deletion"""

    @pytest.fixture
    def orchestrator(self, config, mock_git):
        add_project(config, "web-app", ["frontend", "backend", "infra"])
        orchestrator = IssueOrchestrator(config, git=mock_git)
        orchestrator.create_issue("web-app", "SHOP-1")
        return orchestrator

    def test_unknown_issue(self, orchestrator):
        with pytest.raises(IssueNotFound):
            orchestrator.delete_issue("web-app", "NOPE")

    def test_project_removed(self, orchestrator):
        orchestrator.projects.delete_project("web-app")
        with pytest.raises(ProjectNotFound):
            orchestrator.delete_issue("web-app", "SHOP-1")

    def test_partial_failure_still_cleans_up(self, orchestrator, mock_git, config):
        def remove(repo_path, worktree_path):
            if repo_path == "/src/backend":
                raise GitOperationError("worktree locked")

        mock_git.remove_worktree.side_effect = remove
        mock_git.branch_exists.return_value = True

        with patch("mrm.logger") as mock_logger:
            report = orchestrator.delete_issue("web-app", "SHOP-1", delete_branches=True)

        assert not report.ok
        assert [r.name for r in report.failures] == ["backend"]
        assert "worktree locked" in report.failures[0].error
        assert mock_logger.warning.call_count == 1
        deleted = [c.args[0] for c in mock_git.delete_branch.call_args_list]
        assert deleted == ["/src/frontend", "/src/infra"]
        assert not (config.workspace_dir / "web-app" / "SHOP-1").exists()
        assert orchestrator.get_issue("web-app", "SHOP-1") is None

    def test_skips_missing_worktrees_and_removed_repos(self, orchestrator, mock_git, config):
        orchestrator.projects.update_project(
            "web-app",
            repositories=[Repository("frontend", "/src/frontend"),
                          Repository("backend", "/src/backend")],
        )
        issue = orchestrator.get_issue("web-app", "SHOP-1")
        orchestrator.workspace.remove_issue_directory(Path(issue.workspace_dir))

        report = orchestrator.delete_issue("web-app", "SHOP-1")

        assert report.ok
        assert [r.name for r in report.results if r.skipped] == ["infra"]
        mock_git.remove_worktree.assert_not_called()
        mock_git.delete_branch.assert_not_called()


class TestStatusUpdates:
    """Status changes and refresh"""

    @pytest.fixture
    def orchestrator(self, config, mock_git):
        add_project(config, "web-app", ["frontend"])
        orchestrator = IssueOrchestrator(config, git=mock_git)
        orchestrator.create_issue("web-app", "SHOP-1")
        return orchestrator

    def test_update_status(self, orchestrator):
        issue = orchestrator.update_issue_status("web-app", "SHOP-1", "merged")
        assert issue.status == "merged"
        assert orchestrator.get_issue("web-app", "SHOP-1").status == "merged"

    def test_update_status_rejects_unknown_value(self, orchestrator):
        with pytest.raises(MrmError, match="Invalid status"):
            orchestrator.update_issue_status("web-app", "SHOP-1", "shipped")

    def test_update_status_unknown_issue(self, orchestrator):
        with pytest.raises(IssueNotFound):
            orchestrator.update_issue_status("web-app", "NOPE", "closed")

    def test_refresh_uses_git_status(self, orchestrator, mock_git):
        mock_git.get_branch_status.return_value = {"created": True, "pushed": True}

        issue = orchestrator.refresh_issue("web-app", "SHOP-1")

        assert issue.repos[0].pushed is True
        mock_git.get_branch_status.assert_called_with("/src/frontend", "feature/SHOP-1", "origin")


class TestOrphans:
    """Orphan detection and cleanup"""

    @pytest.fixture
    def orchestrator(self, config, mock_git):
        add_project(config, "web-app", [])
        orchestrator = IssueOrchestrator(config, git=mock_git)
        for issue_id in ["A", "B"]:
            orchestrator.create_issue("web-app", issue_id)
        project_dir = config.workspace_dir / "web-app"
        orchestrator.workspace.remove_issue_directory(project_dir / "B")
        (project_dir / "C" / "acme" / "repo").mkdir(parents=True)
        (project_dir / "notes.txt").write_text("files are ignored")
        return orchestrator

    def test_find_orphaned_issues(self, orchestrator):
        assert orchestrator.find_orphaned_issues("web-app") == ["C"]

    def test_cleanup_orphaned_issues(self, orchestrator, config):
        assert orchestrator.cleanup_orphaned_issues("web-app") == 1

        project_dir = config.workspace_dir / "web-app"
        assert not (project_dir / "C").exists()
        assert (project_dir / "A").is_dir()
        assert (project_dir / "notes.txt").exists()
        assert orchestrator.find_orphaned_issues("web-app") == []

    def test_no_project_directory(self, orchestrator):
        assert orchestrator.find_orphaned_issues("other") == []
        assert orchestrator.cleanup_orphaned_issues("other") == 0

    @pytest.mark.parametrize("project_id", ["..", "", ".", "../ws", "web-app/A"])
    def test_project_id_outside_workspace_rejected(self, orchestrator, config, temp_dir,
                                                   project_id):
        (temp_dir / "precious").mkdir()

        with pytest.raises(MrmError):
            orchestrator.cleanup_orphaned_issues(project_id)

        assert (temp_dir / "precious").is_dir()
        assert (config.workspace_dir / "web-app" / "A").is_dir()
        assert (config.workspace_dir / "web-app" / "C").is_dir()

    def test_symlinked_project_dir_rejected(self, orchestrator, config, temp_dir):
        elsewhere = temp_dir / "elsewhere"
        (elsewhere / "STRAY").mkdir(parents=True)
        (config.workspace_dir / "linked").symlink_to(elsewhere)

        with pytest.raises(MrmError, match="outside"):
            orchestrator.cleanup_orphaned_issues("linked")

        assert (elsewhere / "STRAY").is_dir()
