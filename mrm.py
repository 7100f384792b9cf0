#!/usr/bin/env python3
"""
mrm - Multi-repository issue workspaces with git worktree

One issue gets one worktree + feature branch in every repository of its
project, bundled into a single multi-folder editor workspace.
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from mrm_config import Config, ProjectStore
from mrm_errors import (
    InvalidRepository,
    IssueNotFound,
    MrmError,
    ProjectNotFound,
)
from mrm_git import GitWorktreeManager
from mrm_models import ISSUE_STATUSES, STATUS_ACTIVE, Issue, Project, RepoState, Repository
from mrm_paths import detect_issue_from_path, get_issue_dir, get_project_workspace_dir
from mrm_security import validate_branch_name, validate_issue_id, validate_project_id
from mrm_state import IssueStateStore
from mrm_workspace import WorkspaceWriter

# Setup logging
logger = logging.getLogger("mrm")
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("%(levelname)s: %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)
logger.setLevel(logging.INFO)


@dataclass
class RepoCleanupResult:
    """Outcome of removing one repository's worktree (and branch)"""
    name: str
    ok: bool
    error: Optional[str] = None
    skipped: bool = False


@dataclass
class CleanupReport:
    """Per-repository results of deleting an issue"""
    issue_id: str
    results: List[RepoCleanupResult] = field(default_factory=list)
    directory_error: Optional[str] = None

    @property
    def failures(self) -> List[RepoCleanupResult]:
        return [r for r in self.results if not r.ok]

    @property
    def ok(self) -> bool:
        return not self.failures and self.directory_error is None


class IssueOrchestrator:
    """Creates, deletes and reconciles issue workspaces"""

    def __init__(
        self,
        config: Config,
        projects: Optional[ProjectStore] = None,
        state: Optional[IssueStateStore] = None,
        git: Optional[GitWorktreeManager] = None,
        workspace: Optional[WorkspaceWriter] = None,
    ):
        self.config = config
        self.projects = projects or ProjectStore(config.config_dir, config.branch_naming)
        self.state = state or IssueStateStore(config.config_dir)
        self.git = git or GitWorktreeManager()
        self.workspace = workspace or WorkspaceWriter()

    def get_project(self, project_id: str) -> Project:
        project = self.projects.load_project(project_id)
        if not project:
            raise ProjectNotFound(project_id)
        return project

    def create_issue(
        self,
        project_id: str,
        issue_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Issue:
        """
        Create worktrees, branches and workspace files for an issue

        An issue already present in state is returned as-is, without checking
        its worktrees. On any failure every worktree created by this call is
        removed along with the issue directory, and the error is re-raised;
        nothing is written to state unless every repository succeeded.
        """
        project = self.get_project(project_id)
        issue_id = validate_issue_id(issue_id)

        existing = self.state.get_issue(project_id, issue_id)
        if existing:
            logger.debug(f"Issue {issue_id} already exists in {project_id}")
            return existing

        branch_name = validate_branch_name(
            self.config.generate_branch_name(issue_id, project.branch_naming)
        )

        issue_dir = self.workspace.create_issue_directory(
            self.config.workspace_dir, project_id, issue_id
        )

        repo_states: List[RepoState] = []
        # (repository, worktree path, whether this call created the branch)
        created: List[Tuple[Repository, Path, bool]] = []
        org_by_repo = {}

        try:
            for repo in project.repositories:
                if not self.git.is_valid_repository(repo.path):
                    raise InvalidRepository(repo.path)

                org = self.git.get_org_from_remote(repo.path, repo.remote)
                org_by_repo[repo.name] = org
                worktree_path = issue_dir / org / repo.name

                new_branch = not self.git.branch_exists(repo.path, branch_name)
                self.git.create_worktree(
                    repo.path, worktree_path, branch_name, repo.default_branch, repo.remote
                )
                created.append((repo, worktree_path, new_branch))

                status = self.git.get_branch_status(repo.path, branch_name, repo.remote)
                repo_states.append(
                    RepoState(
                        name=repo.name,
                        branch=branch_name,
                        worktree_path=str(worktree_path),
                        created=status["created"],
                        pushed=status["pushed"],
                    )
                )
                logger.debug(f"Created worktree {worktree_path} on {branch_name}")

            self.workspace.generate_workspace(
                issue_dir, issue_id, project.repositories, org_by_repo
            )
            self.workspace.generate_context_note(issue_dir, issue_id, title, description)

            issue = Issue(
                id=issue_id,
                title=title,
                description=description,
                project_id=project_id,
                status=STATUS_ACTIVE,
                workspace_dir=str(issue_dir),
                repos=repo_states,
            )
            self.state.save_issue(project_id, issue)
        except Exception:
            self._rollback(issue_dir, branch_name, created)
            raise

        logger.info(f"Created issue {issue_id} with {len(repo_states)} repositories")
        return issue

    def _rollback(
        self, issue_dir: Path, branch_name: str, created: List[Tuple[Repository, Path, bool]]
    ) -> List[str]:
        """Undo the worktrees of a failed create; returns the rollback failures"""
        failures = []

        for repo, worktree_path, new_branch in reversed(created):
            try:
                self.git.remove_worktree(repo.path, worktree_path)
                if new_branch:
                    self.git.delete_branch(repo.path, branch_name, force=True)
            except (MrmError, OSError) as e:
                failures.append(f"{repo.name}: {e}")

        try:
            self.workspace.remove_issue_directory(issue_dir)
        except OSError as e:
            failures.append(f"{issue_dir}: {e}")

        for failure in failures:
            logger.warning(f"Rollback failed for {failure}")

        return failures

    def delete_issue(
        self, project_id: str, issue_id: str, delete_branches: bool = False
    ) -> CleanupReport:
        """
        Remove an issue's worktrees, directory and state record

        Per-repository failures are logged and reported but never stop the
        directory and state cleanup.
        """
        issue = self.state.get_issue(project_id, issue_id)
        if not issue:
            raise IssueNotFound(project_id, issue_id)
        project = self.get_project(project_id)

        report = CleanupReport(issue_id=issue_id)

        for repo_state in issue.repos:
            repo = project.repository(repo_state.name)
            if not repo:
                logger.debug(f"Repository {repo_state.name} no longer in {project_id}, skipping")
                report.results.append(RepoCleanupResult(repo_state.name, ok=True, skipped=True))
                continue

            try:
                if self.git.worktree_exists(repo_state.worktree_path):
                    self.git.remove_worktree(repo.path, repo_state.worktree_path)

                if delete_branches and self.git.branch_exists(repo.path, repo_state.branch):
                    self.git.delete_branch(repo.path, repo_state.branch, force=True)

                report.results.append(RepoCleanupResult(repo_state.name, ok=True))
            except (MrmError, OSError) as e:
                logger.warning(f"Failed to cleanup repo {repo_state.name}: {e}")
                report.results.append(RepoCleanupResult(repo_state.name, ok=False, error=str(e)))

        issue_dir = issue.workspace_dir or str(
            get_issue_dir(self.config.workspace_dir, project_id, issue_id)
        )
        try:
            self.workspace.remove_issue_directory(Path(issue_dir))
        except OSError as e:
            logger.warning(f"Failed to remove issue directory {issue_dir}: {e}")
            report.directory_error = str(e)

        self.state.delete_issue(project_id, issue_id)

        logger.info(
            f"Deleted issue {issue_id} "
            f"({len(report.failures)} of {len(report.results)} repositories failed)"
        )
        return report

    def get_issue(self, project_id: str, issue_id: str) -> Optional[Issue]:
        return self.state.get_issue(project_id, issue_id)

    def list_issues(self, project_id: str) -> List[Issue]:
        return self.state.load_issues(project_id)

    def update_issue_status(self, project_id: str, issue_id: str, status: str) -> Issue:
        if status not in ISSUE_STATUSES:
            raise MrmError(
                f"Invalid status '{status}' (expected one of: {', '.join(ISSUE_STATUSES)})"
            )

        issue = self.state.update_issue_status(project_id, issue_id, status)
        if not issue:
            raise IssueNotFound(project_id, issue_id)
        return issue

    def refresh_issue(self, project_id: str, issue_id: str) -> Issue:
        """Re-query created/pushed flags for each repository and persist them"""
        issue = self.state.get_issue(project_id, issue_id)
        if not issue:
            raise IssueNotFound(project_id, issue_id)
        project = self.get_project(project_id)

        for repo_state in issue.repos:
            repo = project.repository(repo_state.name)
            if not repo:
                continue
            status = self.git.get_branch_status(repo.path, repo_state.branch, repo.remote)
            repo_state.created = status["created"]
            repo_state.pushed = status["pushed"]

        issue.touch()
        self.state.save_issue(project_id, issue)
        return issue

    def find_orphaned_issues(self, project_id: str) -> List[str]:
        """Issue directories on disk with no record in state"""
        project_id = validate_project_id(project_id)
        workspace_root = Path(self.config.workspace_dir).resolve()
        project_dir = get_project_workspace_dir(self.config.workspace_dir, project_id)
        if project_dir.resolve().parent != workspace_root:
            raise MrmError(f"Project directory {project_dir} is outside {workspace_root}")
        if not project_dir.is_dir():
            return []

        known_ids = {issue.id for issue in self.state.load_issues(project_id)}
        return sorted(
            entry.name
            for entry in project_dir.iterdir()
            if entry.is_dir() and entry.name not in known_ids
        )

    def cleanup_orphaned_issues(self, project_id: str) -> int:
        """Remove orphaned issue directories; returns how many were removed"""
        orphaned = self.find_orphaned_issues(project_id)
        for issue_id in orphaned:
            logger.info(f"Removing orphaned issue directory {issue_id}")
            self.workspace.remove_issue_directory(
                get_issue_dir(self.config.workspace_dir, project_id, issue_id)
            )
        return len(orphaned)


class MrmCLI:
    """Command line wiring for the orchestrator"""

    def __init__(self, orchestrator: Optional[IssueOrchestrator] = None):
        self.orchestrator = orchestrator

    def create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser"""
        parser = argparse.ArgumentParser(
            description="Multi-repository issue workspaces with git worktree"
        )
        parser.add_argument("--config-dir", help="Config directory (projects/, data/)")
        parser.add_argument("--workspace-dir", help="Root directory for issue workspaces")
        parser.add_argument("--json", action="store_true", help="JSON output")
        parser.add_argument("--verbose", action="store_true", help="Verbose output")
        parser.add_argument(
            "--log-level",
            choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            default="INFO",
            help="Set logging level (default: INFO)",
        )

        subparsers = parser.add_subparsers(dest="command", help="Commands")

        subparsers.add_parser("projects", help="List configured projects")

        create_parser = subparsers.add_parser("create", help="Create issue workspace")
        create_parser.add_argument("project", help="Project id")
        create_parser.add_argument("issue", help="Issue id (e.g. SHOP-123)")
        create_parser.add_argument("--title", help="Issue title")
        create_parser.add_argument("--description", help="Issue description")

        delete_parser = subparsers.add_parser("delete", help="Delete issue workspace")
        delete_parser.add_argument("project", help="Project id")
        delete_parser.add_argument("issue", help="Issue id")
        delete_parser.add_argument(
            "--delete-branches", action="store_true", help="Also delete local branches"
        )
        delete_parser.add_argument("--yes", action="store_true", help="Skip confirmation")

        list_parser = subparsers.add_parser("list", aliases=["ls"], help="List issues")
        list_parser.add_argument("project", nargs="?", help="Project id (default: all)")

        status_parser = subparsers.add_parser("status", aliases=["st"], help="Show issue")
        status_parser.add_argument(
            "project", nargs="?", help="Project id (default: detected from cwd)"
        )
        status_parser.add_argument("issue", nargs="?", help="Issue id (default: detected from cwd)")
        status_parser.add_argument(
            "--refresh", action="store_true", help="Re-query branch status from git"
        )

        set_status_parser = subparsers.add_parser("set-status", help="Update issue status")
        set_status_parser.add_argument("project", help="Project id")
        set_status_parser.add_argument("issue", help="Issue id")
        set_status_parser.add_argument("status", choices=ISSUE_STATUSES)

        orphans_parser = subparsers.add_parser(
            "orphans", help="Find issue directories missing from state"
        )
        orphans_parser.add_argument("project", help="Project id")
        orphans_parser.add_argument(
            "--cleanup", action="store_true", help="Remove the orphaned directories"
        )

        return parser

    def run(self, args: Optional[List[str]] = None):
        """Main entry point"""
        parser = self.create_parser()
        parsed_args = parser.parse_args(args)

        logger.setLevel(getattr(logging, parsed_args.log_level))
        if parsed_args.verbose:
            logger.setLevel(logging.DEBUG)

        if self.orchestrator is None:
            config = Config(parsed_args.config_dir, parsed_args.workspace_dir)
            self.orchestrator = IssueOrchestrator(config)

        try:
            if parsed_args.command == "projects":
                self.cmd_projects(parsed_args)
            elif parsed_args.command == "create":
                self.cmd_create(parsed_args)
            elif parsed_args.command == "delete":
                self.cmd_delete(parsed_args)
            elif parsed_args.command in ["list", "ls"]:
                self.cmd_list(parsed_args)
            elif parsed_args.command in ["status", "st"]:
                self.cmd_status(parsed_args)
            elif parsed_args.command == "set-status":
                self.cmd_set_status(parsed_args)
            elif parsed_args.command == "orphans":
                self.cmd_orphans(parsed_args)
            else:
                parser.print_help()

        except MrmError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        except KeyboardInterrupt:
            print("\nAborted by user", file=sys.stderr)
            sys.exit(1)

    def cmd_projects(self, args):
        """List projects"""
        projects = self.orchestrator.projects.load_projects()

        if args.json:
            print(json.dumps(
                [
                    {
                        "id": p.id,
                        "name": p.name,
                        "description": p.description,
                        "repositories": [r.to_dict() for r in p.repositories],
                    }
                    for p in projects
                ],
                indent=2,
            ))
            return

        if not projects:
            print(f"No projects found in {self.orchestrator.projects.projects_dir}")
            return

        for project in projects:
            print(f"{project.id}: {project.name} ({len(project.repositories)} repos)")
            if project.description:
                print(f"  {project.description}")

    def cmd_create(self, args):
        """Create issue"""
        issue = self.orchestrator.create_issue(
            args.project, args.issue, args.title, args.description
        )

        if args.json:
            print(json.dumps(issue.to_dict(), indent=2))
            return

        workspace_file = self.orchestrator.workspace.get_workspace_path(
            Path(issue.workspace_dir), issue.id
        )
        print(f"Issue: {issue.id}")
        print(f"Workspace: {workspace_file}")
        for repo in issue.repos:
            print(f"  {repo.name} [{repo.branch}] {repo.worktree_path}")

    def cmd_delete(self, args):
        """Delete issue"""
        if not args.yes and self._is_interactive():
            answer = input(f"Delete issue {args.issue} and its worktrees? [y/N]: ")
            if answer.strip().lower() not in ["y", "yes"]:
                print("Cancelled")
                return

        report = self.orchestrator.delete_issue(
            args.project, args.issue, delete_branches=args.delete_branches
        )

        if args.json:
            print(json.dumps(asdict(report), indent=2))
            return

        print(f"Deleted issue {report.issue_id}")
        for result in report.failures:
            print(f"  ⚠️  {result.name}: {result.error}")

    def cmd_list(self, args):
        """List issues"""
        if args.project:
            project_ids = [args.project]
        else:
            project_ids = [p.id for p in self.orchestrator.projects.load_projects()]

        issues_by_project = self.orchestrator.state.list_all(project_ids)

        if args.json:
            print(json.dumps(
                {pid: [i.to_dict() for i in issues] for pid, issues in issues_by_project.items()},
                indent=2,
            ))
            return

        for project_id, issues in issues_by_project.items():
            print(f"{project_id}:")
            if not issues:
                print("  (no issues)")
            for issue in issues:
                repos_label = "repo" if len(issue.repos) == 1 else "repos"
                title = f" - {issue.title}" if issue.title else ""
                print(f"  {issue.id}{title} | {len(issue.repos)} {repos_label} | {issue.status}")

    def cmd_status(self, args):
        """Show issue status"""
        project_id, issue_id = args.project, args.issue
        if not project_id or not issue_id:
            detected = detect_issue_from_path(self.orchestrator.config.workspace_dir, Path.cwd())
            if not detected:
                raise MrmError("Not inside an issue workspace; pass PROJECT and ISSUE")
            project_id, issue_id = detected

        if args.refresh:
            issue = self.orchestrator.refresh_issue(project_id, issue_id)
        else:
            issue = self.orchestrator.get_issue(project_id, issue_id)
            if not issue:
                raise IssueNotFound(project_id, issue_id)

        if args.json:
            print(json.dumps(issue.to_dict(), indent=2))
            return

        print(f"Issue: {issue.id}" + (f" - {issue.title}" if issue.title else ""))
        print(f"Status: {issue.status}")
        print(f"Workspace: {issue.workspace_dir}")
        print(f"Created: {issue.created_at}")
        print(f"Updated: {issue.updated_at}")
        for repo in issue.repos:
            pushed = "pushed" if repo.pushed else "local"
            print(f"  {repo.name} [{repo.branch}] {pushed}")

    def cmd_set_status(self, args):
        """Update issue status"""
        issue = self.orchestrator.update_issue_status(args.project, args.issue, args.status)
        print(f"{issue.id}: {issue.status}")

    def cmd_orphans(self, args):
        """Find or remove orphaned issue directories"""
        if args.cleanup:
            count = self.orchestrator.cleanup_orphaned_issues(args.project)
            print(f"Removed {count} orphaned issue director{'y' if count == 1 else 'ies'}")
            return

        orphaned = self.orchestrator.find_orphaned_issues(args.project)
        if args.json:
            print(json.dumps(orphaned, indent=2))
            return

        if not orphaned:
            print("No orphaned issue directories")
        for issue_id in orphaned:
            print(issue_id)

    def _is_interactive(self) -> bool:
        """Check if we're running in an interactive terminal"""
        return sys.stdin.isatty() and sys.stdout.isatty()


def main():
    """Entry point for CLI"""
    cli = MrmCLI()
    cli.run()


if __name__ == "__main__":
    main()
