#!/usr/bin/env python3
"""
Issue state persistence in data/<project>/issues.yaml

Records written by older tools use different field names (project_id,
workspace.path, repositories, created_at ...). They are mapped onto the
canonical shape through ISSUE_FIELD_ALIASES / REPO_FIELD_ALIASES when read;
writes always use the canonical shape.
"""

import logging
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import yaml

from mrm_errors import StateCorrupt
from mrm_models import ISSUE_STATUSES, STATUS_ACTIVE, Issue, RepoState, utc_now
from mrm_paths import get_project_data_dir

logger = logging.getLogger("mrm")

ISSUES_FILENAME = "issues.yaml"

Alias = Tuple[str, Optional[Callable[[Any], Any]]]


def _dirname(value: Any) -> Any:
    return os.path.dirname(value) if isinstance(value, str) and value else None


def _timestamp(value: Any) -> Any:
    # unquoted timestamps in hand-edited files load as datetime
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.isoformat()
    return value


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


# Canonical field -> source keys tried in order; dotted keys walk nested
# mappings, and the optional callable converts the found value.
ISSUE_FIELD_ALIASES: Dict[str, Tuple[Alias, ...]] = {
    "projectId": (("projectId", None), ("project_id", None)),
    "workspaceDir": (
        ("workspaceDir", None),
        ("workspace_dir", None),
        ("workspace.path", _dirname),
    ),
    "repos": (("repos", None), ("repositories", None)),
    "createdAt": (("createdAt", _timestamp), ("created_at", _timestamp)),
    "updatedAt": (("updatedAt", _timestamp), ("updated_at", _timestamp)),
}

REPO_FIELD_ALIASES: Dict[str, Tuple[Alias, ...]] = {
    "worktreePath": (("worktreePath", None), ("worktree_path", None)),
}

# Writers in different processes are not serialized; the last one wins.
_locks_guard = threading.Lock()
_file_locks: Dict[str, threading.RLock] = {}


def _lock_for(path: Path) -> threading.RLock:
    key = str(path)
    with _locks_guard:
        if key not in _file_locks:
            _file_locks[key] = threading.RLock()
        return _file_locks[key]


def _lookup(raw: Dict[str, Any], aliases: Iterable[Alias]) -> Any:
    """First non-empty value found under any alias"""
    for key, convert in aliases:
        value: Any = raw
        for part in key.split("."):
            value = value.get(part) if isinstance(value, dict) else None
            if value is None:
                break
        if convert and value is not None:
            value = convert(value)
        if value not in (None, ""):
            return value
    return None


def normalize_repo_state(raw: Any, workspace_dir: str) -> Optional[RepoState]:
    if not isinstance(raw, dict):
        return None

    name = str(raw.get("name") or "")
    worktree_path = _lookup(raw, REPO_FIELD_ALIASES["worktreePath"])
    if not worktree_path:
        worktree_path = os.path.join(workspace_dir, name)

    return RepoState(
        name=name,
        branch=str(raw.get("branch") or ""),
        worktree_path=str(worktree_path),
        created=bool(raw.get("created", False)),
        pushed=bool(raw.get("pushed", False)),
    )


def normalize_issue(raw: Any, project_id: str = "") -> Optional[Issue]:
    """
    Map a raw record of any known shape onto an Issue

    Returns None for records without an id.
    """
    if not isinstance(raw, dict) or not raw.get("id"):
        return None

    workspace_dir = str(_lookup(raw, ISSUE_FIELD_ALIASES["workspaceDir"]) or "")
    raw_repos = _lookup(raw, ISSUE_FIELD_ALIASES["repos"])
    repos = []
    if isinstance(raw_repos, list):
        for raw_repo in raw_repos:
            repo = normalize_repo_state(raw_repo, workspace_dir)
            if repo:
                repos.append(repo)

    status = raw.get("status") or STATUS_ACTIVE
    if status not in ISSUE_STATUSES:
        logger.debug(f"Unknown status {status!r} for issue {raw['id']}, using {STATUS_ACTIVE}")
        status = STATUS_ACTIVE

    now = utc_now()
    return Issue(
        id=str(raw["id"]),
        title=_optional_str(raw.get("title")),
        description=_optional_str(raw.get("description")),
        project_id=str(_lookup(raw, ISSUE_FIELD_ALIASES["projectId"]) or project_id),
        status=status,
        workspace_dir=workspace_dir,
        repos=repos,
        created_at=str(_lookup(raw, ISSUE_FIELD_ALIASES["createdAt"]) or now),
        updated_at=str(_lookup(raw, ISSUE_FIELD_ALIASES["updatedAt"]) or now),
    )


class IssueStateStore:
    """Per-project list of issues kept in a single YAML file"""

    def __init__(self, config_dir: Path):
        self.config_dir = Path(config_dir)

    def get_issues_file_path(self, project_id: str) -> Path:
        return get_project_data_dir(self.config_dir, project_id) / ISSUES_FILENAME

    def load_issues(self, project_id: str) -> List[Issue]:
        """Load all issues for a project; missing or corrupt files read as empty"""
        issues_file = self.get_issues_file_path(project_id)
        if not issues_file.exists():
            return []

        try:
            return self._read(issues_file, project_id)
        except StateCorrupt as e:
            logger.warning(f"Failed to load issues for {project_id}: {e}")
            return []

    def save_issue(self, project_id: str, issue: Issue):
        """Insert or replace the record with issue.id"""
        with _lock_for(self.get_issues_file_path(project_id)):
            issues = [i for i in self.load_issues(project_id) if i.id != issue.id]
            issues.append(issue)
            self.save_issues(project_id, issues)

    def save_issues(self, project_id: str, issues: List[Issue]):
        """Rewrite the whole file, newest first"""
        issues_file = self.get_issues_file_path(project_id)
        ordered = sorted(issues, key=lambda i: i.created_sort_key(), reverse=True)
        with _lock_for(issues_file):
            self._write(issues_file, {"issues": [i.to_dict() for i in ordered]})

    def delete_issue(self, project_id: str, issue_id: str) -> bool:
        """Remove a record; returns whether one was removed"""
        with _lock_for(self.get_issues_file_path(project_id)):
            issues = self.load_issues(project_id)
            remaining = [i for i in issues if i.id != issue_id]
            if len(remaining) == len(issues):
                return False
            self.save_issues(project_id, remaining)
            return True

    def get_issue(self, project_id: str, issue_id: str) -> Optional[Issue]:
        for issue in self.load_issues(project_id):
            if issue.id == issue_id:
                return issue
        return None

    def update_issue_status(self, project_id: str, issue_id: str, status: str) -> Optional[Issue]:
        """Set the status and refresh updatedAt; None if the issue is unknown"""
        with _lock_for(self.get_issues_file_path(project_id)):
            issue = self.get_issue(project_id, issue_id)
            if not issue:
                return None
            issue.status = status
            issue.touch()
            self.save_issue(project_id, issue)
            return issue

    def list_all(self, project_ids: Iterable[str]) -> Dict[str, List[Issue]]:
        return {project_id: self.load_issues(project_id) for project_id in project_ids}

    def _read(self, issues_file: Path, project_id: str) -> List[Issue]:
        try:
            with open(issues_file, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (yaml.YAMLError, OSError, UnicodeDecodeError) as e:
            raise StateCorrupt(f"{issues_file}: {e}")

        if data is None:
            return []
        if not isinstance(data, dict) or not isinstance(data.get("issues"), list):
            raise StateCorrupt(f"{issues_file}: expected a mapping with an 'issues' list")

        issues = []
        for raw in data["issues"]:
            issue = normalize_issue(raw, project_id)
            if issue:
                issues.append(issue)
            else:
                logger.debug(f"Dropping issue record without id in {issues_file}")
        return issues

    def _write(self, issues_file: Path, data: Dict[str, Any]):
        issues_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(issues_file.parent), prefix=".issues-", suffix=".yaml.tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False,
                               allow_unicode=True)
            os.replace(tmp_path, issues_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
