#!/usr/bin/env python3
"""
Data model for mrm: projects, repositories, issues and per-repo state
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

DEFAULT_BRANCH = "main"
DEFAULT_REMOTE = "origin"
DEFAULT_BRANCH_PATTERN = "feature/{issue_id}"
DEFAULT_BRANCH_SEPARATOR = "-"
ISSUE_ID_TOKEN = "{issue_id}"

STATUS_ACTIVE = "active"
STATUS_PR_CREATED = "pr_created"
STATUS_MERGED = "merged"
STATUS_CLOSED = "closed"
ISSUE_STATUSES = (STATUS_ACTIVE, STATUS_PR_CREATED, STATUS_MERGED, STATUS_CLOSED)


def utc_now() -> str:
    """Current time as an ISO 8601 UTC string"""
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC"""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class BranchNaming:
    """Branch name pattern with a single {issue_id} token"""
    pattern: str = DEFAULT_BRANCH_PATTERN
    separator: str = DEFAULT_BRANCH_SEPARATOR

    def branch_name(self, issue_id: str) -> str:
        normalized = re.sub(r"\s+", self.separator, issue_id.strip())
        return self.pattern.replace(ISSUE_ID_TOKEN, normalized, 1)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]],
                  fallback: Optional["BranchNaming"] = None) -> "BranchNaming":
        base = fallback or cls()
        if not isinstance(data, dict):
            return BranchNaming(base.pattern, base.separator)
        separator = data.get("separator")
        return cls(
            pattern=data.get("pattern") or base.pattern,
            # an explicit "" joins the words of the id with nothing
            separator=base.separator if separator is None else str(separator),
        )

    def to_dict(self) -> Dict[str, str]:
        return {"pattern": self.pattern, "separator": self.separator}


@dataclass
class Repository:
    """An already-cloned repository that belongs to a project"""
    name: str
    path: str
    default_branch: str = DEFAULT_BRANCH
    remote: str = DEFAULT_REMOTE

    def to_dict(self) -> Dict[str, str]:
        return {
            "name": self.name,
            "path": self.path,
            "default_branch": self.default_branch,
            "remote": self.remote,
        }


@dataclass
class Project:
    """A named group of repositories worked on together"""
    id: str
    name: str
    description: Optional[str] = None
    repositories: List[Repository] = field(default_factory=list)
    branch_naming: Optional[BranchNaming] = None

    def repository(self, name: str) -> Optional[Repository]:
        for repo in self.repositories:
            if repo.name == name:
                return repo
        return None


@dataclass
class RepoState:
    """Point-in-time observation of one repository's worktree for an issue"""
    name: str
    branch: str
    worktree_path: str
    created: bool = False
    pushed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "branch": self.branch,
            "worktreePath": self.worktree_path,
            "created": self.created,
            "pushed": self.pushed,
        }


@dataclass
class Issue:
    """One unit of cross-repository work"""
    id: str
    project_id: str
    workspace_dir: str
    repos: List[RepoState] = field(default_factory=list)
    status: str = STATUS_ACTIVE
    title: Optional[str] = None
    description: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def touch(self) -> None:
        """Refresh updated_at, never moving it backwards"""
        now = utc_now()
        try:
            if parse_timestamp(now) < parse_timestamp(self.updated_at):
                return
        except ValueError:
            pass
        self.updated_at = now

    def created_sort_key(self) -> datetime:
        try:
            return parse_timestamp(self.created_at)
        except ValueError:
            return datetime.min.replace(tzinfo=timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Canonical persisted shape"""
        data: Dict[str, Any] = {"id": self.id}
        if self.title is not None:
            data["title"] = self.title
        if self.description is not None:
            data["description"] = self.description
        data.update({
            "projectId": self.project_id,
            "status": self.status,
            "workspaceDir": self.workspace_dir,
            "repos": [repo.to_dict() for repo in self.repos],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        })
        return data
