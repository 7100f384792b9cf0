#!/usr/bin/env python3
"""
Workspace artifacts for an issue: the issue directory, the multi-folder
.code-workspace descriptor and the .claude.md context note
"""

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from mrm_models import Repository
from mrm_paths import get_context_file, get_issue_dir, get_workspace_file

logger = logging.getLogger("mrm")

ROOT_FOLDER_NAME = "📁 Workspace Root"


class WorkspaceWriter:
    """Create and remove the files that make up an issue workspace"""

    def create_issue_directory(self, workspace_dir: Path, project_id: str, issue_id: str) -> Path:
        issue_dir = get_issue_dir(workspace_dir, project_id, issue_id)
        issue_dir.mkdir(parents=True, exist_ok=True)
        return issue_dir

    def generate_workspace(
        self,
        issue_dir: Path,
        issue_id: str,
        repos: List[Repository],
        org_by_repo: Optional[Mapping[str, str]] = None,
    ) -> Path:
        """Write {issue_id}.code-workspace, replacing any existing descriptor"""
        org_by_repo = org_by_repo or {}

        folders: List[Dict[str, str]] = [{"path": ".", "name": ROOT_FOLDER_NAME}]
        for repo in repos:
            org = org_by_repo.get(repo.name)
            name = f"{org}/{repo.name}" if org else repo.name
            folders.append({"path": f"./{name}", "name": name})

        workspace: Dict[str, Any] = {
            "folders": folders,
            "settings": {"files.exclude": {"**/.git": True}},
        }

        workspace_file = get_workspace_file(issue_dir, issue_id)
        workspace_file.write_text(
            json.dumps(workspace, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )
        return workspace_file

    def generate_context_note(
        self,
        issue_dir: Path,
        issue_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Path:
        """Write the .claude.md note describing the issue"""
        lines = [f"# Issue: {issue_id}", ""]
        if title:
            lines += ["## Title", title, ""]
        if description:
            lines += ["## Description", description, ""]
        lines += [
            "## Context",
            "",
            f"This workspace contains multiple repositories for working on issue {issue_id}.",
            "",
            "## Repositories",
            "",
            "Check the workspace folders to see all repositories included in this issue.",
            "",
        ]

        context_file = get_context_file(issue_dir)
        context_file.write_text("\n".join(lines), encoding="utf-8")
        return context_file

    def remove_issue_directory(self, issue_dir: Path):
        """Recursively delete the issue directory; missing is fine"""
        issue_dir = Path(issue_dir)
        if not issue_dir.exists():
            return
        logger.debug(f"Removing issue directory {issue_dir}")
        if issue_dir.is_dir() and not issue_dir.is_symlink():
            shutil.rmtree(issue_dir)
        else:
            issue_dir.unlink()

    def workspace_exists(self, issue_dir: Path, issue_id: str) -> bool:
        return get_workspace_file(issue_dir, issue_id).exists()

    def get_workspace_path(self, issue_dir: Path, issue_id: str) -> Path:
        return get_workspace_file(issue_dir, issue_id)
