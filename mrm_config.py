#!/usr/bin/env python3
"""
Configuration management for mrm

Global settings come from config.yaml in the config directory; each project is
defined by its own projects/<id>.yaml file.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from mrm_errors import ProjectExistsError, ProjectNotFound
from mrm_models import (
    DEFAULT_BRANCH,
    DEFAULT_REMOTE,
    BranchNaming,
    Project,
    Repository,
)
from mrm_paths import (
    expand_tilde,
    get_config_dir,
    get_projects_dir,
    get_workspace_dir,
)
from mrm_security import validate_project_id

logger = logging.getLogger("mrm")

PROJECT_SUFFIXES = (".yaml", ".yml")


class Config:
    """Global configuration: config dir, workspace root and branch naming"""

    def __init__(
        self,
        config_dir: Optional[Path] = None,
        workspace_dir: Optional[Path] = None,
    ) -> None:
        self.config_dir = expand_tilde(config_dir) if config_dir else get_config_dir()
        self.config_path = self.config_dir / "config.yaml"
        self._data: Dict[str, Any] = self._load()

        # constructor > $MRM_WORKSPACE_DIR > config.yaml > ~/workspaces
        if workspace_dir:
            self.workspace_dir = expand_tilde(workspace_dir)
        elif self._data.get("workspace_dir") and not os.environ.get("MRM_WORKSPACE_DIR"):
            self.workspace_dir = expand_tilde(self._data["workspace_dir"])
        else:
            self.workspace_dir = get_workspace_dir()

        self.branch_naming = BranchNaming.from_dict(self._data.get("branch_naming"))

    def _load(self) -> Dict[str, Any]:
        """Load config.yaml, falling back to defaults on any problem"""
        if not self.config_path.exists():
            return {}

        try:
            with open(self.config_path, "r") as f:
                data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Failed to load config.yaml: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring config.yaml: expected a mapping, got {type(data).__name__}")
            return {}
        return data

    def save(self) -> None:
        """Save configuration to config.yaml"""
        self._data["workspace_dir"] = str(self.workspace_dir)
        self._data["branch_naming"] = self.branch_naming.to_dict()
        self.config_dir.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, "w") as f:
            yaml.safe_dump(self._data, f, default_flow_style=False, sort_keys=False)

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def generate_branch_name(
        self, issue_id: str, branch_naming: Optional[BranchNaming] = None
    ) -> str:
        """Branch name for an issue, using the project override if given"""
        naming = branch_naming or self.branch_naming
        return naming.branch_name(issue_id)


class ProjectStore:
    """Loads and saves project definitions from projects/*.yaml"""

    def __init__(self, config_dir: Path, default_naming: Optional[BranchNaming] = None):
        self.config_dir = Path(config_dir)
        self.projects_dir = get_projects_dir(self.config_dir)
        self.default_naming = default_naming or BranchNaming()

    def load_projects(self) -> List[Project]:
        """Load every project; a missing directory means no projects"""
        if not self.projects_dir.is_dir():
            return []

        projects = []
        for project_file in sorted(self.projects_dir.iterdir()):
            if project_file.suffix not in PROJECT_SUFFIXES or not project_file.is_file():
                continue

            project = self._load_project_file(project_file)
            if project:
                projects.append(project)

        return projects

    def load_project(self, project_id: str) -> Optional[Project]:
        project_file = self._find_project_file(project_id)
        if not project_file:
            return None
        return self._load_project_file(project_file)

    def project_exists(self, project_id: str) -> bool:
        return self._find_project_file(project_id) is not None

    def get_project_file_path(self, project_id: str) -> Path:
        return self._find_project_file(project_id) or self.projects_dir / f"{project_id}.yaml"

    def create_project(
        self,
        project_id: str,
        name: str,
        repositories: List[Repository],
        description: Optional[str] = None,
        branch_naming: Optional[BranchNaming] = None,
    ) -> Project:
        """Write a new project definition file"""
        project_id = validate_project_id(project_id)
        if self.project_exists(project_id):
            raise ProjectExistsError(project_id)

        data: Dict[str, Any] = {
            "name": name,
            "repositories": [repo.to_dict() for repo in repositories],
        }
        if description:
            data["description"] = description
        if branch_naming:
            data["branch_naming"] = branch_naming.to_dict()

        self._write(self.projects_dir / f"{project_id}.yaml", data)
        logger.debug(f"Created project {project_id}")
        return self._from_data(project_id, data)

    def update_project(
        self,
        project_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        repositories: Optional[List[Repository]] = None,
        branch_naming: Optional[BranchNaming] = None,
    ) -> Project:
        """Merge changes into an existing project definition"""
        project_file = self._find_project_file(project_id)
        if not project_file:
            raise ProjectNotFound(project_id)

        with open(project_file, "r") as f:
            existing = yaml.safe_load(f) or {}

        if name:
            existing["name"] = name
        if description is not None:
            existing["description"] = description
        if repositories is not None:
            existing["repositories"] = [repo.to_dict() for repo in repositories]
        if branch_naming is not None:
            existing["branch_naming"] = branch_naming.to_dict()

        self._write(project_file, existing)
        return self._from_data(project_id, existing)

    def delete_project(self, project_id: str) -> None:
        project_file = self._find_project_file(project_id)
        if not project_file:
            raise ProjectNotFound(project_id)
        project_file.unlink()

    def _find_project_file(self, project_id: str) -> Optional[Path]:
        for suffix in PROJECT_SUFFIXES:
            candidate = self.projects_dir / f"{project_id}{suffix}"
            if candidate.is_file():
                return candidate
        return None

    def _load_project_file(self, project_file: Path) -> Optional[Project]:
        """Parse one project file; unreadable or incomplete files are skipped"""
        try:
            with open(project_file, "r") as f:
                data = yaml.safe_load(f)
        except (yaml.YAMLError, OSError) as e:
            logger.warning(f"Failed to load project file {project_file.name}: {e}")
            return None

        if not isinstance(data, dict) or not isinstance(data.get("repositories"), list):
            logger.warning(f"Skipping project file {project_file.name}: no repositories list")
            return None

        return self._from_data(project_file.stem, data)

    def _from_data(self, project_id: str, data: Dict[str, Any]) -> Project:
        repositories = []
        for repo in data.get("repositories") or []:
            if not isinstance(repo, dict) or not repo.get("name") or not repo.get("path"):
                logger.warning(f"Skipping malformed repository entry in project {project_id}")
                continue
            repositories.append(
                Repository(
                    name=str(repo["name"]),
                    path=str(expand_tilde(repo["path"])),
                    default_branch=repo.get("default_branch") or DEFAULT_BRANCH,
                    remote=repo.get("remote") or DEFAULT_REMOTE,
                )
            )

        return Project(
            id=project_id,
            name=data.get("name") or project_id,
            description=data.get("description"),
            repositories=repositories,
            branch_naming=BranchNaming.from_dict(
                data.get("branch_naming"), fallback=self.default_naming
            ),
        )

    def _write(self, project_file: Path, data: Dict[str, Any]) -> None:
        project_file.parent.mkdir(parents=True, exist_ok=True)
        with open(project_file, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
