#!/usr/bin/env python3
"""
Path helpers for the mrm config, data and workspace directories

Nothing here touches the filesystem; every function only builds paths.
"""

import os
from pathlib import Path
from typing import Optional, Tuple, Union

APP_NAME = "mrm"
WORKSPACE_SUFFIX = ".code-workspace"
CONTEXT_FILENAME = ".claude.md"


def expand_tilde(path: Union[str, Path]) -> Path:
    """Expand a leading ~ to the user's home directory"""
    return Path(os.path.expanduser(str(path)))


def get_config_dir() -> Path:
    """
    Default config directory

    $MRM_CONFIG_DIR wins, then $XDG_CONFIG_HOME/mrm, then ~/.config/mrm
    """
    override = os.environ.get("MRM_CONFIG_DIR")
    if override:
        return expand_tilde(override)

    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home) / APP_NAME

    return Path.home() / ".config" / APP_NAME


def get_workspace_dir() -> Path:
    """Default workspace root: $MRM_WORKSPACE_DIR or ~/workspaces"""
    override = os.environ.get("MRM_WORKSPACE_DIR")
    if override:
        return expand_tilde(override)
    return Path.home() / "workspaces"


def get_projects_dir(config_dir: Path) -> Path:
    return Path(config_dir) / "projects"


def get_data_dir(config_dir: Path) -> Path:
    return Path(config_dir) / "data"


def get_project_data_dir(config_dir: Path, project_id: str) -> Path:
    return get_data_dir(config_dir) / project_id


def get_project_workspace_dir(workspace_dir: Path, project_id: str) -> Path:
    return Path(workspace_dir) / project_id


def get_issue_dir(workspace_dir: Path, project_id: str, issue_id: str) -> Path:
    """Deterministic directory holding every worktree of one issue"""
    return get_project_workspace_dir(workspace_dir, project_id) / issue_id


def get_workspace_file(issue_dir: Path, issue_id: str) -> Path:
    return Path(issue_dir) / f"{issue_id}{WORKSPACE_SUFFIX}"


def get_context_file(issue_dir: Path) -> Path:
    return Path(issue_dir) / CONTEXT_FILENAME


def detect_issue_from_path(
    workspace_dir: Path, path: Union[str, Path]
) -> Optional[Tuple[str, str]]:
    """
    Work out (project_id, issue_id) from a path inside the workspace root

    ~/workspaces/web-app/SHOP-123/acme/frontend -> ("web-app", "SHOP-123")
    """
    root = Path(os.path.abspath(str(workspace_dir)))
    target = Path(os.path.abspath(str(path)))

    try:
        relative = target.relative_to(root)
    except ValueError:
        return None

    parts = relative.parts
    if len(parts) < 2:
        return None

    return parts[0], parts[1]
