#!/usr/bin/env python3
"""
Input validation for mrm - issue ids, project ids and branch names

Issue and project ids end up as directory names under the workspace root and
inside git branch names, so they are checked before anything is created.
"""

import re

from mrm_errors import InvalidIssueId, MrmError


class SecurityError(MrmError):
    """Security-related exceptions"""
    pass


_SHELL_METACHARS = r'[;&|`$()]'
_CONTROL_CHARS = r'[\x00-\x1f\x7f]'


def validate_branch_name(name: str) -> str:
    """
    Validate and sanitize git branch name

    Args:
        name: Branch name to validate

    Returns:
        Sanitized branch name

    Raises:
        SecurityError: If branch name is invalid or potentially dangerous
    """
    if not name or not isinstance(name, str):
        raise SecurityError("Branch name must be a non-empty string")

    name = name.strip()

    if len(name) > 250:
        raise SecurityError("Branch name too long (max 250 characters)")

    dangerous_patterns = [
        r'\.\.',           # Path traversal / invalid ref
        r'^-',             # Starting with dash (command option)
        _SHELL_METACHARS,
        _CONTROL_CHARS,
        r'\\',             # Backslashes
        r'\s',             # Whitespace
        r'[~^:?*\[]',      # Refname special characters
    ]

    for pattern in dangerous_patterns:
        if re.search(pattern, name):
            raise SecurityError(f"Branch name contains invalid characters: {name}")

    if name.startswith('.') or name.endswith('.'):
        raise SecurityError("Branch name cannot start or end with a dot")

    if name.endswith('.lock'):
        raise SecurityError("Branch name cannot end with '.lock'")

    if '//' in name or name.endswith('/') or name.startswith('/'):
        raise SecurityError("Invalid slash usage in branch name")

    if '@{' in name:
        raise SecurityError("Branch name cannot contain '@{'")

    return name


def validate_issue_id(issue_id: str) -> str:
    """
    Validate an issue id before it becomes a directory name

    Whitespace inside the id is allowed (branch naming replaces it), but path
    separators, dot segments, control and shell characters are not.

    Raises:
        InvalidIssueId: If the id cannot be used safely
    """
    if not issue_id or not isinstance(issue_id, str) or not issue_id.strip():
        raise InvalidIssueId("Issue id must be a non-empty string")

    issue_id = issue_id.strip()

    if len(issue_id) > 100:
        raise InvalidIssueId("Issue id too long (max 100 characters)")

    if issue_id in ('.', '..') or '/' in issue_id or '\\' in issue_id:
        raise InvalidIssueId(f"Issue id cannot contain path separators: {issue_id}")

    if re.search(_CONTROL_CHARS, issue_id):
        raise InvalidIssueId("Issue id contains control characters")

    if re.search(_SHELL_METACHARS, issue_id):
        raise InvalidIssueId(f"Issue id contains shell metacharacters: {issue_id}")

    if issue_id.startswith('-') or issue_id.startswith('.'):
        raise InvalidIssueId(f"Issue id cannot start with '-' or '.': {issue_id}")

    return issue_id


def validate_project_id(project_id: str) -> str:
    """Project ids are file stems and directory names: same rules, no spaces"""
    try:
        project_id = validate_issue_id(project_id)
    except InvalidIssueId as e:
        raise SecurityError(str(e).replace("Issue id", "Project id"))

    if re.search(r'\s', project_id):
        raise SecurityError(f"Project id cannot contain whitespace: {project_id}")

    return project_id
