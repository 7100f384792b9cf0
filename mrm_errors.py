#!/usr/bin/env python3
"""
Exceptions raised by mrm
"""


class MrmError(Exception):
    """Base exception for mrm errors"""

    pass


class ProjectNotFound(MrmError):
    """No project definition with the requested id"""

    def __init__(self, project_id: str):
        super().__init__(f"Project not found: {project_id}")
        self.project_id = project_id


class ProjectExistsError(MrmError):
    """A project definition with this id already exists"""

    def __init__(self, project_id: str):
        super().__init__(f'Project "{project_id}" already exists')
        self.project_id = project_id


class IssueNotFound(MrmError):
    """No issue with the requested id in the project's state"""

    def __init__(self, project_id: str, issue_id: str):
        super().__init__(f"Issue not found: {issue_id} (project {project_id})")
        self.project_id = project_id
        self.issue_id = issue_id


class InvalidIssueId(MrmError):
    """Issue id cannot be used as a directory or branch name"""

    pass


class InvalidRepository(MrmError):
    """Configured path is not a usable git repository"""

    def __init__(self, path: str):
        super().__init__(f"Invalid repository: {path}")
        self.path = path


class GitOperationError(MrmError):
    """A git worktree or branch command failed"""

    def __init__(self, message: str, stderr: str = ""):
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)
        self.stderr = stderr


class BranchNotMergedError(GitOperationError):
    """Safe branch delete refused because the branch has unmerged commits"""

    pass


class RemoteParseError(MrmError):
    """Remote URL does not match any supported form"""

    pass


class StateCorrupt(MrmError):
    """Issue state file could not be parsed"""

    pass
