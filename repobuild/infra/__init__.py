"""
Infrastructure layer for repobuild.

Contains abstractions for external systems:
- GitClient: Git command execution
- CommandRunner: Stage command execution with timeout and cancellation
- ReleaseStore: Artifact publication (local directory or GitHub releases)
- RepositoryHost: Tagging and commit history for releases
- FileStore: JSON file persistence

These provide clean interfaces that can be mocked for testing.
"""

from .git_client import GitClient, GitCommit, GitError
from .runner import CommandResult, CommandRunner
from .release_store import (
    GitHubReleaseStore,
    LocalReleaseStore,
    ReleaseStore,
    create_release_store,
)
from .repository_host import GitRepositoryHost, RepositoryHost
from .file_store import FileStore

__all__ = [
    'GitClient',
    'GitCommit',
    'GitError',
    'CommandResult',
    'CommandRunner',
    'GitHubReleaseStore',
    'LocalReleaseStore',
    'ReleaseStore',
    'create_release_store',
    'GitRepositoryHost',
    'RepositoryHost',
    'FileStore',
]
