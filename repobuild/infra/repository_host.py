"""
Repository host infrastructure for repobuild.

The Releaser tags component repositories and reads their commit ranges
through a RepositoryHost. GitRepositoryHost does both against local
checkouts, cloning them on first use.
"""

import logging
from pathlib import Path
from typing import List, Optional

from ..domain.descriptor import RepositoryDescriptor
from ..domain.errors import ReleaseError
from .git_client import GitClient, GitCommit, GitError

logger = logging.getLogger(__name__)


class RepositoryHost:
    """Interface for tagging repositories and reading their history."""

    def create_tag(self, descriptor: RepositoryDescriptor, tag: str) -> bool:
        """
        Tag the descriptor's commit.

        Returns:
            True if the tag was created, False if it already points at that commit

        Raises:
            ReleaseError: tag exists at a different commit, or tagging failed
        """
        raise NotImplementedError

    def commits_between(
        self,
        descriptor: RepositoryDescriptor,
        since_tag: Optional[str],
    ) -> List[GitCommit]:
        """Commits of the descriptor's ref that are not reachable from ``since_tag``."""
        raise NotImplementedError


class GitRepositoryHost(RepositoryHost):
    """
    Tags and history through local git checkouts.

    Example:
        host = GitRepositoryHost(GitClient(), Path("~/.repobuild/workspace/release"))
        host.create_tag(graph.node("core"), "v1.4.0")
    """

    def __init__(self, git_client: GitClient, checkout_root: Path, push: bool = True):
        self.git = git_client
        self.checkout_root = Path(checkout_root).expanduser()
        self.push = push

    def _checkout(self, descriptor: RepositoryDescriptor) -> str:
        path = self.checkout_root / descriptor.name
        if self.git.is_git_repo(str(path)):
            self.git.fetch(str(path))
        else:
            self.git.clone(descriptor.source.url, str(path))
        return str(path)

    def _commit(self, path: str, descriptor: RepositoryDescriptor) -> str:
        commit = descriptor.commit or self.git.rev_parse(path, f"origin/{descriptor.source.ref}") \
            or self.git.rev_parse(path, descriptor.source.ref)
        if not commit:
            raise ReleaseError(
                f"Cannot find {descriptor.source.ref} in {descriptor.source.url}",
                component=descriptor.name,
            )
        return commit

    def create_tag(self, descriptor: RepositoryDescriptor, tag: str) -> bool:
        try:
            path = self._checkout(descriptor)
            commit = self._commit(path, descriptor)
            existing = self.git.tag_commit(path, tag)
            if existing is not None:
                if existing != commit:
                    raise ReleaseError(
                        f"Tag {tag} already exists at {existing[:12]}, expected {commit[:12]}",
                        component=descriptor.name,
                    )
                # An earlier run may have tagged locally and failed to push
                if self.push:
                    self.git.push_tag(path, tag)
                return False
            self.git.create_tag(path, tag, commit, message=f"Release {tag}")
            if self.push:
                self.git.push_tag(path, tag)
            logger.info(f"Tagged {descriptor.name} {tag} at {commit[:12]}")
            return True
        except GitError as e:
            raise ReleaseError(f"Tagging failed: {e}", component=descriptor.name)

    def commits_between(
        self,
        descriptor: RepositoryDescriptor,
        since_tag: Optional[str],
    ) -> List[GitCommit]:
        try:
            path = self._checkout(descriptor)
            commit = self._commit(path, descriptor)
        except GitError as e:
            raise ReleaseError(f"Reading history failed: {e}", component=descriptor.name)
        start = since_tag if since_tag and self.git.tag_commit(path, since_tag) else None
        return self.git.log_range(path, start, commit)
