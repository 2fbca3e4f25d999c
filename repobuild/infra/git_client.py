"""
Git client infrastructure for repobuild.

Provides a clean abstraction over git command execution.
All git operations go through this client, making them:
- Easy to mock for testing
- Consistent in error handling
- Isolated from business logic
"""

import subprocess
from dataclasses import dataclass
from typing import Optional, List, Tuple
from pathlib import Path
from datetime import datetime
import logging
import shlex

logger = logging.getLogger(__name__)


class GitError(Exception):
    """A git command failed."""

    def __init__(self, message: str, returncode: int = -1, stderr: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr

    @property
    def is_network_error(self) -> bool:
        """Heuristic for failures worth retrying."""
        text = (self.stderr or str(self)).lower()
        markers = (
            'could not resolve host',
            'connection timed out',
            'connection reset',
            'unable to access',
            'early eof',
            'the remote end hung up',
            'timed out',
        )
        return self.returncode == -1 or any(m in text for m in markers)


@dataclass
class GitCommit:
    """A git commit with metadata."""
    hash: str
    date: datetime
    author: str
    email: str
    message: str

    def to_dict(self):
        return {
            'hash': self.hash,
            'date': self.date.isoformat(),
            'author': self.author,
            'email': self.email,
            'message': self.message,
        }


class GitClient:
    """
    Abstraction over git commands.

    Example:
        client = GitClient()
        refs = client.ls_remote("https://github.com/org/repo.git", "main")
        client.clone_or_fetch(url, "/work/repo", refs[0][0])
    """

    def __init__(self, timeout: int = 600):
        """
        Initialize GitClient.

        Args:
            timeout: Command timeout in seconds (default: 600)
        """
        self.timeout = timeout

    def _run(
        self,
        args: List[str],
        cwd: Optional[str] = None,
        check: bool = True,
    ) -> Tuple[str, int]:
        """
        Run a git command.

        Args:
            args: git arguments (without the leading "git")
            cwd: Working directory
            check: Raise GitError on non-zero exit

        Returns:
            Tuple of (stdout, returncode)
        """
        cmd = ['git'] + list(args)
        try:
            result = subprocess.run(
                cmd,
                cwd=cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Git command timed out: {shlex.join(cmd)}")
            raise GitError(f"git timed out: {shlex.join(cmd)}", returncode=-1, stderr="timed out")
        except OSError as e:
            raise GitError(f"git could not be started: {e}", returncode=127)

        if check and result.returncode != 0:
            raise GitError(
                f"{shlex.join(cmd)} failed: {result.stderr.strip()}",
                returncode=result.returncode,
                stderr=result.stderr,
            )
        return result.stdout.strip(), result.returncode

    def is_git_repo(self, path: str) -> bool:
        """Check if path is a git repository."""
        git_dir = Path(path) / ".git"
        return git_dir.exists()

    def ls_remote(self, url: str, ref: str) -> List[Tuple[str, str]]:
        """
        List remote refs matching ``ref``.

        Returns:
            List of (commit, refname) tuples
        """
        output, _ = self._run(['ls-remote', url, ref])
        refs = []
        for line in output.splitlines():
            parts = line.split('\t', 1)
            if len(parts) == 2:
                refs.append((parts[0].strip(), parts[1].strip()))
        return refs

    def clone(self, url: str, dest: str, ref: Optional[str] = None) -> None:
        """Clone ``url`` into ``dest`` (no checkout; call checkout after)."""
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
        self._run(['clone', '--no-checkout', url, str(dest)])
        logger.debug(f"Cloned {url} into {dest}")

    def fetch(self, path: str, remote: str = "origin") -> None:
        """Fetch all refs and tags from remote."""
        self._run(['fetch', '--tags', remote], cwd=path)

    def checkout(self, path: str, ref: str) -> None:
        """Check out ``ref`` (detached for commits and tags)."""
        self._run(['checkout', '--force', ref], cwd=path)

    def clone_or_fetch(self, url: str, dest: str, ref: str) -> None:
        """Make ``dest`` a checkout of ``url`` at ``ref``."""
        if self.is_git_repo(dest):
            self.fetch(dest)
        else:
            self.clone(url, dest)
        self.checkout(dest, ref)

    def rev_parse(self, path: str, ref: str = "HEAD") -> Optional[str]:
        output, code = self._run(['rev-parse', '--verify', '--quiet', f"{ref}^{{commit}}"], cwd=path, check=False)
        if code == 0 and output:
            return output.strip()
        return None

    def show_file(self, path: str, ref: str, file_path: str) -> Optional[str]:
        """Contents of ``file_path`` at ``ref``, or None if absent."""
        output, code = self._run(['show', f"{ref}:{file_path}"], cwd=path, check=False)
        return output if code == 0 else None

    def tag_commit(self, path: str, tag: str) -> Optional[str]:
        """Commit a tag points to, or None if the tag does not exist."""
        return self.rev_parse(path, f"refs/tags/{tag}")

    def create_tag(self, path: str, tag: str, commit: str, message: Optional[str] = None) -> None:
        """Create an annotated tag at ``commit``."""
        self._run(['tag', '-a', tag, commit, '-m', message or tag], cwd=path)

    def push_tag(self, path: str, tag: str, remote: str = "origin") -> None:
        self._run(['push', remote, f"refs/tags/{tag}"], cwd=path)

    def log_range(
        self,
        path: str,
        start: Optional[str],
        end: str,
        limit: int = 500
    ) -> List[GitCommit]:
        """
        Commits reachable from ``end`` but not from ``start``.

        With no ``start`` the last ``limit`` commits up to ``end`` are returned.
        """
        rev_range = f"{start}..{end}" if start else end
        output, code = self._run(
            ['log', '--format=%H|%aI|%an|%ae|%s', '-n', str(limit), rev_range],
            cwd=path,
            check=False,
        )
        if code != 0 or not output:
            return []

        commits = []
        for line in output.strip().split('\n'):
            if not line or '|' not in line:
                continue

            parts = line.split('|', 4)
            if len(parts) < 5:
                continue

            try:
                date = datetime.fromisoformat(parts[1].strip().replace('Z', '+00:00'))
                if date.tzinfo:
                    date = date.replace(tzinfo=None)
            except (ValueError, AttributeError):
                date = datetime.now()

            commits.append(GitCommit(
                hash=parts[0].strip(),
                date=date,
                author=parts[2].strip(),
                email=parts[3].strip(),
                message=parts[4].strip()
            ))

        return commits
