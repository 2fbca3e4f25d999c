"""
Release store infrastructure for repobuild.

A release store is keyed by (repository, tag) and accepts artifact uploads.
Uploads are idempotent by content hash: uploading bytes that are already
stored is a no-op, so a publish that died half-way can simply be re-run.

- LocalReleaseStore: directory tree with a JSON index
- GitHubReleaseStore: GitHub releases, assets labelled with their hash
"""

import logging
import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from ..domain.artifact import file_sha256
from ..domain.errors import PublishError
from .file_store import FileStore

logger = logging.getLogger(__name__)

HASH_LABEL_PREFIX = "sha256:"


class ReleaseStore:
    """Interface of a store that artifacts are published to."""

    def has(self, repository: str, tag: str, content_hash: str) -> bool:
        raise NotImplementedError

    def upload(self, repository: str, tag: str, name: str, path: Path, content_hash: str) -> bool:
        """
        Store a file under (repository, tag).

        Returns:
            True if the file was stored, False if identical content was already there

        Raises:
            PublishError: upload failed, or ``name`` holds different content
        """
        raise NotImplementedError

    def list(self, repository: str, tag: str) -> List[Dict[str, Any]]:
        """Stored entries as dicts with at least ``name`` and ``content_hash``."""
        raise NotImplementedError


class LocalReleaseStore(ReleaseStore):
    """
    Release store on the local filesystem.

    Layout:
        <root>/<owner>__<name>/<tag>/<artifact files>
        <root>/index.json
    """

    def __init__(self, root: Path):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        self.index = FileStore(self.root / "index.json")

    @staticmethod
    def _key(repository: str, tag: str) -> str:
        return f"{repository}@{tag}"

    def _dir(self, repository: str, tag: str) -> Path:
        return self.root / repository.replace('/', '__') / tag

    def has(self, repository: str, tag: str, content_hash: str) -> bool:
        entries = self.index.get(self._key(repository, tag), {})
        return any(e.get('content_hash') == content_hash for e in entries.values())

    def upload(self, repository: str, tag: str, name: str, path: Path, content_hash: str) -> bool:
        key = self._key(repository, tag)
        entries = self.index.get(key, {})
        existing = entries.get(name)
        if existing is not None:
            if existing.get('content_hash') == content_hash:
                return False
            raise PublishError(f"{name} already published in {key} with different content")

        target_dir = self._dir(repository, tag)
        target_dir.mkdir(parents=True, exist_ok=True)
        target = target_dir / name

        # A previous attempt may have copied the file but died before indexing it
        if not (target.exists() and file_sha256(target) == content_hash):
            fd, temp_path = tempfile.mkstemp(dir=target_dir, prefix=f".{name}.", suffix=".tmp")
            os.close(fd)
            try:
                shutil.copyfile(path, temp_path)
                os.replace(temp_path, target)
            except OSError as e:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass
                raise PublishError(f"Could not store {name} in {key}: {e}")

        def _add(current):
            current = dict(current or {})
            current[name] = {'content_hash': content_hash, 'path': str(target)}
            return current

        self.index.mutate(key, _add, default={})
        logger.info(f"Stored {name} in {key}")
        return True

    def list(self, repository: str, tag: str) -> List[Dict[str, Any]]:
        entries = self.index.get(self._key(repository, tag), {})
        return [
            {'name': name, **entry}
            for name, entry in sorted(entries.items())
        ]


class GitHubReleaseStore(ReleaseStore):
    """
    GitHub releases as a release store.

    Creates the release for a tag on first upload. Each asset carries a
    ``sha256:<hash>`` label, which is how already-published content is
    recognised. Transient failures (connection errors, 5xx, rate limits)
    are retried with exponential backoff.

    Example:
        store = GitHubReleaseStore(token=os.environ["GITHUB_TOKEN"])
        store.upload("org/product", "v1.2.0", name, path, content_hash)
    """

    API_URL = "https://api.github.com"
    UPLOAD_URL = "https://uploads.github.com"

    def __init__(
        self,
        token: Optional[str] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize GitHubReleaseStore.

        Args:
            token: GitHub token (defaults to REPOBUILD_GITHUB_TOKEN or GITHUB_TOKEN env var)
            max_retries: Maximum attempts for transient failures
            base_delay: Base delay for exponential backoff
            max_delay: Maximum delay between retries
            session: requests session (for testing)
        """
        self.token = token or os.environ.get('REPOBUILD_GITHUB_TOKEN') or os.environ.get('GITHUB_TOKEN')
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.session = session or requests.Session()
        self._releases: Dict[str, Dict[str, Any]] = {}

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {
            'Accept': 'application/vnd.github.v3+json',
            'User-Agent': 'repobuild',
        }
        if self.token:
            headers['Authorization'] = f'token {self.token}'
        if extra:
            headers.update(extra)
        return headers

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        """Send a request, retrying transient failures."""
        last_error = ""
        for attempt in range(self.max_retries):
            try:
                response = self.session.request(method, url, timeout=60, **kwargs)
                if response.status_code < 500 and response.status_code not in (403, 429):
                    return response
                if response.status_code == 403 and response.headers.get('X-RateLimit-Remaining') != '0':
                    return response
                last_error = f"HTTP {response.status_code}"
            except requests.RequestException as e:
                last_error = str(e)

            if attempt < self.max_retries - 1:
                delay = min(self.base_delay * (2 ** attempt), self.max_delay)
                logger.warning(f"GitHub request failed ({last_error}), retrying in {delay}s (attempt {attempt + 1})")
                time.sleep(delay)

        raise PublishError(f"{method} {url} failed after {self.max_retries} attempts: {last_error}")

    def _release(self, repository: str, tag: str, create: bool) -> Optional[Dict[str, Any]]:
        key = f"{repository}@{tag}"
        if key in self._releases:
            return self._releases[key]

        url = f"{self.API_URL}/repos/{repository}/releases/tags/{tag}"
        response = self._request('GET', url, headers=self._headers())
        if response.status_code == 200:
            release = response.json()
        elif response.status_code == 404:
            if not create:
                return None
            response = self._request(
                'POST',
                f"{self.API_URL}/repos/{repository}/releases",
                headers=self._headers(),
                json={'tag_name': tag, 'name': tag, 'draft': False},
            )
            if response.status_code not in (200, 201):
                raise PublishError(f"Could not create release {key}: HTTP {response.status_code}")
            release = response.json()
            logger.info(f"Created GitHub release {key}")
        else:
            raise PublishError(f"Could not read release {key}: HTTP {response.status_code}")

        self._releases[key] = release
        return release

    def _assets(self, repository: str, release: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Every asset of a release, following the Link header across pages."""
        url = f"{self.API_URL}/repos/{repository}/releases/{release['id']}/assets"
        params: Optional[Dict[str, Any]] = {'per_page': 100}
        assets: List[Dict[str, Any]] = []
        while url:
            response = self._request('GET', url, headers=self._headers(), params=params)
            if response.status_code != 200:
                raise PublishError(f"Could not list assets of {repository}: HTTP {response.status_code}")
            assets.extend(response.json())
            # The next link already carries the query string
            url = response.links.get('next', {}).get('url')
            params = None
        return assets

    @staticmethod
    def _asset_hash(asset: Dict[str, Any]) -> Optional[str]:
        label = asset.get('label') or ''
        if label.startswith(HASH_LABEL_PREFIX):
            return label[len(HASH_LABEL_PREFIX):]
        return None

    def has(self, repository: str, tag: str, content_hash: str) -> bool:
        release = self._release(repository, tag, create=False)
        if release is None:
            return False
        return any(self._asset_hash(a) == content_hash for a in self._assets(repository, release))

    def upload(self, repository: str, tag: str, name: str, path: Path, content_hash: str) -> bool:
        release = self._release(repository, tag, create=True)
        for asset in self._assets(repository, release):
            if asset.get('name') != name:
                continue
            if self._asset_hash(asset) == content_hash:
                return False
            raise PublishError(f"{name} already published in {repository}@{tag} with different content")

        url = f"{self.UPLOAD_URL}/repos/{repository}/releases/{release['id']}/assets"
        with open(path, 'rb') as f:
            response = self._request(
                'POST',
                url,
                headers=self._headers({'Content-Type': 'application/octet-stream'}),
                params={'name': name, 'label': f"{HASH_LABEL_PREFIX}{content_hash}"},
                data=f.read(),
            )
        if response.status_code not in (200, 201):
            raise PublishError(f"Upload of {name} to {repository}@{tag} failed: HTTP {response.status_code}")
        logger.info(f"Uploaded {name} to {repository}@{tag}")
        return True

    def list(self, repository: str, tag: str) -> List[Dict[str, Any]]:
        release = self._release(repository, tag, create=False)
        if release is None:
            return []
        return [
            {'name': a.get('name'), 'content_hash': self._asset_hash(a), 'url': a.get('browser_download_url')}
            for a in self._assets(repository, release)
        ]


def create_release_store(store_config: Dict[str, Any]) -> ReleaseStore:
    """Build the release store named by the ``store`` config section."""
    store_type = store_config.get('type', 'local')
    if store_type == 'github':
        retry = store_config.get('retry', {})
        return GitHubReleaseStore(
            token=store_config.get('token') or None,
            max_retries=retry.get('max_attempts', 3),
            base_delay=retry.get('base_delay_seconds', 1.0),
            max_delay=retry.get('max_delay_seconds', 60.0),
        )
    if store_type == 'local':
        return LocalReleaseStore(Path(os.path.expanduser(store_config.get('path', '~/.repobuild/releases'))))
    raise ValueError(f"Unknown release store type: {store_type}")
