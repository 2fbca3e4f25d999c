"""
Baseline specification parsing and the repository descriptor store.

A baseline file declares components: name, source repository, ref and
nested dependency specifications. Example (YAML):

    product:
      name: Workbench
      repository: acme/workbench
    baseline:
      - name: workbench
        repository: https://github.com/acme/workbench.git
        ref: main
        dependencies:
          - name: toolkit-core
            repository: https://github.com/acme/toolkit-core.git
            ref: v2.3.0
            dependencies: []
          - name: renderer
            repository: https://github.com/acme/renderer.git
            ref: main
            platform_exclusions: [linux-aarch64]
            # no "dependencies" key: read from the renderer repository

A dependency item is either a nested entry or the bare name of a component
declared elsewhere. An entry without a ``dependencies`` key is shallow; its
dependencies are read from ``baseline.yaml`` in its own repository when a
remote source is configured.

The DescriptorStore is the resolver's fetch capability. It is read-mostly:
fetches are cached and idempotent, and refresh is refused while a build
has the store checked out.
"""

import json
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set, Tuple

import toml
import yaml

from .domain.descriptor import RefKind, RepositoryDescriptor
from .domain.errors import InvalidDescriptor, StoreLocked
from .infra.git_client import GitClient, GitError

logger = logging.getLogger(__name__)

BASELINE_SUFFIXES = ('.yaml', '.yml', '.toml', '.json')
REMOTE_BASELINE_FILE = "baseline.yaml"


@dataclass(frozen=True)
class ProductInfo:
    """Product the baseline builds, as declared in the baseline file."""
    name: str
    repository: str = ""
    version: str = ""


@dataclass(frozen=True)
class Baseline:
    """Parsed baseline: root components plus every component it declares."""
    roots: Tuple[RepositoryDescriptor, ...]
    catalog: Mapping[str, RepositoryDescriptor]
    shallow: frozenset = field(default_factory=frozenset)
    product: Optional[ProductInfo] = None

    @property
    def root_names(self) -> Tuple[str, ...]:
        return tuple(d.name for d in self.roots)


def _register(
    catalog: Dict[str, RepositoryDescriptor],
    shallow: Set[str],
    descriptor: RepositoryDescriptor,
    is_shallow: bool,
) -> None:
    existing = catalog.get(descriptor.name)
    if existing is None:
        catalog[descriptor.name] = descriptor
        if is_shallow:
            shallow.add(descriptor.name)
        return

    if existing.content_key() == descriptor.content_key():
        return
    if descriptor.name in shallow and not is_shallow and existing.source == descriptor.source:
        # A full declaration completes an earlier shallow one
        catalog[descriptor.name] = descriptor
        shallow.discard(descriptor.name)
        return
    if is_shallow and existing.source == descriptor.source:
        return
    raise InvalidDescriptor(
        f"Component {descriptor.name} is declared twice with different content",
        component=descriptor.name,
    )


def _parse_entry(
    entry: Any,
    catalog: Dict[str, RepositoryDescriptor],
    shallow: Set[str],
    where: str,
) -> RepositoryDescriptor:
    if not isinstance(entry, dict):
        raise InvalidDescriptor(f"{where}: baseline entry must be a mapping, got {type(entry).__name__}")

    name = entry.get('name')
    if not name:
        raise InvalidDescriptor(f"{where}: baseline entry without a name")
    url = entry.get('repository') or entry.get('url')
    if not url:
        raise InvalidDescriptor(f"{where}: {name} has no repository", component=name)
    ref = entry.get('ref')
    if not ref:
        raise InvalidDescriptor(f"{where}: {name} has no ref", component=name)

    is_shallow = 'dependencies' not in entry
    dependency_names: List[str] = []
    for item in entry.get('dependencies') or []:
        if isinstance(item, str):
            dependency_names.append(item)
        else:
            nested = _parse_entry(item, catalog, shallow, where)
            dependency_names.append(nested.name)

    descriptor = RepositoryDescriptor.create(
        name=str(name),
        url=str(url),
        ref=str(ref),
        dependencies=dependency_names,
        platform_exclusions=[str(t) for t in entry.get('platform_exclusions') or []],
        ref_type=entry.get('ref_type'),
    )
    _register(catalog, shallow, descriptor, is_shallow)
    return descriptor


def parse_baseline(data: Any, source: str = "<baseline>") -> Baseline:
    """
    Parse baseline data (already decoded from YAML/TOML/JSON).

    Accepts a single root entry, a list of root entries, or a mapping with
    ``baseline`` (list of roots) and optional ``product``.

    Raises:
        InvalidDescriptor: malformed entry or conflicting duplicate name
    """
    product = None
    if isinstance(data, dict) and ('baseline' in data or 'product' in data):
        product_data = data.get('product') or {}
        if product_data:
            product = ProductInfo(
                name=str(product_data.get('name', '')),
                repository=str(product_data.get('repository', '')),
                version=str(product_data.get('version', '')),
            )
        entries = data.get('baseline') or []
        if isinstance(entries, dict):
            entries = [entries]
    elif isinstance(data, list):
        entries = data
    else:
        entries = [data]

    catalog: Dict[str, RepositoryDescriptor] = {}
    shallow: Set[str] = set()
    roots = tuple(_parse_entry(entry, catalog, shallow, source) for entry in entries)
    if not roots:
        raise InvalidDescriptor(f"{source}: baseline declares no components")
    # A root that was later completed by a full declaration is the full one
    roots = tuple(catalog[r.name] for r in roots)
    return Baseline(
        roots=roots,
        catalog=MappingProxyType(catalog),
        shallow=frozenset(shallow),
        product=product,
    )


def decode_baseline_text(text: str, suffix: str) -> Any:
    """Decode baseline text by file suffix."""
    suffix = suffix.lower()
    if suffix in ('.yaml', '.yml'):
        return yaml.safe_load(text)
    if suffix == '.toml':
        return toml.loads(text)
    if suffix == '.json':
        return json.loads(text)
    raise InvalidDescriptor(f"Unsupported baseline format: {suffix}")


def load_baseline_file(path: Path) -> Baseline:
    """Read and parse a baseline file."""
    path = Path(path)
    try:
        text = path.read_text()
        data = decode_baseline_text(text, path.suffix)
    except (OSError, yaml.YAMLError, toml.TomlDecodeError, json.JSONDecodeError) as e:
        raise InvalidDescriptor(f"Cannot read baseline {path}: {e}")
    return parse_baseline(data, source=str(path))


class RemoteDescriptorSource:
    """
    Reads a component's own baseline file from its repository.

    Checkouts are kept under ``cache_dir`` and reused across runs.
    """

    def __init__(self, git_client: GitClient, cache_dir: Path, filename: str = REMOTE_BASELINE_FILE):
        self.git = git_client
        self.cache_dir = Path(cache_dir).expanduser()
        self.filename = filename

    def load(self, descriptor: RepositoryDescriptor) -> Optional[Baseline]:
        path = str(self.cache_dir / descriptor.name)
        try:
            if self.git.is_git_repo(path):
                self.git.fetch(path)
            else:
                self.git.clone(descriptor.source.url, path)
        except GitError as e:
            raise InvalidDescriptor(
                f"Cannot fetch {descriptor.source.url}: {e}",
                component=descriptor.name,
            )

        ref = descriptor.checkout_ref
        if descriptor.source.kind == RefKind.BRANCH and not descriptor.commit:
            ref = f"origin/{ref}"
        text = self.git.show_file(path, ref, self.filename)
        if text is None:
            return None
        data = decode_baseline_text(text, Path(self.filename).suffix)
        return parse_baseline(data, source=f"{descriptor.source.url}@{descriptor.source.ref}")


class DescriptorStore:
    """
    Repository descriptor store: the resolver's fetch capability.

    Descriptors come from loaded baselines, then from a directory of
    per-component baseline files, then (for shallow entries) from the
    component's own repository. Results are cached by (name, ref), so the
    same name fetched twice gives the same descriptor object.

    Example:
        store = DescriptorStore([load_baseline_file(Path("baseline.yaml"))])
        with store.checkout():
            graph = BaselineResolver(store.fetch).resolve(store.roots)
    """

    def __init__(
        self,
        baselines: Tuple[Baseline, ...] = (),
        directory: Optional[Path] = None,
        remote: Optional[RemoteDescriptorSource] = None,
        git_client: Optional[GitClient] = None,
    ):
        self.directory = Path(directory).expanduser() if directory else None
        self.remote = remote
        self.git = git_client or GitClient()
        self._baselines: List[Baseline] = []
        self._catalog: Dict[str, RepositoryDescriptor] = {}
        self._shallow: Set[str] = set()
        self._cache: Dict[Tuple[str, str], RepositoryDescriptor] = {}
        self._commits: Dict[Tuple[str, str], str] = {}
        self._lock = threading.RLock()
        self._readers = 0
        for baseline in baselines:
            self.add(baseline)

    def add(self, baseline: Baseline) -> None:
        """Register every component a baseline declares."""
        with self._lock:
            self._merge(baseline)
            self._baselines.append(baseline)

    def _merge(self, baseline: Baseline) -> None:
        for name, descriptor in baseline.catalog.items():
            _register(self._catalog, self._shallow, descriptor, name in baseline.shallow)

    @property
    def roots(self) -> Tuple[RepositoryDescriptor, ...]:
        roots: List[RepositoryDescriptor] = []
        for baseline in self._baselines:
            for root in baseline.roots:
                descriptor = self._catalog[root.name]
                if descriptor not in roots:
                    roots.append(descriptor)
        return tuple(roots)

    @property
    def product(self) -> Optional[ProductInfo]:
        for baseline in self._baselines:
            if baseline.product:
                return baseline.product
        return None

    def _from_directory(self, name: str) -> Optional[RepositoryDescriptor]:
        if not self.directory:
            return None
        for suffix in BASELINE_SUFFIXES:
            path = self.directory / f"{name}{suffix}"
            if path.exists():
                baseline = load_baseline_file(path)
                self._merge(baseline)
                return self._catalog.get(name)
        return None

    def fetch(self, name: str) -> Optional[RepositoryDescriptor]:
        """
        Look up a component by name.

        Returns:
            The descriptor, or None if no source knows the name
        """
        with self._lock:
            descriptor = self._catalog.get(name) or self._from_directory(name)
            if descriptor is None:
                return None

            key = (name, descriptor.source.ref)
            cached = self._cache.get(key)
            if cached is not None:
                return cached

            if name in self._shallow and self.remote is not None:
                logger.debug(f"Reading {name} dependencies from {descriptor.source.url}")
                remote = self.remote.load(descriptor)
                if remote is not None:
                    remote_root = remote.catalog.get(name)
                    if remote_root is None:
                        raise InvalidDescriptor(
                            f"{descriptor.source.url} does not declare {name}",
                            component=name,
                        )
                    self._shallow.discard(name)
                    for other, nested in remote.catalog.items():
                        if other == name:
                            continue
                        _register(self._catalog, self._shallow, nested, other in remote.shallow)
                    descriptor = RepositoryDescriptor(
                        name=name,
                        source=descriptor.source,
                        dependencies=remote_root.dependencies,
                        platform_exclusions=descriptor.platform_exclusions | remote_root.platform_exclusions,
                        commit=descriptor.commit,
                    )
                    self._catalog[name] = descriptor

            self._cache[key] = descriptor
            return descriptor

    def resolve_ref(self, descriptor: RepositoryDescriptor) -> RepositoryDescriptor:
        """
        Pin a descriptor to exactly one commit.

        Raises:
            InvalidDescriptor: the ref matches no commit or several distinct commits
        """
        if descriptor.commit:
            return descriptor
        key = (descriptor.source.url, descriptor.source.ref)
        with self._lock:
            commit = self._commits.get(key)
        if commit is None:
            commit = self._ls_remote_commit(descriptor)
            with self._lock:
                self._commits[key] = commit
        return descriptor.with_commit(commit)

    def _ls_remote_commit(self, descriptor: RepositoryDescriptor) -> str:
        ref = descriptor.source.ref
        try:
            refs = self.git.ls_remote(descriptor.source.url, ref)
        except GitError as e:
            raise InvalidDescriptor(
                f"Cannot resolve {ref} of {descriptor.source.url}: {e}",
                component=descriptor.name,
            )

        heads = {c for c, name in refs if name == f"refs/heads/{ref}"}
        tags = {c for c, name in refs if name == f"refs/tags/{ref}"}
        peeled = {c for c, name in refs if name == f"refs/tags/{ref}^{{}}"}
        if descriptor.source.kind == RefKind.BRANCH:
            candidates = heads
        elif descriptor.source.kind == RefKind.TAG:
            candidates = peeled or tags
        else:
            candidates = heads | (peeled or tags)

        if not candidates:
            raise InvalidDescriptor(
                f"{ref} does not exist in {descriptor.source.url}",
                component=descriptor.name,
            )
        if len(candidates) > 1:
            raise InvalidDescriptor(
                f"{ref} is ambiguous in {descriptor.source.url}",
                component=descriptor.name,
            )
        return next(iter(candidates))

    @contextmanager
    def checkout(self) -> Iterator['DescriptorStore']:
        """Hold the store read-only for the duration of a build."""
        with self._lock:
            self._readers += 1
        try:
            yield self
        finally:
            with self._lock:
                self._readers -= 1

    def refresh(self) -> None:
        """
        Drop caches and re-read directory and remote sources.

        Raises:
            StoreLocked: a build has the store checked out
        """
        with self._lock:
            if self._readers:
                raise StoreLocked("Descriptor store is in use by a running build")
            self._cache.clear()
            self._commits.clear()
            self._catalog = {}
            self._shallow = set()
            for baseline in self._baselines:
                self._merge(baseline)
