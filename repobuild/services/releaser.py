"""
Releaser for repobuild.

Turns a set of per-platform artifacts into a release:
1. verify the set was built from one graph and pin snapshot
2. tag every repository of the graph with ``v{version}``
3. collect the changelog since the previous product release
4. publish the artifacts (and changelog) to the release store
5. bump the product's own version pin

Every step can be re-run: existing tags at the right commit and already
stored content are skipped, so a release that failed half-way converges on
the same final state when repeated.
"""

import hashlib
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from ..domain.artifact import ReleaseArtifact
from ..domain.errors import InconsistentReleaseSet, UnknownTool
from ..domain.graph import DependencyGraph
from ..infra.release_store import ReleaseStore
from ..infra.repository_host import RepositoryHost
from .pin_registry import VersionPinRegistry

logger = logging.getLogger(__name__)

CHANGELOG_NAME = "CHANGELOG.md"


@dataclass
class ReleaseResult:
    """What a release run did."""
    version: str
    tag: str
    repository: str
    tags_created: List[str] = field(default_factory=list)
    tags_existing: List[str] = field(default_factory=list)
    published: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    changelog: str = ""
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'release',
            'version': self.version,
            'tag': self.tag,
            'repository': self.repository,
            'tags_created': self.tags_created,
            'tags_existing': self.tags_existing,
            'published': self.published,
            'skipped': self.skipped,
            'dry_run': self.dry_run,
        }


def normalize_version(version: str) -> str:
    """Version without a leading ``v``."""
    return version[1:] if version.startswith('v') else version


class Releaser:
    """
    Release a consistent artifact set.

    Example:
        releaser = Releaser(LocalReleaseStore(root), GitRepositoryHost(git, checkouts), registry)
        result = releaser.release("1.4.0", artifacts, graph, "acme/workbench")
    """

    def __init__(
        self,
        store: ReleaseStore,
        host: RepositoryHost,
        registry: VersionPinRegistry,
        product_tool: Optional[str] = None,
    ):
        """
        Initialize Releaser.

        Args:
            store: Where artifacts are published
            host: Tags repositories and reads their history
            registry: Pin registry the artifacts were built against
            product_tool: Pin holding the product version (default: product name)
        """
        self.store = store
        self.host = host
        self.registry = registry
        self.product_tool = product_tool

    def _product_tool(self, artifacts: List[ReleaseArtifact]) -> str:
        return self.product_tool or artifacts[0].product

    def check_consistency(
        self,
        version: str,
        artifacts: Iterable[ReleaseArtifact],
        graph: DependencyGraph,
    ) -> None:
        """
        Verify the artifacts form one release.

        Raises:
            InconsistentReleaseSet: with every reason found
        """
        artifacts = list(artifacts)
        version = normalize_version(version)
        if not artifacts:
            raise InconsistentReleaseSet(["no artifacts to release"])

        reasons = []
        graph_fingerprint = graph.fingerprint()
        pins_fingerprint = self.registry.snapshot().without(self._product_tool(artifacts)).fingerprint()
        products = sorted({a.product for a in artifacts})
        if len(products) > 1:
            reasons.append(f"artifacts belong to different products: {', '.join(products)}")

        seen = set()
        for artifact in sorted(artifacts, key=lambda a: a.name):
            if normalize_version(artifact.version) != version:
                reasons.append(f"{artifact.name} has version {artifact.version}, expected {version}")
            if artifact.graph_fingerprint != graph_fingerprint:
                reasons.append(f"{artifact.name} was built from a different dependency graph")
            if artifact.pins_fingerprint != pins_fingerprint:
                reasons.append(f"{artifact.name} was built against different version pins")
            if artifact.platform.name in seen:
                reasons.append(f"more than one artifact for {artifact.platform.name}")
            seen.add(artifact.platform.name)

        if reasons:
            raise InconsistentReleaseSet(reasons)

    def previous_release_tag(self, tool: str, version: str) -> Optional[str]:
        """Tag of the last product version released before ``version``, if any."""
        try:
            history = self.registry.history(tool)
        except UnknownTool:
            return None
        for pin in reversed(history):
            previous = normalize_version(pin.version)
            if previous != version:
                return f"v{previous}"
        return None

    def changelog(
        self,
        product: str,
        version: str,
        graph: DependencyGraph,
        since_tag: Optional[str],
    ) -> str:
        """Markdown changelog, one section per repository in load order."""
        lines = [f"# {product} v{version}", ""]
        if since_tag:
            lines.extend([f"Changes since {since_tag}.", ""])
        for descriptor in graph:
            lines.append(f"## {descriptor.name}")
            lines.append("")
            commits = self.host.commits_between(descriptor, since_tag)
            if not commits:
                lines.append("- No changes")
            for commit in commits:
                lines.append(f"- {commit.message} ({commit.hash[:8]}, {commit.author})")
            lines.append("")
        return '\n'.join(lines)

    def release(
        self,
        version: str,
        artifacts: Iterable[ReleaseArtifact],
        graph: DependencyGraph,
        repository: str,
        dry_run: bool = False,
    ) -> ReleaseResult:
        """
        Release ``artifacts`` as ``version``.

        Raises:
            InconsistentReleaseSet: nothing was tagged or published
            ReleaseError: tagging failed (a tag exists at another commit)
            PublishError: an upload failed; re-run to resume
        """
        artifacts = sorted(artifacts, key=lambda a: a.platform.name)
        version = normalize_version(version)
        self.check_consistency(version, artifacts, graph)

        tool = self._product_tool(artifacts)
        tag = f"v{version}"
        result = ReleaseResult(version=version, tag=tag, repository=repository, dry_run=dry_run)
        since_tag = self.previous_release_tag(tool, version)
        result.changelog = self.changelog(artifacts[0].product, version, graph, since_tag)

        if dry_run:
            for artifact in artifacts:
                if self.store.has(repository, tag, artifact.content_hash):
                    result.skipped.append(artifact.name)
                else:
                    result.published.append(artifact.name)
            logger.info(f"Dry run: would release {len(artifacts)} artifact(s) as {tag}")
            return result

        for descriptor in graph:
            if self.host.create_tag(descriptor, tag):
                result.tags_created.append(descriptor.name)
            else:
                result.tags_existing.append(descriptor.name)

        for artifact in artifacts:
            self._publish(result, repository, tag, artifact.name, artifact.path, artifact.content_hash)

        with tempfile.TemporaryDirectory(prefix="repobuild-release-") as tmp:
            changelog_path = Path(tmp) / CHANGELOG_NAME
            changelog_path.write_text(result.changelog)
            content_hash = hashlib.sha256(result.changelog.encode('utf-8')).hexdigest()
            self._publish(result, repository, tag, CHANGELOG_NAME, changelog_path, content_hash)

        try:
            pinned = self.registry.current_pin(tool).version
        except UnknownTool:
            pinned = None
        if pinned is None or normalize_version(pinned) != version:
            self.registry.bump(tool, version)
        logger.info(
            f"Released {tag}: {len(result.published)} published, {len(result.skipped)} already present"
        )
        return result

    def _publish(
        self,
        result: ReleaseResult,
        repository: str,
        tag: str,
        name: str,
        path: Path,
        content_hash: str,
    ) -> None:
        if self.store.has(repository, tag, content_hash):
            result.skipped.append(name)
            return
        if self.store.upload(repository, tag, name, path, content_hash):
            result.published.append(name)
        else:
            result.skipped.append(name)
