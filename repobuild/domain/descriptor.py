"""
Repository descriptor domain object for repobuild.

A RepositoryDescriptor is one component of the baseline: where its source
lives, which ref to build, and which other components it needs.
Descriptors are immutable; resolving a ref produces a new descriptor with
the commit filled in.
"""

import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

from .errors import InvalidDescriptor
from .platform import PlatformTarget

NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')
COMMIT_PATTERN = re.compile(r'^[0-9a-f]{40}$')
TAG_PATTERN = re.compile(r'^v?\d+(\.\d+)+')


class RefKind(Enum):
    """What kind of git ref a descriptor pins."""
    BRANCH = "branch"
    TAG = "tag"
    COMMIT = "commit"


@dataclass(frozen=True)
class SourceRef:
    """Source location of a component: repository URL plus a ref."""
    url: str
    ref: str
    kind: RefKind = RefKind.BRANCH

    @classmethod
    def parse(cls, url: str, ref: str, kind: Optional[str] = None) -> 'SourceRef':
        """Build a SourceRef, inferring the kind from the ref when not given."""
        ref = (ref or "").strip()
        if kind:
            try:
                ref_kind = RefKind(kind)
            except ValueError:
                raise InvalidDescriptor(f"Unknown ref type {kind!r} for {url}")
        elif COMMIT_PATTERN.match(ref):
            ref_kind = RefKind.COMMIT
        elif TAG_PATTERN.match(ref):
            ref_kind = RefKind.TAG
        else:
            ref_kind = RefKind.BRANCH
        return cls(url=(url or "").strip(), ref=ref, kind=ref_kind)

    def to_dict(self) -> Dict[str, Any]:
        return {'url': self.url, 'ref': self.ref, 'kind': self.kind.value}


@dataclass(frozen=True)
class RepositoryDescriptor:
    """
    Immutable description of one component repository.

    Attributes:
        name: Unique component name within a graph snapshot
        source: Repository URL and ref
        dependencies: Names of required components, in declaration order
        platform_exclusions: Tags of platforms this component is not built on
        commit: Commit the ref resolved to (None until resolved)
    """
    name: str
    source: SourceRef
    dependencies: Tuple[str, ...] = ()
    platform_exclusions: FrozenSet[str] = field(default_factory=frozenset)
    commit: Optional[str] = None

    def __post_init__(self):
        if not self.name or not NAME_PATTERN.match(self.name):
            raise InvalidDescriptor(f"Invalid component name: {self.name!r}")
        if not self.source.url:
            raise InvalidDescriptor(f"{self.name} has no repository location", component=self.name)
        if not self.source.ref:
            raise InvalidDescriptor(f"{self.name} has no ref", component=self.name)
        if len(set(self.dependencies)) != len(self.dependencies):
            raise InvalidDescriptor(f"{self.name} declares a dependency twice", component=self.name)
        if self.commit is not None and not COMMIT_PATTERN.match(self.commit):
            raise InvalidDescriptor(
                f"{self.name} resolved to a malformed commit {self.commit!r}",
                component=self.name,
            )

    @classmethod
    def create(
        cls,
        name: str,
        url: str,
        ref: str,
        dependencies: Iterable[str] = (),
        platform_exclusions: Iterable[str] = (),
        ref_type: Optional[str] = None,
    ) -> 'RepositoryDescriptor':
        """Convenience constructor from plain values."""
        source = SourceRef.parse(url, ref, ref_type)
        commit = source.ref if source.kind == RefKind.COMMIT else None
        return cls(
            name=name,
            source=source,
            dependencies=tuple(dependencies),
            platform_exclusions=frozenset(t.strip().lower() for t in platform_exclusions),
            commit=commit,
        )

    @property
    def is_resolved(self) -> bool:
        return self.commit is not None

    @property
    def checkout_ref(self) -> str:
        """Commit when resolved, otherwise the declared ref."""
        return self.commit or self.source.ref

    def with_commit(self, commit: str) -> 'RepositoryDescriptor':
        """Create a new descriptor with the resolved commit."""
        return replace(self, commit=commit)

    def excluded_on(self, target: PlatformTarget) -> bool:
        return any(target.matches_tag(tag) for tag in self.platform_exclusions)

    def content_key(self) -> Tuple:
        """Everything that makes two descriptors the same component."""
        return (
            self.name,
            self.source.url,
            self.source.ref,
            self.source.kind.value,
            self.dependencies,
            tuple(sorted(self.platform_exclusions)),
            self.commit,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'name': self.name,
            'repository': self.source.url,
            'ref': self.source.ref,
            'ref_type': self.source.kind.value,
            'dependencies': list(self.dependencies),
            'platform_exclusions': sorted(self.platform_exclusions),
            'commit': self.commit,
        }
        return {k: v for k, v in result.items() if v is not None}

    def __str__(self) -> str:
        return f"{self.name}@{self.checkout_ref}"

    def __repr__(self) -> str:
        return f"RepositoryDescriptor(name={self.name!r}, ref={self.source.ref!r})"
