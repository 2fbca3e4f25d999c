"""
Dependency graph domain object for repobuild.

A DependencyGraph is the frozen result of resolving a baseline: one node
per component name (shared by every edge pointing at it) plus the
deterministic topological order the resolver computed.
"""

import hashlib
import json
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Tuple

from .descriptor import RepositoryDescriptor


class DependencyGraph:
    """
    Resolved, acyclic component graph.

    Edges point from a component to the components it depends on.
    ``order`` lists dependencies before their dependents.

    Example:
        graph = resolver.resolve(roots)
        for descriptor in graph:          # topological order
            print(descriptor.name)
        graph.dependencies_of("A")[0] is graph.node("B")
    """

    def __init__(
        self,
        nodes: Mapping[str, RepositoryDescriptor],
        order: Sequence[str],
        roots: Sequence[str] = (),
    ):
        if sorted(order) != sorted(nodes):
            raise ValueError("Topological order must list every node exactly once")
        self._nodes = MappingProxyType(dict(nodes))
        self._order: Tuple[str, ...] = tuple(order)
        self._roots: Tuple[str, ...] = tuple(roots)
        self._position = {name: i for i, name in enumerate(self._order)}
        dependents: Dict[str, List[str]] = {name: [] for name in self._order}
        for name in self._order:
            for dep in self._nodes[name].dependencies:
                dependents[dep].append(name)
        self._dependents = {k: tuple(sorted(v)) for k, v in dependents.items()}

    @property
    def nodes(self) -> Mapping[str, RepositoryDescriptor]:
        return self._nodes

    @property
    def order(self) -> Tuple[str, ...]:
        return self._order

    @property
    def roots(self) -> Tuple[str, ...]:
        return self._roots

    def node(self, name: str) -> RepositoryDescriptor:
        return self._nodes[name]

    def dependencies_of(self, name: str) -> Tuple[RepositoryDescriptor, ...]:
        """Direct dependencies of a component as shared node instances."""
        return tuple(self._nodes[dep] for dep in self._nodes[name].dependencies)

    def dependents_of(self, name: str) -> Tuple[str, ...]:
        return self._dependents[name]

    def edges(self) -> List[Tuple[str, str]]:
        return [
            (name, dep)
            for name in self._order
            for dep in self._nodes[name].dependencies
        ]

    def precedes(self, first: str, second: str) -> bool:
        """True when ``first`` comes before ``second`` in the load order."""
        return self._position[first] < self._position[second]

    def fingerprint(self) -> str:
        """Stable SHA-256 identifying this exact graph snapshot."""
        payload = [
            [
                d.name,
                d.source.url,
                d.source.ref,
                d.commit,
                list(d.dependencies),
            ]
            for d in sorted(self._nodes.values(), key=lambda d: d.name)
        ]
        encoded = json.dumps(payload, separators=(',', ':'), sort_keys=True)
        return hashlib.sha256(encoded.encode('utf-8')).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'roots': list(self._roots),
            'order': list(self._order),
            'fingerprint': self.fingerprint(),
            'nodes': [self._nodes[name].to_dict() for name in self._order],
        }

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[RepositoryDescriptor]:
        return (self._nodes[name] for name in self._order)

    def __repr__(self) -> str:
        return f"DependencyGraph(nodes={len(self)}, roots={list(self._roots)!r})"
