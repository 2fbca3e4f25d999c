"""
Baseline graph resolver for repobuild.

Turns root descriptors into a frozen DependencyGraph: discovers every
transitively referenced component, rejects cycles, and computes one
deterministic load order (dependencies first, ties broken by name).
"""

import heapq
import logging
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional

from ..domain.descriptor import RepositoryDescriptor
from ..domain.errors import CycleDetected, UnresolvableReference
from ..domain.graph import DependencyGraph

logger = logging.getLogger(__name__)

FetchFn = Callable[[str], Optional[RepositoryDescriptor]]
RefResolverFn = Callable[[RepositoryDescriptor], RepositoryDescriptor]


def find_cycle(nodes: Dict[str, RepositoryDescriptor]) -> Optional[List[str]]:
    """
    Return the first cycle found, as a closed path, or None.

    Depth-first search visits start nodes and dependencies in ascending name
    order, so the reported cycle is the same on every run.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    color = {name: WHITE for name in nodes}

    for start in sorted(nodes):
        if color[start] != WHITE:
            continue
        path: List[str] = [start]
        color[start] = GREY
        stack = [iter(sorted(nodes[start].dependencies))]
        while stack:
            advanced = False
            for dep in stack[-1]:
                if color[dep] == GREY:
                    return path[path.index(dep):] + [dep]
                if color[dep] == WHITE:
                    color[dep] = GREY
                    path.append(dep)
                    stack.append(iter(sorted(nodes[dep].dependencies)))
                    advanced = True
                    break
            if not advanced:
                color[path.pop()] = BLACK
                stack.pop()
    return None


def topological_order(nodes: Dict[str, RepositoryDescriptor]) -> List[str]:
    """Kahn's algorithm with a min-heap on names: dependencies come first."""
    remaining = {name: len(d.dependencies) for name, d in nodes.items()}
    dependents: Dict[str, List[str]] = {name: [] for name in nodes}
    for name, descriptor in nodes.items():
        for dep in descriptor.dependencies:
            dependents[dep].append(name)

    ready = [name for name, count in remaining.items() if count == 0]
    heapq.heapify(ready)
    order: List[str] = []
    while ready:
        name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            remaining[dependent] -= 1
            if remaining[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(nodes):
        # Unreachable after find_cycle, kept so a partial order never escapes
        raise CycleDetected(find_cycle(nodes) or sorted(set(nodes) - set(order)))
    return order


class BaselineResolver:
    """
    Resolve a baseline into a DependencyGraph.

    Example:
        resolver = BaselineResolver(store.fetch)
        graph = resolver.resolve(store.roots)
        print(graph.order)   # ('C', 'B', 'A') for A -> B -> C
    """

    def __init__(
        self,
        fetch: FetchFn,
        resolve_commits: bool = False,
        ref_resolver: Optional[RefResolverFn] = None,
    ):
        """
        Initialize BaselineResolver.

        Args:
            fetch: Looks up a descriptor by name, None when unknown
            resolve_commits: Pin every node to a commit before freezing
            ref_resolver: Maps a descriptor to its commit-pinned copy
        """
        if resolve_commits and ref_resolver is None:
            raise ValueError("resolve_commits requires a ref_resolver")
        self.fetch = fetch
        self.resolve_commits = resolve_commits
        self.ref_resolver = ref_resolver

    def discover(self, roots: Iterable[RepositoryDescriptor]) -> Dict[str, RepositoryDescriptor]:
        """
        Breadth-first discovery of every transitively referenced component.

        Roots go through ``fetch`` as well, so a root declared without its
        dependencies is expanded the same way as any other shallow entry.
        """
        nodes: Dict[str, RepositoryDescriptor] = {}
        queue = deque()
        for root in roots:
            if root.name in nodes:
                continue
            descriptor = self.fetch(root.name) or root
            nodes[root.name] = descriptor
            queue.append(descriptor)

        while queue:
            descriptor = queue.popleft()
            for dep in descriptor.dependencies:
                if dep in nodes:
                    continue
                logger.debug(f"Fetching descriptor {dep} (required by {descriptor.name})")
                found = self.fetch(dep)
                if found is None:
                    raise UnresolvableReference(descriptor.name, dep)
                nodes[dep] = found
                queue.append(found)
        return nodes

    def resolve(self, roots: Iterable[RepositoryDescriptor]) -> DependencyGraph:
        """
        Resolve roots into a frozen graph.

        Raises:
            UnresolvableReference: a dependency has no descriptor
            CycleDetected: the graph contains a cycle
            InvalidDescriptor: a ref could not be pinned to one commit
        """
        roots = list(roots)
        nodes = self.discover(roots)

        cycle = find_cycle(nodes)
        if cycle:
            raise CycleDetected(cycle)

        order = topological_order(nodes)

        if self.resolve_commits:
            nodes = {name: self.ref_resolver(nodes[name]) for name in order}

        logger.info(f"Resolved {len(order)} components")
        return DependencyGraph(nodes, order, roots=[r.name for r in roots])
