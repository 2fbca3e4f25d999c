"""
repobuild - Multi-repository baseline builds and releases.

repobuild resolves a baseline of component repositories into one
deterministic load order, builds and tests it on several platforms in
parallel, and releases the per-platform artifacts as one consistent set.

Quick Start:
    from pathlib import Path
    import repobuild

    store = repobuild.DescriptorStore([repobuild.load_baseline_file(Path("baseline.yaml"))])
    graph = repobuild.BaselineResolver(store.fetch).resolve(store.roots)
    print(graph.order)

    registry = repobuild.VersionPinRegistry(Path("versions"))
    plan = repobuild.BuildPlanCompiler("Workbench", "1.4.0").compile(
        graph, ["linux-x86_64", "macos-aarch64"], registry.snapshot(),
    )
    report = repobuild.BuildOrchestrator(my_stage_actions).run(plan, graph)
    print(report.exit_code())

Domain Objects:
    RepositoryDescriptor - One component repository
    DependencyGraph - Resolved graph with load order
    VersionPin / PinSet - Pinned external tool versions
    PlatformTarget - Fixed OS + architecture targets
    BuildPlan / RunReport - Plan state and executed results
    ReleaseArtifact - One packaged output per platform

Services:
    BaselineResolver, VersionPinRegistry, BuildPlanCompiler,
    BuildOrchestrator, Installer, Releaser
"""

__version__ = "0.3.0"

# Baselines
from .baseline import Baseline, DescriptorStore, load_baseline_file, parse_baseline

# Domain objects
from .domain import (
    BuildPlan,
    DependencyGraph,
    PinSet,
    PlatformTarget,
    ReleaseArtifact,
    RepositoryDescriptor,
    RunReport,
    RunSnapshot,
    StageKind,
    StageStatus,
    VersionPin,
)

# Services
from .services import (
    BaselineResolver,
    BuildOrchestrator,
    BuildPlanCompiler,
    Installer,
    Releaser,
    RetryPolicy,
    StageActions,
    StageContext,
    VersionPinRegistry,
)

# Configuration
from .config import load_config, save_config

__all__ = [
    # Version
    "__version__",
    # Baselines
    "Baseline",
    "DescriptorStore",
    "load_baseline_file",
    "parse_baseline",
    # Domain objects
    "BuildPlan",
    "DependencyGraph",
    "PinSet",
    "PlatformTarget",
    "ReleaseArtifact",
    "RepositoryDescriptor",
    "RunReport",
    "RunSnapshot",
    "StageKind",
    "StageStatus",
    "VersionPin",
    # Services
    "BaselineResolver",
    "BuildOrchestrator",
    "BuildPlanCompiler",
    "Installer",
    "Releaser",
    "RetryPolicy",
    "StageActions",
    "StageContext",
    "VersionPinRegistry",
    # Configuration
    "load_config",
    "save_config",
]
