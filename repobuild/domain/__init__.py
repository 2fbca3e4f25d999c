"""
Domain layer for repobuild.

Contains domain objects with no I/O beyond hashing files:
- RepositoryDescriptor: One component repository of the baseline
- DependencyGraph: Resolved, acyclic component graph with load order
- VersionPin / PinSet: Pinned external tool versions
- PlatformTarget: Fixed OS + architecture build targets
- BuildPlan / BuildStage: Explicit per-lane stage state
- ReleaseArtifact: One packaged output per platform and version
- RunReport: Terminal state of an executed plan

These objects are immutable where possible and provide
serialization methods for JSONL output.
"""

from .artifact import ReleaseArtifact, artifact_name, parse_artifact_name, file_sha256
from .descriptor import RefKind, RepositoryDescriptor, SourceRef
from .graph import DependencyGraph
from .pin import PinSet, VersionPin
from .plan import (
    STAGE_ORDER,
    BuildPlan,
    BuildStage,
    ComponentResult,
    LaneDependency,
    PlannedLane,
    StageKind,
    StageStatus,
)
from .platform import PLATFORMS, Capability, PlatformTarget, local_platform, platform_by_name
from .report import RunReport
from .snapshot import RunSnapshot

__all__ = [
    'ReleaseArtifact',
    'artifact_name',
    'parse_artifact_name',
    'file_sha256',
    'RefKind',
    'RepositoryDescriptor',
    'SourceRef',
    'DependencyGraph',
    'PinSet',
    'VersionPin',
    'STAGE_ORDER',
    'BuildPlan',
    'BuildStage',
    'ComponentResult',
    'LaneDependency',
    'PlannedLane',
    'StageKind',
    'StageStatus',
    'PLATFORMS',
    'Capability',
    'PlatformTarget',
    'local_platform',
    'platform_by_name',
    'RunReport',
    'RunSnapshot',
]
