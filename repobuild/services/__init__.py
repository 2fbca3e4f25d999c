"""
Service layer for repobuild.

Contains the build and release logic that orchestrates domain objects and
infrastructure:
- BaselineResolver: Baseline -> DependencyGraph
- VersionPinRegistry: Pinned tool versions with append-only history
- BuildPlanCompiler: Graph + platforms -> BuildPlan
- BuildOrchestrator: Executes plans lane by lane
- CommandStageActions: git/shell/release-store backed stage actions
- Installer: Installs artifacts with rollback
- Releaser: Tags, changelogs and publishes a consistent artifact set

Services are the primary API for commands to use.
"""

from .resolver import BaselineResolver
from .pin_registry import VersionPinRegistry
from .plan_compiler import BuildPlanCompiler
from .orchestrator import BuildOrchestrator, RetryPolicy, StageActions, StageContext
from .stage_actions import CommandStageActions
from .installer import Installer, InstallResult
from .releaser import Releaser, ReleaseResult

__all__ = [
    'BaselineResolver',
    'VersionPinRegistry',
    'BuildPlanCompiler',
    'BuildOrchestrator',
    'RetryPolicy',
    'StageActions',
    'StageContext',
    'CommandStageActions',
    'Installer',
    'InstallResult',
    'Releaser',
    'ReleaseResult',
]
