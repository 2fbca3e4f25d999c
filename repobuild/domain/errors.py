"""
Error taxonomy for repobuild.

Every error carries structured context (component, stage, platform) so
that failures are reported with where they happened instead of being
collapsed into a generic failure.

Families:
- ResolutionError: baseline graph cannot be resolved (fatal for the run)
- PlanningError: a requested platform cannot be planned (fatal for that lane)
- StageError: annotations and failures of a single stage (isolated to a lane)
- PinError: version pin registry misuse
- ReleaseError: release set cannot be tagged or published
- InstallError: an install attempt was refused or aborted
"""

from typing import Any, Dict, List, Optional, Sequence


class RepobuildError(Exception):
    """Base class for all repobuild errors."""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        stage: Optional[str] = None,
        platform: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.component = component
        self.stage = stage
        self.platform = platform

    @property
    def context(self) -> Dict[str, str]:
        ctx = {}
        if self.component:
            ctx['component'] = self.component
        if self.stage:
            ctx['stage'] = self.stage
        if self.platform:
            ctx['platform'] = self.platform
        return ctx

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: Dict[str, Any] = {
            'type': type(self).__name__,
            'message': self.message,
        }
        result.update(self.context)
        return result


# Resolution errors

class ResolutionError(RepobuildError):
    """The baseline graph could not be resolved."""


class CycleDetected(ResolutionError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle: List[str] = list(cycle)
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(self.cycle)}",
            component=self.cycle[0] if self.cycle else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['cycle'] = self.cycle
        return result


class UnresolvableReference(ResolutionError):
    """A declared dependency has no descriptor."""

    def __init__(self, referencing: str, missing: str):
        self.referencing = referencing
        self.missing = missing
        super().__init__(
            f"{referencing} depends on {missing}, which has no descriptor",
            component=referencing,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['missing'] = self.missing
        return result


class InvalidDescriptor(ResolutionError):
    """A descriptor is malformed, duplicated or has an ambiguous ref."""


# Planning errors

class PlanningError(RepobuildError):
    """A build plan could not be compiled."""


class UnsupportedPlatform(PlanningError):
    """A requested platform is not one of the fixed platform targets."""

    def __init__(self, platform: str):
        super().__init__(f"Unsupported platform: {platform}", platform=platform)


# Stage errors

class StageError(RepobuildError):
    """Failure or annotation attached to a single stage."""


class BlockedByPriorFailure(StageError):
    """A stage did not run because an earlier stage it depends on failed."""

    def __init__(
        self,
        platform: str,
        stage: str,
        blocking_stage: str,
        blocking_platform: Optional[str] = None,
        component: Optional[str] = None,
    ):
        self.blocking_stage = blocking_stage
        self.blocking_platform = blocking_platform or platform
        where = blocking_stage
        if self.blocking_platform != platform:
            where = f"{blocking_stage} on {self.blocking_platform}"
        super().__init__(
            f"Blocked by prior failure of {where}",
            component=component,
            stage=stage,
            platform=platform,
        )

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['blocking_stage'] = self.blocking_stage
        result['blocking_platform'] = self.blocking_platform
        return result


class StageTimeout(StageError):
    """A stage exceeded its maximum duration."""

    def __init__(self, platform: str, stage: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Stage {stage} exceeded {timeout:g}s",
            stage=stage,
            platform=platform,
        )


class StageCancelled(StageError):
    """The run was cancelled before or while this stage ran."""

    def __init__(self, platform: str, stage: str):
        super().__init__("Cancelled", stage=stage, platform=platform)


class TransientStageError(StageError):
    """A retryable failure (network hiccup, flaky remote)."""


class RetriesExhausted(StageError):
    """A retryable stage kept failing after all attempts."""

    def __init__(self, platform: str, stage: str, attempts: int, last_error: str):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Gave up after {attempts} attempts: {last_error}",
            stage=stage,
            platform=platform,
        )


class StageActionFailed(StageError):
    """The external action behind a stage reported failure."""


class StageConfigurationError(StageError):
    """A stage has no usable command configured."""


class SkipListed(StageError):
    """A component was excluded from tests by the skip-list."""

    def __init__(self, platform: str, component: str):
        super().__init__(
            "Skip-listed on this platform",
            component=component,
            stage='test',
            platform=platform,
        )


class ExcludedOnPlatform(StageError):
    """A component declares that it is not built on this platform."""

    def __init__(self, platform: str, component: str, stage: str):
        super().__init__(
            "Excluded on this platform by its descriptor",
            component=component,
            stage=stage,
            platform=platform,
        )


class InvalidTransition(RuntimeError):
    """A stage status change that the stage state machine does not allow."""


# Pin registry errors

class PinError(RepobuildError):
    """Version pin registry error."""


class UnknownTool(PinError):
    """The tool has never been pinned."""

    def __init__(self, tool: str):
        self.tool = tool
        super().__init__(f"No version pinned for tool: {tool}", component=tool)


class RegistryFrozen(PinError):
    """A write was attempted while a build holds the registry snapshot."""


# Release errors

class ReleaseError(RepobuildError):
    """The release could not be completed."""


class InconsistentReleaseSet(ReleaseError):
    """Artifacts were not all built from the same graph and pin snapshot."""

    def __init__(self, reasons: Sequence[str]):
        self.reasons: List[str] = list(reasons)
        super().__init__("Inconsistent release set: " + "; ".join(self.reasons))

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['reasons'] = self.reasons
        return result


class PublishError(ReleaseError):
    """An artifact upload failed."""


# Installer errors

class InstallError(RepobuildError):
    """An install attempt failed; no partial state is left behind."""


class IncompatiblePlatform(InstallError):
    """The artifact was built for a different platform than this machine."""

    def __init__(self, artifact_platform: str, local_platform: str):
        self.artifact_platform = artifact_platform
        self.local_platform = local_platform
        super().__init__(
            f"Artifact targets {artifact_platform} but this machine is {local_platform}",
            platform=artifact_platform,
        )


class CorruptArtifact(InstallError):
    """The artifact content does not match its recorded hash."""


class StoreLocked(RepobuildError):
    """The descriptor store is checked out by a running build."""
