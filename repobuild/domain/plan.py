"""
Build plan domain objects for repobuild.

A BuildPlan is explicit, inspectable state: one lane per platform target,
each lane an ordered list of stages, each stage with its own status and
(for load/test) one result per component. Cross-lane ordering exists only
as declared LaneDependency edges.

Stage status machine:

    pending -> running -> succeeded
                       -> failed
    pending -> skipped
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .artifact import ReleaseArtifact
from .errors import InvalidTransition, StageError, UnsupportedPlatform
from .pin import PinSet
from .platform import PlatformTarget


class StageKind(Enum):
    """Stage kinds, declared in lane execution order."""
    FETCH = "fetch"
    LOAD = "load"
    TEST = "test"
    PACKAGE = "package"
    SIGN = "sign"
    PUBLISH = "publish"

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)

    @property
    def is_network_bound(self) -> bool:
        return self in (StageKind.FETCH, StageKind.PUBLISH)

    @property
    def has_components(self) -> bool:
        return self in (StageKind.LOAD, StageKind.TEST)


STAGE_ORDER: Tuple[StageKind, ...] = tuple(StageKind)


class StageStatus(Enum):
    """Status of a stage or of one component within a stage."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


_ALLOWED = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED},
    StageStatus.RUNNING: {StageStatus.SUCCEEDED, StageStatus.FAILED},
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds')


def _check_transition(owner: str, current: StageStatus, new: StageStatus) -> None:
    if new not in _ALLOWED.get(current, set()):
        raise InvalidTransition(f"{owner}: cannot go from {current.value} to {new.value}")


@dataclass
class ComponentResult:
    """Outcome of loading or testing one component in one lane."""
    name: str
    status: StageStatus = StageStatus.PENDING
    error: Optional[StageError] = None
    log: List[str] = field(default_factory=list)

    def transition(self, new: StageStatus, error: Optional[StageError] = None) -> None:
        _check_transition(f"component {self.name}", self.status, new)
        self.status = new
        if error is not None:
            self.error = error

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'name': self.name, 'status': self.status.value}
        if self.error is not None:
            result['error'] = self.error.to_dict()
        return result


@dataclass
class BuildStage:
    """
    One stage of one lane.

    ``components`` is populated for load and test stages only. ``log`` and
    ``artifacts`` capture stage-local output.
    """
    kind: StageKind
    platform: PlatformTarget
    components: List[ComponentResult] = field(default_factory=list)
    status: StageStatus = StageStatus.PENDING
    error: Optional[StageError] = None
    log: List[str] = field(default_factory=list)
    artifacts: List[ReleaseArtifact] = field(default_factory=list)
    attempts: int = 0
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def transition(self, new: StageStatus, error: Optional[StageError] = None) -> None:
        """Move to a new status, enforcing the stage state machine."""
        _check_transition(f"{self.platform.name}/{self.kind.value}", self.status, new)
        self.status = new
        if new == StageStatus.RUNNING:
            self.started_at = _now()
        elif new.is_terminal:
            self.finished_at = _now()
        if error is not None:
            self.error = error

    def component(self, name: str) -> ComponentResult:
        for result in self.components:
            if result.name == name:
                return result
        raise KeyError(name)

    def component_names(self) -> List[str]:
        return [c.name for c in self.components]

    @property
    def failed_components(self) -> List[str]:
        return [c.name for c in self.components if c.status == StageStatus.FAILED]

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            'platform': self.platform.name,
            'stage': self.kind.value,
            'status': self.status.value,
        }
        if self.error is not None:
            result['error'] = self.error.to_dict()
        if self.components:
            result['components'] = [c.to_dict() for c in self.components]
        if self.artifacts:
            result['artifacts'] = [a.to_dict() for a in self.artifacts]
        if self.attempts > 1:
            result['attempts'] = self.attempts
        if self.started_at:
            result['started_at'] = self.started_at
        if self.finished_at:
            result['finished_at'] = self.finished_at
        return result


@dataclass
class PlannedLane:
    """All stages of one platform target, in execution order."""
    platform: PlatformTarget
    stages: List[BuildStage]
    load_order: Tuple[str, ...] = ()
    skip_list: Tuple[str, ...] = ()
    excluded: Tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.platform.name

    def stage(self, kind: StageKind) -> Optional[BuildStage]:
        for stage in self.stages:
            if stage.kind == kind:
                return stage
        return None

    @property
    def artifacts(self) -> List[ReleaseArtifact]:
        found: List[ReleaseArtifact] = []
        for stage in self.stages:
            for artifact in stage.artifacts:
                if artifact not in found:
                    found.append(artifact)
        return found

    def to_dict(self) -> Dict[str, Any]:
        return {
            'platform': self.platform.name,
            'load_order': list(self.load_order),
            'skip_list': list(self.skip_list),
            'excluded': list(self.excluded),
            'stages': [s.to_dict() for s in self.stages],
        }


@dataclass(frozen=True)
class LaneDependency:
    """``lane``'s ``stage`` may only start after ``waits_on_lane``'s ``waits_on_stage`` succeeded."""
    lane: str
    stage: StageKind
    waits_on_lane: str
    waits_on_stage: StageKind

    def to_dict(self) -> Dict[str, str]:
        return {
            'lane': self.lane,
            'stage': self.stage.value,
            'waits_on_lane': self.waits_on_lane,
            'waits_on_stage': self.waits_on_stage.value,
        }


@dataclass
class BuildPlan:
    """Compiled plan for one run across one or more platform lanes."""
    product: str
    version: str
    lanes: List[PlannedLane]
    graph_fingerprint: str
    pins: PinSet = field(default_factory=PinSet)
    tentative: Optional[str] = None
    lane_dependencies: Tuple[LaneDependency, ...] = ()
    planning_errors: Tuple[UnsupportedPlatform, ...] = ()

    def lane(self, name: str) -> PlannedLane:
        for lane in self.lanes:
            if lane.name == name:
                return lane
        raise KeyError(name)

    @property
    def lane_names(self) -> List[str]:
        return [lane.name for lane in self.lanes]

    def dependencies_for(self, lane: str, stage: StageKind) -> List[LaneDependency]:
        return [d for d in self.lane_dependencies if d.lane == lane and d.stage == stage]

    def fresh_copy(self) -> 'BuildPlan':
        """
        Copy with independent stage and component state.

        Immutable parts (platform targets, pins, annotations, artifacts)
        are shared.
        """
        lanes = []
        for lane in self.lanes:
            stages = []
            for stage in lane.stages:
                stages.append(replace(
                    stage,
                    components=[replace(c, log=list(c.log)) for c in stage.components],
                    log=list(stage.log),
                    artifacts=list(stage.artifacts),
                ))
            lanes.append(replace(lane, stages=stages))
        return replace(self, lanes=lanes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'product': self.product,
            'version': self.version,
            'graph_fingerprint': self.graph_fingerprint,
            'pins': self.pins.to_dict(),
            'tentative': self.tentative,
            'lane_dependencies': [d.to_dict() for d in self.lane_dependencies],
            'planning_errors': [e.to_dict() for e in self.planning_errors],
            'lanes': [lane.to_dict() for lane in self.lanes],
        }
