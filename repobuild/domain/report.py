"""
Run report for repobuild.

The report of a multi-platform run enumerates every stage's terminal
status per lane; it never reduces the run to a single pass/fail bit.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .. import exit_codes
from .errors import StageCancelled
from .plan import BuildPlan, BuildStage, PlannedLane, StageKind, StageStatus

_FAILURE_EXIT_CODES = {
    StageKind.FETCH: exit_codes.BUILD_FAILURE,
    StageKind.LOAD: exit_codes.BUILD_FAILURE,
    StageKind.TEST: exit_codes.TEST_FAILURE,
    StageKind.PACKAGE: exit_codes.PACKAGING_FAILURE,
    StageKind.SIGN: exit_codes.PACKAGING_FAILURE,
    StageKind.PUBLISH: exit_codes.PACKAGING_FAILURE,
}


@dataclass
class RunReport:
    """Terminal state of every lane and stage of an executed plan."""
    plan: BuildPlan
    started_at: str
    finished_at: Optional[str] = None
    cancelled: bool = False

    @property
    def lanes(self) -> List[PlannedLane]:
        return self.plan.lanes

    def lane(self, name: str) -> PlannedLane:
        return self.plan.lane(name)

    def stage(self, lane: str, kind: StageKind) -> Optional[BuildStage]:
        return self.plan.lane(lane).stage(kind)

    def statuses(self, lane: str) -> Dict[str, str]:
        """Stage kind -> terminal status for one lane."""
        return {s.kind.value: s.status.value for s in self.plan.lane(lane).stages}

    @property
    def failed_stages(self) -> List[BuildStage]:
        return [
            stage
            for lane in self.lanes
            for stage in lane.stages
            if stage.status == StageStatus.FAILED
        ]

    @property
    def succeeded(self) -> bool:
        """True when no stage failed and none was blocked by a failure."""
        if self.cancelled or self.plan.planning_errors:
            return False
        return all(
            stage.status == StageStatus.SUCCEEDED
            for lane in self.lanes
            for stage in lane.stages
        )

    def exit_code(self) -> int:
        """
        Exit code for the CLI.

        The earliest failing stage kind across all lanes decides:
        fetch/load -> build failure, test -> test failure,
        package/sign/publish -> packaging failure.
        """
        failed = [s for s in self.failed_stages if not isinstance(s.error, StageCancelled)]
        if failed:
            earliest = min(failed, key=lambda s: s.kind.index)
            return _FAILURE_EXIT_CODES[earliest.kind]
        if self.cancelled:
            return exit_codes.INTERRUPTED
        if self.plan.planning_errors:
            return exit_codes.PARTIAL_SUCCESS
        return exit_codes.SUCCESS

    def to_rows(self) -> List[Dict[str, Any]]:
        """One flat row per lane/stage, for JSONL or table output."""
        rows = []
        for lane in self.lanes:
            for stage in lane.stages:
                row: Dict[str, Any] = {
                    'platform': lane.name,
                    'stage': stage.kind.value,
                    'status': stage.status.value,
                }
                if stage.error is not None:
                    row['error'] = stage.error.message
                    row['error_type'] = type(stage.error).__name__
                if stage.failed_components:
                    row['failed_components'] = stage.failed_components
                skipped = [
                    c.name for c in stage.components
                    if c.status == StageStatus.SKIPPED
                ]
                if skipped:
                    row['skipped_components'] = skipped
                rows.append(row)
        return rows

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'run_report',
            'product': self.plan.product,
            'version': self.plan.version,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'cancelled': self.cancelled,
            'succeeded': self.succeeded,
            'exit_code': self.exit_code(),
            'plan': self.plan.to_dict(),
        }
