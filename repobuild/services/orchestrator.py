"""
Build orchestrator for repobuild.

Executes a BuildPlan. Lanes run concurrently on a thread pool; the stages
of one lane run strictly in order. Each stage action runs on the lane's
own worker thread so the lane can enforce the stage's maximum duration and
react to cancellation while the action is still running.

Failure handling per stage:
- any failure marks the stage failed and every later stage of the lane
  skipped with BlockedByPriorFailure
- fetch and publish retry TransientStageError with exponential backoff
- load stops at the first failing component, test runs every component
- a declared lane dependency that did not succeed blocks the waiting stage
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..domain.artifact import ReleaseArtifact
from ..domain.errors import (
    BlockedByPriorFailure,
    RetriesExhausted,
    StageActionFailed,
    StageCancelled,
    StageError,
    StageTimeout,
    TransientStageError,
)
from ..domain.graph import DependencyGraph
from ..domain.pin import PinSet
from ..domain.plan import BuildPlan, BuildStage, PlannedLane, StageKind, StageStatus
from ..domain.report import RunReport

logger = logging.getLogger(__name__)

DEFAULT_STAGE_TIMEOUTS: Dict[StageKind, float] = {
    StageKind.FETCH: 1800.0,
    StageKind.LOAD: 7200.0,
    StageKind.TEST: 7200.0,
    StageKind.PACKAGE: 1800.0,
    StageKind.SIGN: 1800.0,
    StageKind.PUBLISH: 1800.0,
}

# How long an aborted action gets to wind down before the lane moves on
ABORT_GRACE_SECONDS = 5.0
POLL_SECONDS = 0.05


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec='milliseconds')


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with exponential backoff for network-bound stages."""
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 60.0

    def delay(self, attempt: int) -> float:
        """Wait before retry number ``attempt + 1`` (attempt counts from 0)."""
        return min(self.base_delay * (2 ** attempt), self.max_delay)


@dataclass
class StageContext:
    """
    Everything a stage action may look at.

    ``cancel_event`` is set when the run is cancelled or the stage runs out
    of time; long-running actions should poll it and stop.
    """
    plan: BuildPlan
    lane: PlannedLane
    stage: BuildStage
    cancel_event: threading.Event
    graph: Optional[DependencyGraph] = None
    workdir: Optional[Path] = None
    upstream_artifacts: List[ReleaseArtifact] = field(default_factory=list)
    artifact: Optional[ReleaseArtifact] = None
    deadline: Optional[float] = None

    @property
    def platform(self):
        return self.lane.platform

    @property
    def pins(self) -> PinSet:
        return self.plan.pins

    @property
    def remaining(self) -> Optional[float]:
        """Seconds left before the stage times out."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def log(self, line: str) -> None:
        self.stage.log.append(line)


class StageActions:
    """
    The external work behind each stage.

    Methods return normally on success, raise TransientStageError for
    retryable failures and any other exception for fatal ones.
    """

    def fetch(self, ctx: StageContext) -> None:
        raise NotImplementedError

    def load(self, ctx: StageContext, component: str) -> None:
        raise NotImplementedError

    def test(self, ctx: StageContext, component: str) -> None:
        raise NotImplementedError

    def package(self, ctx: StageContext) -> ReleaseArtifact:
        raise NotImplementedError

    def sign(self, ctx: StageContext, artifact: ReleaseArtifact) -> Optional[ReleaseArtifact]:
        """Sign in place; may return a replacement artifact record."""
        raise NotImplementedError

    def publish(self, ctx: StageContext, artifact: ReleaseArtifact) -> Optional[ReleaseArtifact]:
        """Upload; may return the artifact record at its published location."""
        raise NotImplementedError


class BuildOrchestrator:
    """
    Execute build plans.

    Example:
        orchestrator = BuildOrchestrator(CommandStageActions(config), max_parallel=4)
        report = orchestrator.run(plan, graph)
        for row in report.to_rows():
            print(row)

    ``cancel()`` may be called from any thread (e.g. a signal handler).
    A cancelled orchestrator stays cancelled.
    """

    def __init__(
        self,
        actions: StageActions,
        max_parallel: Optional[int] = None,
        stage_timeouts: Optional[Dict[StageKind, float]] = None,
        retry: Optional[RetryPolicy] = None,
        workspace: Optional[Path] = None,
    ):
        """
        Initialize BuildOrchestrator.

        Args:
            actions: Stage actions to run
            max_parallel: Maximum concurrently running lanes (default: all)
            stage_timeouts: Per stage kind maximum duration in seconds
            retry: Retry policy for fetch and publish
            workspace: Root of the per-lane working directories
        """
        self.actions = actions
        self.max_parallel = max_parallel
        self.stage_timeouts = dict(DEFAULT_STAGE_TIMEOUTS)
        if stage_timeouts:
            self.stage_timeouts.update(stage_timeouts)
        self.retry = retry or RetryPolicy()
        self.workspace = Path(workspace).expanduser() if workspace else None
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop every lane before its next stage and abort running actions."""
        if not self._cancel.is_set():
            logger.warning("Cancelling build")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self, plan: BuildPlan, graph: Optional[DependencyGraph] = None) -> RunReport:
        """
        Execute a plan and report every stage's terminal status.

        The given plan is not modified; the report holds an executed copy.
        """
        plan = plan.fresh_copy()
        report = RunReport(plan=plan, started_at=_now())
        done = {
            (lane.name, stage.kind): threading.Event()
            for lane in plan.lanes
            for stage in lane.stages
        }

        # Lanes others wait on are submitted first so a bounded pool cannot starve them
        waited_on = {d.waits_on_lane for d in plan.lane_dependencies}
        lanes = sorted(plan.lanes, key=lambda lane: lane.name not in waited_on)

        workers = self.max_parallel or len(lanes)
        with ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="lane") as pool:
            futures = {pool.submit(self._run_lane, plan, lane, graph, done): lane for lane in lanes}
            for future in as_completed(futures):
                future.result()

        report.finished_at = _now()
        report.cancelled = self._cancel.is_set()
        return report

    def _run_lane(
        self,
        plan: BuildPlan,
        lane: PlannedLane,
        graph: Optional[DependencyGraph],
        done: Dict[Tuple[str, StageKind], threading.Event],
    ) -> None:
        worker = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{lane.name}-stage")
        blocking: Optional[Tuple[StageKind, str]] = None
        artifact: Optional[ReleaseArtifact] = None
        upstream: List[ReleaseArtifact] = []
        try:
            for stage in lane.stages:
                if self._cancel.is_set():
                    stage.transition(StageStatus.SKIPPED, StageCancelled(lane.name, stage.kind.value))
                    done[(lane.name, stage.kind)].set()
                    continue

                if blocking is None:
                    blocking = self._await_dependencies(plan, lane, stage, done, upstream)
                    if self._cancel.is_set():
                        stage.transition(StageStatus.SKIPPED, StageCancelled(lane.name, stage.kind.value))
                        done[(lane.name, stage.kind)].set()
                        continue

                if blocking is not None:
                    blocking_stage, blocking_lane = blocking
                    stage.transition(StageStatus.SKIPPED, BlockedByPriorFailure(
                        lane.name, stage.kind.value, blocking_stage.value, blocking_lane,
                    ))
                    done[(lane.name, stage.kind)].set()
                    continue

                ctx = StageContext(
                    plan=plan,
                    lane=lane,
                    stage=stage,
                    cancel_event=threading.Event(),
                    graph=graph,
                    workdir=self.workspace / lane.name if self.workspace else None,
                    upstream_artifacts=list(upstream),
                    artifact=artifact,
                    deadline=time.monotonic() + self.stage_timeouts[stage.kind],
                )
                produced = self._run_stage(ctx, worker)
                if stage.status == StageStatus.FAILED:
                    blocking = (stage.kind, lane.name)
                elif produced is not None:
                    artifact = produced
                done[(lane.name, stage.kind)].set()
        finally:
            worker.shutdown(wait=False, cancel_futures=True)
            for stage in lane.stages:
                done[(lane.name, stage.kind)].set()

    def _await_dependencies(
        self,
        plan: BuildPlan,
        lane: PlannedLane,
        stage: BuildStage,
        done: Dict[Tuple[str, StageKind], threading.Event],
        upstream: List[ReleaseArtifact],
    ) -> Optional[Tuple[StageKind, str]]:
        """Wait for declared lane dependencies; return what blocks the stage, if anything."""
        for dep in plan.dependencies_for(lane.name, stage.kind):
            event = done[(dep.waits_on_lane, dep.waits_on_stage)]
            if not event.is_set():
                logger.info(f"[{lane.name}] {stage.kind.value} waiting for {dep.waits_on_lane} {dep.waits_on_stage.value}")
            while not event.wait(POLL_SECONDS):
                if self._cancel.is_set():
                    return None
            other_lane = plan.lane(dep.waits_on_lane)
            other = other_lane.stage(dep.waits_on_stage)
            if other is None or other.status != StageStatus.SUCCEEDED:
                return (dep.waits_on_stage, dep.waits_on_lane)
            for produced in other_lane.artifacts:
                if produced not in upstream:
                    upstream.append(produced)
        return None

    def _run_stage(self, ctx: StageContext, worker: ThreadPoolExecutor) -> Optional[ReleaseArtifact]:
        """Run one stage to a terminal status; return the artifact it produced, if any."""
        stage = ctx.stage
        lane = ctx.lane.name
        stage.transition(StageStatus.RUNNING)
        logger.info(f"[{lane}] {stage.kind.value} started")

        produced = None
        try:
            if stage.kind == StageKind.LOAD:
                self._run_load(ctx, worker)
            elif stage.kind == StageKind.TEST:
                self._run_test(ctx, worker)
            elif stage.kind == StageKind.FETCH:
                self._call_with_retry(ctx, worker, self.actions.fetch, ctx)
            elif stage.kind == StageKind.PACKAGE:
                produced = self._call(ctx, worker, self.actions.package, ctx)
                if not isinstance(produced, ReleaseArtifact):
                    raise StageActionFailed(
                        "Package action produced no artifact",
                        stage=stage.kind.value,
                        platform=lane,
                    )
            else:
                if ctx.artifact is None:
                    raise StageActionFailed(
                        f"Nothing to {stage.kind.value}: no artifact was packaged",
                        stage=stage.kind.value,
                        platform=lane,
                    )
                action = self.actions.sign if stage.kind == StageKind.SIGN else self.actions.publish
                produced = self._call_with_retry(ctx, worker, action, ctx, ctx.artifact)
                if not isinstance(produced, ReleaseArtifact):
                    produced = ctx.artifact
        except StageError as e:
            stage.transition(StageStatus.FAILED, e)
            logger.error(f"[{lane}] {stage.kind.value} failed: {e.message}")
            return None

        if produced is not None and produced not in stage.artifacts:
            stage.artifacts.append(produced)
        stage.transition(StageStatus.SUCCEEDED)
        logger.info(f"[{lane}] {stage.kind.value} succeeded")
        return produced

    def _call(self, ctx: StageContext, worker: ThreadPoolExecutor, fn: Callable, *args) -> Any:
        """
        Run an action on the lane worker, bounded by the stage deadline.

        Raises:
            StageTimeout: the deadline passed
            StageCancelled: the run was cancelled
            StageError: raised by the action
            StageActionFailed: the action raised anything else
        """
        kind = ctx.stage.kind.value
        lane = ctx.lane.name
        future = worker.submit(fn, *args)
        while True:
            remaining = ctx.remaining
            try:
                result = future.result(timeout=POLL_SECONDS if remaining is None else min(POLL_SECONDS, remaining))
                break
            except FutureTimeout as e:
                if future.done():
                    # The action itself raised TimeoutError
                    raise StageActionFailed(str(e) or "Action timed out", stage=kind, platform=lane)
                if self._cancel.is_set():
                    self._abort(ctx, future)
                    raise StageCancelled(lane, kind)
                if ctx.remaining == 0.0:
                    self._abort(ctx, future)
                    raise StageTimeout(lane, kind, self.stage_timeouts[ctx.stage.kind])
            except StageError:
                raise
            except Exception as e:
                raise StageActionFailed(str(e) or type(e).__name__, stage=kind, platform=lane)
        return result

    def _abort(self, ctx: StageContext, future) -> None:
        ctx.cancel_event.set()
        try:
            future.result(timeout=ABORT_GRACE_SECONDS)
        except Exception:
            # The action's outcome no longer matters once the stage is aborted
            pass

    def _call_with_retry(self, ctx: StageContext, worker: ThreadPoolExecutor, fn: Callable, *args) -> Any:
        kind = ctx.stage.kind
        attempts = self.retry.max_attempts if kind.is_network_bound else 1
        last_error: Optional[TransientStageError] = None
        for attempt in range(max(1, attempts)):
            ctx.stage.attempts = attempt + 1
            try:
                return self._call(ctx, worker, fn, *args)
            except TransientStageError as e:
                last_error = e
                ctx.log(f"attempt {attempt + 1} failed: {e.message}")
                if attempt + 1 >= attempts:
                    break
                delay = self.retry.delay(attempt)
                remaining = ctx.remaining
                logger.warning(
                    f"[{ctx.lane.name}] {kind.value} failed ({e.message}), "
                    f"retrying in {delay:g}s (attempt {attempt + 1}/{attempts})"
                )
                if remaining is not None and remaining <= delay:
                    raise StageTimeout(ctx.lane.name, kind.value, self.stage_timeouts[kind])
                if self._cancel.wait(delay):
                    raise StageCancelled(ctx.lane.name, kind.value)

        if attempts > 1:
            raise RetriesExhausted(ctx.lane.name, kind.value, attempts, last_error.message)
        raise last_error

    def _run_load(self, ctx: StageContext, worker: ThreadPoolExecutor) -> None:
        stage = ctx.stage
        lane = ctx.lane.name
        pending = [c for c in stage.components if c.status == StageStatus.PENDING]
        for index, result in enumerate(pending):
            result.transition(StageStatus.RUNNING)
            try:
                self._call(ctx, worker, self.actions.load, ctx, result.name)
            except (StageTimeout, StageCancelled) as e:
                result.transition(StageStatus.FAILED, e)
                for rest in pending[index + 1:]:
                    rest.transition(StageStatus.SKIPPED, e)
                raise
            except StageError as e:
                result.transition(StageStatus.FAILED, e)
                for rest in pending[index + 1:]:
                    rest.transition(StageStatus.SKIPPED, BlockedByPriorFailure(
                        lane, 'load', 'load', component=rest.name,
                    ))
                raise StageActionFailed(
                    f"Loading {result.name} failed: {e.message}",
                    component=result.name,
                    stage='load',
                    platform=lane,
                )
            result.transition(StageStatus.SUCCEEDED)

    def _run_test(self, ctx: StageContext, worker: ThreadPoolExecutor) -> None:
        stage = ctx.stage
        lane = ctx.lane.name
        pending = [c for c in stage.components if c.status == StageStatus.PENDING]
        for index, result in enumerate(pending):
            result.transition(StageStatus.RUNNING)
            try:
                self._call(ctx, worker, self.actions.test, ctx, result.name)
            except (StageTimeout, StageCancelled) as e:
                result.transition(StageStatus.FAILED, e)
                for rest in pending[index + 1:]:
                    rest.transition(StageStatus.SKIPPED, e)
                raise
            except StageError as e:
                result.transition(StageStatus.FAILED, e)
                logger.error(f"[{lane}] tests of {result.name} failed: {e.message}")
                continue
            result.transition(StageStatus.SUCCEEDED)

        failed = stage.failed_components
        if failed:
            raise StageActionFailed(
                f"Tests failed for {', '.join(failed)}",
                stage='test',
                platform=lane,
            )
