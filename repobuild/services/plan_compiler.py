"""
Build plan compiler for repobuild.

Compiles a resolved graph and a set of platform targets into a BuildPlan:
one lane per platform, each with its stages in the fixed order, load/test
component lists in resolver order, and skip-list and platform exclusion
annotations attached up front.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from ..domain.errors import ExcludedOnPlatform, PlanningError, SkipListed, UnsupportedPlatform
from ..domain.graph import DependencyGraph
from ..domain.pin import PinSet
from ..domain.plan import (
    STAGE_ORDER,
    BuildPlan,
    BuildStage,
    ComponentResult,
    LaneDependency,
    PlannedLane,
    StageKind,
    StageStatus,
)
from ..domain.platform import PlatformTarget, platform_by_name

logger = logging.getLogger(__name__)

PlatformSpec = Union[str, PlatformTarget]


class BuildPlanCompiler:
    """
    Compile build plans.

    Example:
        compiler = BuildPlanCompiler("Workbench", "1.4.0")
        plan = compiler.compile(graph, ["linux-x86_64", "macos-aarch64"], pins)
        [s.kind.value for s in plan.lane("linux-x86_64").stages]
        # ['fetch', 'load', 'test', 'package', 'publish']
    """

    def __init__(self, product: str, version: str):
        self.product = product
        self.version = version

    def _targets(self, platforms: Iterable[PlatformSpec]) -> Tuple[List[PlatformTarget], List[UnsupportedPlatform]]:
        targets: List[PlatformTarget] = []
        errors: List[UnsupportedPlatform] = []
        for spec in platforms:
            if isinstance(spec, PlatformTarget):
                target = spec
            else:
                try:
                    target = platform_by_name(spec)
                except UnsupportedPlatform as e:
                    logger.error(str(e))
                    errors.append(e)
                    continue
            if target not in targets:
                targets.append(target)
        return targets, errors

    def _skip_list(
        self,
        graph: DependencyGraph,
        target: PlatformTarget,
        skip_lists: Dict[str, Sequence[str]],
        global_skips: Sequence[str],
    ) -> Tuple[str, ...]:
        names = list(global_skips)
        for key, listed in skip_lists.items():
            if target.matches_tag(key):
                names.extend(listed)
        skips = []
        for name in names:
            if name not in graph:
                logger.warning(f"Skip-list entry {name} for {target.name} is not in the graph")
                continue
            if name not in skips:
                skips.append(name)
        return tuple(skips)

    def _lane(
        self,
        graph: DependencyGraph,
        target: PlatformTarget,
        kinds: Sequence[StageKind],
        skip_list: Tuple[str, ...],
    ) -> PlannedLane:
        excluded = tuple(d.name for d in graph if d.excluded_on(target))
        stages = []
        for kind in kinds:
            if kind == StageKind.SIGN and not target.can_sign:
                continue
            stage = BuildStage(kind=kind, platform=target)
            if kind.has_components:
                for name in graph.order:
                    result = ComponentResult(name=name)
                    if name in excluded:
                        result.transition(
                            StageStatus.SKIPPED,
                            ExcludedOnPlatform(target.name, name, kind.value),
                        )
                    elif kind == StageKind.TEST and name in skip_list:
                        result.transition(StageStatus.SKIPPED, SkipListed(target.name, name))
                    stage.components.append(result)
            stages.append(stage)

        return PlannedLane(
            platform=target,
            stages=stages,
            load_order=tuple(n for n in graph.order if n not in excluded),
            skip_list=skip_list,
            excluded=excluded,
        )

    def _tentative_edges(self, lanes: List[PlannedLane], tentative: str) -> Tuple[LaneDependency, ...]:
        names = [lane.name for lane in lanes]
        if tentative not in names:
            raise PlanningError(
                f"Tentative platform {tentative} is not one of the planned lanes",
                platform=tentative,
            )
        tentative_lane = lanes[names.index(tentative)]
        if tentative_lane.stage(StageKind.PACKAGE) is None:
            raise PlanningError(
                f"Tentative platform {tentative} has no package stage",
                platform=tentative,
            )

        edges = []
        for lane in lanes:
            if lane.name == tentative:
                continue
            waiting = lane.stage(StageKind.TEST)
            if waiting is None:
                waiting = next((s for s in lane.stages if s.kind.index > StageKind.LOAD.index), None)
            if waiting is None:
                continue
            edges.append(LaneDependency(
                lane=lane.name,
                stage=waiting.kind,
                waits_on_lane=tentative,
                waits_on_stage=StageKind.PACKAGE,
            ))
        return tuple(edges)

    def compile(
        self,
        graph: DependencyGraph,
        platforms: Iterable[PlatformSpec],
        pins: Optional[PinSet] = None,
        skip_lists: Optional[Dict[str, Sequence[str]]] = None,
        global_skips: Sequence[str] = (),
        stages: Optional[Iterable[StageKind]] = None,
        tentative: Optional[str] = None,
    ) -> BuildPlan:
        """
        Compile a build plan.

        Args:
            graph: Resolved dependency graph
            platforms: Platform names or targets, one lane each
            pins: Pin snapshot the plan is built against
            skip_lists: Platform tag -> components excluded from tests
            global_skips: Components excluded from tests on every lane
            stages: Subset of stage kinds to plan (default: all)
            tentative: Lane whose package gates the other lanes' tests

        Raises:
            UnsupportedPlatform: none of the requested platforms is supported
            PlanningError: the tentative lane is unknown or cannot package
        """
        targets, errors = self._targets(platforms)
        if not targets:
            if errors:
                raise errors[0]
            raise PlanningError("No platforms requested")

        wanted = set(stages) if stages is not None else set(STAGE_ORDER)
        kinds = [k for k in STAGE_ORDER if k in wanted]
        if not kinds:
            raise PlanningError("No stages requested")

        lanes = [
            self._lane(graph, target, kinds, self._skip_list(graph, target, skip_lists or {}, global_skips))
            for target in targets
        ]

        lane_dependencies: Tuple[LaneDependency, ...] = ()
        if tentative:
            tentative = platform_by_name(tentative).name
            lane_dependencies = self._tentative_edges(lanes, tentative)

        logger.info(
            f"Planned {len(lanes)} lane(s) for {self.product} {self.version}: "
            f"{', '.join(lane.name for lane in lanes)}"
        )
        return BuildPlan(
            product=self.product,
            version=self.version,
            lanes=lanes,
            graph_fingerprint=graph.fingerprint(),
            pins=pins if pins is not None else PinSet(),
            tentative=tentative or None,
            lane_dependencies=lane_dependencies,
            planning_errors=tuple(errors),
        )
