"""Tests for the build plan compiler."""

import pytest

from repobuild.domain import PinSet, StageKind, StageStatus, VersionPin
from repobuild.domain.errors import ExcludedOnPlatform, PlanningError, SkipListed, UnsupportedPlatform
from repobuild.services.plan_compiler import BuildPlanCompiler


@pytest.fixture
def compiler():
    return BuildPlanCompiler("Workbench", "1.4.0")


@pytest.fixture
def chain(graph_factory):
    return graph_factory({"A": ["B"], "B": ["C"], "C": []})


def _kinds(lane):
    return [s.kind.value for s in lane.stages]


class TestBuildPlanCompiler:
    """Tests for BuildPlanCompiler.compile."""

    def test_one_lane_per_platform(self, compiler, chain):
        """Each requested platform gets its own lane."""
        plan = compiler.compile(chain, ["linux-x86_64", "macos-aarch64"])
        assert plan.lane_names == ["linux-x86_64", "macos-aarch64"]
        assert plan.product == "Workbench"
        assert plan.version == "1.4.0"
        assert plan.graph_fingerprint == chain.fingerprint()

    def test_stage_order(self, compiler, chain):
        """Stages follow fetch, load, test, package, sign, publish."""
        plan = compiler.compile(chain, ["macos-aarch64"])
        assert _kinds(plan.lanes[0]) == ["fetch", "load", "test", "package", "sign", "publish"]

    def test_sign_omitted_without_capability(self, compiler, chain):
        """Platforms that cannot sign have no sign stage."""
        plan = compiler.compile(chain, ["linux-x86_64"])
        assert "sign" not in _kinds(plan.lanes[0])

    def test_components_in_load_order(self, compiler, chain):
        """Load and test list components in resolver order."""
        lane = compiler.compile(chain, ["linux-x86_64"]).lanes[0]
        assert lane.stage(StageKind.LOAD).component_names() == ["C", "B", "A"]
        assert lane.stage(StageKind.TEST).component_names() == ["C", "B", "A"]
        assert lane.stage(StageKind.FETCH).components == []
        assert lane.load_order == ("C", "B", "A")

    def test_stage_subset(self, compiler, chain):
        """A subset of stages keeps the fixed order."""
        plan = compiler.compile(chain, ["linux-x86_64"], stages=[StageKind.TEST, StageKind.FETCH, StageKind.LOAD])
        assert _kinds(plan.lanes[0]) == ["fetch", "load", "test"]

    def test_pins_attached(self, compiler, chain):
        """The plan carries the pin snapshot it was compiled against."""
        pins = PinSet([VersionPin("vm", "10.0", "initial")])
        assert compiler.compile(chain, ["linux-x86_64"], pins).pins is pins

    def test_duplicate_platforms_collapsed(self, compiler, chain):
        """Aliases of one platform produce one lane."""
        plan = compiler.compile(chain, ["macos-aarch64", "darwin-arm64"])
        assert plan.lane_names == ["macos-aarch64"]


class TestUnsupportedPlatforms:
    """Tests for rejected platforms."""

    def test_partial(self, compiler, chain):
        """Supported lanes are planned, unsupported ones recorded."""
        plan = compiler.compile(chain, ["linux-x86_64", "solaris-sparc"])
        assert plan.lane_names == ["linux-x86_64"]
        assert [e.platform for e in plan.planning_errors] == ["solaris-sparc"]

    def test_all_unsupported(self, compiler, chain):
        """No supported platform at all is an error."""
        with pytest.raises(UnsupportedPlatform):
            compiler.compile(chain, ["solaris-sparc", "aix-power"])

    def test_no_platforms(self, compiler, chain):
        """An empty request is a planning error."""
        with pytest.raises(PlanningError):
            compiler.compile(chain, [])


class TestSkipListsAndExclusions:
    """Tests for skip-list and exclusion annotations."""

    def test_skip_list_only_affects_test(self, compiler, chain):
        """Skip-listed components load but are not tested."""
        lane = compiler.compile(chain, ["linux-x86_64"], skip_lists={"linux": ["B"]}).lanes[0]
        test_b = lane.stage(StageKind.TEST).component("B")
        assert test_b.status == StageStatus.SKIPPED
        assert isinstance(test_b.error, SkipListed)
        assert lane.stage(StageKind.LOAD).component("B").status == StageStatus.PENDING
        assert lane.skip_list == ("B",)

    def test_skip_list_per_platform(self, compiler, chain):
        """Skip-lists keyed by platform only apply to matching lanes."""
        plan = compiler.compile(chain, ["linux-x86_64", "windows-x86_64"], skip_lists={"windows-x86_64": ["A"]})
        assert plan.lane("linux-x86_64").skip_list == ()
        assert plan.lane("windows-x86_64").skip_list == ("A",)

    def test_global_skips(self, compiler, chain):
        """Global skips apply to every lane."""
        plan = compiler.compile(chain, ["linux-x86_64", "macos-x86_64"], global_skips=["C"])
        assert all(lane.skip_list == ("C",) for lane in plan.lanes)

    def test_unknown_skip_ignored(self, compiler, chain, caplog):
        """Skip entries outside the graph are dropped with a warning."""
        lane = compiler.compile(chain, ["linux-x86_64"], global_skips=["ghost"]).lanes[0]
        assert lane.skip_list == ()
        assert "ghost" in caplog.text

    def test_platform_exclusion(self, compiler, graph_factory):
        """Excluded components are skipped in load and test on that platform only."""
        graph = graph_factory(
            {"app": ["gfx", "core"], "gfx": [], "core": []},
            exclusions={"gfx": ["linux-aarch64"]},
        )
        plan = compiler.compile(graph, ["linux-aarch64", "linux-x86_64"])
        arm = plan.lane("linux-aarch64")
        assert arm.excluded == ("gfx",)
        assert arm.load_order == ("core", "app")
        for kind in (StageKind.LOAD, StageKind.TEST):
            result = arm.stage(kind).component("gfx")
            assert result.status == StageStatus.SKIPPED
            assert isinstance(result.error, ExcludedOnPlatform)
        assert plan.lane("linux-x86_64").excluded == ()


class TestTentativeLane:
    """Tests for the tentative lane dependency."""

    def test_edges(self, compiler, chain):
        """Other lanes' tests wait on the tentative lane's package."""
        plan = compiler.compile(chain, ["linux-x86_64", "macos-aarch64"], tentative="macos-aarch64")
        assert plan.tentative == "macos-aarch64"
        assert len(plan.lane_dependencies) == 1
        edge = plan.lane_dependencies[0]
        assert edge.lane == "linux-x86_64"
        assert edge.stage == StageKind.TEST
        assert edge.waits_on_lane == "macos-aarch64"
        assert edge.waits_on_stage == StageKind.PACKAGE
        assert plan.dependencies_for("linux-x86_64", StageKind.TEST) == [edge]

    def test_unknown_tentative(self, compiler, chain):
        """The tentative lane must be planned."""
        with pytest.raises(PlanningError):
            compiler.compile(chain, ["linux-x86_64"], tentative="macos-aarch64")

    def test_tentative_without_package(self, compiler, chain):
        """The tentative lane must have a package stage."""
        with pytest.raises(PlanningError):
            compiler.compile(
                chain, ["linux-x86_64", "macos-aarch64"],
                stages=[StageKind.FETCH, StageKind.LOAD, StageKind.TEST],
                tentative="macos-aarch64",
            )
