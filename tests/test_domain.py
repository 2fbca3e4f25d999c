"""Tests for the domain layer."""

import json

import pytest

from repobuild import exit_codes
from repobuild.domain import (
    BuildPlan,
    BuildStage,
    ComponentResult,
    PinSet,
    PlannedLane,
    ReleaseArtifact,
    RunReport,
    RunSnapshot,
    StageKind,
    StageStatus,
    VersionPin,
    artifact_name,
    local_platform,
    parse_artifact_name,
    platform_by_name,
)
from repobuild.domain.descriptor import RefKind, RepositoryDescriptor, SourceRef
from repobuild.domain.errors import (
    CycleDetected,
    InvalidDescriptor,
    InvalidTransition,
    StageActionFailed,
    StageCancelled,
    UnsupportedPlatform,
)
from repobuild.domain.platform import Capability, platform_names


class TestSourceRef:
    """Tests for SourceRef ref kind inference."""

    def test_branch_is_default(self):
        """A plain name is a branch."""
        assert SourceRef.parse("https://x/a.git", "main").kind == RefKind.BRANCH

    def test_version_like_ref_is_tag(self):
        """Version-like refs are tags."""
        assert SourceRef.parse("https://x/a.git", "v2.3.0").kind == RefKind.TAG
        assert SourceRef.parse("https://x/a.git", "1.0").kind == RefKind.TAG

    def test_full_hash_is_commit(self):
        """A 40 hex digit ref is a commit."""
        ref = SourceRef.parse("https://x/a.git", "a" * 40)
        assert ref.kind == RefKind.COMMIT

    def test_explicit_kind_wins(self):
        """An explicit ref_type overrides inference."""
        assert SourceRef.parse("https://x/a.git", "v2", "branch").kind == RefKind.BRANCH

    def test_unknown_kind_rejected(self):
        """Unknown ref types are invalid descriptors."""
        with pytest.raises(InvalidDescriptor):
            SourceRef.parse("https://x/a.git", "main", "revision")


class TestRepositoryDescriptor:
    """Tests for RepositoryDescriptor validation."""

    def test_create(self, descriptor_factory):
        """Test creating a descriptor from plain values."""
        d = descriptor_factory("core", ["util"])
        assert d.name == "core"
        assert d.dependencies == ("util",)
        assert d.commit is None
        assert not d.is_resolved
        assert d.checkout_ref == "main"

    def test_commit_ref_is_resolved(self):
        """A commit ref fills in the commit."""
        d = RepositoryDescriptor.create("core", "https://x/core.git", "b" * 40)
        assert d.is_resolved
        assert d.commit == "b" * 40

    def test_invalid_name(self):
        """Names with spaces or slashes are rejected."""
        with pytest.raises(InvalidDescriptor):
            RepositoryDescriptor.create("bad name", "https://x/a.git", "main")

    def test_missing_location(self):
        """A descriptor needs a repository location."""
        with pytest.raises(InvalidDescriptor):
            RepositoryDescriptor.create("core", "", "main")

    def test_self_dependency_allowed(self):
        """A self edge is a cycle for the resolver to report, not a malformed descriptor."""
        descriptor = RepositoryDescriptor.create("core", "https://x/core.git", "main", ["core"])
        assert descriptor.dependencies == ("core",)

    def test_duplicate_dependency(self):
        """Dependencies are listed once."""
        with pytest.raises(InvalidDescriptor):
            RepositoryDescriptor.create("core", "https://x/core.git", "main", ["a", "a"])

    def test_with_commit_is_new_object(self, descriptor_factory):
        """Resolving a ref does not mutate the original."""
        d = descriptor_factory("core")
        resolved = d.with_commit("c" * 40)
        assert d.commit is None
        assert resolved.commit == "c" * 40
        assert resolved.checkout_ref == "c" * 40

    def test_malformed_commit(self, descriptor_factory):
        """Commits must be full hashes."""
        with pytest.raises(InvalidDescriptor):
            descriptor_factory("core").with_commit("abc")

    def test_excluded_on(self, descriptor_factory):
        """Exclusion tags match full names, OS or architecture."""
        d = descriptor_factory("gfx", exclusions=["linux-aarch64", "windows"])
        assert d.excluded_on(platform_by_name("linux-aarch64"))
        assert d.excluded_on(platform_by_name("windows-x86_64"))
        assert not d.excluded_on(platform_by_name("linux-x86_64"))

    def test_to_dict(self, descriptor_factory):
        """Test serialization."""
        data = descriptor_factory("core", ["util"]).to_dict()
        assert data['name'] == "core"
        assert data['ref_type'] == "branch"
        assert data['dependencies'] == ["util"]
        assert 'commit' not in data


class TestDependencyGraph:
    """Tests for DependencyGraph."""

    def test_iteration_follows_order(self, graph_factory):
        """Iterating a graph yields descriptors in load order."""
        graph = graph_factory({"A": ["B"], "B": ["C"], "C": []})
        assert [d.name for d in graph] == ["C", "B", "A"]
        assert len(graph) == 3
        assert "B" in graph

    def test_dependents(self, graph_factory):
        """Test reverse edges."""
        graph = graph_factory({"A": ["C"], "B": ["C"], "C": []}, roots=["A", "B"])
        assert graph.dependents_of("C") == ("A", "B")

    def test_fingerprint_stable(self, graph_factory):
        """The same graph always has the same fingerprint."""
        one = graph_factory({"A": ["B"], "B": []})
        two = graph_factory({"A": ["B"], "B": []})
        assert one.fingerprint() == two.fingerprint()

    def test_fingerprint_changes_with_ref(self, descriptor_factory):
        """Changing a ref changes the fingerprint."""
        from repobuild.domain.graph import DependencyGraph
        a = descriptor_factory("A")
        one = DependencyGraph({"A": a}, ["A"])
        two = DependencyGraph({"A": descriptor_factory("A", ref="dev")}, ["A"])
        assert one.fingerprint() != two.fingerprint()

    def test_order_must_cover_nodes(self, descriptor_factory):
        """An order missing a node is rejected."""
        from repobuild.domain.graph import DependencyGraph
        with pytest.raises(ValueError):
            DependencyGraph({"A": descriptor_factory("A")}, [])

    def test_nodes_read_only(self, graph_factory):
        """Nodes cannot be replaced after resolution."""
        graph = graph_factory({"A": []})
        with pytest.raises(TypeError):
            graph.nodes["A"] = None


class TestPlatforms:
    """Tests for the fixed platform targets."""

    def test_fixed_set(self):
        """Six targets: linux, macos and windows on two architectures."""
        assert platform_names() == (
            "linux-x86_64", "linux-aarch64",
            "macos-x86_64", "macos-aarch64",
            "windows-x86_64", "windows-aarch64",
        )

    def test_aliases(self):
        """Common aliases resolve to the canonical target."""
        assert platform_by_name("darwin-arm64").name == "macos-aarch64"
        assert platform_by_name("Linux-AMD64").name == "linux-x86_64"
        assert platform_by_name("win-x64").name == "windows-x86_64"

    def test_unsupported(self):
        """Unknown platforms raise UnsupportedPlatform."""
        with pytest.raises(UnsupportedPlatform) as exc_info:
            platform_by_name("solaris-sparc")
        assert exc_info.value.platform == "solaris-sparc"

    def test_signing_capability(self):
        """Only macOS and Windows targets sign."""
        assert not platform_by_name("linux-x86_64").can_sign
        assert platform_by_name("macos-x86_64").can_sign
        assert platform_by_name("macos-x86_64").supports(Capability.NOTARIZATION)

    def test_local_platform(self):
        """Local detection maps system and machine names."""
        assert local_platform("Darwin", "arm64").name == "macos-aarch64"
        assert local_platform("Linux", "x86_64").name == "linux-x86_64"


class TestArtifactNaming:
    """Tests for deterministic artifact names."""

    def test_name(self):
        """Names follow {product}-{os}-{arch}-v{version}.{ext}."""
        target = platform_by_name("macos-aarch64")
        assert artifact_name("Workbench", target, "1.4.0") == "Workbench-macos-aarch64-v1.4.0.zip"
        assert artifact_name("Workbench", target, "v1.4.0") == "Workbench-macos-aarch64-v1.4.0.zip"

    def test_parse(self):
        """Names parse back into their parts."""
        product, target, version = parse_artifact_name("Work-bench-linux-x86_64-v2.0.0-rc1.zip")
        assert product == "Work-bench"
        assert target.name == "linux-x86_64"
        assert version == "2.0.0-rc1"

    def test_parse_rejects_other_files(self):
        """Other file names are not artifacts."""
        with pytest.raises(ValueError):
            parse_artifact_name("notes.txt")

    def test_from_file_and_sidecar(self, tmp_path):
        """An artifact file is hashed and its record round-trips through the sidecar."""
        path = tmp_path / "Workbench-linux-x86_64-v1.0.0.zip"
        path.write_bytes(b"image bytes")
        artifact = ReleaseArtifact.from_file(path, "g" * 64, "p" * 64)
        artifact.write_sidecar()

        loaded = ReleaseArtifact.load_sidecar(path)
        assert loaded == artifact
        assert json.loads((tmp_path / (path.name + ".json")).read_text())['platform'] == "linux-x86_64"

    def test_missing_sidecar(self, tmp_path):
        """No sidecar means no record."""
        assert ReleaseArtifact.load_sidecar(tmp_path / "x.zip") is None


class TestPins:
    """Tests for VersionPin and PinSet."""

    def test_pinset_is_sorted_mapping(self):
        """Iteration is by tool name."""
        pins = PinSet([VersionPin("vm", "10.0", "initial"), VersionPin("builder", "2.1", "initial")])
        assert list(pins) == ["builder", "vm"]
        assert pins.version_of("vm") == "10.0"
        assert pins.version_of("missing") is None

    def test_fingerprint_ignores_timestamps(self):
        """Only tool versions take part in the fingerprint."""
        one = PinSet([VersionPin("vm", "10.0", "initial", 0)])
        two = PinSet([VersionPin("vm", "10.0", "2026-01-01T00:00:00+00:00", 7)])
        assert one.fingerprint() == two.fingerprint()

    def test_without(self):
        """Excluding a tool changes the fingerprint."""
        pins = PinSet([VersionPin("vm", "10.0", "initial"), VersionPin("product", "1.0", "initial")])
        assert "product" not in pins.without("product")
        assert pins.without("product").fingerprint() != pins.fingerprint()

    def test_pin_round_trip(self):
        """Test dict conversion."""
        pin = VersionPin("vm", "10.0.1", "initial", 3)
        assert VersionPin.from_dict(pin.to_dict()) == pin
        assert str(pin) == "vm==10.0.1"


def _lane(name="linux-x86_64", kinds=(StageKind.FETCH, StageKind.LOAD)):
    target = platform_by_name(name)
    return PlannedLane(platform=target, stages=[BuildStage(kind=k, platform=target) for k in kinds])


class TestStageStateMachine:
    """Tests for stage status transitions."""

    def test_normal_lifecycle(self):
        """pending -> running -> succeeded sets timestamps."""
        stage = _lane().stages[0]
        stage.transition(StageStatus.RUNNING)
        assert stage.started_at is not None
        stage.transition(StageStatus.SUCCEEDED)
        assert stage.finished_at is not None

    def test_skip_from_pending(self):
        """Pending stages can be skipped."""
        stage = _lane().stages[0]
        stage.transition(StageStatus.SKIPPED)
        assert stage.status.is_terminal

    def test_no_success_without_running(self):
        """A stage cannot succeed without running."""
        stage = _lane().stages[0]
        with pytest.raises(InvalidTransition):
            stage.transition(StageStatus.SUCCEEDED)

    def test_terminal_is_final(self):
        """Terminal statuses never change."""
        stage = _lane().stages[0]
        stage.transition(StageStatus.RUNNING)
        stage.transition(StageStatus.FAILED)
        with pytest.raises(InvalidTransition):
            stage.transition(StageStatus.RUNNING)

    def test_component_results(self):
        """Component results follow the same machine."""
        result = ComponentResult("core")
        result.transition(StageStatus.RUNNING)
        result.transition(StageStatus.SUCCEEDED)
        with pytest.raises(InvalidTransition):
            result.transition(StageStatus.SKIPPED)


class TestBuildPlan:
    """Tests for BuildPlan."""

    def test_fresh_copy_is_independent(self):
        """Executing a copy leaves the original pending."""
        plan = BuildPlan(product="W", version="1.0", lanes=[_lane()], graph_fingerprint="f")
        plan.lanes[0].stages[1].components.append(ComponentResult("core"))
        copy = plan.fresh_copy()
        copy.lanes[0].stages[0].transition(StageStatus.RUNNING)
        copy.lanes[0].stages[1].components[0].transition(StageStatus.RUNNING)

        assert plan.lanes[0].stages[0].status == StageStatus.PENDING
        assert plan.lanes[0].stages[1].components[0].status == StageStatus.PENDING
        assert copy.lanes[0].platform is plan.lanes[0].platform

    def test_to_dict(self):
        """Test serialization."""
        plan = BuildPlan(product="W", version="1.0", lanes=[_lane()], graph_fingerprint="f")
        data = plan.to_dict()
        assert data['lanes'][0]['platform'] == "linux-x86_64"
        assert [s['stage'] for s in data['lanes'][0]['stages']] == ["fetch", "load"]


class TestRunReport:
    """Tests for RunReport exit codes."""

    def _report(self, *lanes, cancelled=False, planning_errors=()):
        plan = BuildPlan(
            product="W", version="1.0", lanes=list(lanes), graph_fingerprint="f",
            planning_errors=planning_errors,
        )
        return RunReport(plan=plan, started_at="now", cancelled=cancelled)

    def _finish(self, lane, *statuses):
        for stage, status in zip(lane.stages, statuses):
            if status == StageStatus.SKIPPED:
                stage.transition(StageStatus.SKIPPED)
                continue
            stage.transition(StageStatus.RUNNING)
            stage.transition(status, StageActionFailed("boom") if status == StageStatus.FAILED else None)
        return lane

    def test_success(self):
        """Everything succeeded: exit 0."""
        lane = self._finish(_lane(), StageStatus.SUCCEEDED, StageStatus.SUCCEEDED)
        report = self._report(lane)
        assert report.succeeded
        assert report.exit_code() == exit_codes.SUCCESS

    def test_earliest_failing_stage_decides(self):
        """A load failure on one lane outranks a test failure on another."""
        kinds = (StageKind.FETCH, StageKind.LOAD, StageKind.TEST)
        tested = self._finish(
            _lane("linux-x86_64", kinds),
            StageStatus.SUCCEEDED, StageStatus.SUCCEEDED, StageStatus.FAILED,
        )
        loaded = self._finish(
            _lane("linux-aarch64", kinds),
            StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED,
        )
        report = self._report(tested, loaded)
        assert report.exit_code() == exit_codes.BUILD_FAILURE

    def test_test_failure(self):
        """Test failures map to TEST_FAILURE."""
        kinds = (StageKind.FETCH, StageKind.TEST)
        lane = self._finish(_lane(kinds=kinds), StageStatus.SUCCEEDED, StageStatus.FAILED)
        assert self._report(lane).exit_code() == exit_codes.TEST_FAILURE

    def test_cancelled(self):
        """A cancelled run without real failures is INTERRUPTED."""
        lane = _lane()
        lane.stages[0].transition(StageStatus.RUNNING)
        lane.stages[0].transition(StageStatus.FAILED, StageCancelled(lane.name, "fetch"))
        lane.stages[1].transition(StageStatus.SKIPPED, StageCancelled(lane.name, "load"))
        assert self._report(lane, cancelled=True).exit_code() == exit_codes.INTERRUPTED

    def test_partial_platforms(self):
        """Rejected platforms make an otherwise green run a partial success."""
        lane = self._finish(_lane(), StageStatus.SUCCEEDED, StageStatus.SUCCEEDED)
        report = self._report(lane, planning_errors=(UnsupportedPlatform("solaris-sparc"),))
        assert report.exit_code() == exit_codes.PARTIAL_SUCCESS

    def test_rows(self):
        """One row per lane and stage."""
        lane = self._finish(_lane(), StageStatus.SUCCEEDED, StageStatus.FAILED)
        rows = self._report(lane).to_rows()
        assert [(r['stage'], r['status']) for r in rows] == [("fetch", "succeeded"), ("load", "failed")]
        assert rows[1]['error_type'] == "StageActionFailed"


class TestRunSnapshot:
    """Tests for RunSnapshot."""

    def test_fingerprint_combines_graph_and_pins(self, graph_factory):
        """Changing pins changes the snapshot fingerprint."""
        graph = graph_factory({"A": []})
        one = RunSnapshot(graph, PinSet([VersionPin("vm", "1", "initial")]))
        two = RunSnapshot(graph, PinSet([VersionPin("vm", "2", "initial")]))
        assert one.fingerprint() != two.fingerprint()
        assert one.to_dict()['order'] == ["A"]


class TestErrors:
    """Tests for structured error context."""

    def test_cycle_to_dict(self):
        """Cycle errors carry the closed path."""
        error = CycleDetected(["A", "B", "A"])
        data = error.to_dict()
        assert data['cycle'] == ["A", "B", "A"]
        assert data['component'] == "A"
        assert "A -> B -> A" in data['message']
