"""Tests for the command-driven stage actions."""

import threading
import time
from unittest.mock import MagicMock

import pytest
import requests

from repobuild.domain import PinSet, ReleaseArtifact, StageKind, VersionPin
from repobuild.domain.artifact import file_sha256
from repobuild.domain.errors import (
    PublishError,
    StageActionFailed,
    StageCancelled,
    StageConfigurationError,
    StageTimeout,
    TransientStageError,
)
from repobuild.infra.git_client import GitError
from repobuild.infra.release_store import LocalReleaseStore
from repobuild.infra.runner import CommandResult
from repobuild.services.orchestrator import StageContext
from repobuild.services.plan_compiler import BuildPlanCompiler
from repobuild.services.stage_actions import CommandStageActions, pin_field


@pytest.fixture
def graph(graph_factory):
    return graph_factory({"A": ["B"], "B": []})


@pytest.fixture
def config(tmp_path):
    return {
        'general': {
            'workspace': str(tmp_path / "workspace"),
            'output_directory': str(tmp_path / "dist"),
        },
        'product': {'repository': 'acme/workbench'},
        'stages': {
            'commands': {
                'load': "make load {component} {os} {pin_vm}",
                'test': "make test {component} -C {source}",
                'sign': "codesign {artifact}",
            },
        },
    }


def make_ctx(graph, tmp_path, platform="linux-x86_64", kind=StageKind.LOAD, artifact=None):
    pins = PinSet([VersionPin("vm", "10.0", "initial")])
    plan = BuildPlanCompiler("Workbench", "1.4.0").compile(graph, [platform], pins)
    lane = plan.lanes[0]
    return StageContext(
        plan=plan,
        lane=lane,
        stage=lane.stage(kind),
        cancel_event=threading.Event(),
        graph=graph,
        workdir=tmp_path / "work" / lane.name,
        artifact=artifact,
        deadline=time.monotonic() + 60,
    )


def ok_runner(returncode=0, **flags):
    runner = MagicMock()
    runner.run.return_value = CommandResult(command="cmd", returncode=returncode, **flags)
    return runner


class TestFetch:
    """Tests for the fetch action."""

    def test_checks_out_every_component(self, config, graph, tmp_path):
        """Each component is cloned or fetched into the lane's source tree."""
        git = MagicMock()
        ctx = make_ctx(graph, tmp_path, kind=StageKind.FETCH)
        CommandStageActions(config, git_client=git).fetch(ctx)

        src = ctx.workdir / "src"
        git.clone_or_fetch.assert_any_call("https://example.com/B.git", str(src / "B"), "origin/main")
        git.clone_or_fetch.assert_any_call("https://example.com/A.git", str(src / "A"), "origin/main")
        assert git.clone_or_fetch.call_count == 2
        assert ctx.stage.log == ["B: checked out origin/main", "A: checked out origin/main"]

    def test_resolved_commit_used(self, config, graph_factory, tmp_path):
        """Resolved descriptors are checked out at their commit."""
        from repobuild.services.resolver import BaselineResolver
        from conftest import make_descriptor

        node = make_descriptor("A")
        graph = BaselineResolver(
            lambda name: None,
            resolve_commits=True,
            ref_resolver=lambda d: d.with_commit("c" * 40),
        ).resolve([node])
        git = MagicMock()
        CommandStageActions(config, git_client=git).fetch(make_ctx(graph, tmp_path, kind=StageKind.FETCH))
        assert git.clone_or_fetch.call_args[0][2] == "c" * 40

    def test_excluded_components_skipped(self, config, graph_factory, tmp_path):
        """Components excluded on the lane's platform are not fetched."""
        graph = graph_factory({"A": ["gfx"], "gfx": []}, exclusions={"gfx": ["linux"]})
        git = MagicMock()
        CommandStageActions(config, git_client=git).fetch(make_ctx(graph, tmp_path, kind=StageKind.FETCH))
        assert git.clone_or_fetch.call_count == 1

    def test_network_error_is_transient(self, config, graph, tmp_path):
        """Network failures are retryable."""
        git = MagicMock()
        git.clone_or_fetch.side_effect = GitError("fatal: could not resolve host", returncode=128)
        with pytest.raises(TransientStageError):
            CommandStageActions(config, git_client=git).fetch(make_ctx(graph, tmp_path, kind=StageKind.FETCH))

    def test_other_git_error_is_fatal(self, config, graph, tmp_path):
        """Non-network git failures fail the stage."""
        git = MagicMock()
        git.clone_or_fetch.side_effect = GitError("fatal: repository not found", returncode=128)
        with pytest.raises(StageActionFailed) as exc_info:
            CommandStageActions(config, git_client=git).fetch(make_ctx(graph, tmp_path, kind=StageKind.FETCH))
        assert exc_info.value.component == "B"

    def test_cancelled(self, config, graph, tmp_path):
        """Fetch stops between components once cancelled."""
        ctx = make_ctx(graph, tmp_path, kind=StageKind.FETCH)
        ctx.cancel_event.set()
        with pytest.raises(StageCancelled):
            CommandStageActions(config, git_client=MagicMock()).fetch(ctx)

    def test_needs_graph(self, config, graph, tmp_path):
        """Fetch without a graph is a configuration error."""
        ctx = make_ctx(graph, tmp_path, kind=StageKind.FETCH)
        ctx.graph = None
        with pytest.raises(StageConfigurationError):
            CommandStageActions(config, git_client=MagicMock()).fetch(ctx)


class TestCommands:
    """Tests for load, test and sign command templates."""

    def test_load_template(self, config, graph, tmp_path):
        """Templates are filled from lane, component and pins."""
        runner = ok_runner()
        ctx = make_ctx(graph, tmp_path)
        CommandStageActions(config, runner=runner).load(ctx, "B")

        args, kwargs = runner.run.call_args
        assert args[0] == "make load B linux 10.0"
        assert kwargs['cwd'] == str(ctx.workdir)
        assert kwargs['cancel_event'] is ctx.cancel_event
        assert kwargs['env']['REPOBUILD_COMPONENT'] == "B"
        assert ctx.workdir.is_dir()

    def test_source_field(self, config, graph, tmp_path):
        """{source} is the component checkout."""
        runner = ok_runner()
        ctx = make_ctx(graph, tmp_path, kind=StageKind.TEST)
        CommandStageActions(config, runner=runner).test(ctx, "A")
        assert runner.run.call_args[0][0] == f"make test A -C {ctx.workdir / 'src' / 'A'}"

    def test_output_logged(self, config, graph, tmp_path):
        """Command output lines land in the stage log."""
        runner = MagicMock()

        def run(command, **kwargs):
            kwargs['on_output']("loaded ok")
            return CommandResult(command=command, returncode=0)

        runner.run.side_effect = run
        ctx = make_ctx(graph, tmp_path)
        CommandStageActions(config, runner=runner).load(ctx, "B")
        assert ctx.stage.log == ["B: loaded ok"]

    def test_missing_template(self, config, graph, tmp_path):
        """A stage without a command cannot run."""
        config['stages']['commands']['load'] = ""
        with pytest.raises(StageConfigurationError):
            CommandStageActions(config, runner=ok_runner()).load(make_ctx(graph, tmp_path), "B")

    def test_bad_template(self, config, graph, tmp_path):
        """Unknown template fields are configuration errors."""
        config['stages']['commands']['load'] = "make {nonsense}"
        with pytest.raises(StageConfigurationError):
            CommandStageActions(config, runner=ok_runner()).load(make_ctx(graph, tmp_path), "B")

    def test_non_zero_exit(self, config, graph, tmp_path):
        """A failing command fails the component."""
        with pytest.raises(StageActionFailed) as exc_info:
            CommandStageActions(config, runner=ok_runner(2)).load(make_ctx(graph, tmp_path), "B")
        assert exc_info.value.component == "B"
        assert "status 2" in exc_info.value.message

    def test_cancelled_command(self, config, graph, tmp_path):
        """A command killed by cancellation reports StageCancelled."""
        runner = ok_runner(-15, cancelled=True)
        with pytest.raises(StageCancelled):
            CommandStageActions(config, runner=runner).load(make_ctx(graph, tmp_path), "B")

    def test_timed_out_command(self, config, graph, tmp_path):
        """A command killed at the deadline reports StageTimeout."""
        runner = ok_runner(-15, timed_out=True)
        with pytest.raises(StageTimeout):
            CommandStageActions(config, runner=runner).load(make_ctx(graph, tmp_path), "B")

    def test_pin_field(self):
        """Tool names become valid template fields."""
        assert pin_field("vm") == "pin_vm"
        assert pin_field("mac-builder") == "pin_mac_builder"


class TestPackageAndSign:
    """Tests for packaging and signing."""

    def test_package(self, config, graph, tmp_path):
        """The lane image is zipped into a deterministically named artifact."""
        ctx = make_ctx(graph, tmp_path, kind=StageKind.PACKAGE)
        image = ctx.workdir / "image"
        image.mkdir(parents=True)
        (image / "runtime.bin").write_bytes(b"runtime")

        artifact = CommandStageActions(config).package(ctx)

        assert artifact.name == "Workbench-linux-x86_64-v1.4.0.zip"
        assert artifact.path == tmp_path / "dist" / artifact.name
        assert artifact.content_hash == file_sha256(artifact.path)
        assert artifact.graph_fingerprint == graph.fingerprint()
        assert artifact.pins_fingerprint == ctx.pins.fingerprint()
        assert ReleaseArtifact.load_sidecar(artifact.path) == artifact

    def test_package_without_image(self, config, graph, tmp_path):
        """Nothing to package is a failure."""
        with pytest.raises(StageActionFailed):
            CommandStageActions(config).package(make_ctx(graph, tmp_path, kind=StageKind.PACKAGE))

    def test_sign_rehashes(self, config, graph, tmp_path):
        """The signed file is hashed again."""
        path = tmp_path / "Workbench-macos-aarch64-v1.4.0.zip"
        path.write_bytes(b"signed bytes")
        unsigned = ReleaseArtifact.from_file(path, "g" * 64, "p" * 64)
        unsigned = ReleaseArtifact(
            product=unsigned.product, platform=unsigned.platform, version=unsigned.version,
            content_hash="0" * 64, location=unsigned.location,
            graph_fingerprint="g" * 64, pins_fingerprint="p" * 64,
        )
        runner = ok_runner()
        ctx = make_ctx(graph, tmp_path, platform="macos-aarch64", kind=StageKind.SIGN, artifact=unsigned)

        signed = CommandStageActions(config, runner=runner).sign(ctx, unsigned)

        assert runner.run.call_args[0][0] == f"codesign {path}"
        assert signed.content_hash == file_sha256(path)
        assert signed.graph_fingerprint == "g" * 64


class TestPublish:
    """Tests for publishing to the release store."""

    def _artifact(self, tmp_path):
        path = tmp_path / "Workbench-linux-x86_64-v1.4.0.zip"
        path.write_bytes(b"zip")
        return ReleaseArtifact.from_file(path)

    def test_publish_to_local_store(self, config, graph, tmp_path):
        """Artifacts land under the product repository and build tag."""
        store = LocalReleaseStore(tmp_path / "releases")
        artifact = self._artifact(tmp_path)
        ctx = make_ctx(graph, tmp_path, kind=StageKind.PUBLISH, artifact=artifact)

        CommandStageActions(config, release_store=store).publish(ctx, artifact)

        assert [e['name'] for e in store.list("acme/workbench", "build-v1.4.0")] == [artifact.name]
        assert "published" in ctx.stage.log[-1]

    def test_republish_is_noop(self, config, graph, tmp_path):
        """Publishing the same bytes twice is fine."""
        store = LocalReleaseStore(tmp_path / "releases")
        artifact = self._artifact(tmp_path)
        actions = CommandStageActions(config, release_store=store)
        ctx = make_ctx(graph, tmp_path, kind=StageKind.PUBLISH, artifact=artifact)
        actions.publish(ctx, artifact)
        actions.publish(ctx, artifact)
        assert "already published" in ctx.stage.log[-1]

    def test_network_failure_is_transient(self, config, graph, tmp_path):
        """Connection errors are retryable."""
        store = MagicMock()
        store.upload.side_effect = requests.ConnectionError("reset")
        artifact = self._artifact(tmp_path)
        ctx = make_ctx(graph, tmp_path, kind=StageKind.PUBLISH, artifact=artifact)
        with pytest.raises(TransientStageError):
            CommandStageActions(config, release_store=store).publish(ctx, artifact)

    def test_conflict_is_fatal(self, config, graph, tmp_path):
        """Different content under the same name fails the stage."""
        store = MagicMock()
        store.upload.side_effect = PublishError("different content")
        artifact = self._artifact(tmp_path)
        ctx = make_ctx(graph, tmp_path, kind=StageKind.PUBLISH, artifact=artifact)
        with pytest.raises(StageActionFailed):
            CommandStageActions(config, release_store=store).publish(ctx, artifact)

    def test_no_store(self, config, graph, tmp_path):
        """Publishing needs a release store."""
        artifact = self._artifact(tmp_path)
        ctx = make_ctx(graph, tmp_path, kind=StageKind.PUBLISH, artifact=artifact)
        with pytest.raises(StageConfigurationError):
            CommandStageActions(config).publish(ctx, artifact)
