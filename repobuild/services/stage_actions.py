"""
Command-driven stage actions for repobuild.

The default StageActions used by the CLI:
- fetch checks out every component of the graph with git
- load, test and sign run configured shell command templates
- package zips the lane's image directory into the release artifact
- publish uploads the artifact to the configured release store

Command templates are ``str.format`` strings. Available fields:
``{component}``, ``{lane}``, ``{os}``, ``{arch}``, ``{workdir}``,
``{source}`` (the component checkout), ``{artifact}`` (sign only),
``{product}``, ``{version}`` and ``{pin_<tool>}`` for every pinned tool.
"""

import logging
import shutil
from pathlib import Path
from typing import Any, Dict, Optional

import requests

from ..config import expand_path
from ..domain.artifact import ReleaseArtifact, artifact_name
from ..domain.errors import (
    PublishError,
    StageActionFailed,
    StageCancelled,
    StageConfigurationError,
    StageTimeout,
    TransientStageError,
)
from ..domain.descriptor import RefKind
from ..infra.git_client import GitClient, GitError
from ..infra.release_store import ReleaseStore
from ..infra.runner import CommandRunner
from .orchestrator import StageActions, StageContext

logger = logging.getLogger(__name__)

IMAGE_DIR = "image"
SOURCE_DIR = "src"


def pin_field(tool: str) -> str:
    """Template field name for a pinned tool version."""
    return "pin_" + ''.join(c if c.isalnum() else '_' for c in tool)


class CommandStageActions(StageActions):
    """
    Stage actions backed by git, shell commands and a release store.

    Example:
        actions = CommandStageActions(config, release_store=create_release_store(config["store"]))
        report = BuildOrchestrator(actions).run(plan, graph)
    """

    def __init__(
        self,
        config: Dict[str, Any],
        git_client: Optional[GitClient] = None,
        runner: Optional[CommandRunner] = None,
        release_store: Optional[ReleaseStore] = None,
    ):
        general = config.get('general', {})
        self.config = config
        self.commands = config.get('stages', {}).get('commands', {})
        self.workspace = expand_path(general.get('workspace', '~/.repobuild/workspace'))
        self.output_directory = expand_path(general.get('output_directory', 'dist'))
        self.repository = config.get('product', {}).get('repository', '')
        self.git = git_client or GitClient()
        self.runner = runner or CommandRunner()
        self.release_store = release_store

    def _workdir(self, ctx: StageContext) -> Path:
        return ctx.workdir or self.workspace / ctx.lane.name

    def _fields(self, ctx: StageContext, component: Optional[str] = None) -> Dict[str, str]:
        workdir = self._workdir(ctx)
        fields = {
            'lane': ctx.lane.name,
            'os': ctx.platform.os,
            'arch': ctx.platform.arch,
            'workdir': str(workdir),
            'product': ctx.plan.product,
            'version': ctx.plan.version,
            'component': component or '',
            'source': str(workdir / SOURCE_DIR / component) if component else str(workdir / SOURCE_DIR),
            'artifact': ctx.artifact.location if ctx.artifact else '',
        }
        for tool, pin in ctx.pins.items():
            fields[pin_field(tool)] = pin.version
        return fields

    def _run_command(self, ctx: StageContext, component: Optional[str] = None) -> None:
        kind = ctx.stage.kind.value
        template = self.commands.get(kind)
        if not template:
            raise StageConfigurationError(
                f"No command configured for stage {kind} (stages.commands.{kind})",
                component=component,
                stage=kind,
                platform=ctx.lane.name,
            )
        try:
            command = template.format_map(self._fields(ctx, component))
        except (KeyError, IndexError, ValueError) as e:
            raise StageConfigurationError(
                f"Bad {kind} command template {template!r}: {e}",
                component=component,
                stage=kind,
                platform=ctx.lane.name,
            )

        workdir = self._workdir(ctx)
        workdir.mkdir(parents=True, exist_ok=True)
        prefix = f"{component}: " if component else ""
        result = self.runner.run(
            command,
            cwd=str(workdir),
            timeout=ctx.remaining,
            cancel_event=ctx.cancel_event,
            env={'REPOBUILD_LANE': ctx.lane.name, 'REPOBUILD_COMPONENT': component or ''},
            on_output=lambda line: ctx.log(prefix + line),
        )
        if result.cancelled:
            raise StageCancelled(ctx.lane.name, kind)
        if result.timed_out:
            raise StageTimeout(ctx.lane.name, kind, ctx.remaining or 0.0)
        if not result.ok:
            raise StageActionFailed(
                f"`{command}` exited with status {result.returncode}",
                component=component,
                stage=kind,
                platform=ctx.lane.name,
            )

    def fetch(self, ctx: StageContext) -> None:
        if ctx.graph is None:
            raise StageConfigurationError("fetch needs the resolved graph", stage='fetch', platform=ctx.lane.name)
        source_root = self._workdir(ctx) / SOURCE_DIR
        for descriptor in ctx.graph:
            if descriptor.name in ctx.lane.excluded:
                continue
            if ctx.cancel_event.is_set():
                raise StageCancelled(ctx.lane.name, 'fetch')
            ref = descriptor.checkout_ref
            if descriptor.commit is None and descriptor.source.kind == RefKind.BRANCH:
                ref = f"origin/{ref}"
            dest = source_root / descriptor.name
            try:
                self.git.clone_or_fetch(descriptor.source.url, str(dest), ref)
            except GitError as e:
                error_cls = TransientStageError if e.is_network_error else StageActionFailed
                raise error_cls(
                    f"Fetching {descriptor.name} failed: {e}",
                    component=descriptor.name,
                    stage='fetch',
                    platform=ctx.lane.name,
                )
            ctx.log(f"{descriptor.name}: checked out {ref}")

    def load(self, ctx: StageContext, component: str) -> None:
        self._run_command(ctx, component)

    def test(self, ctx: StageContext, component: str) -> None:
        self._run_command(ctx, component)

    def package(self, ctx: StageContext) -> ReleaseArtifact:
        image = self._workdir(ctx) / IMAGE_DIR
        if not image.is_dir():
            raise StageActionFailed(
                f"No image to package at {image}",
                stage='package',
                platform=ctx.lane.name,
            )

        name = artifact_name(ctx.plan.product, ctx.platform, ctx.plan.version)
        self.output_directory.mkdir(parents=True, exist_ok=True)
        base = self.output_directory / name[:-len(f".{ctx.platform.artifact_extension}")]
        archive = shutil.make_archive(str(base), 'zip', root_dir=str(image))

        artifact = ReleaseArtifact.from_file(
            Path(archive),
            graph_fingerprint=ctx.plan.graph_fingerprint,
            pins_fingerprint=ctx.pins.fingerprint(),
        )
        artifact.write_sidecar()
        ctx.log(f"packaged {artifact.name} ({artifact.content_hash[:12]})")
        return artifact

    def sign(self, ctx: StageContext, artifact: ReleaseArtifact) -> ReleaseArtifact:
        self._run_command(ctx)
        # Signing rewrites the file, so the hash is taken again
        signed = ReleaseArtifact.from_file(
            artifact.path,
            graph_fingerprint=artifact.graph_fingerprint,
            pins_fingerprint=artifact.pins_fingerprint,
        )
        signed.write_sidecar()
        return signed

    def publish(self, ctx: StageContext, artifact: ReleaseArtifact) -> None:
        if self.release_store is None:
            raise StageConfigurationError("No release store configured", stage='publish', platform=ctx.lane.name)
        repository = self.repository or ctx.plan.product
        tag = f"build-v{ctx.plan.version.lstrip('v')}"
        try:
            stored = self.release_store.upload(repository, tag, artifact.name, artifact.path, artifact.content_hash)
        except (requests.RequestException, OSError) as e:
            raise TransientStageError(
                f"Upload of {artifact.name} failed: {e}",
                stage='publish',
                platform=ctx.lane.name,
            )
        except PublishError as e:
            raise StageActionFailed(e.message, stage='publish', platform=ctx.lane.name)
        ctx.log(f"{'published' if stored else 'already published'} {artifact.name} to {repository}@{tag}")
