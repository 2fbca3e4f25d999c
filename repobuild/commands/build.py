"""
Build commands for repobuild: build, test, package and plan.

All four share one pipeline: load the baseline, resolve the graph, take a
snapshot of the version pins, compile a plan for the requested platforms
and (except for ``plan``) execute it.

Exit codes follow the earliest failing stage across all lanes:
73 fetch/load, 74 test, 75 package/sign/publish, 71 when some requested
platforms were not supported.
"""

import logging
import signal
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple

import click

from .. import exit_codes
from ..baseline import DescriptorStore, RemoteDescriptorSource, load_baseline_file
from ..cli_utils import add_common_options, standard_command
from ..config import expand_path, load_config
from ..domain.graph import DependencyGraph
from ..domain.plan import STAGE_ORDER, StageKind
from ..domain.snapshot import RunSnapshot
from ..infra.git_client import GitClient
from ..infra.release_store import create_release_store
from ..output import emit
from ..render import render_plan, render_report
from ..services.orchestrator import BuildOrchestrator, RetryPolicy
from ..services.pin_registry import VersionPinRegistry
from ..services.plan_compiler import BuildPlanCompiler
from ..services.resolver import BaselineResolver
from ..services.stage_actions import CommandStageActions

logger = logging.getLogger(__name__)

TEST_STAGES = (StageKind.FETCH, StageKind.LOAD, StageKind.TEST)
PACKAGE_STAGES = (StageKind.FETCH, StageKind.LOAD, StageKind.PACKAGE, StageKind.SIGN)


def open_descriptor_store(baseline: Path, config: Dict[str, Any]) -> DescriptorStore:
    """Descriptor store for a baseline file and the ``descriptors`` config section."""
    descriptors = config.get('descriptors', {})
    directory = descriptors.get('directory') or None
    git = GitClient()
    remote = None
    if descriptors.get('remote'):
        workspace = expand_path(config.get('general', {}).get('workspace', '~/.repobuild/workspace'))
        remote = RemoteDescriptorSource(git, workspace / "descriptors")
    return DescriptorStore(
        [load_baseline_file(baseline)],
        directory=expand_path(directory, base=baseline.parent) if directory else None,
        remote=remote,
        git_client=git,
    )


def resolve_graph(store: DescriptorStore, config: Dict[str, Any], resolve_commits: Optional[bool] = None) -> DependencyGraph:
    """
    Resolve the store's roots into a graph.

    ``resolve_commits`` None defers to ``descriptors.resolve_commits``.
    Builds, releases and installs pass True so every lane sees one commit per ref.
    """
    if resolve_commits is None:
        resolve_commits = bool(config.get('descriptors', {}).get('resolve_commits', True))
    resolver = BaselineResolver(store.fetch, resolve_commits=resolve_commits, ref_resolver=store.resolve_ref)
    return resolver.resolve(store.roots)


def open_pin_registry(baseline: Path, config: Dict[str, Any]) -> VersionPinRegistry:
    directory = config.get('pins', {}).get('directory', 'versions')
    return VersionPinRegistry(expand_path(directory, base=baseline.parent))


def product_identity(store: DescriptorStore, config: Dict[str, Any], version: Optional[str] = None) -> Tuple[str, str, str]:
    """(name, repository, version) of the product, CLI over baseline over config."""
    product_config = config.get('product', {})
    declared = store.product
    name = product_config.get('name') or (declared.name if declared else '') or store.roots[0].name
    repository = product_config.get('repository') or (declared.repository if declared else '') or name
    version = version or (declared.version if declared and declared.version else '') \
        or product_config.get('version') or '0.0.0-dev'
    return name, repository, version


def product_tool(config: Dict[str, Any], product: str) -> str:
    return config.get('pins', {}).get('product_tool') or product


def stage_timeouts(config: Dict[str, Any]) -> Dict[StageKind, float]:
    configured = config.get('stages', {}).get('timeouts', {})
    return {kind: float(configured[kind.value]) for kind in STAGE_ORDER if kind.value in configured}


def retry_policy(config: Dict[str, Any]) -> RetryPolicy:
    retry = config.get('stages', {}).get('retry', {})
    return RetryPolicy(
        max_attempts=int(retry.get('max_attempts', 3)),
        base_delay=float(retry.get('base_delay_seconds', 2.0)),
        max_delay=float(retry.get('max_delay_seconds', 60.0)),
    )


@contextmanager
def cancel_on_interrupt(orchestrator: BuildOrchestrator) -> Iterator[None]:
    """Turn Ctrl+C into a cooperative cancellation of the run."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum, frame):
        orchestrator.cancel()

    previous = signal.signal(signal.SIGINT, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def run_pipeline(
    baseline: str,
    platforms: Sequence[str],
    skip: Sequence[str],
    tentative: Optional[str],
    version: Optional[str],
    output: Optional[str],
    stages: Optional[Sequence[StageKind]],
    pretty: bool,
    execute: bool = True,
) -> int:
    """Resolve, plan and optionally execute; print the plan or report; return the exit code."""
    config = load_config()
    baseline_path = Path(baseline).expanduser()
    if output:
        config['general']['output_directory'] = output

    store = open_descriptor_store(baseline_path, config)
    registry = open_pin_registry(baseline_path, config)
    platform_config = config.get('platforms', {})

    with store.checkout(), registry.freeze() as pins:
        name, repository, version = product_identity(store, config, version)
        config["product"]["repository"] = repository
        snapshot = RunSnapshot(resolve_graph(store, config, resolve_commits=True), pins.without(product_tool(config, name)))
        graph = snapshot.graph
        logger.debug(f"Run snapshot {snapshot.fingerprint()[:12]} ({len(graph)} components, {len(snapshot.pins)} pins)")

        compiler = BuildPlanCompiler(name, version)
        plan = compiler.compile(
            graph,
            list(platforms) or platform_config.get('default', []),
            pins=snapshot.pins,
            skip_lists=platform_config.get('skip_lists', {}),
            global_skips=skip,
            stages=stages,
            tentative=tentative or platform_config.get('tentative') or None,
        )

        if not execute:
            if pretty:
                render_plan(plan)
            else:
                emit([plan])
            return exit_codes.PARTIAL_SUCCESS if plan.planning_errors else exit_codes.SUCCESS

        actions = CommandStageActions(config, release_store=create_release_store(config.get('store', {})))
        max_parallel = int(config.get('general', {}).get('max_parallel_lanes', 0)) or None
        orchestrator = BuildOrchestrator(
            actions,
            max_parallel=max_parallel,
            stage_timeouts=stage_timeouts(config),
            retry=retry_policy(config),
            workspace=expand_path(config.get('general', {}).get('workspace', '~/.repobuild/workspace')),
        )
        with cancel_on_interrupt(orchestrator):
            report = orchestrator.run(plan, graph)

    if pretty:
        render_report(report)
    else:
        emit(report.to_rows())
    return report.exit_code()


def platform_options(f):
    """Decorator adding the platform selection options shared by build commands."""
    f = click.option('-p', '--platform', 'platforms', multiple=True,
                     help='Platform to build (repeatable, default from config)')(f)
    f = click.option('--skip', multiple=True,
                     help='Component to exclude from tests on every platform (repeatable)')(f)
    f = click.option('--tentative', default=None,
                     help='Platform whose package must succeed before other platforms test')(f)
    f = click.option('--version', 'version', default=None,
                     help='Product version (default from baseline or config)')(f)
    return f


@click.command('build')
@click.argument('baseline', type=click.Path(exists=True, dir_okay=False))
@platform_options
@click.option('-o', '--output', default=None, help='Directory for release artifacts')
@add_common_options('verbose', 'pretty')
@standard_command
def build_cmd(baseline, platforms, skip, tentative, version, output, verbose, pretty):
    """Run every stage on every requested platform.

    \b
    Examples:
        repobuild build baseline.yaml -p linux-x86_64 -p macos-aarch64
        repobuild build baseline.yaml --tentative linux-x86_64 --pretty
    """
    return run_pipeline(baseline, platforms, skip, tentative, version, output, None, pretty)


@click.command('test')
@click.argument('baseline', type=click.Path(exists=True, dir_okay=False))
@platform_options
@add_common_options('verbose', 'pretty')
@standard_command
def test_cmd(baseline, platforms, skip, tentative, version, verbose, pretty):
    """Fetch, load and test on every requested platform."""
    return run_pipeline(baseline, platforms, skip, tentative, version, None, TEST_STAGES, pretty)


@click.command('package')
@click.argument('baseline', type=click.Path(exists=True, dir_okay=False))
@platform_options
@click.option('-o', '--output', default=None, help='Directory for release artifacts')
@add_common_options('verbose', 'pretty')
@standard_command
def package_cmd(baseline, platforms, skip, tentative, version, output, verbose, pretty):
    """Fetch, load, package and sign without running tests."""
    return run_pipeline(baseline, platforms, skip, tentative, version, output, PACKAGE_STAGES, pretty)


@click.command('plan')
@click.argument('baseline', type=click.Path(exists=True, dir_okay=False))
@platform_options
@add_common_options('verbose', 'pretty')
@standard_command
def plan_cmd(baseline, platforms, skip, tentative, version, verbose, pretty):
    """Show the build plan without executing it."""
    return run_pipeline(baseline, platforms, skip, tentative, version, None, None, pretty, execute=False)
