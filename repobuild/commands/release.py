"""
Handles the 'release' command: tag, changelog and publish an artifact set.
"""

import logging
from pathlib import Path
from typing import Optional

import click

from ..cli_utils import add_common_options, standard_command
from ..config import expand_path, load_config
from ..domain.artifact import SIDECAR_SUFFIX, ReleaseArtifact
from ..exit_codes import RELEASE_FAILURE, CommandError
from ..infra.git_client import GitClient
from ..infra.release_store import create_release_store
from ..infra.repository_host import GitRepositoryHost
from ..output import emit
from ..services.releaser import Releaser, normalize_version
from .build import open_descriptor_store, open_pin_registry, product_identity, product_tool, resolve_graph

logger = logging.getLogger(__name__)


def collect_artifacts(directory: Path, version: Optional[str] = None):
    """
    Artifact records for every packaged file in a directory.

    With ``version`` only artifacts of that version are returned, so a
    directory holding earlier builds can still be released from.
    """
    wanted = normalize_version(version) if version else None
    artifacts = []
    for path in sorted(Path(directory).iterdir()):
        if not path.is_file() or path.name.endswith(SIDECAR_SUFFIX) or path.name.startswith('.'):
            continue
        artifact = ReleaseArtifact.load_sidecar(path)
        recorded = artifact is not None
        if not recorded:
            try:
                artifact = ReleaseArtifact.from_file(path)
            except ValueError:
                logger.debug(f"Ignoring {path.name}: not a release artifact")
                continue
        if wanted is not None and normalize_version(artifact.version) != wanted:
            logger.debug(f"Ignoring {path.name}: version {artifact.version}, releasing {wanted}")
            continue
        if not recorded:
            logger.warning(f"{path.name} has no build record; it cannot be checked against the graph")
        artifacts.append(artifact)
    return artifacts


@click.command('release')
@click.argument('version')
@click.argument('baseline', type=click.Path(exists=True, dir_okay=False))
@click.option('-a', '--artifacts', 'artifacts_dir', type=click.Path(exists=True, file_okay=False),
              default=None, help='Directory holding the packaged artifacts (default: output directory)')
@add_common_options('verbose', 'dry_run')
@standard_command
def release_cmd(version, baseline, artifacts_dir, verbose, dry_run):
    """Release VERSION of the product built from BASELINE.

    Checks that every artifact was built from the same graph and pins,
    tags all repositories v<VERSION>, publishes the artifacts with a
    changelog, then pins the product at VERSION. Safe to re-run.

    \b
    Examples:
        repobuild release 1.4.0 baseline.yaml --artifacts dist --dry-run
        repobuild release 1.4.0 baseline.yaml --artifacts dist
    """
    config = load_config()
    baseline_path = Path(baseline).expanduser()
    directory = expand_path(artifacts_dir or config.get('general', {}).get('output_directory', 'dist'))
    if not directory.is_dir():
        raise CommandError(f"Artifact directory not found: {directory}", RELEASE_FAILURE)

    store = open_descriptor_store(baseline_path, config)
    with store.checkout():
        graph = resolve_graph(store, config, resolve_commits=True)
    name, repository, _ = product_identity(store, config, version)

    workspace = expand_path(config.get('general', {}).get('workspace', '~/.repobuild/workspace'))
    releaser = Releaser(
        store=create_release_store(config.get('store', {})),
        host=GitRepositoryHost(GitClient(), workspace / "release", push=not dry_run),
        registry=open_pin_registry(baseline_path, config),
        product_tool=product_tool(config, name),
    )
    result = releaser.release(version, collect_artifacts(directory, version), graph, repository, dry_run=dry_run)
    emit([result])
