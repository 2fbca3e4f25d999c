"""
Handles the 'install' command: install a packaged artifact on this machine.
"""

from pathlib import Path

import click

from ..cli_utils import add_common_options, standard_command
from ..config import load_config
from ..domain.artifact import ReleaseArtifact
from ..output import emit
from ..services.installer import Installer
from .build import open_descriptor_store, open_pin_registry, product_tool, product_identity, resolve_graph


@click.command('install')
@click.argument('artifact', type=click.Path(exists=True, dir_okay=False))
@click.option('-t', '--target', required=True, type=click.Path(file_okay=False),
              help='Directory to install into')
@click.option('-b', '--baseline', type=click.Path(exists=True, dir_okay=False), default=None,
              help='Record the component load order and pins of this baseline')
@add_common_options('verbose')
@standard_command
def install_cmd(artifact, target, baseline, verbose):
    """Install ARTIFACT into a target directory.

    The target is either fully replaced or left untouched. Installing the
    artifact that is already there changes nothing.

    \b
    Examples:
        repobuild install dist/Workbench-linux-x86_64-v1.4.0.zip --target /opt/workbench
    """
    path = Path(artifact)
    record = ReleaseArtifact.load_sidecar(path) or ReleaseArtifact.from_file(path)

    components = ()
    pins = None
    if baseline:
        config = load_config()
        baseline_path = Path(baseline).expanduser()
        store = open_descriptor_store(baseline_path, config)
        with store.checkout():
            graph = resolve_graph(store, config, resolve_commits=True)
        name, _, _ = product_identity(store, config)
        components = tuple(d.name for d in graph if not d.excluded_on(record.platform))
        pins = open_pin_registry(baseline_path, config).snapshot().without(product_tool(config, name))

    result = Installer().install(record, path, Path(target), components=components, pins=pins)
    emit([result])
