"""
Handles the 'resolve' command: print the load order of a baseline.
"""

from pathlib import Path

import click

from ..cli_utils import add_common_options, standard_command
from ..config import load_config
from ..output import emit
from .build import open_descriptor_store, resolve_graph


@click.command('resolve')
@click.argument('baseline', type=click.Path(exists=True, dir_okay=False))
@click.option('--commits/--no-commits', default=None,
              help='Pin every component to the commit its ref points at (default: descriptors.resolve_commits)')
@add_common_options('verbose', 'pretty')
@standard_command
def resolve_cmd(baseline, commits, verbose, pretty):
    """Resolve a baseline and print its components in load order.

    One JSON object per component, dependencies before dependents.
    Exits with 72 on cycles, missing components or ambiguous refs.

    \b
    Examples:
        repobuild resolve baseline.yaml
        repobuild resolve baseline.yaml --no-commits --pretty
    """
    config = load_config()
    store = open_descriptor_store(Path(baseline).expanduser(), config)
    with store.checkout():
        graph = resolve_graph(store, config, resolve_commits=commits)

    rows = []
    for position, descriptor in enumerate(graph):
        row = {'position': position, **descriptor.to_dict()}
        rows.append(row)
    emit(rows, pretty=pretty, columns=['position', 'name', 'ref', 'commit', 'dependencies'] if pretty else None)
