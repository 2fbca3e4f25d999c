"""
Handles the 'platforms' command: list the supported platform targets.
"""

import click

from ..cli_utils import add_common_options, standard_command
from ..domain.platform import PLATFORMS
from ..output import emit


@click.command('platforms')
@add_common_options('verbose', 'pretty')
@standard_command
def platforms_cmd(verbose, pretty):
    """List the platforms repobuild can build for, with their capabilities."""
    emit(
        [target.to_dict() for target in PLATFORMS],
        pretty=pretty,
        columns=['name', 'os', 'arch', 'capabilities'] if pretty else None,
    )
