"""
Version pin commands for repobuild.

    repobuild pins show [TOOL]
    repobuild pins history TOOL
    repobuild pins bump TOOL VERSION
    repobuild pins bump TOOL --part minor
    repobuild pins sync
"""

import click

from ..cli_utils import add_common_options, standard_command
from ..config import expand_path, load_config
from ..exit_codes import USAGE_ERROR, CommandError
from ..output import emit
from ..render import render_pins
from ..services.pin_registry import VersionPinRegistry
from ..version_manager import BUMP_PARTS


def _registry(directory):
    config = load_config()
    directory = directory or config.get('pins', {}).get('directory', 'versions')
    return VersionPinRegistry(expand_path(directory))


directory_option = click.option(
    '-d', '--directory', default=None,
    help='Directory holding the .version files (default: pins.directory from config)',
)


@click.group('pins')
def pins_cmd():
    """Pinned versions of external tools.

    Each tool has a <tool>.version file holding its active version and an
    entry per bump in pins-history.json. Bumps append; nothing is edited.
    """
    pass


@pins_cmd.command('show')
@click.argument('tool', required=False)
@directory_option
@add_common_options('verbose', 'pretty')
@standard_command
def show_pins(tool, directory, verbose, pretty):
    """Show the active pin of TOOL, or of every tool."""
    registry = _registry(directory)
    if tool:
        pins = [registry.current_pin(tool)]
    else:
        pins = list(registry.snapshot().values())
    if pretty:
        render_pins(pins)
    else:
        emit(pins)


@pins_cmd.command('history')
@click.argument('tool')
@directory_option
@add_common_options('verbose', 'pretty')
@standard_command
def pin_history(tool, directory, verbose, pretty):
    """Show every pin TOOL has had, oldest first."""
    history = _registry(directory).history(tool)
    if pretty:
        render_pins(history, title=f"History of {tool}")
    else:
        emit(history)


@pins_cmd.command('bump')
@click.argument('tool')
@click.argument('version', required=False)
@click.option('--part', type=click.Choice(BUMP_PARTS), default=None,
              help='Bump this part of the current version instead of giving VERSION')
@directory_option
@add_common_options('verbose')
@standard_command
def bump_pin(tool, version, part, directory, verbose):
    """Pin TOOL to VERSION (or to its next major/minor/patch version).

    \b
    Examples:
        repobuild pins bump vm 10.0.2
        repobuild pins bump builder --part minor
    """
    if bool(version) == bool(part):
        raise CommandError("Give either VERSION or --part", USAGE_ERROR)
    registry = _registry(directory)
    pin = registry.bump_part(tool, part) if part else registry.bump(tool, version)
    emit([pin])


@pins_cmd.command('sync')
@directory_option
@add_common_options('verbose')
@standard_command
def sync_pins(directory, verbose):
    """Record hand-written .version files in the pin history.

    Reads show such files as pending pins but never write; run this (or
    bump the tool) to make them part of the history.
    """
    emit(_registry(directory).sync())
