#!/usr/bin/env python3
import click

from repobuild.commands.build import build_cmd, package_cmd, plan_cmd, test_cmd
from repobuild.commands.config import config_cmd
from repobuild.commands.install import install_cmd
from repobuild.commands.pins import pins_cmd
from repobuild.commands.platforms import platforms_cmd
from repobuild.commands.release import release_cmd
from repobuild.commands.resolve import resolve_cmd


@click.group()
@click.version_option(package_name="repobuild")
def cli():
    """repobuild - Multi-repository baseline builds and releases.

    Resolves a baseline of component repositories into one load order,
    builds, tests and packages it on several platforms at once, and
    releases the resulting artifacts together.
    """
    pass


# Build pipeline
cli.add_command(resolve_cmd)
cli.add_command(plan_cmd)
cli.add_command(build_cmd)
cli.add_command(test_cmd)
cli.add_command(package_cmd)

# Release and install
cli.add_command(release_cmd)
cli.add_command(install_cmd)

# Inspection and state
cli.add_command(platforms_cmd)
cli.add_command(pins_cmd)
cli.add_command(config_cmd)


def main():
    cli()


if __name__ == "__main__":
    main()
