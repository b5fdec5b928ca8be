"""
Main CLI entry point for partylaunch.

This module defines the Click command group and registers all subcommands.
"""

from pathlib import Path
from typing import Optional

import click
import msgspec
from loguru import logger

from partylaunch.cli.context import CliContext
from partylaunch.cli.launch import launch
from partylaunch.cli.library import (
    create_profile_command,
    handlers,
    install,
    profiles,
    proton,
    set_root,
)
from partylaunch.models.settings import LaunchSettings
from partylaunch.utils.app_info import AppPaths
from partylaunch.utils.generic import rmtree
from partylaunch.utils.log_setup import configure_logging
from partylaunch.utils.profiles import remove_guest_profiles


@click.group()
@click.option(
    "--data-dir",
    envvar="PARTYLAUNCH_DATA_DIR",
    type=click.Path(file_okay=False, path_type=Path),
    help="Override the data directory (profiles, handlers, logs...).",
)
@click.option("--debug", is_flag=True, help="Log debug messages to stderr.")
@click.pass_context
def cli(ctx: click.Context, data_dir: Optional[Path], debug: bool) -> None:
    """partylaunch - local splitscreen launcher

    Runs one game as several isolated instances, one per local player.
    """
    if ctx.obj is None:
        paths = AppPaths.from_platform()
        if data_dir is not None:
            paths = msgspec.structs.replace(paths, app_root=data_dir.resolve())
        configure_logging(paths.logs_folder, debug)
        ctx.obj = CliContext(
            paths=paths, settings=LaunchSettings.load(paths.settings_file)
        )

    paths = ctx.obj.paths
    paths.ensure_dirs()
    remove_guest_profiles(paths)
    rmtree(paths.tmp_folder)
    logger.debug(f"Using data directory {paths.app_root}")


# Register subcommands
cli.add_command(handlers)
cli.add_command(install)
cli.add_command(profiles)
cli.add_command(create_profile_command)
cli.add_command(proton)
cli.add_command(set_root)
cli.add_command(launch)


if __name__ == "__main__":
    cli()
