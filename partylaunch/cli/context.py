import sys
from typing import NoReturn

import click
import msgspec

from partylaunch.models.settings import LaunchSettings
from partylaunch.utils.app_info import AppPaths


class CliContext(msgspec.Struct):
    """Objects shared by every subcommand through ``click.pass_obj``."""

    paths: AppPaths
    settings: LaunchSettings


def fail(message: str) -> NoReturn:
    click.secho(f"Error: {message}", fg="red", err=True)
    sys.exit(1)
