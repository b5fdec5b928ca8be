"""
Subcommands that inspect or change the local library: handlers, profiles,
Proton builds and saved game roots.
"""

from pathlib import Path

import click

from partylaunch.cli.context import CliContext, fail
from partylaunch.controllers.handler_controller import HandlerController
from partylaunch.models.instance import GUEST_PROFILE
from partylaunch.utils.exception import PartyLaunchError
from partylaunch.utils.profiles import create_profile, scan_profiles
from partylaunch.utils.proton import discover_proton_versions


@click.command("handlers")
@click.pass_obj
def handlers(obj: CliContext) -> None:
    """List installed handlers."""
    found = HandlerController(obj.paths, obj.settings).scan_handlers()
    if not found:
        click.echo("No handlers installed.", err=True)
        return
    for handler in found:
        details = " ".join(part for part in (handler.author, handler.version) if part)
        line = f"{handler.uid}\t{handler.display()}"
        if details:
            line += f" ({details})"
        click.echo(line)


@click.command("install")
@click.argument("archive", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_obj
def install(obj: CliContext, archive: Path) -> None:
    """Install a handler from a .pdh ARCHIVE."""
    try:
        handler = HandlerController(obj.paths, obj.settings).install(archive)
    except (PartyLaunchError, OSError) as e:
        fail(str(e))
    click.secho(f"Installed {handler.display()} ({handler.uid})", fg="green", err=True)


@click.command("profiles")
@click.option("--guest", is_flag=True, help="Include the Guest entry.")
@click.pass_obj
def profiles(obj: CliContext, guest: bool) -> None:
    """List saved profiles."""
    for name in scan_profiles(obj.paths, include_guest=guest):
        click.echo(name)


@click.command("create-profile")
@click.argument("name")
@click.pass_obj
def create_profile_command(obj: CliContext, name: str) -> None:
    """Create the profile NAME."""
    if not name or name.startswith(".") or "/" in name or name == GUEST_PROFILE:
        raise click.BadParameter(f"{name!r} is not a valid profile name", param_hint="NAME")
    try:
        create_profile(name, obj.paths)
    except OSError as e:
        fail(str(e))
    click.echo(f"Profile {name} ready", err=True)


@click.command("proton")
@click.pass_obj
def proton(obj: CliContext) -> None:
    """List Proton builds found in the Steam directory."""
    installs = discover_proton_versions(obj.paths)
    if not installs:
        click.echo("No Proton builds found.", err=True)
        return
    for install in installs:
        click.echo(f"{install.display_label()}\t{install.root_path}")


@click.command("set-root")
@click.argument("uid")
@click.argument(
    "path", type=click.Path(exists=True, file_okay=False, path_type=Path)
)
@click.pass_obj
def set_root(obj: CliContext, uid: str, path: Path) -> None:
    """Remember PATH as the game directory of handler UID."""
    controller = HandlerController(obj.paths, obj.settings)
    try:
        handler = controller.get_handler(uid)
        controller.set_game_root(handler.uid, path)
    except (PartyLaunchError, OSError) as e:
        fail(str(e))
    click.echo(f"Game directory of {handler.display()} set to {path.resolve()}", err=True)
