"""
launch subcommand: run a game as one instance per --player.
"""

from pathlib import Path
from typing import Optional

import click
import msgspec
from loguru import logger

from partylaunch.cli.context import CliContext, fail
from partylaunch.controllers.handler_controller import HandlerController
from partylaunch.controllers.launch_controller import (
    LaunchController,
    install_signal_handlers,
)
from partylaunch.controllers.launch_worker import LaunchWorker
from partylaunch.models.devices import DeviceInfo
from partylaunch.models.game import ExecutableGame, Game, HandlerGame
from partylaunch.models.instance import (
    GUEST_PROFILE,
    Instance,
    prune_empty_instances,
    set_instance_names,
    set_instance_resolutions,
)
from partylaunch.utils.exception import PartyLaunchError
from partylaunch.utils.profiles import scan_profiles
from partylaunch.utils.system_info import (
    create_application,
    get_screen_resolution,
)

WAIT_INTERVAL_MS = 250


def parse_players(
    players: tuple[str, ...], profiles: list[str]
) -> tuple[list[Instance], list[DeviceInfo]]:
    """
    Turn ``PROFILE=DEV[,DEV...]`` player options into instances and devices.

    Each device path and each named profile belongs to one player only; a
    repeat raises :class:`click.BadParameter`. Guest may be given more than once.
    """
    devices: list[DeviceInfo] = []
    device_index: dict[str, int] = {}
    instances: list[Instance] = []
    claimed: set[str] = set()

    for player in players:
        profile, _, device_list = player.partition("=")
        profile = profile.strip()
        if profile not in profiles:
            raise click.BadParameter(
                f"Unknown profile {profile!r}", param_hint="--player"
            )
        if profile != GUEST_PROFILE:
            if profile in claimed:
                raise click.BadParameter(
                    f"Profile {profile} is assigned to more than one player",
                    param_hint="--player",
                )
            claimed.add(profile)

        instance = Instance(profile_selection=profiles.index(profile))
        for path in filter(None, (p.strip() for p in device_list.split(","))):
            if path in device_index:
                raise click.BadParameter(
                    f"Device {path} is assigned to more than one player",
                    param_hint="--player",
                )
            device_index[path] = len(devices)
            devices.append(DeviceInfo.from_path(path))
            instance.devices.append(device_index[path])
        if not instance.devices:
            logger.warning(f"Player {profile} has no input device and is skipped")
        instances.append(instance)

    return prune_empty_instances(instances), devices


@click.command("launch")
@click.option("--handler", "handler_uid", help="Uid of an installed handler.")
@click.option(
    "--exec",
    "exec_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Native executable to run instead of a handler.",
)
@click.option("--args", "exec_args", default="", help="Arguments for --exec.")
@click.option(
    "--player",
    "players",
    multiple=True,
    required=True,
    metavar="PROFILE=DEV[,DEV...]",
    help="A player: profile name (or Guest) and the input devices it owns.",
)
@click.option("--no-kwin", is_flag=True, help="Do not load the KWin layout script.")
@click.pass_obj
def launch(
    obj: CliContext,
    handler_uid: Optional[str],
    exec_path: Optional[Path],
    exec_args: str,
    players: tuple[str, ...],
    no_kwin: bool,
) -> None:
    """Launch a game for every --player.

    Examples:

    \b
      partylaunch launch --handler MyGame \\
          --player Alice=/dev/input/event20 --player Guest=/dev/input/event21
    """
    if (handler_uid is None) == (exec_path is None):
        raise click.UsageError("Pass exactly one of --handler or --exec")

    settings = obj.settings
    if no_kwin:
        settings = msgspec.structs.replace(settings, enable_kwin_script=False)
    handler_controller = HandlerController(obj.paths, settings)

    game: Game
    if handler_uid is not None:
        try:
            game = HandlerGame(handler=handler_controller.get_handler(handler_uid))
        except PartyLaunchError as e:
            fail(str(e))
    else:
        assert exec_path is not None
        game = ExecutableGame(path=str(exec_path.resolve()), args=exec_args)

    profiles = scan_profiles(obj.paths, include_guest=True)
    instances, devices = parse_players(players, profiles)
    if not instances:
        raise click.UsageError("At least one player with an input device is required")

    # The application must exist before the screen can be queried
    app = create_application()
    set_instance_names(instances, profiles)
    set_instance_resolutions(instances, settings, get_screen_resolution())

    install_signal_handlers()

    worker = LaunchWorker(
        LaunchController(obj.paths, settings, handler_controller),
        game,
        instances,
        devices,
    )
    worker.start()
    # Returning to Python regularly lets signal handlers run on this thread
    while not worker.wait(WAIT_INTERVAL_MS):
        app.processEvents()

    if worker.error is not None:
        fail(str(worker.error))
