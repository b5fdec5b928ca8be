import msgspec
from loguru import logger

from partylaunch.models.settings import LaunchSettings

GUEST_PROFILE = "Guest"
MIN_INSTANCE_HEIGHT = 600


class Instance(msgspec.Struct):
    """
    One player's launch unit.

    ``devices`` holds indices into the device list supplied by the input layer.
    ``profile_selection`` indexes the list returned by
    ``scan_profiles(include_guest=True)``. ``name``, ``width`` and ``height`` are
    filled in by the planner functions below right before a launch.
    """

    devices: list[int] = msgspec.field(default_factory=list)
    profile_selection: int = 0
    name: str = ""
    width: int = 0
    height: int = 0
    guest: bool = False

    @property
    def profile_name(self) -> str:
        """
        Name of the profile directory used for this instance.

        Guests get a hidden directory so the session's guest data is purged by
        ``remove_guest_profiles``.
        """
        return f".{self.name}" if self.guest else self.name


def prune_empty_instances(instances: list[Instance]) -> list[Instance]:
    """Drop instances that have no input device left."""
    return [instance for instance in instances if instance.devices]


def set_instance_resolutions(
    instances: list[Instance],
    settings: LaunchSettings,
    screen_size: tuple[int, int],
) -> None:
    """
    Split ``screen_size`` between the instances.

    One player gets the whole screen, two players split it horizontally (or
    vertically when ``vertical_two_player`` is set) and three or more get a
    quarter each. Heights below 600 pixels are raised to 600 when
    ``gamescope_fix_lowres`` is enabled, keeping the aspect ratio.
    """
    base_width, base_height = screen_size
    player_count = len(instances)

    for i, instance in enumerate(instances):
        if player_count == 1:
            width, height = base_width, base_height
        elif player_count == 2:
            if settings.vertical_two_player:
                width, height = base_width // 2, base_height
            else:
                width, height = base_width, base_height // 2
        else:
            width, height = base_width // 2, base_height // 2

        if height < MIN_INSTANCE_HEIGHT and settings.gamescope_fix_lowres:
            ratio = width / height
            height = MIN_INSTANCE_HEIGHT
            width = int(height * ratio)

        logger.info(f"Resolution for instance {i + 1}/{player_count}: {width}x{height}")
        instance.width = width
        instance.height = height


def set_instance_names(instances: list[Instance], profiles: list[str]) -> None:
    """
    Resolve each instance's profile selection into a display name.

    Guest selections are numbered in order of appearance (Guest1, Guest2, ...)
    regardless of the named profiles between them. A selection index that no
    longer exists also becomes a guest.
    """
    next_guest = 1
    for instance in instances:
        if 0 <= instance.profile_selection < len(profiles):
            selected = profiles[instance.profile_selection]
        else:
            selected = GUEST_PROFILE

        if selected == GUEST_PROFILE:
            instance.name = f"{GUEST_PROFILE}{next_guest}"
            instance.guest = True
            next_guest += 1
        else:
            instance.name = selected
            instance.guest = False
