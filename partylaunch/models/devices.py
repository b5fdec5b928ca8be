from enum import Enum

import msgspec


class DeviceType(str, Enum):
    GAMEPAD = "gamepad"
    KEYBOARD = "keyboard"
    MOUSE = "mouse"
    OTHER = "other"


class PadFilterType(str, Enum):
    """Which controllers the input layer offers for assignment."""

    ALL = "All"
    NO_STEAM_INPUT = "NoSteamInput"
    ONLY_STEAM_INPUT = "OnlySteamInput"


class DeviceInfo(msgspec.Struct, frozen=True):
    """An input device node as reported by the input layer."""

    path: str
    enabled: bool = True
    device_type: DeviceType = DeviceType.GAMEPAD

    @classmethod
    def from_path(cls, path: str) -> "DeviceInfo":
        """
        Guess the device type of an evdev node from its by-id name.

        ``/dev/input/by-id`` links end in ``-event-kbd`` or ``-event-mouse`` for
        keyboards and mice; everything else is treated as a gamepad.
        """
        if path.endswith("-event-kbd"):
            return cls(path=path, device_type=DeviceType.KEYBOARD)
        if path.endswith("-event-mouse") or path.endswith("-mouse"):
            return cls(path=path, device_type=DeviceType.MOUSE)
        return cls(path=path, device_type=DeviceType.GAMEPAD)
