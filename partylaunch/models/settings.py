import json
from json import JSONDecodeError
from pathlib import Path

import msgspec
from loguru import logger

from partylaunch.models.devices import PadFilterType


class LaunchSettings(msgspec.Struct):
    """
    User preferences that influence a launch.

    Stored as settings.json in the data root. Unknown keys are ignored and missing
    keys fall back to their defaults, so older files keep loading.
    """

    force_sdl: bool = False
    enable_kwin_script: bool = True
    gamescope_fix_lowres: bool = True
    gamescope_sdl_backend: bool = True
    kbm_support: bool = True
    proton_version: str = ""
    proton_separate_pfxs: bool = False
    vertical_two_player: bool = False
    pad_filter_type: PadFilterType = PadFilterType.NO_STEAM_INPUT
    # Player slot index -> profile name chosen in the previous session
    last_profile_assignments: dict[str, str] = msgspec.field(default_factory=dict)
    performance_limit_40fps: bool = False
    performance_gamescope_rt: bool = False
    performance_enable_proton_fsr: bool = False
    # Handler uid -> game install directory for games not found through Steam
    game_roots: dict[str, str] = msgspec.field(default_factory=dict)

    @classmethod
    def load(cls, settings_file: Path) -> "LaunchSettings":
        try:
            with open(settings_file, "r") as file:
                data = json.load(file)
            return msgspec.convert(data, cls)
        except FileNotFoundError:
            settings = cls()
            settings.save(settings_file)
            return settings
        except (JSONDecodeError, msgspec.ValidationError) as e:
            logger.warning(
                f"Could not read {settings_file}, falling back to defaults: {e}"
            )
            return cls()

    def save(self, settings_file: Path) -> None:
        settings_file.parent.mkdir(parents=True, exist_ok=True)
        with open(settings_file, "w") as file:
            json.dump(msgspec.to_builtins(self), file, indent=4)
