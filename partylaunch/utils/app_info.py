import os
from pathlib import Path

import msgspec
from platformdirs import PlatformDirs

APP_NAME = "partylaunch"


def _detect_steam_root(home: Path) -> Path:
    """Return the first Steam installation found under ``home``."""
    candidates = [
        home / ".local" / "share" / "Steam",
        home / ".steam" / "steam",
        home / ".var" / "app" / "com.valvesoftware.Steam" / ".local" / "share" / "Steam",
    ]
    for candidate in candidates:
        if candidate.is_dir():
            return candidate
    return candidates[0]


class AppPaths(msgspec.Struct, frozen=True):
    """
    Immutable set of filesystem roots used by every component.

    Instances are constructed once at startup (``AppPaths.from_platform()``) and
    passed down explicitly, so tests can build one over a temporary directory with
    ``AppPaths.for_root(tmp_path)``.

    Examples:
        >>> paths = AppPaths.from_platform()
        >>> print(paths.profiles_folder)
    """

    app_root: Path
    res_root: Path
    steam_root: Path
    home: Path

    @classmethod
    def from_platform(cls) -> "AppPaths":
        """
        Build the paths from platform conventions.

        The data root comes from `platformdirs`, the resource root is the ``res``
        directory shipped beside the package and the Steam root is probed in the
        usual install locations.
        """
        platform_dirs = PlatformDirs(appname=APP_NAME, appauthor=False)
        home = Path(os.environ.get("HOME", Path.home()))
        return cls(
            app_root=Path(platform_dirs.user_data_dir),
            res_root=Path(__file__).resolve().parent.parent / "res",
            steam_root=_detect_steam_root(home),
            home=home,
        )

    @classmethod
    def for_root(cls, root: Path) -> "AppPaths":
        """Build a self-contained layout below ``root``."""
        return cls(
            app_root=root / "data",
            res_root=root / "res",
            steam_root=root / "steam",
            home=root / "home",
        )

    @property
    def profiles_folder(self) -> Path:
        return self.app_root / "profiles"

    @property
    def gamesyms_folder(self) -> Path:
        return self.app_root / "gamesyms"

    @property
    def handlers_folder(self) -> Path:
        return self.app_root / "handlers"

    @property
    def tmp_folder(self) -> Path:
        return self.app_root / "tmp"

    @property
    def run_folder(self) -> Path:
        return self.app_root / "run"

    @property
    def locks_folder(self) -> Path:
        return self.run_folder / "locks"

    @property
    def pfx_folder(self) -> Path:
        return self.app_root / "pfx"

    @property
    def logs_folder(self) -> Path:
        return self.app_root / "logs"

    @property
    def settings_file(self) -> Path:
        return self.app_root / "settings.json"

    @property
    def local_share(self) -> Path:
        return self.home / ".local" / "share"

    @property
    def config_home(self) -> Path:
        return self.home / ".config"

    def ensure_dirs(self) -> None:
        """Create the directories the launcher expects to exist."""
        for folder in (
            self.app_root,
            self.profiles_folder,
            self.gamesyms_folder,
            self.handlers_folder,
            self.locks_folder,
            self.logs_folder,
        ):
            folder.mkdir(parents=True, exist_ok=True)
