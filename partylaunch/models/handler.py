from enum import Enum
from pathlib import Path

import msgspec
import requests
from loguru import logger

from partylaunch.utils.exception import DescriptorError
from partylaunch.utils.generic import sanitize_path

HANDLER_DOCUMENT = "handler.json"
STEAM_HEADER_FILE = "steam_header.jpg"
STEAM_HEADER_URL = "https://shared.fastly.steamstatic.com/store_item_assets/steam/apps/{appid}/header.jpg"
IMAGE_SUFFIXES = (".png", ".jpg")

# Flat key paths of handler.json, keyed by attribute name.
DOCUMENT_KEYS = {
    "uid": "handler.uid",
    "name": "handler.name",
    "author": "handler.author",
    "version": "handler.version",
    "info": "handler.info",
    "symlink_dir": "game.symlink_dir",
    "win": "game.win",
    "is32bit": "game.32bit",
    "runtime": "game.runtime",
    "exec_path": "game.exec",
    "args": "game.args",
    "copy_instead_paths": "game.copy_instead_paths",
    "remove_paths": "game.remove_paths",
    "dll_overrides": "game.dll_overrides",
    "never_symlink_paths": "game.never_symlink_paths",
    "path_goldberg": "steam.api_path",
    "steam_appid": "steam.appid",
    "gb_coldclient": "steam.gb_coldclient",
    "path_nemirtingas": "eos.config_path",
    "eos_per_instance": "eos.per_instance",
    "win_unique_appdata": "profiles.unique_appdata",
    "win_unique_documents": "profiles.unique_documents",
    "linux_unique_localshare": "profiles.unique_localshare",
    "linux_unique_config": "profiles.unique_config",
    "game_unique_paths": "profiles.game_paths",
}


class Runtime(str, Enum):
    """Container runtime a native game is started through."""

    NONE = ""
    SCOUT = "scout"
    SOLDIER = "soldier"


class Handler(msgspec.Struct, frozen=True, rename=DOCUMENT_KEYS):
    """
    Description of how to run one game variant.

    Built from a handler.json document with :meth:`from_file`. Every path field
    is sanitized and ``uid`` is guaranteed to be alphanumeric. The last three
    fields are derived from the handler directory rather than read from the
    document.
    """

    uid: str = ""
    name: str = ""
    author: str = ""
    version: str = ""
    info: str = ""

    symlink_dir: bool = False
    win: bool = False
    is32bit: bool = False
    runtime: Runtime = Runtime.NONE
    exec_path: str = ""
    args: list[str] = msgspec.field(default_factory=list)
    copy_instead_paths: list[str] = msgspec.field(default_factory=list)
    remove_paths: list[str] = msgspec.field(default_factory=list)
    dll_overrides: list[str] = msgspec.field(default_factory=list)
    never_symlink_paths: list[str] = msgspec.field(default_factory=list)

    path_goldberg: str = ""
    steam_appid: str | int | None = None
    gb_coldclient: bool = False

    path_nemirtingas: str = ""
    eos_per_instance: bool = False

    win_unique_appdata: bool = False
    win_unique_documents: bool = False
    linux_unique_localshare: bool = False
    linux_unique_config: bool = False
    game_unique_paths: list[str] = msgspec.field(default_factory=list)

    path_handler: str = ""
    img_paths: list[str] = msgspec.field(default_factory=list)
    steam_header: str | None = None

    @classmethod
    def from_file(cls, document_path: Path, fetch_header: bool = True) -> "Handler":
        """
        Parse a handler.json document.

        :param document_path: Path to the handler.json file.
        :param fetch_header: Download the Steam header image when it is not cached yet.
        :return: The parsed handler.
        :raises DescriptorError: If the document is malformed or the uid is invalid.
        """
        try:
            raw = msgspec.json.decode(document_path.read_bytes(), type=cls)
        except (OSError, msgspec.DecodeError) as e:
            raise DescriptorError(f"Invalid handler {document_path}: {e}") from e

        if not raw.uid.isalnum():
            raise DescriptorError(
                f"Handler {document_path} has an invalid uid {raw.uid!r}; "
                "it must be non-empty and alphanumeric"
            )

        path_handler = document_path.resolve().parent
        handler = msgspec.structs.replace(
            raw,
            exec_path=sanitize_path(raw.exec_path),
            copy_instead_paths=_sanitize_all(raw.copy_instead_paths),
            remove_paths=_sanitize_all(raw.remove_paths),
            never_symlink_paths=_sanitize_all(raw.never_symlink_paths),
            path_goldberg=sanitize_path(raw.path_goldberg),
            path_nemirtingas=sanitize_path(raw.path_nemirtingas),
            game_unique_paths=_sanitize_all(raw.game_unique_paths),
            steam_appid=str(raw.steam_appid) if raw.steam_appid else None,
            path_handler=str(path_handler),
            img_paths=_gallery_images(path_handler),
            steam_header=None,
        )
        if fetch_header and handler.steam_appid:
            header = fetch_steam_header(path_handler, handler.steam_appid)
            handler = msgspec.structs.replace(
                handler, steam_header=str(header) if header else None
            )
        return handler

    def display(self) -> str:
        """Name shown to the user, falling back to the uid."""
        return self.name if self.name else self.uid

    @property
    def handler_dir(self) -> Path:
        return Path(self.path_handler)

    @property
    def app_id(self) -> str | None:
        return str(self.steam_appid) if self.steam_appid else None


def _sanitize_all(paths: list[str]) -> list[str]:
    return [p for p in (sanitize_path(path) for path in paths) if p]


def _gallery_images(path_handler: Path) -> list[str]:
    imgs_dir = path_handler / "imgs"
    if not imgs_dir.is_dir():
        return []
    return sorted(
        str(entry)
        for entry in imgs_dir.iterdir()
        if entry.is_file() and entry.suffix.lower() in IMAGE_SUFFIXES
    )


def fetch_steam_header(path_handler: Path, appid: str) -> Path | None:
    """
    Return the cached Steam header image for ``appid``, downloading it if needed.

    Failures are logged and yield None; a partially written file is removed.
    """
    header = path_handler / STEAM_HEADER_FILE
    if header.is_file():
        return header

    url = STEAM_HEADER_URL.format(appid=appid)
    try:
        response = requests.get(url, timeout=10)
        response.raise_for_status()
        header.write_bytes(response.content)
    except (requests.RequestException, OSError) as e:
        logger.warning(f"Could not fetch Steam header for app {appid}: {e}")
        header.unlink(missing_ok=True)
        return None
    logger.debug(f"Cached Steam header for app {appid} at {header}")
    return header
