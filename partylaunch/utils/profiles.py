"""
Per-player profile and save storage.

A profile lives in ``profiles/<name>`` under the data root and holds the Steam
emulator identity (``steam/settings``), Epic emulator configs
(``nepice_settings/<app id>``) and per-handler save trees (``saves/<uid>``).
Guest sessions use hidden profile directories that are purged after a launch.
"""

import hashlib
import os
import random
import string
from pathlib import Path
from typing import NamedTuple

import msgspec
from loguru import logger

from partylaunch.models.handler import Handler
from partylaunch.utils.app_info import AppPaths
from partylaunch.utils.exception import ProfileError
from partylaunch.utils.generic import copy_dir_recursive, rmtree, sanitize_path

NEMIRTINGAS_FILE_NAME = "NemirtingasEpicEmu.json"
STEAM_USER_CONFIG = """[user::general]
account_name={name}
account_steamid={steam_id}
language=english
ip_country=US"""


class NemirtingasSettings(msgspec.Struct, omit_defaults=True):
    """Contents of a per-profile Nemirtingas Epic emulator config."""

    username: str
    language: str
    appid: str
    log_level: str
    epicid: str | None = None
    productuserid: str | None = None


class NemirtingasConfig(NamedTuple):
    dir: Path
    path: Path
    sha1: str


def profile_dir(name: str, paths: AppPaths) -> Path:
    return paths.profiles_folder / name


def create_profile(name: str, paths: AppPaths) -> Path:
    """
    Create the profile ``name`` if it does not exist yet.

    A new profile gets a random 17-digit Steam id written to
    ``steam/settings/configs.user.ini``. The ``nepice_settings`` directory is
    ensured on every call, including for existing profiles.

    :return: The profile directory.
    """
    path_profile = profile_dir(name, paths)

    if not path_profile.exists():
        logger.info(f"Creating profile {name}")
        path_steam = path_profile / "steam" / "settings"
        path_steam.mkdir(parents=True)
        steam_id = random.randrange(10**16, 10**17)
        (path_steam / "configs.user.ini").write_text(
            STEAM_USER_CONFIG.format(name=name, steam_id=steam_id)
        )

    (path_profile / "nepice_settings").mkdir(parents=True, exist_ok=True)
    return path_profile


def _is_hex(value: str) -> bool:
    return bool(value) and all(c in string.hexdigits for c in value)


def _read_preserved_ids(path: Path) -> tuple[str | None, str | None]:
    """Return the ``epicid`` and ``productuserid`` stored in an existing config."""
    if not path.is_file() or path.stat().st_size == 0:
        return None, None
    try:
        data = msgspec.json.decode(path.read_bytes())
    except msgspec.DecodeError as e:
        logger.warning(f"Ignoring unreadable Nemirtingas config {path}: {e}")
        return None, None
    if not isinstance(data, dict):
        return None, None

    preserved: list[str | None] = []
    for key in ("epicid", "productuserid"):
        value = data.get(key)
        if value is None:
            preserved.append(None)
        elif isinstance(value, str) and _is_hex(value):
            preserved.append(value)
        else:
            raise ProfileError(
                f"Nemirtingas config {path} has a non-hexadecimal {key}: {value!r}"
            )
    return preserved[0], preserved[1]


def ensure_nemirtingas_config(
    name: str,
    app_id: str,
    paths: AppPaths,
    file_name: str = NEMIRTINGAS_FILE_NAME,
) -> NemirtingasConfig:
    """
    Write the Nemirtingas config of profile ``name`` for ``app_id``.

    The ``epicid`` and ``productuserid`` of a previous config are carried over so
    the player keeps the same Epic identity across launches. The file is synced
    to disk before its SHA-1 is returned.

    :raises ProfileError: If a preserved id is not hexadecimal.
    """
    path_profile = create_profile(name, paths)
    config_dir = path_profile / "nepice_settings" / (sanitize_path(app_id) or "default")
    config_dir.mkdir(parents=True, exist_ok=True)
    config_path = config_dir / file_name

    epicid, productuserid = _read_preserved_ids(config_path)
    settings = NemirtingasSettings(
        username=name,
        language="en",
        appid=app_id,
        log_level="Info",
        epicid=epicid,
        productuserid=productuserid,
    )
    data = msgspec.json.format(msgspec.json.encode(settings), indent=2)

    with open(config_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())

    return NemirtingasConfig(
        dir=config_dir, path=config_path, sha1=hashlib.sha1(data).hexdigest()
    )


def create_gamesave(name: str, handler: Handler, paths: AppPaths) -> Path:
    """
    Create the save tree of profile ``name`` for ``handler`` on first use.

    :return: The ``saves/<uid>`` directory.
    """
    path_gamesave = profile_dir(name, paths) / "saves" / handler.uid
    if path_gamesave.exists():
        logger.debug(f"{name} already has save for {handler.uid}, continuing...")
        return path_gamesave
    logger.info(f"Creating game save {handler.uid} for {name}")

    if handler.win_unique_appdata:
        for sub in ("Local", "LocalLow", "Roaming"):
            (path_gamesave / "_AppData" / sub).mkdir(parents=True, exist_ok=True)
    if handler.win_unique_documents:
        (path_gamesave / "_Documents").mkdir(parents=True, exist_ok=True)
    if handler.linux_unique_localshare:
        (path_gamesave / "_share").mkdir(parents=True, exist_ok=True)
    if handler.linux_unique_config:
        (path_gamesave / "_config").mkdir(parents=True, exist_ok=True)

    for unique in handler.game_unique_paths:
        # Paths with a dot are taken to be files provided by copy_to_profilesave
        if not unique or "." in unique:
            continue
        (path_gamesave / unique).mkdir(parents=True, exist_ok=True)

    path_gamesave.mkdir(parents=True, exist_ok=True)
    copy_save_src = handler.handler_dir / "copy_to_profilesave"
    if copy_save_src.is_dir():
        logger.info(f"{handler.uid} handler has built-in save data, copying...")
        copy_dir_recursive(copy_save_src, path_gamesave)

    return path_gamesave


def scan_profiles(paths: AppPaths, include_guest: bool) -> list[str]:
    """
    List saved profiles in alphabetical order.

    :param include_guest: Prepend the synthetic "Guest" entry used by profile pickers.
    """
    profiles: list[str] = []
    if paths.profiles_folder.is_dir():
        profiles = sorted(
            entry.name
            for entry in paths.profiles_folder.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        )
    if include_guest:
        profiles.insert(0, "Guest")
    return profiles


def remove_guest_profiles(paths: AppPaths) -> None:
    """Delete every hidden (guest) profile directory."""
    if not paths.profiles_folder.is_dir():
        return
    for entry in paths.profiles_folder.iterdir():
        if entry.is_dir() and entry.name.startswith("."):
            logger.debug(f"Removing guest profile {entry.name}")
            rmtree(entry)
