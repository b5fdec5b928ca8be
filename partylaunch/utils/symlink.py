import os
import shutil
import subprocess
from pathlib import Path

from loguru import logger

from partylaunch.models.handler import Handler
from partylaunch.utils.app_info import AppPaths
from partylaunch.utils.exception import HelperError
from partylaunch.utils.generic import (
    copy_dir_recursive,
    link_or_copy,
    remove_path,
    rmtree,
)

GOLDBERG_SAVE_CONFIG = "[user::saves]\nlocal_save_path=./goldbergsave"
GOLDBERG_SETTINGS_FILES = {
    "disable_overlay.txt": "",
    "auto_accept_invite.txt": "",
    "disable_overlay_warning_any.txt": "",
    "gc_token.txt": "1",
    "new_app_ticket.txt": "1",
}


def symlink_tree_path(handler: Handler, paths: AppPaths) -> Path:
    return paths.gamesyms_folder / handler.uid


def steam_api_library(handler: Handler) -> str:
    """File name of the Steam client library the handler's game loads."""
    if not handler.win:
        return "libsteam_api.so"
    return "steam_api.dll" if handler.is32bit else "steam_api64.dll"


def _write_file(path: Path, contents: str) -> None:
    # Never write through a link into the canonical install
    if path.is_symlink():
        path.unlink()
    path.write_text(contents)


def _mirror(src_root: Path, dest_root: Path, exclude: set[str]) -> None:
    """Recreate ``src_root`` below ``dest_root`` with symlinks for files."""
    for root, dirs, files in os.walk(src_root):
        rel_root = Path(root).relative_to(src_root)
        (dest_root / rel_root).mkdir(parents=True, exist_ok=True)

        walk_dirs = []
        for name in dirs:
            rel = (rel_root / name).as_posix()
            if rel in exclude:
                continue
            if (Path(root) / name).is_symlink():
                os.symlink(Path(root) / name, dest_root / rel)
            else:
                walk_dirs.append(name)
        dirs[:] = walk_dirs

        for name in files:
            rel = (rel_root / name).as_posix()
            if rel not in exclude:
                os.symlink(Path(root) / name, dest_root / rel)


def create_symlink_tree(handler: Handler, game_root: Path, paths: AppPaths) -> Path:
    """
    Build ``gamesyms/<uid>``, a symlinked mirror of the game install.

    The steps run in a fixed order, each taking precedence over the previous:

    1. mirror ``game_root``, leaving out ``never_symlink_paths`` and the
       Nemirtingas config
    2. replace ``copy_instead_paths`` with real copies
    3. delete ``remove_paths`` and the per-profile unique paths
    4. copy the handler's ``copy_to_symdir`` tree over the result

    If the handler uses the Goldberg emulator its steam_settings are provisioned
    last. An existing tree is reused as is.

    :return: The tree directory.
    :raises HelperError: If interface generation fails.
    """
    path_sym = symlink_tree_path(handler, paths)
    if path_sym.exists():
        logger.debug(f"Reusing symlink tree {path_sym}")
        return path_sym

    logger.info(f"Building symlink tree for {handler.uid} from {game_root}")
    path_sym.mkdir(parents=True)
    try:
        _populate_symlink_tree(handler, game_root, path_sym, paths)
    except (OSError, HelperError):
        # A partial tree would be reused by the next launch
        rmtree(path_sym)
        raise
    return path_sym


def _populate_symlink_tree(
    handler: Handler, game_root: Path, path_sym: Path, paths: AppPaths
) -> None:
    exclude = set(handler.never_symlink_paths)
    if handler.path_nemirtingas:
        exclude.add(handler.path_nemirtingas)
    _mirror(game_root, path_sym, exclude)

    for rel in handler.copy_instead_paths:
        src = game_root / rel
        dest = path_sym / rel
        if src.is_dir():
            logger.debug(f"Copying directory: {src}")
            copy_dir_recursive(src, dest)
        elif src.is_file():
            logger.debug(f"Copying file: {src}")
            if dest.is_symlink() or dest.exists():
                remove_path(dest)
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)

    for rel in [*handler.remove_paths, *handler.game_unique_paths]:
        remove_path(path_sym / rel)

    copy_to_symdir = handler.handler_dir / "copy_to_symdir"
    if copy_to_symdir.is_dir():
        copy_dir_recursive(copy_to_symdir, path_sym)

    if handler.path_goldberg:
        setup_goldberg(handler, game_root, path_sym, paths)


def setup_goldberg(
    handler: Handler, game_root: Path, path_sym: Path, paths: AppPaths
) -> None:
    """
    Provision the Goldberg Steam emulator beside the game's Steam library.

    Unless the handler ships its own cold client, the emulator binaries from the
    resource directory are copied in and ``generate_interfaces`` is run against
    the original library from ``game_root``.
    """
    dest = path_sym / handler.path_goldberg
    steam_settings = dest / "steam_settings"
    steam_settings.mkdir(parents=True, exist_ok=True)

    _write_file(steam_settings / "configs.user.ini", GOLDBERG_SAVE_CONFIG)
    if handler.app_id:
        _write_file(steam_settings / "steam_appid.txt", handler.app_id)
    (steam_settings / "mods").mkdir(exist_ok=True)
    _write_file(dest / "disable_lan_only.txt", "")
    for file_name, contents in GOLDBERG_SETTINGS_FILES.items():
        _write_file(steam_settings / file_name, contents)

    library = steam_api_library(handler)
    override = handler.handler_dir / library
    if override.is_file():
        remove_path(dest / library)
        shutil.copy2(override, dest / library)

    if handler.gb_coldclient:
        return

    arch = "x32" if handler.is32bit else "x64"
    platform_dir = "win" if handler.win else "linux"
    copy_dir_recursive(paths.res_root / "goldberg" / platform_dir / arch, dest)

    generate_interfaces = paths.res_root / "goldberg" / f"generate_interfaces_{arch}"
    steamdll = game_root / handler.path_goldberg / library
    logger.debug(f"Running {generate_interfaces} {steamdll}")
    try:
        result = subprocess.run(
            [str(generate_interfaces), str(steamdll)], cwd=steam_settings, check=False
        )
    except OSError as e:
        raise HelperError(f"Generate interfaces failed: {e}") from e
    if result.returncode != 0:
        raise HelperError(
            f"Generate interfaces failed with exit code {result.returncode}",
            returncode=result.returncode,
        )


def prepare_working_tree(
    game_dir: Path,
    profile: str,
    paths: AppPaths,
    nemirtingas_rel: str = "",
    nepice_dir: Path | None = None,
) -> Path:
    """
    Create the private ``run/<profile>/fs`` copy of ``game_dir``.

    Files are hard-linked where possible so untouched data is not duplicated.
    When ``nepice_dir`` is given, the directory holding the Nemirtingas config is
    replaced with a link to the profile's private settings.
    """
    fs_dir = paths.run_folder / profile / "fs"
    rmtree(fs_dir)
    fs_dir.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(game_dir, fs_dir, symlinks=True, copy_function=link_or_copy)

    if nemirtingas_rel and nepice_dir is not None:
        rel = Path(nemirtingas_rel)
        if rel.parent == Path("."):
            target = fs_dir / rel
            remove_path(target)
            target.symlink_to(nepice_dir / rel.name)
        else:
            config_parent = fs_dir / rel.parent
            remove_path(config_parent)
            config_parent.parent.mkdir(parents=True, exist_ok=True)
            config_parent.symlink_to(nepice_dir, target_is_directory=True)
        logger.debug(f"Linked Nemirtingas config of {profile} into {fs_dir}")

    return fs_dir
