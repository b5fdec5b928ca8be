import os
import shutil
import signal
import subprocess
from errno import EACCES
from pathlib import Path
from stat import S_IRWXG, S_IRWXO, S_IRWXU
from typing import IO, Any, Callable

import vdf  # type: ignore
from loguru import logger


def sanitize_path(path: str) -> str:
    """
    Normalize a relative path taken from a handler document.

    Backslashes become forward slashes, and empty, ``.`` and ``..`` components
    are dropped, so the result can never climb out of the directory it is joined
    onto.

    :param path: Raw path string.
    :return: Traversal-safe relative path, possibly empty.
    """
    parts = path.replace("\\", "/").split("/")
    return "/".join(part for part in parts if part not in ("", ".", ".."))


def attempt_chmod(
    func: Callable[[str], Any], path: str, excinfo: BaseException
) -> None:
    """
    ``onexc`` callback for :func:`shutil.rmtree` that retries a removal once after
    making the path writable. Anything else is re-raised.
    """
    if (
        isinstance(excinfo, OSError)
        and func in (os.rmdir, os.remove, os.unlink)
        and excinfo.errno == EACCES
    ):
        os.chmod(path, S_IRWXU | S_IRWXG | S_IRWXO)  # 0777
        func(path)
        return
    raise excinfo


def rmtree(path: str | Path) -> None:
    """Remove a directory tree if it exists, fixing read-only entries on the way.

    :param path: Directory to delete. Missing paths are ignored.
    :raises OSError: If the tree could not be removed.
    """
    path = Path(path)
    if path.is_symlink() or path.is_file():
        path.unlink()
        return
    if not path.exists():
        return
    shutil.rmtree(path, onexc=attempt_chmod)


def remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree at ``path`` if anything is there."""
    if path.is_symlink() or path.is_file():
        path.unlink()
    elif path.is_dir():
        rmtree(path)


def copy_dir_recursive(src: Path, dest: Path) -> None:
    """
    Copy ``src`` into ``dest`` with overwrite.

    Existing files or symlinks at a destination are unlinked first so that a
    symlink into the canonical install is replaced rather than written through.
    """
    for root, _dirs, files in os.walk(src):
        target_dir = dest / Path(root).relative_to(src)
        if target_dir.is_symlink() or (
            target_dir.exists() and not target_dir.is_dir()
        ):
            target_dir.unlink()
        target_dir.mkdir(parents=True, exist_ok=True)
        for name in files:
            target = target_dir / name
            if target.is_symlink() or target.exists():
                remove_path(target)
            shutil.copy2(Path(root) / name, target)


def link_or_copy(src: str, dst: str) -> str:
    """
    ``copy_function`` for :func:`shutil.copytree` that hard-links files and falls
    back to a symlink when hard links are not possible, e.g. across devices.
    """
    try:
        os.link(src, dst)
    except OSError:
        os.symlink(os.path.realpath(src), dst)
    return dst


def is_program_available(program: str) -> bool:
    """Return True if ``program --version`` can be run successfully."""
    try:
        result = subprocess.run(
            [program, "--version"],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            check=False,
        )
    except OSError:
        return False
    return result.returncode == 0


def launch_process(
    args: list[str], cwd: str | Path, env: dict[str, str]
) -> subprocess.Popen[str]:
    """
    Start ``args`` in its own session so the whole process group can be signalled
    later. Output is merged into a single text pipe for forwarding.
    """
    return subprocess.Popen(
        args,
        cwd=cwd,
        env=env,
        start_new_session=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors="replace",
    )


def terminate_process_group(pid: int) -> None:
    """Send SIGTERM to the process group led by ``pid``, ignoring vanished groups."""
    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        pass
    except PermissionError as e:
        logger.warning(f"Not allowed to terminate process group {pid}: {e}")


def find_steam_game(steam_folder: Path | str, appid: str) -> Path | None:
    """
    Locate an installed Steam app.

    Given a steam installation path, read libraryfolders.vdf to find the library
    that holds ``appid`` and then its ``appmanifest_<appid>.acf`` to get the
    install directory name.

    :param steam_folder: Path to steam installation
    :param appid: Steam app id
    :return: Game directory if found, None otherwise
    """

    def __load_library(f: IO[str]) -> str:
        data = vdf.load(f)
        library_folders = data.get("libraryfolders", None)
        if not library_folders:
            return ""
        for _, folder in library_folders.items():
            if appid in folder.get("apps", {}):
                return folder.get("path", "")
        return ""

    steam_folder = Path(steam_folder)
    library_path = ""
    for library_file in ("config/libraryfolders.vdf", "steamapps/libraryfolders.vdf"):
        if (steam_folder / library_file).exists():
            logger.debug(f"Attempting to get app {appid} path from {library_file}")
            with open(steam_folder / library_file, "r") as f:
                library_path = __load_library(f)
            break
    else:
        logger.warning("Failed retrieving library path from libraryfolders.vdf")
        return None

    if not library_path:
        return None

    manifest = Path(library_path) / "steamapps" / f"appmanifest_{appid}.acf"
    if not manifest.exists():
        logger.warning(f"App manifest not found: {manifest}")
        return None
    with open(manifest, "r") as f:
        installdir = vdf.load(f).get("AppState", {}).get("installdir", "")
    if not installdir:
        return None
    return Path(library_path) / "steamapps" / "common" / installdir
