import shutil
from pathlib import Path
from zipfile import BadZipFile, ZipFile

from loguru import logger

from partylaunch.models.handler import HANDLER_DOCUMENT, Handler
from partylaunch.models.settings import LaunchSettings
from partylaunch.utils.app_info import AppPaths
from partylaunch.utils.exception import DescriptorError, PreconditionError
from partylaunch.utils.generic import find_steam_game, rmtree

HANDLER_ARCHIVE_SUFFIX = ".pdh"


class HandlerController:
    """
    Manages the installed handler library below ``handlers/``.

    Provides discovery, installation from ``.pdh`` archives and the lookup of the
    game install directory a handler runs from.
    """

    def __init__(self, paths: AppPaths, settings: LaunchSettings) -> None:
        self.paths = paths
        self.settings = settings

    def scan_handlers(self, fetch_header: bool = True) -> list[Handler]:
        """
        Parse every ``handlers/<dir>/handler.json``.

        Handlers that fail to parse are logged and skipped. The result is sorted
        case-insensitively by display name.
        """
        handlers: list[Handler] = []
        if not self.paths.handlers_folder.is_dir():
            return handlers

        for entry in self.paths.handlers_folder.iterdir():
            document = entry / HANDLER_DOCUMENT
            if not entry.is_dir() or not document.is_file():
                continue
            try:
                handlers.append(Handler.from_file(document, fetch_header=fetch_header))
            except DescriptorError as e:
                logger.warning(f"Skipping handler {entry.name}: {e}")

        handlers.sort(key=lambda handler: handler.display().lower())
        return handlers

    def get_handler(self, uid: str) -> Handler:
        document = self.paths.handlers_folder / uid / HANDLER_DOCUMENT
        if not document.is_file():
            raise DescriptorError(f"Handler {uid} is not installed")
        return Handler.from_file(document)

    @staticmethod
    def _validate_archive_path(archive_path: Path) -> bool:
        """Validate archive path exists and has the handler archive extension."""
        return archive_path.is_file() and archive_path.suffix == HANDLER_ARCHIVE_SUFFIX

    def install(self, archive_path: Path) -> Handler:
        """
        Install a handler archive into ``handlers/<uid>``.

        The archive is extracted to the temporary directory, its handler.json is
        parsed to get the uid, and the extracted tree replaces any handler already
        installed under that uid.

        :raises DescriptorError: If the archive or its handler.json is invalid.
        """
        if not self._validate_archive_path(archive_path):
            raise DescriptorError(
                f"Invalid handler archive {archive_path}: expected an existing "
                f"{HANDLER_ARCHIVE_SUFFIX} file"
            )

        dir_tmp = self.paths.tmp_folder
        rmtree(dir_tmp)
        dir_tmp.mkdir(parents=True)
        try:
            logger.info(f"Extracting handler archive {archive_path} to {dir_tmp}")
            try:
                with ZipFile(archive_path, "r") as archive:
                    archive.extractall(dir_tmp)
            except BadZipFile as e:
                raise DescriptorError(f"{archive_path} is not a zip archive") from e

            document = dir_tmp / HANDLER_DOCUMENT
            if not document.is_file():
                raise DescriptorError(f"{HANDLER_DOCUMENT} not found in archive")
            uid = Handler.from_file(document, fetch_header=False).uid

            destination = self.paths.handlers_folder / uid
            rmtree(destination)
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(dir_tmp, destination)
            logger.info(f"Installed handler {uid} to {destination}")
        finally:
            rmtree(dir_tmp)

        return Handler.from_file(destination / HANDLER_DOCUMENT)

    def resolve_game_root(self, handler: Handler) -> Path:
        """
        Directory the handler's game is installed in.

        Steam games are looked up in the Steam libraries first, then the root
        saved with :meth:`set_game_root` is used.

        :raises PreconditionError: If the install directory is unknown.
        """
        if handler.app_id:
            root = find_steam_game(self.paths.steam_root, handler.app_id)
            if root is not None and root.is_dir():
                return root

        saved = self.settings.game_roots.get(handler.uid)
        if saved and Path(saved).is_dir():
            return Path(saved)

        raise PreconditionError(
            f"Game directory for {handler.display()} not found; "
            f"set it with `partylaunch set-root {handler.uid} <path>`"
        )

    def set_game_root(self, uid: str, game_root: Path) -> None:
        self.settings.game_roots[uid] = str(game_root.resolve())
        self.settings.save(self.paths.settings_file)
