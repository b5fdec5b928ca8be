from pathlib import Path

from loguru import logger
from PySide6.QtDBus import QDBusConnection, QDBusInterface, QDBusMessage

KWIN_SERVICE = "org.kde.KWin"
KWIN_SCRIPTING_PATH = "/Scripting"
KWIN_SCRIPTING_INTERFACE = "org.kde.kwin.Scripting"
SCRIPT_NAME = "splitscreen"


def select_layout_script(res_root: Path, instance_count: int, vertical: bool) -> Path:
    """Pick the vertical two-player layout or the general one."""
    if instance_count == 2 and vertical:
        return res_root / "splitscreen_kwin_vertical.js"
    return res_root / "splitscreen_kwin.js"


class KWinScript:
    """
    The splitscreen layout script loaded into KWin over D-Bus.

    All calls are best-effort: failures are logged and reported through the
    return value, a missing compositor never stops a launch.
    """

    def __init__(self, name: str = SCRIPT_NAME) -> None:
        self.name = name
        self.loaded = False

    def _interface(self) -> QDBusInterface | None:
        interface = QDBusInterface(
            KWIN_SERVICE,
            KWIN_SCRIPTING_PATH,
            KWIN_SCRIPTING_INTERFACE,
            QDBusConnection.sessionBus(),
        )
        if not interface.isValid():
            logger.warning(
                f"KWin scripting interface unavailable: {interface.lastError().message()}"
            )
            return None
        return interface

    @staticmethod
    def _failed(reply: QDBusMessage, action: str) -> bool:
        if reply.type() == QDBusMessage.MessageType.ErrorMessage:
            logger.warning(f"KWin {action} failed: {reply.errorMessage()}")
            return True
        return False

    def load(self, script: Path) -> bool:
        """Load ``script`` under this script's name and start it."""
        logger.info(f"Loading KWin script {script}...")
        if not script.is_file():
            logger.warning(f"KWin script {script} doesn't exist")
            return False
        interface = self._interface()
        if interface is None:
            return False

        reply = interface.call("loadScript", str(script), self.name)
        if self._failed(reply, "loadScript"):
            return False
        logger.debug(f"Script loaded as id {reply.arguments()[0]}. Starting...")
        self.loaded = True

        if self._failed(interface.call("start"), "start"):
            return False
        logger.info("KWin script started.")
        return True

    def unload(self) -> None:
        if not self.loaded:
            return
        self.loaded = False
        logger.info("Unloading splitscreen script...")
        interface = self._interface()
        if interface is None:
            return
        if not self._failed(interface.call("unloadScript", self.name), "unloadScript"):
            logger.info("Script unloaded.")
