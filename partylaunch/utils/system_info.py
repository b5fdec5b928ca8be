import os
from functools import cache
from pathlib import Path

from loguru import logger
from PySide6.QtCore import QCoreApplication
from PySide6.QtGui import QGuiApplication

OS_RELEASE = Path("/etc/os-release")
DMI_PRODUCT_NAME = Path("/sys/devices/virtual/dmi/id/product_name")
STEAM_DECK_RESOLUTION = (1280, 800)
DEFAULT_RESOLUTION = (1920, 1080)
# Any of these means a Qt platform plugin can open a screen
DISPLAY_VARIABLES = ("WAYLAND_DISPLAY", "DISPLAY", "QT_QPA_PLATFORM")


def _read_lower(path: Path) -> str:
    try:
        return path.read_text().lower()
    except OSError:
        return ""


@cache
def is_steam_deck() -> bool:
    """
    Detect a Steam Deck host.

    Checks the STEAMDECK/SteamDeck environment variables, SteamOS in
    /etc/os-release and the Jupiter/Galileo DMI product names. The result is
    cached for the lifetime of the process.
    """
    if "STEAMDECK" in os.environ or "SteamDeck" in os.environ:
        return True

    os_release = _read_lower(OS_RELEASE)
    if "steamos" in os_release or "steam deck" in os_release:
        return True

    product_name = _read_lower(DMI_PRODUCT_NAME)
    return "jupiter" in product_name or "galileo" in product_name


def get_screen_resolution() -> tuple[int, int]:
    """
    Size of the primary screen in pixels.

    Uses the running QGuiApplication when there is one. Without a GUI the
    resolution falls back to the Steam Deck panel or 1920x1080.
    """
    if isinstance(QGuiApplication.instance(), QGuiApplication):
        screen = QGuiApplication.primaryScreen()
        if screen is not None:
            size = screen.size()
            logger.debug(f"Got screen resolution: {size.width()}x{size.height()}")
            return size.width(), size.height()

    logger.info("Failed to detect screen resolution, using fallback")
    return STEAM_DECK_RESOLUTION if is_steam_deck() else DEFAULT_RESOLUTION


def create_application() -> QCoreApplication:
    """
    Return the running Qt application, creating one if there is none.

    A QGuiApplication is created when a display is available so that
    :func:`get_screen_resolution` can read the primary screen. Without one a
    plain QCoreApplication is used.
    """
    app = QCoreApplication.instance()
    if app is not None:
        return app
    if any(os.environ.get(name) for name in DISPLAY_VARIABLES):
        return QGuiApplication([])
    logger.info("No display available, screen geometry cannot be queried")
    return QCoreApplication([])
