from loguru import logger
from PySide6.QtCore import QThread, Signal

from partylaunch.controllers.launch_controller import LaunchController
from partylaunch.models.devices import DeviceInfo
from partylaunch.models.game import Game, game_display
from partylaunch.models.instance import Instance


class LaunchWorker(QThread):
    """Runs a launch session off the interactive thread."""

    launch_finished = Signal()
    launch_failed = Signal(str)

    def __init__(
        self,
        controller: LaunchController,
        game: Game,
        instances: list[Instance],
        devices: list[DeviceInfo],
    ) -> None:
        super().__init__()
        self.controller = controller
        self.game = game
        self.instances = instances
        self.devices = devices
        self.error: Exception | None = None

    def run(self) -> None:
        try:
            self.controller.launch(self.game, self.instances, self.devices)
        except Exception as e:
            logger.error(f"Launch of {game_display(self.game)} failed: {e}")
            self.error = e
            self.launch_failed.emit(str(e))
            return
        logger.info(f"Launch of {game_display(self.game)} finished")
        self.launch_finished.emit()

    def cancel(self) -> None:
        """Request the running session to stop all its instances."""
        session = self.controller.session
        if session is not None:
            session.cancel()
