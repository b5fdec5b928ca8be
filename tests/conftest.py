import json
import os
from pathlib import Path
from typing import Any, Callable, Generator, Union

import pytest
from PySide6.QtCore import QCoreApplication
from PySide6.QtWidgets import QApplication

from partylaunch.models.handler import HANDLER_DOCUMENT
from partylaunch.utils.app_info import AppPaths

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")


@pytest.fixture(scope="function")
def qapp() -> Generator[Union[QApplication, QCoreApplication], None, None]:
    """Create a QApplication instance for Qt tests."""
    app = QApplication.instance()
    if app is None:
        app = QApplication([])
    yield app


@pytest.fixture
def paths(tmp_path: Path) -> AppPaths:
    """A self-contained directory layout below the test's temporary directory."""
    paths = AppPaths.for_root(tmp_path)
    paths.ensure_dirs()
    return paths


@pytest.fixture
def write_handler(paths: AppPaths) -> Callable[..., Path]:
    """
    Write ``handlers/<uid>/handler.json`` from flat document keys and return its
    path.
    """

    def _write(uid: str = "TestGame", **keys: Any) -> Path:
        handler_dir = paths.handlers_folder / (uid or "unnamed")
        handler_dir.mkdir(parents=True, exist_ok=True)
        document = handler_dir / HANDLER_DOCUMENT
        document.write_text(json.dumps({"handler.uid": uid, **keys}))
        return document

    return _write
