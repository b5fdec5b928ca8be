import fcntl
import os
import threading
import time
from pathlib import Path
from types import TracebackType
from typing import IO, Self

import msgspec
import psutil
from loguru import logger

from partylaunch.utils.app_info import AppPaths
from partylaunch.utils.exception import LockError
from partylaunch.utils.generic import sanitize_path

# Substrings identifying processes a live launch keeps running.
LAUNCHER_HELPERS = ("gamescope", "gsc-kbm", "bwrap", "umu-run")
MAX_ACQUIRE_ATTEMPTS = 5


class LockInfo(msgspec.Struct):
    pid: int
    profile: str
    game: str
    started_at: int


def read_cmdline(pid: int) -> str:
    """Return the command line of ``pid`` joined by spaces, or "" if unavailable."""
    try:
        return " ".join(psutil.Process(pid).cmdline())
    except psutil.Error:
        return ""


def holder_is_live(info: LockInfo, profile: str) -> bool:
    """
    Best-effort check that the recorded lock holder still belongs to a launch of
    ``profile``: its command line must mention the profile and a launcher helper.
    A lock held by this process is always live.
    """
    if info.pid == os.getpid():
        return True
    cmdline = read_cmdline(info.pid)
    return profile in cmdline and any(
        helper in cmdline for helper in LAUNCHER_HELPERS
    )


def lock_path(game: str, profile: str, paths: AppPaths) -> Path:
    game_key = sanitize_path(game).replace("/", "_")
    return paths.locks_folder / f"{game_key}_{profile}.lock"


class ProfileLock:
    """
    Exclusive claim on a (game, profile) pair backed by a flock'ed file.

    The lock file holds a JSON :class:`LockInfo` record. Release is idempotent and
    is also performed on context-manager exit.

    Examples:
        >>> with ProfileLock.acquire("MyGame", "Alice", paths):
        ...     run_game()
    """

    def __init__(self, path: Path, file: IO[bytes], info: LockInfo) -> None:
        self.path = path
        self.info = info
        self._file: IO[bytes] | None = file
        self._guard = threading.Lock()

    @classmethod
    def acquire(cls, game: str, profile: str, paths: AppPaths) -> "ProfileLock":
        """
        Take the lock for ``profile`` in ``game``.

        A lock whose holder no longer looks like a running launch is deleted and
        acquisition is retried.

        :raises LockError: If a live holder owns the lock.
        """
        path = lock_path(game, profile, paths)
        path.parent.mkdir(parents=True, exist_ok=True)

        for _ in range(MAX_ACQUIRE_ATTEMPTS):
            file = open(path, "a+b")
            try:
                fcntl.flock(file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                info = _read_info(file)
                file.close()
                if info is not None and holder_is_live(info, profile):
                    logger.warning(
                        f"Instance {info.profile} already running with PID {info.pid}"
                    )
                    raise LockError(
                        f"Instance {profile} already running (pid {info.pid})",
                        holder_pid=info.pid,
                    )
                logger.warning(f"Removing stale lock {path}")
                path.unlink(missing_ok=True)
                continue

            if not _is_current_file(path, file):
                # Removed as stale by another process between open and flock
                file.close()
                continue

            info = LockInfo(
                pid=os.getpid(),
                profile=profile,
                game=sanitize_path(game),
                started_at=int(time.time()),
            )
            file.seek(0)
            file.truncate()
            file.write(msgspec.json.encode(info))
            file.flush()
            os.fsync(file.fileno())
            logger.debug(f"Acquired lock {path}")
            return cls(path, file, info)

        raise LockError(f"Could not acquire lock {path}")

    @property
    def held(self) -> bool:
        return self._file is not None

    def release(self) -> None:
        """Unlock and delete the lock file. Safe to call more than once."""
        with self._guard:
            file, self._file = self._file, None
        if file is None:
            return
        try:
            if _is_current_file(self.path, file):
                self.path.unlink(missing_ok=True)
            fcntl.flock(file.fileno(), fcntl.LOCK_UN)
        finally:
            file.close()
        logger.debug(f"Released lock {self.path}")

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.release()


def _read_info(file: IO[bytes]) -> LockInfo | None:
    file.seek(0)
    try:
        return msgspec.json.decode(file.read(), type=LockInfo)
    except msgspec.DecodeError:
        return None


def _is_current_file(path: Path, file: IO[bytes]) -> bool:
    try:
        return os.stat(path).st_ino == os.fstat(file.fileno()).st_ino
    except FileNotFoundError:
        return False
