import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from contextlib import ExitStack
from pathlib import Path
from types import FrameType
from typing import IO, Callable, assert_never

import msgspec
import psutil
from loguru import logger

from partylaunch.controllers.handler_controller import HandlerController
from partylaunch.models.devices import DeviceInfo, DeviceType
from partylaunch.models.game import ExecutableGame, Game, HandlerGame, game_id
from partylaunch.models.handler import Handler, Runtime
from partylaunch.models.instance import Instance
from partylaunch.models.settings import LaunchSettings
from partylaunch.utils.app_info import AppPaths
from partylaunch.utils.exception import PreconditionError, SpawnError
from partylaunch.utils.generic import (
    is_program_available,
    launch_process,
    remove_path,
    terminate_process_group,
)
from partylaunch.utils.kwin import KWinScript, select_layout_script
from partylaunch.utils.lock import ProfileLock
from partylaunch.utils.profiles import (
    NEMIRTINGAS_FILE_NAME,
    NemirtingasConfig,
    create_gamesave,
    create_profile,
    ensure_nemirtingas_config,
    profile_dir,
    remove_guest_profiles,
)
from partylaunch.utils.proton import ProtonEnvironment, resolve_proton_environment
from partylaunch.utils.symlink import (
    create_symlink_tree,
    prepare_working_tree,
    symlink_tree_path,
)

STAGGER_SECONDS = 6
POLL_INTERVAL = 0.25
WINESERVER_TIMEOUT = 30
GAMESCOPE_DUP_BUFFER_WARNING = (
    "[Warn]  xwm: got the same buffer committed twice, ignoring."
)

# Messages bound with launch_warning=True are also written to launch_warnings.txt
launch_warning = logger.bind(launch_warning=True)

ProcessLauncher = Callable[[list[str], Path, dict[str, str]], "subprocess.Popen[str]"]


class LaunchTarget(msgspec.Struct, frozen=True):
    """Where and how the game binary is started."""

    game_dir: Path
    exec_path: str
    win: bool
    runtime: str = ""


class LaunchSession:
    """
    Processes and locks owned by one launch.

    Shared between the launch worker and the termination signal handler. All
    access goes through a re-entrant lock because the handler can interrupt
    the main thread while it holds the lock.
    """

    def __init__(self) -> None:
        self._guard = threading.RLock()
        self._pids: list[int] = []
        self._locks: list[ProfileLock] = []
        self.cancelled = threading.Event()

    @property
    def pids(self) -> list[int]:
        with self._guard:
            return list(self._pids)

    def track_pid(self, pid: int) -> None:
        with self._guard:
            self._pids.append(pid)

    def untrack_pid(self, pid: int) -> None:
        """Forget a child that has exited so teardown does not signal a reused pid."""
        with self._guard:
            if pid in self._pids:
                self._pids.remove(pid)

    def add_lock(self, lock: ProfileLock) -> None:
        with self._guard:
            self._locks.append(lock)

    def terminate_all(self) -> None:
        for pid in self.pids:
            terminate_process_group(pid)

    def release_locks(self) -> None:
        with self._guard:
            locks, self._locks = self._locks, []
        for lock in locks:
            lock.release()

    def cancel(self) -> None:
        """Stop every process group, drop every lock and wake the supervisor."""
        self.terminate_all()
        self.release_locks()
        self.cancelled.set()


_active_sessions: list[LaunchSession] = []
_sessions_guard = threading.RLock()
_signal_handlers_installed = False
# Set by a signal that arrives before any session is registered
_pending_cancel = threading.Event()


def register_session(session: LaunchSession) -> None:
    """
    Make ``session`` reachable from the termination handler. A termination
    signal received while no session was registered cancels it at once.
    """
    with _sessions_guard:
        _active_sessions.append(session)
        pending = _pending_cancel.is_set()
        _pending_cancel.clear()
    if pending:
        logger.warning("Termination requested before launch, cancelling")
        session.cancel()


def unregister_session(session: LaunchSession) -> None:
    with _sessions_guard:
        if session in _active_sessions:
            _active_sessions.remove(session)


def _handle_termination(signum: int, frame: FrameType | None) -> None:
    logger.warning(f"Received signal {signum}, stopping running instances")
    with _sessions_guard:
        sessions = list(_active_sessions)
        if not sessions:
            _pending_cancel.set()
    for session in sessions:
        session.cancel()


def install_signal_handlers() -> None:
    """
    Install the SIGTERM/SIGINT cancellation handler.

    Only the first call has an effect. Must be called from the main thread.
    """
    global _signal_handlers_installed
    if _signal_handlers_installed:
        return
    signal.signal(signal.SIGTERM, _handle_termination)
    signal.signal(signal.SIGINT, _handle_termination)
    _signal_handlers_installed = True


def is_gamescope_noise(line: str) -> bool:
    trimmed = line.strip()
    return trimmed.startswith("[gamescope") and trimmed.endswith(
        GAMESCOPE_DUP_BUFFER_WARNING
    )


def forward_child_output(stream: IO[str], label: str) -> threading.Thread:
    """Log the output of a child line by line from a daemon thread."""

    def _pump() -> None:
        try:
            for line in stream:
                if is_gamescope_noise(line):
                    continue
                logger.info(f"[{label}] {line.rstrip()}")
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to read output of {label}: {e}")

    thread = threading.Thread(target=_pump, name=f"output-{label}", daemon=True)
    thread.start()
    return thread


def instance_cpu_cores(index: int, total: int, cpu_count: int) -> list[int]:
    """
    Round-robin share of ``cpu_count`` logical cores for instance ``index``.

    The first ``cpu_count % total`` instances get one extra core. Returns an
    empty list when pinning would not help (single instance or too few cores).
    """
    if total <= 1 or cpu_count < total:
        return []
    return list(range(index, cpu_count, total))


def apply_instance_cpu_affinity(pid: int, index: int, total: int) -> None:
    cores = instance_cpu_cores(index, total, os.cpu_count() or 0)
    if not cores:
        if total > 1:
            launch_warning.warning(
                f"Not enough CPU cores for {total} instances; leaving instance {index + 1} unpinned"
            )
        return
    try:
        psutil.Process(pid).cpu_affinity(cores)
    except psutil.Error as e:
        launch_warning.warning(f"Failed to set CPU affinity for instance {index + 1}: {e}")
        return
    logger.info(f"Bound instance {index + 1}/{total} (PID {pid}) to CPU cores {cores}")


def promote_instance_priority(pid: int, index: int, total: int) -> None:
    try:
        psutil.Process(pid).nice(-5)
    except psutil.Error as e:
        logger.warning(f"Unable to boost priority for instance {index + 1} (PID {pid}): {e}")
        return
    logger.info(f"Elevated scheduling priority for instance {index + 1}/{total} (PID {pid})")


def reset_nemirtingas_session_state(nepice_dir: Path) -> None:
    """Clear cached EOS emulator state except its logs, and recreate Commands/."""
    appdata = nepice_dir / "appdata"
    if not appdata.is_dir():
        return
    for entry in appdata.iterdir():
        if entry.name == "Logs":
            continue
        try:
            remove_path(entry)
        except OSError as e:
            logger.warning(f"Failed to remove stale Nemirtingas appdata {entry}: {e}")
    (appdata / "Commands").mkdir(exist_ok=True)


def log_handler_resource_state(handler: Handler, game_dir: Path) -> None:
    """Log where the handler expects its emulator files and warn about gaps."""
    logger.info(
        f"Handler {handler.uid} uses executable {game_dir / handler.exec_path}"
    )

    if handler.path_nemirtingas:
        parent = (game_dir / handler.path_nemirtingas).parent
        if not parent.is_dir():
            launch_warning.warning(
                f"Nemirtingas directory {parent} is missing. "
                "Ensure the handler copied patched EOSSDK files there."
            )
        else:
            # EOSSDK libraries may sit next to the config or further up
            search_dir = parent
            found: list[Path] = []
            while not found and search_dir.is_relative_to(game_dir):
                found = [
                    entry
                    for entry in search_dir.iterdir()
                    if entry.is_file() and "eossdk" in entry.name.lower()
                ]
                if search_dir == game_dir:
                    break
                search_dir = search_dir.parent
            if not found:
                launch_warning.warning(
                    f"No EOSSDK files were found near {parent}. "
                    "Nemirtingas may fail to initialize."
                )
            for path in found:
                logger.debug(f"Found EOS-related file for Nemirtingas: {path}")

    if handler.path_goldberg:
        steam_settings = game_dir / handler.path_goldberg / "steam_settings"
        if not steam_settings.is_dir():
            launch_warning.warning(
                f"Goldberg path {steam_settings.parent} lacks a steam_settings directory. "
                "Multiplayer emulation will likely fail."
            )
            return
        for file_name in ("steam_appid.txt", "configs.user.ini", "steam_interfaces.txt"):
            if not (steam_settings / file_name).is_file():
                launch_warning.warning(f"steam_settings at {steam_settings} is missing {file_name}")


class LaunchController:
    """
    Starts one game as several isolated instances and supervises them.

    :meth:`launch` runs the whole session: it provisions profiles, locks every
    (game, profile) pair, spawns each instance through gamescope with a short
    stagger, waits for them to exit and tears everything down again. It blocks
    and is meant to run on a worker thread (see ``LaunchWorker``).
    """

    def __init__(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        handlers: HandlerController | None = None,
        use_bwrap: bool | None = None,
        popen: ProcessLauncher = launch_process,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.paths = paths
        self.settings = settings
        self.handlers = handlers or HandlerController(paths, settings)
        self.use_bwrap = use_bwrap
        self.popen = popen
        self.sleep = sleep
        self.session: LaunchSession | None = None

    def launch(
        self, game: Game, instances: list[Instance], devices: list[DeviceInfo]
    ) -> None:
        """
        Run a launch session to completion.

        :raises PartyLaunchError: If a precondition fails or an instance cannot
            be spawned. Spawned instances are still terminated.
        :raises OSError: If the profile or game trees cannot be prepared.
        """
        session = LaunchSession()
        self.session = session
        gid = game_id(game)

        kwin = KWinScript()
        with ExitStack() as stack:
            register_session(session)
            stack.callback(unregister_session, session)
            if threading.current_thread() is threading.main_thread():
                install_signal_handlers()

            match game:
                case HandlerGame(handler=handler):
                    try:
                        self._pre_provision(handler, instances)
                    except Exception:
                        self._purge_guest_profiles()
                        raise
                case ExecutableGame():
                    pass
                case _:
                    assert_never(game)
            if session.cancelled.is_set():
                logger.warning("Launch cancelled before any instance was started")
                self._purge_guest_profiles()
                return

            for instance in instances:
                lock = stack.enter_context(
                    ProfileLock.acquire(gid, instance.profile_name, self.paths)
                )
                session.add_lock(lock)
            stack.callback(self._teardown, session, kwin)
            if session.cancelled.is_set():
                logger.warning("Launch cancelled before any instance was started")
                return

            target = self.resolve_launch_target(game)
            if isinstance(game, HandlerGame):
                log_handler_resource_state(game.handler, target.game_dir)

            use_bwrap = (
                self.use_bwrap
                if self.use_bwrap is not None
                else is_program_available("bwrap")
            )
            logger.info(
                f"Launching {len(instances)} instance(s) of {gid} "
                f"({'bwrap' if use_bwrap else 'private working trees'})"
            )

            if self.settings.enable_kwin_script:
                kwin.load(
                    select_layout_script(
                        self.paths.res_root,
                        len(instances),
                        self.settings.vertical_two_player,
                    )
                )

            proton_env = self._resolve_proton() if target.win else None
            drained: set[Path] = set()
            children: list[tuple[Instance, subprocess.Popen[str]]] = []

            for i, instance in enumerate(instances):
                if session.cancelled.is_set():
                    break
                child = self._spawn_instance(
                    i,
                    instance,
                    game,
                    gid,
                    target,
                    devices,
                    use_bwrap,
                    proton_env,
                    drained,
                )
                session.track_pid(child.pid)
                children.append((instance, child))
                apply_instance_cpu_affinity(child.pid, i, len(instances))
                promote_instance_priority(child.pid, i, len(instances))
                if child.stdout is not None:
                    forward_child_output(child.stdout, f"{i + 1}:{instance.name}")

                if i < len(instances) - 1:
                    self.sleep(STAGGER_SECONDS)

            self._supervise(session, children)

    def _pre_provision(self, handler: Handler, instances: list[Instance]) -> None:
        for instance in instances:
            create_profile(instance.profile_name, self.paths)
            create_gamesave(instance.profile_name, handler, self.paths)
        if handler.symlink_dir and not symlink_tree_path(handler, self.paths).exists():
            create_symlink_tree(
                handler, self.handlers.resolve_game_root(handler), self.paths
            )

    def resolve_launch_target(self, game: Game) -> LaunchTarget:
        """
        Work out the game directory, executable and wrapper for ``game``.

        :raises PreconditionError: If the executable or the runtime is missing.
        """
        match game:
            case ExecutableGame(path=path):
                executable = Path(path)
                game_dir = executable.parent
                exec_path = executable.name
                win = executable.suffix.lower() == ".exe"
                flavor = Runtime.NONE
            case HandlerGame(handler=handler):
                if handler.symlink_dir:
                    game_dir = symlink_tree_path(handler, self.paths)
                else:
                    game_dir = self.handlers.resolve_game_root(handler)
                exec_path = handler.exec_path
                win = handler.win
                flavor = handler.runtime
            case _:
                assert_never(game)

        if not exec_path or not (game_dir / exec_path).exists():
            raise PreconditionError(f"Executable not found: {game_dir}/{exec_path}")

        return LaunchTarget(
            game_dir=game_dir,
            exec_path=exec_path,
            win=win,
            runtime=self._runtime_wrapper(win, flavor),
        )

    def _runtime_wrapper(self, win: bool, flavor: Runtime) -> str:
        if win:
            bundled = self.paths.res_root / "umu-run"
            if bundled.is_file():
                return str(bundled)
            found = shutil.which("umu-run")
            if found is None:
                raise PreconditionError("umu-run not found")
            return found

        steam = self.paths.steam_root
        match flavor:
            case Runtime.SCOUT:
                scout = steam / "ubuntu12_32" / "steam-runtime" / "run.sh"
                if not scout.exists():
                    raise PreconditionError("Steam Scout Runtime not found")
                return str(scout)
            case Runtime.SOLDIER:
                soldier = steam / "steamapps" / "common" / "SteamLinuxRuntime_soldier"
                if not soldier.exists():
                    raise PreconditionError("Steam Soldier Runtime not found")
                return str(soldier / "_v2-entry-point")
            case Runtime.NONE:
                return ""
            case _:
                assert_never(flavor)

    def _resolve_proton(self) -> ProtonEnvironment:
        proton_env = resolve_proton_environment(self.settings.proton_version, self.paths)
        if proton_env.root_path is None:
            launch_warning.warning(
                f"Unable to verify Proton build '{proton_env.display_name}' on disk; "
                "continuing with the provided hint."
            )
        else:
            logger.info(
                f"Using Proton build {proton_env.display_name} at {proton_env.root_path}"
            )
        return proton_env

    def proton_prefix(self, instance: Instance, index: int) -> Path:
        name = instance.profile_name
        if self.settings.proton_separate_pfxs:
            name = f"{name}_{index + 1}"
        return self.paths.pfx_folder / name

    def _drain_proton_prefix(self, prefix: Path, proton_env: ProtonEnvironment, runtime: str) -> None:
        """Stop wineservers left running in ``prefix`` by a previous session."""
        env = dict(os.environ)
        env.update(
            PROTON_VERB="run",
            PROTONPATH=proton_env.env_value,
            WINEPREFIX=str(prefix),
            STEAM_COMPAT_DATA_PATH=str(prefix),
        )
        for flag in ("-k", "-w"):
            try:
                result = subprocess.run(
                    [runtime, "wineserver", flag],
                    env=env,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    timeout=WINESERVER_TIMEOUT,
                    check=False,
                )
            except (OSError, subprocess.TimeoutExpired) as e:
                launch_warning.warning(
                    f"Failed to run wineserver {flag} while preparing prefix {prefix}: {e}"
                )
                return
            if result.returncode != 0:
                launch_warning.warning(
                    f"wineserver {flag} failed for prefix {prefix} (status {result.returncode})"
                )

    def build_environment(
        self,
        target: LaunchTarget,
        handler: Handler | None,
        prefix: Path | None,
        proton_env: ProtonEnvironment | None,
    ) -> dict[str, str]:
        env = dict(os.environ)
        env["SDL_JOYSTICK_HIDAPI"] = "0"
        env["ENABLE_GAMESCOPE_WSI"] = "0"
        env["PROTON_DISABLE_HIDRAW"] = "1"

        if self.settings.force_sdl and not target.win:
            arch = "i386-linux-gnu" if handler and handler.is32bit else "x86_64-linux-gnu"
            env["SDL_DYNAMIC_API"] = str(
                self.paths.steam_root
                / "ubuntu12_32/steam-runtime/usr/lib"
                / arch
                / "libSDL2-2.0.so.0"
            )

        if not target.win:
            return env

        if proton_env is not None:
            env["PROTON_VERB"] = "run"
            env["PROTONPATH"] = proton_env.env_value
        if self.settings.performance_enable_proton_fsr:
            env["WINE_FULLSCREEN_FSR"] = "1"
            env["WINE_FULLSCREEN_FSR_MODE"] = "1"
            env["WINE_FULLSCREEN_FSR_STRENGTH"] = "2"
        if handler is not None:
            if handler.dll_overrides:
                env["WINEDLLOVERRIDES"] = (
                    "".join(f"{dll}," for dll in handler.dll_overrides) + "=n,b"
                )
            if handler.gb_coldclient:
                env["PROTON_DISABLE_LSTEAMCLIENT"] = "1"
        if prefix is not None:
            env["WINEPREFIX"] = str(prefix)
            env["STEAM_COMPAT_DATA_PATH"] = str(prefix)
        return env

    def _gamescope_args(self, instance: Instance, devices: list[DeviceInfo]) -> list[str]:
        if self.settings.kbm_support:
            args = [str(self.paths.res_root / "gamescope-kbm")]
        else:
            args = ["gamescope"]
        args += ["-W", str(instance.width), "-H", str(instance.height)]
        if self.settings.gamescope_sdl_backend:
            args.append("--backend=sdl")
        if self.settings.performance_gamescope_rt:
            args.append("--rt")
        if self.settings.performance_limit_40fps:
            args += ["--fps-limit=40", "--secondary-no-focus-fps-limit=40"]

        if self.settings.kbm_support:
            owned = [devices[d] for d in instance.devices if 0 <= d < len(devices)]
            keyboards = [d for d in owned if d.device_type is DeviceType.KEYBOARD]
            mice = [d for d in owned if d.device_type is DeviceType.MOUSE]
            if keyboards:
                args.append("--backend-disable-keyboard")
            if mice:
                args.append("--backend-disable-mouse")
            held = [d.path for d in owned if d.device_type in (DeviceType.KEYBOARD, DeviceType.MOUSE)]
            if held:
                args += ["--libinput-hold-dev", ",".join(held)]
        return args

    def _bwrap_args(
        self,
        instance: Instance,
        handler: Handler | None,
        devices: list[DeviceInfo],
        instance_gamedir: Path,
        prefix: Path | None,
        nemirtingas_bind: tuple[Path, Path] | None,
    ) -> list[str]:
        args = ["bwrap", "--die-with-parent", "--dev-bind", "/", "/", "--bind", "/tmp", "/tmp"]
        runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
        if runtime_dir:
            args += ["--bind", runtime_dir, runtime_dir]

        # Hide devices that are disabled or belong to another player
        for d, device in enumerate(devices):
            if not device.enabled or (
                d not in instance.devices and device.device_type is DeviceType.GAMEPAD
            ):
                args += ["--bind", "/dev/null", device.path]

        if handler is None:
            return args

        def bind(src: Path, dst: Path) -> None:
            args.extend(["--bind", str(src), str(dst)])

        path_profile = profile_dir(instance.profile_name, self.paths)
        path_save = path_profile / "saves" / handler.uid
        if handler.path_goldberg:
            bind(path_profile / "steam", instance_gamedir / handler.path_goldberg / "goldbergsave")
        if nemirtingas_bind is not None:
            bind(*nemirtingas_bind)
        if handler.win:
            if prefix is None:
                raise PreconditionError("Missing Proton prefix for Windows handler")
            path_windata = prefix / "drive_c" / "users" / "steamuser"
            if handler.win_unique_appdata:
                bind(path_save / "_AppData", path_windata / "AppData")
            if handler.win_unique_documents:
                bind(path_save / "_Documents", path_windata / "Documents")
        else:
            if handler.linux_unique_localshare:
                bind(path_save / "_share", self.paths.local_share)
            if handler.linux_unique_config:
                bind(path_save / "_config", self.paths.config_home)
        for unique in handler.game_unique_paths:
            bind(path_save / unique, instance_gamedir / unique)
        return args

    @staticmethod
    def game_args(game: Game, instance: Instance, instance_gamedir: Path) -> list[str]:
        """Arguments for the game binary with handler placeholders substituted."""
        match game:
            case HandlerGame(handler=handler):
                substitutions = {
                    "$GAMEDIR": str(instance_gamedir),
                    "$PROFILE": instance.name,
                    "$WIDTH": str(instance.width),
                    "$HEIGHT": str(instance.height),
                    "$WIDTHXHEIGHT": f"{instance.width}x{instance.height}",
                }
                return [substitutions.get(arg, arg) for arg in handler.args]
            case ExecutableGame(args=args):
                return shlex.split(args)
            case _:
                assert_never(game)

    def build_command(
        self,
        game: Game,
        instance: Instance,
        target: LaunchTarget,
        devices: list[DeviceInfo],
        instance_gamedir: Path,
        use_bwrap: bool,
        prefix: Path | None = None,
        nemirtingas_bind: tuple[Path, Path] | None = None,
    ) -> list[str]:
        """
        Full command line of one instance.

        gamescope, then optionally bwrap with its binds, then the runtime
        wrapper, the executable and its arguments.
        """
        handler = game.handler if isinstance(game, HandlerGame) else None
        command = self._gamescope_args(instance, devices)
        command.append("--")
        if use_bwrap:
            command += self._bwrap_args(
                instance, handler, devices, instance_gamedir, prefix, nemirtingas_bind
            )
        if target.runtime:
            command.append(target.runtime)

        exec_path = instance_gamedir / target.exec_path
        command.append(str(exec_path.resolve() if target.win else exec_path))
        command += self.game_args(game, instance, instance_gamedir)
        return command

    def _spawn_instance(
        self,
        index: int,
        instance: Instance,
        game: Game,
        gid: str,
        target: LaunchTarget,
        devices: list[DeviceInfo],
        use_bwrap: bool,
        proton_env: ProtonEnvironment | None,
        drained: set[Path],
    ) -> "subprocess.Popen[str]":
        handler = game.handler if isinstance(game, HandlerGame) else None
        nemirtingas_rel = handler.path_nemirtingas if handler else ""

        nemirtingas: NemirtingasConfig = ensure_nemirtingas_config(
            instance.profile_name,
            gid,
            self.paths,
            file_name=Path(nemirtingas_rel).name or NEMIRTINGAS_FILE_NAME,
        )
        reset_nemirtingas_session_state(nemirtingas.dir)

        if use_bwrap or handler is None:
            instance_gamedir = target.game_dir
        else:
            instance_gamedir = prepare_working_tree(
                target.game_dir,
                instance.profile_name,
                self.paths,
                nemirtingas_rel,
                nemirtingas.dir,
            )

        nemirtingas_bind: tuple[Path, Path] | None = None
        if nemirtingas_rel:
            dest_dir = (instance_gamedir / nemirtingas_rel).parent
            logger.info(
                f"Instance {instance.name}: Nemirtingas config {nemirtingas.path} "
                f"(SHA1 {nemirtingas.sha1}) -> {dest_dir / nemirtingas.path.name}"
            )
            if use_bwrap:
                dest_dir.mkdir(parents=True, exist_ok=True)
                nemirtingas_bind = (nemirtingas.dir, dest_dir)

        prefix: Path | None = None
        if target.win:
            prefix = self.proton_prefix(instance, index)
            prefix.mkdir(parents=True, exist_ok=True)
            if proton_env is not None and proton_env.root_path is not None and prefix not in drained:
                drained.add(prefix)
                self._drain_proton_prefix(prefix, proton_env, target.runtime)

        env = self.build_environment(target, handler, prefix, proton_env)
        command = self.build_command(
            game,
            instance,
            target,
            devices,
            instance_gamedir,
            use_bwrap,
            prefix,
            nemirtingas_bind,
        )
        logger.debug(f"Instance {index + 1} command: {shlex.join(command)}")

        try:
            return self.popen(command, instance_gamedir, env)
        except OSError as e:
            raise SpawnError(f"Failed to start instance {instance.name}: {e}") from e

    def _supervise(
        self,
        session: LaunchSession,
        children: list[tuple[Instance, "subprocess.Popen[str]"]],
    ) -> None:
        """Wait until every child has exited or the session is cancelled."""
        pending = list(children)
        while pending:
            if session.cancelled.is_set():
                logger.warning("Launch cancelled")
                return
            running = []
            for instance, child in pending:
                status = child.poll()
                if status is None:
                    running.append((instance, child))
                    continue
                session.untrack_pid(child.pid)
                if status != 0:
                    launch_warning.warning(
                        f"Instance {instance.name} exited unexpectedly (status {status})"
                    )
                else:
                    logger.info(f"Instance {instance.name} exited")
            pending = running
            if pending:
                session.cancelled.wait(POLL_INTERVAL)

    def _teardown(self, session: LaunchSession, kwin: KWinScript) -> None:
        logger.info("Tearing down launch session")
        session.terminate_all()
        session.release_locks()
        unregister_session(session)
        kwin.unload()
        self._purge_guest_profiles()

    def _purge_guest_profiles(self) -> None:
        try:
            remove_guest_profiles(self.paths)
        except OSError as e:
            logger.error(f"Failed to remove guest profiles: {e}")
