import json
import os
import signal
from pathlib import Path
from typing import Callable, Generator
from unittest.mock import MagicMock, patch

import pytest

from partylaunch.controllers import launch_controller
from partylaunch.controllers.launch_controller import (
    STAGGER_SECONDS,
    LaunchController,
    LaunchSession,
    LaunchTarget,
    _handle_termination,
    instance_cpu_cores,
    is_gamescope_noise,
    register_session,
    reset_nemirtingas_session_state,
    unregister_session,
)
from partylaunch.models.devices import DeviceInfo, DeviceType
from partylaunch.models.game import ExecutableGame, HandlerGame
from partylaunch.models.handler import Handler, Runtime
from partylaunch.models.instance import Instance
from partylaunch.models.settings import LaunchSettings
from partylaunch.utils.app_info import AppPaths
from partylaunch.utils.exception import LockError, PreconditionError, SpawnError
from partylaunch.utils.lock import ProfileLock
from partylaunch.utils.proton import ProtonEnvironment

FAKE_PID_BASE = 4_000_000


class FakeChild:
    def __init__(self, pid: int, on_poll: Callable[[], int | None]) -> None:
        self.pid = pid
        self.stdout = None
        self._on_poll = on_poll

    def poll(self) -> int | None:
        return self._on_poll()


class FakeSpawner:
    """Stands in for ``launch_process`` and records what would have been started."""

    def __init__(self, paths: AppPaths, on_poll: Callable[[], int | None] = lambda: 0) -> None:
        self.paths = paths
        self.on_poll = on_poll
        self.calls: list[tuple[list[str], Path, dict[str, str]]] = []
        self.locks_seen: list[int] = []
        self.fail_on: int | None = None

    def __call__(self, args: list[str], cwd: Path, env: dict[str, str]) -> FakeChild:
        if self.fail_on == len(self.calls):
            raise FileNotFoundError("gamescope")
        self.calls.append((args, cwd, env))
        self.locks_seen.append(len(list(self.paths.locks_folder.glob("*.lock"))))
        return FakeChild(FAKE_PID_BASE + len(self.calls), self.on_poll)


@pytest.fixture
def game_root(tmp_path: Path) -> Path:
    root = tmp_path / "install"
    (root / "data").mkdir(parents=True)
    (root / "game.sh").write_text("#!/bin/sh\n")
    (root / "data" / "assets.pak").write_text("assets")
    return root


@pytest.fixture
def native_handler(
    write_handler: Callable[..., Path], game_root: Path
) -> Handler:
    document = write_handler(
        "MyGame",
        **{
            "game.exec": "game.sh",
            "game.args": ["--dir", "$GAMEDIR", "--name", "$PROFILE", "$WIDTHXHEIGHT"],
            "profiles.unique_localshare": True,
        },
    )
    return Handler.from_file(document, fetch_header=False)


@pytest.fixture
def settings(game_root: Path) -> LaunchSettings:
    return LaunchSettings(enable_kwin_script=False, game_roots={"MyGame": str(game_root)})


@pytest.fixture
def two_players() -> list[Instance]:
    return [
        Instance(devices=[0], name="Alice", width=1920, height=540),
        Instance(devices=[1], name="Guest1", width=1920, height=540, guest=True),
    ]


@pytest.fixture
def devices() -> list[DeviceInfo]:
    return [DeviceInfo(path="/dev/input/event20"), DeviceInfo(path="/dev/input/event21")]


@pytest.fixture
def mock_terminate() -> Generator[MagicMock, None, None]:
    with patch(
        "partylaunch.controllers.launch_controller.terminate_process_group"
    ) as mock_terminate:
        yield mock_terminate


@pytest.fixture(autouse=True)
def no_signal_handlers() -> Generator[None, None, None]:
    with patch("partylaunch.controllers.launch_controller.install_signal_handlers"):
        yield


@pytest.fixture(autouse=True)
def no_pending_cancel() -> Generator[None, None, None]:
    launch_controller._pending_cancel.clear()
    yield
    launch_controller._pending_cancel.clear()


@pytest.fixture(autouse=True)
def no_scheduling_changes() -> Generator[None, None, None]:
    with (
        patch("partylaunch.controllers.launch_controller.apply_instance_cpu_affinity"),
        patch("partylaunch.controllers.launch_controller.promote_instance_priority"),
    ):
        yield


def _controller(
    paths: AppPaths, settings: LaunchSettings, spawner: FakeSpawner, sleeps: list[float]
) -> LaunchController:
    return LaunchController(
        paths, settings, use_bwrap=False, popen=spawner, sleep=sleeps.append
    )


class TestLaunch:
    def test_two_instance_native_launch(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        native_handler: Handler,
        two_players: list[Instance],
        devices: list[DeviceInfo],
        mock_terminate: MagicMock,
    ) -> None:
        spawner = FakeSpawner(paths)
        sleeps: list[float] = []

        _controller(paths, settings, spawner, sleeps).launch(
            HandlerGame(handler=native_handler), two_players, devices
        )

        fs_alice = paths.run_folder / "Alice" / "fs"
        fs_guest = paths.run_folder / ".Guest1" / "fs"
        assert (fs_alice / "game.sh").is_file()
        assert (fs_guest / "data" / "assets.pak").is_file()

        assert spawner.locks_seen == [2, 2]
        assert sleeps == [STAGGER_SECONDS]
        assert [cwd for _, cwd, _ in spawner.calls] == [fs_alice, fs_guest]

        alice_cmd = spawner.calls[0][0]
        assert alice_cmd[alice_cmd.index("--") + 1 :] == [
            str(fs_alice / "game.sh"),
            "--dir",
            str(fs_alice),
            "--name",
            "Alice",
            "1920x540",
        ]
        assert spawner.calls[1][2]["SDL_JOYSTICK_HIDAPI"] == "0"

        assert list(paths.locks_folder.iterdir()) == []
        assert [p.name for p in paths.profiles_folder.iterdir()] == ["Alice"]
        assert (paths.profiles_folder / "Alice" / "saves" / "MyGame" / "_share").is_dir()
        # Both children exited on their own, their pids may already be reused
        mock_terminate.assert_not_called()

    def test_live_lock_aborts_before_spawn(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        native_handler: Handler,
        two_players: list[Instance],
        devices: list[DeviceInfo],
        mock_terminate: MagicMock,
    ) -> None:
        spawner = FakeSpawner(paths)
        held = ProfileLock.acquire("MyGame", ".Guest1", paths)
        try:
            with patch(
                "partylaunch.utils.lock.read_cmdline",
                return_value="gamescope -- ./game.sh .Guest1",
            ):
                with pytest.raises(LockError):
                    _controller(paths, settings, spawner, []).launch(
                        HandlerGame(handler=native_handler), two_players, devices
                    )

            assert spawner.calls == []
            assert [p.name for p in paths.locks_folder.iterdir()] == [held.path.name]
        finally:
            held.release()

    def test_missing_executable_releases_locks(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        game_root: Path,
        two_players: list[Instance],
        devices: list[DeviceInfo],
        mock_terminate: MagicMock,
    ) -> None:
        spawner = FakeSpawner(paths)
        game = ExecutableGame(path=str(game_root / "missing.x86_64"))

        with pytest.raises(PreconditionError, match="Executable not found"):
            _controller(paths, settings, spawner, []).launch(game, two_players, devices)

        assert spawner.calls == []
        assert list(paths.locks_folder.iterdir()) == []

    def test_spawn_failure_tears_down_started_instances(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        native_handler: Handler,
        two_players: list[Instance],
        devices: list[DeviceInfo],
        mock_terminate: MagicMock,
    ) -> None:
        spawner = FakeSpawner(paths)
        spawner.fail_on = 1

        with pytest.raises(SpawnError, match="Guest1"):
            _controller(paths, settings, spawner, []).launch(
                HandlerGame(handler=native_handler), two_players, devices
            )

        mock_terminate.assert_called_once_with(FAKE_PID_BASE + 1)
        assert list(paths.locks_folder.iterdir()) == []
        assert not (paths.profiles_folder / ".Guest1").exists()

    def test_cancel_stops_supervision(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        native_handler: Handler,
        devices: list[DeviceInfo],
        mock_terminate: MagicMock,
    ) -> None:
        controller: LaunchController

        def cancel_on_poll() -> None:
            assert controller.session is not None
            controller.session.cancel()
            return None

        spawner = FakeSpawner(paths, on_poll=cancel_on_poll)
        controller = _controller(paths, settings, spawner, [])

        controller.launch(
            HandlerGame(handler=native_handler),
            [Instance(devices=[0], name="Alice", width=1280, height=800)],
            devices,
        )

        mock_terminate.assert_any_call(FAKE_PID_BASE + 1)
        assert list(paths.locks_folder.iterdir()) == []

    def test_signal_before_launch_cancels_it(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        native_handler: Handler,
        two_players: list[Instance],
        devices: list[DeviceInfo],
        mock_terminate: MagicMock,
    ) -> None:
        """A termination signal received before the worker starts is not lost."""
        spawner = FakeSpawner(paths)
        previous = signal.signal(signal.SIGTERM, _handle_termination)
        try:
            os.kill(os.getpid(), signal.SIGTERM)
        finally:
            signal.signal(signal.SIGTERM, previous)

        _controller(paths, settings, spawner, []).launch(
            HandlerGame(handler=native_handler), two_players, devices
        )

        assert spawner.calls == []
        assert list(paths.locks_folder.iterdir()) == []
        assert not (paths.profiles_folder / ".Guest1").exists()
        assert not launch_controller._pending_cancel.is_set()

    def test_signal_during_pre_provision_stops_launch(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        native_handler: Handler,
        two_players: list[Instance],
        devices: list[DeviceInfo],
        mock_terminate: MagicMock,
    ) -> None:
        spawner = FakeSpawner(paths)

        def interrupted(*args: object) -> None:
            _handle_termination(signal.SIGINT, None)

        with patch.object(LaunchController, "_pre_provision", side_effect=interrupted):
            _controller(paths, settings, spawner, []).launch(
                HandlerGame(handler=native_handler), two_players, devices
            )

        assert spawner.calls == []
        assert list(paths.locks_folder.iterdir()) == []
        assert not launch_controller._pending_cancel.is_set()

    def test_failed_pre_provision_removes_guest_profiles(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        native_handler: Handler,
        two_players: list[Instance],
        devices: list[DeviceInfo],
    ) -> None:
        spawner = FakeSpawner(paths)

        with patch(
            "partylaunch.controllers.launch_controller.create_gamesave",
            side_effect=[None, OSError("No space left on device")],
        ):
            with pytest.raises(OSError, match="No space left"):
                _controller(paths, settings, spawner, []).launch(
                    HandlerGame(handler=native_handler), two_players, devices
                )

        assert spawner.calls == []
        assert (paths.profiles_folder / "Alice").is_dir()
        assert not (paths.profiles_folder / ".Guest1").exists()

    def test_only_running_children_are_signalled(
        self,
        paths: AppPaths,
        settings: LaunchSettings,
        native_handler: Handler,
        two_players: list[Instance],
        devices: list[DeviceInfo],
        mock_terminate: MagicMock,
    ) -> None:
        controller: LaunchController
        statuses = iter([0, None])

        def first_exits_then_cancel() -> int | None:
            status = next(statuses, None)
            if status is None:
                assert controller.session is not None
                controller.session.cancelled.set()
            return status

        spawner = FakeSpawner(paths, on_poll=first_exits_then_cancel)
        controller = _controller(paths, settings, spawner, [])

        controller.launch(HandlerGame(handler=native_handler), two_players, devices)

        mock_terminate.assert_called_once_with(FAKE_PID_BASE + 2)

class TestTarget:
    def test_executable_game(self, paths: AppPaths, game_root: Path) -> None:
        controller = LaunchController(paths, LaunchSettings())

        target = controller.resolve_launch_target(
            ExecutableGame(path=str(game_root / "game.sh"))
        )

        assert target == LaunchTarget(game_dir=game_root, exec_path="game.sh", win=False)

    def test_symlinked_handler_uses_tree(self, paths: AppPaths) -> None:
        handler = Handler(uid="MyGame", symlink_dir=True, exec_path="game.sh")
        tree = paths.gamesyms_folder / "MyGame"
        tree.mkdir(parents=True)
        (tree / "game.sh").write_text("")

        target = LaunchController(paths, LaunchSettings()).resolve_launch_target(
            HandlerGame(handler=handler)
        )

        assert target.game_dir == tree

    def test_missing_scout_runtime(self, paths: AppPaths, game_root: Path) -> None:
        handler = Handler(uid="MyGame", exec_path="game.sh", runtime=Runtime.SCOUT)
        settings = LaunchSettings(game_roots={"MyGame": str(game_root)})

        with pytest.raises(PreconditionError, match="Scout"):
            LaunchController(paths, settings).resolve_launch_target(
                HandlerGame(handler=handler)
            )

    def test_soldier_runtime(self, paths: AppPaths, game_root: Path) -> None:
        soldier = paths.steam_root / "steamapps" / "common" / "SteamLinuxRuntime_soldier"
        soldier.mkdir(parents=True)
        handler = Handler(uid="MyGame", exec_path="game.sh", runtime=Runtime.SOLDIER)
        settings = LaunchSettings(game_roots={"MyGame": str(game_root)})

        target = LaunchController(paths, settings).resolve_launch_target(
            HandlerGame(handler=handler)
        )

        assert target.runtime == str(soldier / "_v2-entry-point")

    def test_missing_umu_run(self, paths: AppPaths, game_root: Path) -> None:
        (game_root / "game.exe").write_text("")

        with patch(
            "partylaunch.controllers.launch_controller.shutil.which", return_value=None
        ):
            with pytest.raises(PreconditionError, match="umu-run not found"):
                LaunchController(paths, LaunchSettings()).resolve_launch_target(
                    ExecutableGame(path=str(game_root / "game.exe"))
                )


class TestEnvironment:
    def test_windows_handler(self, paths: AppPaths, tmp_path: Path) -> None:
        handler = Handler(
            uid="MyGame", win=True, dll_overrides=["dinput8", "winmm"], gb_coldclient=True
        )
        target = LaunchTarget(
            game_dir=tmp_path, exec_path="game.exe", win=True, runtime="umu-run"
        )
        prefix = paths.pfx_folder / "Alice"
        settings = LaunchSettings(force_sdl=True, performance_enable_proton_fsr=True)

        env = LaunchController(paths, settings).build_environment(
            target, handler, prefix, ProtonEnvironment(env_value="GE-Proton", display_name="GE-Proton")
        )

        assert env["PROTON_VERB"] == "run"
        assert env["PROTONPATH"] == "GE-Proton"
        assert env["WINEDLLOVERRIDES"] == "dinput8,winmm,=n,b"
        assert env["PROTON_DISABLE_LSTEAMCLIENT"] == "1"
        assert env["WINEPREFIX"] == env["STEAM_COMPAT_DATA_PATH"] == str(prefix)
        assert env["WINE_FULLSCREEN_FSR"] == "1"
        assert env["PROTON_DISABLE_HIDRAW"] == "1"
        assert "SDL_DYNAMIC_API" not in env

    def test_native_forced_sdl(self, paths: AppPaths, tmp_path: Path) -> None:
        target = LaunchTarget(game_dir=tmp_path, exec_path="game", win=False)
        settings = LaunchSettings(force_sdl=True)

        env = LaunchController(paths, settings).build_environment(
            target, Handler(uid="MyGame", is32bit=True), None, None
        )

        assert "i386-linux-gnu" in env["SDL_DYNAMIC_API"]
        assert "WINEPREFIX" not in env

    def test_separate_prefixes(self, paths: AppPaths) -> None:
        alice = Instance(name="Alice")
        shared = LaunchController(paths, LaunchSettings())
        separate = LaunchController(paths, LaunchSettings(proton_separate_pfxs=True))

        assert shared.proton_prefix(alice, 1) == paths.pfx_folder / "Alice"
        assert separate.proton_prefix(alice, 1) == paths.pfx_folder / "Alice_2"


class TestCommand:
    def test_bwrap_command(
        self, paths: AppPaths, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("XDG_RUNTIME_DIR", raising=False)
        handler = Handler(
            uid="MyGame",
            exec_path="game",
            path_goldberg="bin",
            linux_unique_config=True,
            game_unique_paths=["saves"],
            args=["-name", "$PROFILE", "-w", "$WIDTH", "-h", "$HEIGHT"],
        )
        devices = [
            DeviceInfo(path="/dev/input/kbd", device_type=DeviceType.KEYBOARD),
            DeviceInfo(path="/dev/input/mouse", device_type=DeviceType.MOUSE),
            DeviceInfo(path="/dev/input/pad2"),
            DeviceInfo(path="/dev/input/pad3", enabled=False),
        ]
        instance = Instance(devices=[0, 1], name="Alice", width=960, height=540)
        target = LaunchTarget(game_dir=tmp_path, exec_path="game", win=False)
        settings = LaunchSettings(performance_gamescope_rt=True)
        nepice = (tmp_path / "nepice", tmp_path / "eos")

        command = LaunchController(paths, settings).build_command(
            HandlerGame(handler=handler),
            instance,
            target,
            devices,
            tmp_path,
            use_bwrap=True,
            nemirtingas_bind=nepice,
        )

        def pairs(flag: str) -> list[tuple[str, str]]:
            return [
                (command[i + 1], command[i + 2])
                for i, arg in enumerate(command)
                if arg == flag
            ]

        separator = command.index("--")
        gamescope = command[:separator]
        assert gamescope[0] == str(paths.res_root / "gamescope-kbm")
        assert gamescope[1:5] == ["-W", "960", "-H", "540"]
        assert "--rt" in gamescope
        assert "--backend-disable-keyboard" in gamescope
        assert "--backend-disable-mouse" in gamescope
        hold = gamescope[gamescope.index("--libinput-hold-dev") + 1]
        assert hold == "/dev/input/kbd,/dev/input/mouse"

        assert command[separator + 1 : separator + 3] == ["bwrap", "--die-with-parent"]
        save = paths.profiles_folder / "Alice" / "saves" / "MyGame"
        binds = pairs("--bind")
        assert ("/dev/null", "/dev/input/pad2") in binds
        assert ("/dev/null", "/dev/input/pad3") in binds
        assert ("/dev/null", "/dev/input/kbd") not in binds
        assert (
            str(paths.profiles_folder / "Alice" / "steam"),
            str(tmp_path / "bin" / "goldbergsave"),
        ) in binds
        assert (str(nepice[0]), str(nepice[1])) in binds
        assert (str(save / "_config"), str(paths.config_home)) in binds
        assert (str(save / "saves"), str(tmp_path / "saves")) in binds

        assert command[-7:] == [
            str(tmp_path / "game"), "-name", "Alice", "-w", "960", "-h", "540"
        ]

    def test_plain_gamescope_and_raw_args(self, paths: AppPaths, tmp_path: Path) -> None:
        settings = LaunchSettings(
            kbm_support=False, gamescope_sdl_backend=False, performance_limit_40fps=True
        )
        target = LaunchTarget(game_dir=tmp_path, exec_path="tool", win=False)

        command = LaunchController(paths, settings).build_command(
            ExecutableGame(path=str(tmp_path / "tool"), args="--mode 'split screen'"),
            Instance(devices=[0], name="Alice", width=1280, height=800),
            target,
            [DeviceInfo(path="/dev/input/event20")],
            tmp_path,
            use_bwrap=False,
        )

        assert command == [
            "gamescope",
            "-W",
            "1280",
            "-H",
            "800",
            "--fps-limit=40",
            "--secondary-no-focus-fps-limit=40",
            "--",
            str(tmp_path / "tool"),
            "--mode",
            "split screen",
        ]


@pytest.mark.parametrize(
    "index, total, cpu_count, expected",
    [
        (0, 2, 8, [0, 2, 4, 6]),
        (0, 3, 8, [0, 3, 6]),
        (2, 3, 8, [2, 5]),
        (0, 1, 8, []),
        (0, 4, 2, []),
    ],
)
def test_instance_cpu_cores(
    index: int, total: int, cpu_count: int, expected: list[int]
) -> None:
    assert instance_cpu_cores(index, total, cpu_count) == expected


def test_is_gamescope_noise() -> None:
    noise = "[gamescope] [Warn]  xwm: got the same buffer committed twice, ignoring."
    assert is_gamescope_noise(noise + "\n") is True
    assert is_gamescope_noise("[gamescope] [Info]  xwm: window mapped") is False
    assert is_gamescope_noise("game: got the same buffer committed twice, ignoring.") is False


def test_reset_nemirtingas_session_state(tmp_path: Path) -> None:
    appdata = tmp_path / "appdata"
    (appdata / "Logs").mkdir(parents=True)
    (appdata / "Logs" / "emu.log").write_text("log")
    (appdata / "Commands").mkdir()
    (appdata / "Commands" / "old").write_text("cmd")
    (appdata / "session.json").write_text(json.dumps({"token": "x"}))

    reset_nemirtingas_session_state(tmp_path)

    assert sorted(p.name for p in appdata.iterdir()) == ["Commands", "Logs"]
    assert list((appdata / "Commands").iterdir()) == []
    assert (appdata / "Logs" / "emu.log").exists()


def test_termination_signal_cancels_active_sessions(mock_terminate: MagicMock) -> None:
    session = LaunchSession()
    session.track_pid(FAKE_PID_BASE)
    lock = MagicMock()
    session.add_lock(lock)
    register_session(session)
    try:
        _handle_termination(signal.SIGTERM, None)
    finally:
        unregister_session(session)

    assert session.cancelled.is_set()
    mock_terminate.assert_called_once_with(FAKE_PID_BASE)
    lock.release.assert_called_once_with()


def test_session_registered_after_signal_is_cancelled(mock_terminate: MagicMock) -> None:
    _handle_termination(signal.SIGINT, None)
    assert launch_controller._pending_cancel.is_set()

    session = LaunchSession()
    register_session(session)
    try:
        assert session.cancelled.is_set()
        assert not launch_controller._pending_cancel.is_set()
    finally:
        unregister_session(session)


def test_untrack_pid() -> None:
    session = LaunchSession()
    session.track_pid(FAKE_PID_BASE)
    session.track_pid(FAKE_PID_BASE + 1)

    session.untrack_pid(FAKE_PID_BASE)
    session.untrack_pid(FAKE_PID_BASE)

    assert session.pids == [FAKE_PID_BASE + 1]
