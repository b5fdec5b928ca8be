"""Discovery of installed Proton builds and resolution of the PROTONPATH setting."""

from enum import Enum
from pathlib import Path

import msgspec
import vdf  # type: ignore
from loguru import logger

from partylaunch.utils.app_info import AppPaths

DEFAULT_PROTON = "GE-Proton"


class ProtonSource(Enum):
    COMPATIBILITY_TOOL = "Custom"
    STEAM_RUNTIME = "Steam"


class ProtonInstall(msgspec.Struct, frozen=True):
    id: str
    display_name: str
    root_path: Path
    source: ProtonSource

    def display_label(self) -> str:
        return f"{self.display_name} ({self.source.value})"

    def matches(self, value: str) -> bool:
        """Case-insensitive comparison of ``value`` with the id, name or path."""
        value = value.strip().casefold()
        if not value:
            return False
        return value in (
            self.id.casefold(),
            self.display_name.casefold(),
            str(self.root_path).casefold(),
        )


class ProtonEnvironment(msgspec.Struct, frozen=True):
    """
    Proton selection for a launch.

    ``env_value`` is exported as PROTONPATH; ``root_path`` is only known when
    the build exists on disk.
    """

    env_value: str
    display_name: str
    root_path: Path | None = None


def is_valid_proton_root(path: Path) -> bool:
    return (
        (path / "proton").exists()
        or (path / "dist" / "bin" / "wine").exists()
        or (path / "files" / "bin" / "wine").exists()
    )


def _compat_tool_display_name(path: Path) -> str | None:
    """Read the display name declared in a compatibilitytool.vdf, if any."""
    manifest = path / "compatibilitytool.vdf"
    if not manifest.is_file():
        return None
    try:
        data = vdf.loads(manifest.read_text())
        tools = {k.lower(): v for k, v in data.items()}["compatibilitytools"]
        tools = {k.lower(): v for k, v in tools.items()}["compat_tools"]
        tool_info = next(iter(tools.values()))
        return tool_info.get("display_name") or None
    except (KeyError, StopIteration, SyntaxError, AttributeError, OSError) as e:
        logger.debug(f"Ignoring unreadable {manifest}: {e}")
        return None


def _collect_proton_under(root: Path, source: ProtonSource) -> list[ProtonInstall]:
    if not root.is_dir():
        return []
    installs = []
    for entry in root.iterdir():
        if not entry.is_dir() or not is_valid_proton_root(entry):
            continue
        name = entry.name.strip()
        display_name = name
        if source is ProtonSource.COMPATIBILITY_TOOL:
            display_name = _compat_tool_display_name(entry) or name
        installs.append(
            ProtonInstall(
                id=name, display_name=display_name, root_path=entry, source=source
            )
        )
    return installs


def discover_proton_versions(paths: AppPaths) -> list[ProtonInstall]:
    """
    List Proton builds from ``compatibilitytools.d`` and ``steamapps/common``.

    Entries that resolve to the same directory are reported once. The result is
    sorted by display name.
    """
    installs = _collect_proton_under(
        paths.steam_root / "compatibilitytools.d", ProtonSource.COMPATIBILITY_TOOL
    ) + _collect_proton_under(
        paths.steam_root / "steamapps" / "common", ProtonSource.STEAM_RUNTIME
    )

    seen: set[Path] = set()
    unique = []
    for install in installs:
        canonical = install.root_path.resolve()
        if canonical in seen:
            continue
        seen.add(canonical)
        unique.append(install)

    return sorted(unique, key=lambda install: install.display_name)


def resolve_proton_environment(value: str, paths: AppPaths) -> ProtonEnvironment:
    """
    Turn the ``proton_version`` setting into a :class:`ProtonEnvironment`.

    An empty value selects an installed GE-Proton, or leaves the name for
    umu-run to download. An existing path is used directly (its directory if it
    points at a file). Anything else is matched against the discovered builds
    and passed through unchanged if nothing matches.
    """
    value = value.strip()
    installs = discover_proton_versions(paths)

    if not value:
        for install in installs:
            if install.id.startswith(DEFAULT_PROTON) or install.display_name.startswith(
                DEFAULT_PROTON
            ):
                return ProtonEnvironment(
                    env_value=str(install.root_path),
                    display_name=install.display_name,
                    root_path=install.root_path,
                )
        return ProtonEnvironment(env_value=DEFAULT_PROTON, display_name=DEFAULT_PROTON)

    candidate = Path(value)
    if candidate.exists():
        root = candidate if candidate.is_dir() else candidate.parent
        return ProtonEnvironment(env_value=str(root), display_name=value, root_path=root)

    for install in installs:
        if install.matches(value):
            return ProtonEnvironment(
                env_value=str(install.root_path),
                display_name=install.display_name,
                root_path=install.root_path,
            )

    return ProtonEnvironment(env_value=value, display_name=value)
