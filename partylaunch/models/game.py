from pathlib import Path
from typing import TypeAlias, assert_never

import msgspec

from partylaunch.models.handler import Handler


class ExecutableGame(msgspec.Struct, frozen=True):
    """A bare native binary started with a raw argument string."""

    path: str
    args: str = ""


class HandlerGame(msgspec.Struct, frozen=True):
    """A game described by an installed handler."""

    handler: Handler


Game: TypeAlias = ExecutableGame | HandlerGame


def game_id(game: Game) -> str:
    """Identifier used to key locks: the handler uid or the executable file name."""
    match game:
        case HandlerGame(handler=handler):
            return handler.uid
        case ExecutableGame(path=path):
            return Path(path).name
        case _:
            assert_never(game)


def game_display(game: Game) -> str:
    match game:
        case HandlerGame(handler=handler):
            return handler.display()
        case ExecutableGame(path=path):
            return Path(path).name
        case _:
            assert_never(game)
