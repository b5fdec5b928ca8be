class PartyLaunchError(Exception):
    """Base class for every error the launcher reports to its caller."""

    pass


class DescriptorError(PartyLaunchError):
    """
    Raised when a handler document or archive cannot be turned into a handler.

    Covers malformed JSON, wrongly typed fields, a missing or non-alphanumeric
    uid and archives without a handler.json.
    """

    pass


class PreconditionError(PartyLaunchError):
    """
    Raised when a launch cannot start: the executable or a required runtime is
    missing, or the game root of a handler is unknown.
    """

    pass


class LockError(PartyLaunchError):
    """
    Raised when a profile is already running in the same game.

    Attributes:
        holder_pid: pid recorded by the live lock holder.
    """

    def __init__(self, message: str, holder_pid: int | None = None) -> None:
        super().__init__(message)
        self.holder_pid = holder_pid


class ProfileError(PartyLaunchError):
    """Raised when profile data on disk cannot be preserved safely."""

    pass


class HelperError(PartyLaunchError):
    """
    Raised when an external helper program exits with a non-zero status.

    Attributes:
        returncode: exit status of the helper.
    """

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class SpawnError(PartyLaunchError):
    """Raised when a game instance process could not be created."""

    pass
