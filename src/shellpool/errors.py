from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .command import CommandResult


class ShellPoolError(Exception):
    """Base class for every error raised by the shell pool engine."""


class ProtocolViolationError(ShellPoolError):
    """A command wrote to stderr; only stdout is captured."""

    def __init__(self, command: str, data: str) -> None:
        super().__init__(
            f"cmd: {command} returned stderr: {data}. "
            "Only stdout is supported, redirect with { cmd; } 2>&1;"
        )
        self.command = command
        self.data = data


class CommandCancelledError(ShellPoolError):
    def __init__(self, command: str) -> None:
        super().__init__(f"cancelled: {command}")
        self.command = command


class ProcessFailureError(ShellPoolError):
    """The shell process could not be spawned, crashed or exited."""


class ElevationError(ShellPoolError):
    """Switching the shell to another user failed."""


class PasswordRequiredError(ElevationError):
    def __init__(self, user: str) -> None:
        super().__init__(f"root password required to change user to {user}")
        self.user = user


class NoSuchUserError(ElevationError):
    def __init__(self, user: str) -> None:
        super().__init__(f"user not found: {user}")
        self.user = user


class WrongPasswordError(ElevationError):
    def __init__(self) -> None:
        super().__init__("wrong password provided")


class LoginFailedError(ElevationError):
    def __init__(self, output: str) -> None:
        super().__init__(f"login failed: {output}")
        self.output = output


class IdentityMismatchError(ElevationError):
    def __init__(self, user: str, actual: str) -> None:
        super().__init__(f"not logged in as {user}")
        self.user = user
        self.actual = actual


class InitScriptError(ShellPoolError):
    def __init__(self, result: "CommandResult") -> None:
        super().__init__(
            f"init script failed with status {result.returncode}: {result.output}"
        )
        self.result = result


class CommandFailedError(ShellPoolError):
    """
    Describes a command that exited with a non-zero status.

    Never raised by the engine; it is stored on CommandResult.error.
    """

    def __init__(self, command: str, returncode: Optional[int]) -> None:
        super().__init__(f"command exited with status {returncode}: {command}")
        self.command = command
        self.returncode = returncode
