from .command import Command, CommandEvent, CommandResult, CommandState
from .errors import (
    CommandCancelledError,
    CommandFailedError,
    ElevationError,
    IdentityMismatchError,
    InitScriptError,
    LoginFailedError,
    NoSuchUserError,
    PasswordRequiredError,
    ProcessFailureError,
    ProtocolViolationError,
    ShellPoolError,
    WrongPasswordError,
)
from .pool import ShellPool
from .queue import QueueState, ShellQueue
from .settings import ShellPoolSettings, load_settings

__all__ = [
    "Command",
    "CommandCancelledError",
    "CommandEvent",
    "CommandFailedError",
    "CommandResult",
    "CommandState",
    "ElevationError",
    "IdentityMismatchError",
    "InitScriptError",
    "LoginFailedError",
    "NoSuchUserError",
    "PasswordRequiredError",
    "ProcessFailureError",
    "ProtocolViolationError",
    "QueueState",
    "ShellPool",
    "ShellPoolError",
    "ShellPoolSettings",
    "ShellQueue",
    "WrongPasswordError",
    "load_settings",
]
