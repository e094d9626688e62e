from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

# Environment variable that tells the shell which fd carries the side-channel.
CHANNEL_FD_ENV = "SHELLPOOL_CHANNEL_FD"


@dataclass
class EnvPolicy:
    inherit_parent: bool = True
    allowlist: Optional[list[str]] = None
    denylist: Optional[list[str]] = None
    defaults: Dict[str, str] = field(default_factory=dict)


@dataclass
class SpawnOptions:
    program: str
    args: List[str] = field(default_factory=list)
    name: Optional[str] = None
    cwd: Optional[Path] = None
    env_overlay: Optional[Dict[str, str]] = None
    # Open an extra duplex socket to the child for structured messages.
    side_channel: bool = True
    # Place the shell into its own process group so terminate()/kill() reach
    # everything it started.
    use_process_group: bool = True


@runtime_checkable
class ProcessHandle(Protocol):
    id: str
    name: Optional[str]

    @property
    def pid(self) -> Optional[int]: ...
    @property
    def returncode(self) -> Optional[int]: ...
    @property
    def has_channel(self) -> bool: ...
    def alive(self) -> bool: ...

    def send(self, data: str | bytes) -> None: ...
    async def write(self, data: str | bytes) -> None: ...
    async def close_stdin(self) -> None: ...
    def iter_stdout(self) -> AsyncIterator[str]: ...
    def iter_stderr(self) -> AsyncIterator[str]: ...
    async def send_message(self, message: Any) -> None: ...
    def iter_messages(self) -> AsyncIterator[Any]: ...
    async def terminate(self, grace_s: float = 5.0) -> None: ...
    async def kill(self) -> None: ...
    async def wait(self) -> int: ...


class ProcessBackend(Protocol):
    env_policy: EnvPolicy

    async def spawn(self, opts: SpawnOptions) -> ProcessHandle: ...


# Backend registry
_BACKENDS: dict[str, Callable[[], ProcessBackend]] = {}


def register_backend(name: str, factory: Callable[[], ProcessBackend]) -> None:
    _BACKENDS[name] = factory


def get_backend(name: str) -> ProcessBackend:
    if name not in _BACKENDS:
        raise ValueError(f"Unknown process backend: {name!r}")
    return _BACKENDS[name]()
