from __future__ import annotations

import asyncio
import contextlib
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Iterator, Optional

from .command import STATUS_WIDTH, Command, completion_probe
from .errors import ProcessFailureError, ProtocolViolationError, ShellPoolError
from .logger import logger as default_logger
from .proc.base import ProcessBackend, ProcessHandle, SpawnOptions


class QueueState(str, Enum):
    init = "init"
    online = "online"
    shutdown = "shutdown"
    closed = "closed"
    error = "error"
    exited = "exited"


class MarkerCounter:
    """Monotonic source of done markers: <prefix><7-digit sequence>."""

    def __init__(self, prefix: str, start: int = 0) -> None:
        self._prefix = prefix
        self._value = start

    @property
    def value(self) -> int:
        return self._value

    def next_marker(self) -> str:
        self._value += 1
        return f"{self._prefix}{self._value:07d}"


class CommandFifo:
    """Commands tracked by one queue, oldest first."""

    def __init__(self) -> None:
        self._items: Deque[Command] = deque()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Command]:
        return iter(self._items)

    def __getitem__(self, index: int) -> Command:
        return self._items[index]

    def __contains__(self, command: object) -> bool:
        return command in self._items

    def push(self, command: Command) -> None:
        self._items.append(command)

    def peek(self) -> Optional[Command]:
        return self._items[0] if self._items else None

    def pop_front(self) -> Command:
        return self._items.popleft()

    def remove(self, command: Command) -> bool:
        try:
            self._items.remove(command)
        except ValueError:
            return False
        return True

    def drain(self) -> list[Command]:
        items = list(self._items)
        self._items.clear()
        return items


def partial_marker_length(text: str, marker: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of marker."""
    for size in range(min(len(text), len(marker) - 1), 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


def parse_status(field: str) -> int:
    try:
        return int(field)
    except ValueError:
        return -1


class ShellQueue:
    """
    One long-lived shell process and the commands written to it.

    Commands are written to stdin in FIFO order, at most `concurrency` of them
    ahead of the one currently producing output. Because the shell runs them
    one after another, the next marker on stdout always belongs to the FIFO
    head, so output is attributed without request ids.
    """

    def __init__(
        self,
        *,
        backend: ProcessBackend,
        spawn: SpawnOptions,
        concurrency: int,
        index: int = 0,
        shutdown_grace_s: float = 1.0,
        on_change: Optional[Callable[["ShellQueue"], None]] = None,
        log: Any = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._backend = backend
        self._spawn = spawn
        self._concurrency = concurrency
        self.index = index
        self._grace_s = shutdown_grace_s
        self._on_change = on_change
        self._log = (log if log is not None else default_logger).bind(queue=index)
        self._fifo = CommandFifo()
        self._in_flight = 0
        self._max_in_flight = 0
        self._state = QueueState.init
        self._handle: Optional[ProcessHandle] = None
        self._tasks: list[asyncio.Task[None]] = []
        # Output not yet attributed: a possible partial marker, or text that
        # arrived while nothing was tracked.
        self._buffer = ""
        self._consuming = False
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._fifo)

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def online(self) -> bool:
        return self._state is QueueState.online

    @property
    def handle(self) -> Optional[ProcessHandle]:
        return self._handle

    @property
    def pid(self) -> Optional[int]:
        return self._handle.pid if self._handle is not None else None

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def max_in_flight(self) -> int:
        """Highest number of simultaneously in-flight commands seen so far."""
        return self._max_in_flight

    @property
    def has_capacity(self) -> bool:
        return (
            self.online
            and len(self._fifo) < self._concurrency
            and not self._awaiting_interaction()
        )

    def commands(self) -> list[Command]:
        return list(self._fifo)

    # Process lifecycle

    async def start(self) -> None:
        if self._state is not QueueState.init:
            raise ShellPoolError(f"Shell queue already started ({self._state.value})")
        self._log.info("Spawning process", program=self._spawn.program)
        try:
            self._handle = await self._backend.spawn(self._spawn)
        except Exception as exc:
            self._state = QueueState.error
            self._log.error("Failed to spawn process", exc=exc)
            raise ProcessFailureError(
                f"Failed to spawn {self._spawn.program}: {exc}"
            ) from exc
        self._log.info("Process online", program=self._spawn.program, pid=self.pid)
        self._state = QueueState.online
        self._tasks = [
            asyncio.create_task(self._pump_stdout()),
            asyncio.create_task(self._pump_stderr()),
        ]
        if self._handle.has_channel:
            self._tasks.append(asyncio.create_task(self._pump_messages()))

    async def shutdown(self) -> None:
        """Kill the shell and cancel every command it still tracks."""
        if self._shutting_down:
            return
        self._shutting_down = True
        self._state = QueueState.shutdown

        current = asyncio.current_task()
        pumps = [t for t in self._tasks if t is not current]
        for task in pumps:
            task.cancel()

        commands = self._fifo.drain()
        self._in_flight = 0
        self._buffer = ""
        for command in commands:
            command.cancel()
        self._notify()

        if pumps:
            await asyncio.gather(*pumps, return_exceptions=True)

        handle = self._handle
        if handle is None:
            return
        try:
            await handle.terminate(grace_s=self._grace_s)
        except Exception:
            with contextlib.suppress(Exception):
                await handle.kill()
        finally:
            with contextlib.suppress(Exception):
                await handle.wait()
        self._log.info("Shell queue shut down", pid=handle.pid)

    # Admission control

    def enqueue(self, command: Command) -> None:
        if not self.online:
            raise ProcessFailureError(
                f"Shell queue {self.index} is not online ({self._state.value})"
            )
        self._fifo.push(command)
        command.attach(self)
        self._top_up()
        if self._buffer:
            self._consume()

    def _top_up(self) -> None:
        while (
            self.online
            and self._in_flight < len(self._fifo)
            and self._in_flight < self._concurrency
        ):
            if self._awaiting_interaction():
                break
            command = self._fifo[self._in_flight]
            self._in_flight += 1
            self._max_in_flight = max(self._max_in_flight, self._in_flight)
            command.run()

    def _awaiting_interaction(self) -> bool:
        # Text written behind an interactive command would be read as its input.
        if not self._in_flight:
            return False
        last = self._fifo[self._in_flight - 1]
        return not last.auto_done and not last.done_marker_sent

    def discard(self, command: Command) -> None:
        if command.transmitted:
            return
        if self._fifo.remove(command):
            self._notify()

    def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(self)
        except Exception as exc:
            self._log.exception("Shell queue listener exception", exc=exc)

    # Process I/O

    def send(self, data: str) -> None:
        if self._handle is None:
            raise ProcessFailureError("Shell process is not running")
        self._handle.send(data)

    async def write(self, data: str) -> None:
        if self._handle is None:
            raise ProcessFailureError("Shell process is not running")
        await self._handle.write(data)

    async def write_marker(self, command: Command) -> None:
        """Write the completion probe of an interactive command."""
        await self.write(completion_probe(command.marker))
        self._top_up()
        self._notify()

    def request_marker(self, command: Command) -> None:
        if not self.online or command not in self._fifo:
            return
        self.send(completion_probe(command.marker))
        self._top_up()
        self._notify()

    async def send_message(self, message: Any) -> None:
        if self._handle is None or not self._handle.has_channel:
            raise ShellPoolError("Shell process has no side-channel")
        await self._handle.send_message(message)

    # Demultiplexing

    def on_data(self, text: str) -> None:
        self._buffer += text
        self._consume()

    def _consume(self) -> None:
        if self._consuming:
            return
        self._consuming = True
        try:
            while self._buffer:
                head = self._fifo.peek()
                if head is None:
                    # Kept for whichever command is tracked next.
                    return
                marker = head.marker
                idx = self._buffer.find(marker)
                if idx < 0:
                    keep = 0
                    if head.auto_done or head.done_marker_sent:
                        keep = partial_marker_length(self._buffer, marker)
                    cut = len(self._buffer) - keep
                    text, self._buffer = self._buffer[:cut], self._buffer[cut:]
                    if text:
                        head.receive_chunk(text)
                    return

                if idx:
                    head.receive_chunk(self._buffer[:idx])
                    self._buffer = self._buffer[idx:]
                status_end = len(marker) + STATUS_WIDTH
                if len(self._buffer) < status_end:
                    # Marker seen, exit status still in transit.
                    return
                status = parse_status(self._buffer[len(marker) : status_end])
                self._buffer = self._buffer[status_end:]
                self._complete_head(status)
        finally:
            self._consuming = False

    def _complete_head(self, returncode: int) -> None:
        command = self._fifo.pop_front()
        self._in_flight -= 1
        self._top_up()
        command.finish(returncode)
        self._notify()

    def on_stderr(self, text: str) -> None:
        head = self._fifo.peek()
        if head is None:
            self._log.error("stderr received with no command tracked", data=text)
            return
        self._log.error("Command returned stderr", command=head.text, data=text)
        if head.is_terminal():
            return
        error = ProtocolViolationError(head.text, text)
        if head.auto_done or head.done_marker_sent:
            # The marker is still coming; the slot is released when it arrives.
            head.fail(error)
            return
        self._fifo.pop_front()
        self._in_flight -= 1
        head.detach()
        head.fail(error)
        self._top_up()
        self._notify()

    def on_message(self, message: Any) -> None:
        head = self._fifo.peek()
        if head is None:
            self._log.warning("Side-channel message with no command tracked", message=message)
            return
        head.handle_message(message)

    def _fail_tracked(self, error: Exception) -> None:
        commands = self._fifo.drain()
        self._in_flight = 0
        for command in commands:
            command.fail(error)
        self._notify()

    async def _pump_stdout(self) -> None:
        assert self._handle is not None
        handle = self._handle
        try:
            async for chunk in handle.iter_stdout():
                self.on_data(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._state = QueueState.error
            self._log.exception("Shell process error", exc=exc)
            self._fail_tracked(ProcessFailureError(f"Shell process error: {exc}"))
            return

        if self._shutting_down:
            return
        self._state = QueueState.closed
        self._log.info("Shell process closed its output", pid=handle.pid)
        self._fail_tracked(
            ProcessFailureError(f"Shell process {handle.pid} closed its output")
        )
        code = await handle.wait()
        if not self._shutting_down:
            self._state = QueueState.exited
        self._log.info("Shell process exited", pid=handle.pid, code=code)

    async def _pump_stderr(self) -> None:
        assert self._handle is not None
        async for chunk in self._handle.iter_stderr():
            self.on_stderr(chunk)

    async def _pump_messages(self) -> None:
        assert self._handle is not None
        async for message in self._handle.iter_messages():
            self.on_message(message)


__all__ = [
    "CommandFifo",
    "MarkerCounter",
    "QueueState",
    "ShellQueue",
    "partial_marker_length",
]
