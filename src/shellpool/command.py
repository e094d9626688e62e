from __future__ import annotations

import asyncio
import datetime
import inspect
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import (
    Any,
    Awaitable,
    Callable,
    Generator,
    Optional,
    Protocol,
    Union,
)

from .errors import CommandCancelledError, CommandFailedError
from .logger import logger as default_logger

# The exit status follows the marker as a zero-padded field of this width.
STATUS_WIDTH = 3


class CommandState(str, Enum):
    created = "created"
    enqueued = "enqueued"
    executing = "executing"
    receiving_data = "receiving data"
    finished = "finished"
    failed = "failed"
    cancelled = "cancelled"


TERMINAL_STATES = frozenset(
    {CommandState.finished, CommandState.failed, CommandState.cancelled}
)


class CommandEvent(str, Enum):
    enqueued = "enqueued"
    executing = "executing"
    data = "data"
    message = "message"
    cancelled = "cancelled"
    failed = "failed"
    finished = "finished"


@dataclass
class CommandResult:
    command: str
    output: str
    returncode: Optional[int]
    error: Optional[CommandFailedError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


DoneCallback = Callable[["Command", Any], Union[Any, Awaitable[Any]]]
Listener = Callable[[Any], None]


def completion_probe(marker: str) -> str:
    """Shell snippet printing the marker followed by the last exit status."""
    return f"printf '%s%0{STATUS_WIDTH}d' {shlex.quote(marker)} \"$?\";\n"


def wrap_auto_done(text: str, marker: str) -> str:
    # Newlines around the body let callers omit the trailing ';'.
    return "{\n" + text + "\n} 2>&1;\n" + completion_probe(marker)


class CommandOwner(Protocol):
    """The queue a command is enqueued on."""

    def send(self, data: str) -> None: ...
    async def write(self, data: str) -> None: ...
    async def send_message(self, message: Any) -> None: ...
    def discard(self, command: "Command") -> None: ...
    def request_marker(self, command: "Command") -> None: ...
    async def write_marker(self, command: "Command") -> None: ...


class Command:
    """
    A unit of shell work and its completion handle.

    Awaiting a Command yields a CommandResult, or the value produced by the
    done callback when one is given. Cancellation and queue-level failures
    raise instead.

    Lifecycle notifications are published to listeners registered with
    subscribe(): `data` listeners get the output chunk, `message` listeners
    get the side-channel message and every other event passes the Command.
    """

    def __init__(
        self,
        text: str,
        *,
        marker: str,
        payload: Any = None,
        callback: Optional[DoneCallback] = None,
        auto_done: bool = True,
        log: Any = None,
    ) -> None:
        if not text.strip():
            raise ValueError("Command text must not be empty")
        self._text = text
        self._marker = marker
        self._payload = payload
        self._callback = callback
        self._auto_done = auto_done
        self._log = log if log is not None else default_logger
        self._future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._listeners: dict[CommandEvent, list[Listener]] = {}
        self._queue: Optional[CommandOwner] = None
        self._transmitted = False
        self._done_marker_sent = False
        self._state = CommandState.created
        self._output: list[str] = []
        self._returncode: Optional[int] = None
        self._error: Optional[BaseException] = None
        self._callback_task: Optional[asyncio.Future[Any]] = None
        self.created_at = datetime.datetime.now()
        self.enqueued_at: Optional[datetime.datetime] = None
        self.started_at: Optional[datetime.datetime] = None
        self.data_first_received_at: Optional[datetime.datetime] = None
        self.finished_at: Optional[datetime.datetime] = None

    def __await__(self) -> Generator[Any, None, Any]:
        return self._future.__await__()

    def __repr__(self) -> str:
        return f"Command(marker={self._marker!r}, state={self._state.value!r})"

    @property
    def text(self) -> str:
        return self._text

    @property
    def marker(self) -> str:
        return self._marker

    @property
    def payload(self) -> Any:
        return self._payload

    @property
    def callback(self) -> Optional[DoneCallback]:
        return self._callback

    @property
    def auto_done(self) -> bool:
        return self._auto_done

    @property
    def state(self) -> CommandState:
        return self._state

    @property
    def output(self) -> str:
        return "".join(self._output)

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def transmitted(self) -> bool:
        return self._transmitted

    @property
    def done_marker_sent(self) -> bool:
        return self._done_marker_sent

    @property
    def future(self) -> "asyncio.Future[Any]":
        return self._future

    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    def done(self) -> bool:
        return self._future.done()

    def result(self) -> CommandResult:
        error = None
        if self._returncode != 0:
            error = CommandFailedError(self._text, self._returncode)
        return CommandResult(
            command=self._text,
            output=self.output,
            returncode=self._returncode,
            error=error,
        )

    # Observers

    def subscribe(self, event: CommandEvent, listener: Listener) -> Callable[[], None]:
        listeners = self._listeners.setdefault(CommandEvent(event), [])
        listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def _emit(self, event: CommandEvent, *value: Any) -> None:
        arg = value[0] if value else self
        for listener in list(self._listeners.get(event, ())):
            try:
                listener(arg)
            except Exception as exc:
                self._log.exception(
                    "Command listener exception",
                    exc=exc,
                    lifecycle_event=event.value,
                    marker=self._marker,
                )

    # Transitions driven by the owning queue

    def wire_text(self) -> str:
        if self._auto_done:
            return wrap_auto_done(self._text, self._marker)
        return self._text

    def attach(self, queue: CommandOwner) -> None:
        self._queue = queue
        self._state = CommandState.enqueued
        self.enqueued_at = datetime.datetime.now()
        self._emit(CommandEvent.enqueued)

    def detach(self) -> None:
        self._queue = None

    def run(self) -> None:
        if self._queue is None:
            raise RuntimeError("Command is not enqueued")
        wire = self.wire_text()
        self._log.debug("CMD", command=wire, marker=self._marker)
        self._transmitted = True
        self._state = CommandState.executing
        self.started_at = datetime.datetime.now()
        self._queue.send(wire)
        self._emit(CommandEvent.executing)

    def receive_chunk(self, text: str) -> None:
        if self.is_terminal():
            self._log.debug("Dropping output for settled command", marker=self._marker)
            return
        self._output.append(text)
        if self.data_first_received_at is None:
            self.data_first_received_at = datetime.datetime.now()
        self._state = CommandState.receiving_data
        self._emit(CommandEvent.data, text)

    def finish(self, returncode: Optional[int]) -> None:
        if self.is_terminal():
            return
        self._returncode = returncode
        failed = returncode != 0
        if failed:
            self._log.error("CMDOUTPUT", output=self.output, returncode=returncode)
        else:
            self._log.debug("CMDOUTPUT", output=self.output)
        self.finished_at = datetime.datetime.now()
        self._state = CommandState.finished
        self._settle()
        self._emit(CommandEvent.finished)

    def _settle(self) -> None:
        if self._callback is None:
            self._future.set_result(self.result())
            return
        try:
            value = self._callback(self, self._payload)
        except Exception as exc:
            self._future.set_exception(exc)
            return
        if inspect.isawaitable(value):
            self._callback_task = asyncio.ensure_future(value)
            self._callback_task.add_done_callback(self._settle_from)
        else:
            self._future.set_result(value)

    def _settle_from(self, pending: "asyncio.Future[Any]") -> None:
        self._callback_task = None
        if self._future.done():
            return
        if pending.cancelled():
            self._future.cancel()
        elif pending.exception() is not None:
            self._future.set_exception(pending.exception())  # type: ignore[arg-type]
        else:
            self._future.set_result(pending.result())

    def fail(self, error: BaseException) -> None:
        if self.is_terminal():
            return
        self._error = error
        self.finished_at = datetime.datetime.now()
        self._state = CommandState.failed
        self._release()
        self._emit(CommandEvent.failed)
        if not self._future.done():
            self._future.set_exception(error)

    def cancel(self) -> None:
        if self.is_terminal():
            return
        self._error = CommandCancelledError(self._text)
        self.finished_at = datetime.datetime.now()
        self._state = CommandState.cancelled
        self._release()
        self._emit(CommandEvent.cancelled)
        if not self._future.done():
            self._future.set_exception(self._error)

    def _release(self) -> None:
        queue = self._queue
        if queue is None:
            return
        if not self._transmitted:
            queue.discard(self)
        elif not self._auto_done and not self._done_marker_sent:
            # Its slot is only freed once the shell prints the marker.
            self._done_marker_sent = True
            queue.request_marker(self)

    def handle_message(self, message: Any) -> None:
        self._log.debug("CMDHMSG", message=message, marker=self._marker)
        self._emit(CommandEvent.message, message)

    # Interactive use

    def _require_queue(self) -> CommandOwner:
        if self._queue is None or not self._transmitted:
            raise RuntimeError("Command is not executing")
        return self._queue

    async def write(self, data: str) -> None:
        """Write raw text to the stdin of the shell running this command."""
        await self._require_queue().write(data)

    async def send_done_marker(self) -> None:
        """Ask the shell to report the last exit status, completing the command."""
        queue = self._require_queue()
        self._done_marker_sent = True
        await queue.write_marker(self)

    async def send_message(self, message: Any) -> None:
        self._log.debug("CMDSMSG", message=message, marker=self._marker)
        await self._require_queue().send_message(message)
