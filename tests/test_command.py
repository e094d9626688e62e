from __future__ import annotations

import asyncio
import gc
from typing import Any

import pytest

from shellpool.command import (
    Command,
    CommandEvent,
    CommandResult,
    CommandState,
    completion_probe,
)
from shellpool.errors import CommandCancelledError, CommandFailedError


class _Owner:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.messages: list[Any] = []
        self.discarded: list[Command] = []
        self.marker_requests: list[Command] = []

    def send(self, data: str) -> None:
        self.sent.append(data)

    async def write(self, data: str) -> None:
        self.sent.append(data)

    async def send_message(self, message: Any) -> None:
        self.messages.append(message)

    def discard(self, command: Command) -> None:
        self.discarded.append(command)

    def request_marker(self, command: Command) -> None:
        self.marker_requests.append(command)
        self.sent.append(completion_probe(command.marker))

    async def write_marker(self, command: Command) -> None:
        self.sent.append(completion_probe(command.marker))


def _record(command: Command) -> list[tuple[str, Any]]:
    events: list[tuple[str, Any]] = []
    for event in CommandEvent:
        command.subscribe(event, lambda value, e=event: events.append((e.value, value)))
    return events


@pytest.mark.asyncio
async def test_wire_text_wraps_auto_done_commands():
    cmd = Command("printf HELLO;", marker="__done__0000001")
    assert cmd.wire_text() == (
        "{\nprintf HELLO;\n} 2>&1;\n" "printf '%s%03d' __done__0000001 \"$?\";\n"
    )

    raw = Command("read name;\n", marker="__done__0000002", auto_done=False)
    assert raw.wire_text() == "read name;\n"
    assert completion_probe("__done__0000002") == (
        "printf '%s%03d' __done__0000002 \"$?\";\n"
    )


@pytest.mark.asyncio
async def test_empty_text_is_rejected():
    with pytest.raises(ValueError):
        Command("   ", marker="m1")


@pytest.mark.asyncio
async def test_lifecycle_events_and_result():
    owner = _Owner()
    cmd = Command("printf hello;", marker="m1")
    events = _record(cmd)
    assert cmd.state is CommandState.created

    cmd.attach(owner)
    assert cmd.state is CommandState.enqueued
    assert cmd.enqueued_at is not None

    cmd.run()
    assert cmd.state is CommandState.executing
    assert cmd.transmitted
    assert owner.sent == [cmd.wire_text()]

    cmd.receive_chunk("hel")
    cmd.receive_chunk("lo")
    assert cmd.state is CommandState.receiving_data
    assert cmd.data_first_received_at is not None

    cmd.finish(0)
    assert cmd.state is CommandState.finished
    result = await cmd
    assert isinstance(result, CommandResult)
    assert result.output == "hello"
    assert result.returncode == 0
    assert result.error is None
    assert result.ok

    assert [name for name, _ in events] == [
        "enqueued",
        "executing",
        "data",
        "data",
        "finished",
    ]
    assert events[2][1] == "hel"
    assert events[-1][1] is cmd


@pytest.mark.asyncio
async def test_nonzero_status_is_reported_not_raised():
    cmd = Command("false;", marker="m1")
    cmd.attach(_Owner())
    cmd.run()
    cmd.finish(2)

    result = await cmd
    assert result.returncode == 2
    assert not result.ok
    assert isinstance(result.error, CommandFailedError)
    assert result.error.returncode == 2


@pytest.mark.asyncio
async def test_sync_callback_value_becomes_result():
    cmd = Command(
        "printf x;",
        marker="m1",
        payload={"id": 7},
        callback=lambda c, payload: (c.output, payload["id"]),
    )
    cmd.attach(_Owner())
    cmd.run()
    cmd.receive_chunk("x")
    cmd.finish(0)

    assert await cmd == ("x", 7)


@pytest.mark.asyncio
async def test_async_callback_is_awaited():
    async def _callback(c: Command, payload: Any) -> str:
        await asyncio.sleep(0)
        return c.output.upper() + payload

    cmd = Command("printf x;", marker="m1", payload="!", callback=_callback)
    cmd.attach(_Owner())
    cmd.run()
    cmd.receive_chunk("abc")
    cmd.finish(0)

    assert await cmd == "ABC!"


@pytest.mark.asyncio
async def test_callback_exception_rejects_command():
    def _boom(c: Command, payload: Any) -> None:
        raise KeyError("boom")

    cmd = Command("true;", marker="m1", callback=_boom)
    cmd.attach(_Owner())
    cmd.run()
    cmd.finish(0)

    with pytest.raises(KeyError):
        await cmd


@pytest.mark.asyncio
async def test_cancel_untransmitted_command_discards_and_is_idempotent():
    owner = _Owner()
    cmd = Command("sleep 1;", marker="m1")
    events = _record(cmd)
    cmd.attach(owner)

    cmd.cancel()
    cmd.cancel()

    assert cmd.state is CommandState.cancelled
    assert owner.discarded == [cmd]
    assert [name for name, _ in events].count("cancelled") == 1
    with pytest.raises(CommandCancelledError):
        await cmd


@pytest.mark.asyncio
async def test_cancel_transmitted_command_keeps_its_slot():
    owner = _Owner()
    cmd = Command("sleep 1;", marker="m1")
    cmd.attach(owner)
    cmd.run()

    cmd.cancel()

    assert owner.discarded == []
    assert owner.marker_requests == []
    assert cmd.is_terminal()
    with pytest.raises(CommandCancelledError):
        await cmd


@pytest.mark.asyncio
async def test_terminal_commands_ignore_further_transitions():
    cmd = Command("printf a;", marker="m1")
    events = _record(cmd)
    cmd.attach(_Owner())
    cmd.run()
    cmd.receive_chunk("a")
    cmd.finish(0)

    cmd.cancel()
    cmd.fail(RuntimeError("late"))
    cmd.receive_chunk("late output")
    cmd.finish(1)

    result = await cmd
    assert result.output == "a"
    assert result.returncode == 0
    assert cmd.state is CommandState.finished
    assert [name for name, _ in events].count("finished") == 1


@pytest.mark.asyncio
async def test_interactive_helpers_require_execution():
    owner = _Owner()
    cmd = Command("read name;\n", marker="m9", auto_done=False)

    with pytest.raises(RuntimeError):
        await cmd.write("Bob\n")

    cmd.attach(owner)
    with pytest.raises(RuntimeError):
        await cmd.send_done_marker()

    cmd.run()
    await cmd.write("Bob\n")
    await cmd.send_message({"hello": "world"})
    await cmd.send_done_marker()

    assert cmd.done_marker_sent
    assert owner.sent == ["read name;\n", "Bob\n", completion_probe("m9")]
    assert owner.messages == [{"hello": "world"}]


@pytest.mark.asyncio
async def test_listener_errors_do_not_break_the_command():
    cmd = Command("printf a;", marker="m1")
    seen: list[str] = []

    def _bad(_: Any) -> None:
        raise ValueError("listener failure")

    cmd.subscribe(CommandEvent.data, _bad)
    cmd.subscribe(CommandEvent.data, seen.append)
    cmd.attach(_Owner())
    cmd.run()
    cmd.receive_chunk("a")
    cmd.finish(0)

    assert seen == ["a"]
    assert (await cmd).output == "a"


@pytest.mark.asyncio
async def test_unsubscribe_stops_notifications():
    cmd = Command("printf a;", marker="m1")
    seen: list[str] = []
    unsubscribe = cmd.subscribe(CommandEvent.data, seen.append)
    cmd.attach(_Owner())
    cmd.run()
    cmd.receive_chunk("a")
    unsubscribe()
    cmd.receive_chunk("b")
    cmd.handle_message({"ipc": True})

    assert seen == ["a"]
    assert cmd.output == "ab"


@pytest.mark.asyncio
async def test_cancel_open_interactive_command_requests_its_marker():
    owner = _Owner()
    cmd = Command("read name;\n", marker="m3", auto_done=False)
    cmd.attach(owner)
    cmd.run()

    cmd.cancel()
    cmd.cancel()

    assert owner.marker_requests == [cmd]
    assert owner.sent == ["read name;\n", completion_probe("m3")]
    assert cmd.done_marker_sent
    with pytest.raises(CommandCancelledError):
        await cmd


@pytest.mark.asyncio
async def test_failed_interactive_command_after_done_marker_writes_its_marker_once():
    owner = _Owner()
    cmd = Command("read name;\n", marker="m4", auto_done=False)
    cmd.attach(owner)
    cmd.run()
    await cmd.send_done_marker()

    cmd.fail(RuntimeError("boom"))

    assert owner.marker_requests == []
    assert owner.sent.count(completion_probe("m4")) == 1
    with pytest.raises(RuntimeError):
        await cmd


@pytest.mark.asyncio
async def test_async_callback_survives_garbage_collection():
    release = asyncio.Event()

    async def _callback(c: Command, payload: Any) -> str:
        await release.wait()
        return c.output

    cmd = Command("printf x;", marker="m1", callback=_callback)
    cmd.attach(_Owner())
    cmd.run()
    cmd.receive_chunk("x")
    cmd.finish(0)

    await asyncio.sleep(0)
    gc.collect()
    release.set()

    assert await asyncio.wait_for(cmd.future, 1.0) == "x"
