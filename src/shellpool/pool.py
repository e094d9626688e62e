from __future__ import annotations

import asyncio
import inspect
import shlex
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Optional, Union

from .command import Command, CommandEvent, DoneCallback
from .errors import (
    ElevationError,
    IdentityMismatchError,
    InitScriptError,
    LoginFailedError,
    NoSuchUserError,
    PasswordRequiredError,
    ProcessFailureError,
    ShellPoolError,
    WrongPasswordError,
)
from .logger import diagnostics_logger
from .proc.base import ProcessBackend, get_backend
from .queue import MarkerCounter, ShellQueue
from .settings import ShellPoolSettings

InitScriptSource = Union[
    str,
    Awaitable[str],
    Callable[[], Union[str, Awaitable[str]]],
]


def classify_login_failure(output: str, user: str) -> ElevationError:
    if "No passwd entry for user" in output or "does not exist" in output:
        return NoSuchUserError(user)
    if "Sorry, try again." in output:
        return WrongPasswordError()
    return LoginFailedError(output)


def sudo_command(user: str, prompt: str) -> str:
    return f"sudo -K && sudo -p {shlex.quote(prompt)} -S su {shlex.quote(user)} 2>&1;\n"


class ShellPool:
    """
    Runs shell commands on a fixed set of long-lived shell processes.

    Shells are started lazily by the first submission (or by awaiting
    shells()). Startup is sequential: each shell is spawned, optionally
    switched to another user through an interactive `sudo su` dialogue, and
    then runs the init script before the next one is created.

    Submitted commands wait in a pool-level FIFO and are handed to the first
    shell whose queue is below its concurrency limit.
    """

    def __init__(
        self,
        settings: Optional[ShellPoolSettings] = None,
        *,
        done_callback: Optional[DoneCallback] = None,
        init_script: Optional[InitScriptSource] = None,
        backend: Optional[ProcessBackend] = None,
    ) -> None:
        self._settings = settings or ShellPoolSettings()
        self._done_callback = done_callback
        self._init_script_source = init_script
        self._init_script: Optional[str] = None
        self._init_script_resolved = False
        self._log = diagnostics_logger(self._settings.log)
        self._backend = backend or get_backend(self._settings.shell.backend)
        self._backend.env_policy = self._settings.shell.env.to_policy()
        self._markers = MarkerCounter(self._settings.done_marker)
        # Queues created so far, including ones still being initialized.
        self._queues: list[ShellQueue] = []
        self._shells: Optional[list[ShellQueue]] = None
        self._startup: Optional[asyncio.Task[list[ShellQueue]]] = None
        self._waiter: Optional[asyncio.Task[None]] = None
        self._pending: Deque[Command] = deque()
        self._closed = False

    async def __aenter__(self) -> "ShellPool":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def settings(self) -> ShellPoolSettings:
        return self._settings

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def queues(self) -> list[ShellQueue]:
        return list(self._shells or [])

    @property
    def running_commands(self) -> int:
        """Commands currently tracked by the shells (in flight or queued)."""
        return sum(len(q) for q in self._shells or [])

    @property
    def pending_commands(self) -> int:
        """Commands waiting for a shell with spare capacity."""
        return len(self._pending)

    # Startup

    async def shells(self) -> list[ShellQueue]:
        if self._closed:
            raise ProcessFailureError("Shell pool is closed")
        if self._startup is None:
            self._startup = asyncio.create_task(self._start_shells())
        return await asyncio.shield(self._startup)

    async def _start_shells(self) -> list[ShellQueue]:
        try:
            for index in range(self._settings.number_of_processes):
                queue = ShellQueue(
                    backend=self._backend,
                    spawn=self._settings.shell.spawn_options(name=f"shell-{index}"),
                    concurrency=self._settings.concurrent_cmds,
                    index=index,
                    shutdown_grace_s=self._settings.shutdown_grace_s,
                    on_change=self._dispatch,
                    log=self._log,
                )
                self._queues.append(queue)
                await queue.start()
                if self._settings.elevation.user:
                    await self._elevate(queue)
                script = await self._resolve_init_script()
                if script:
                    await self._run_init_script(queue, script)
        except BaseException:
            queues = list(self._queues)
            self._queues.clear()
            await asyncio.gather(*(q.shutdown() for q in queues), return_exceptions=True)
            raise
        finally:
            self._settings.elevation.password = None

        self._shells = list(self._queues)
        self._log.info("Shell pool online", processes=len(self._shells))
        return self._shells

    async def _resolve_init_script(self) -> Optional[str]:
        if self._init_script_resolved:
            return self._init_script
        source = self._init_script_source
        script: Optional[str]
        if source is not None:
            value: Any = source() if callable(source) else source
            if inspect.isawaitable(value):
                value = await value
            script = value
        elif self._settings.init_script is not None:
            script = self._settings.init_script
        elif self._settings.init_script_file is not None:
            script = await asyncio.to_thread(
                self._settings.init_script_file.read_text, encoding="utf-8"
            )
        else:
            script = None
        self._init_script = script
        self._init_script_resolved = True
        return script

    async def _run_init_script(self, queue: ShellQueue, script: str) -> None:
        command = self._command(script)
        queue.enqueue(command)
        result = await command
        if result.returncode != 0:
            self._log.error(
                "Init script failed",
                queue=queue.index,
                returncode=result.returncode,
                output=result.output,
            )
            raise InitScriptError(result)

    async def _elevate(self, queue: ShellQueue) -> None:
        elevation = self._settings.elevation
        user = elevation.user
        assert user is not None
        if elevation.password is None:
            raise PasswordRequiredError(user)
        password = elevation.password.get_secret_value()

        sudo = self._command(sudo_command(user, elevation.prompt), auto_done=False)
        answers: list[asyncio.Task[None]] = []

        def _on_chunk(chunk: str) -> None:
            if sudo.is_terminal():
                return
            if chunk == elevation.prompt:
                answers.append(asyncio.create_task(self._answer_prompt(sudo, password)))
                return
            self._log.error("Elevation failed", user=user, output=chunk)
            sudo.fail(classify_login_failure(chunk, user))

        sudo.subscribe(CommandEvent.data, _on_chunk)
        queue.enqueue(sudo)
        try:
            await sudo
        finally:
            for task in answers:
                task.cancel()
            await asyncio.gather(*answers, return_exceptions=True)

        whoami = self._command("whoami;")
        queue.enqueue(whoami)
        result = await whoami
        if result.output != f"{user}\n":
            self._log.error(
                "Elevation verification failed", user=user, output=result.output
            )
            raise IdentityMismatchError(user, result.output)
        self._log.info("Shell elevated", queue=queue.index, user=user)

    async def _answer_prompt(self, sudo: Command, password: str) -> None:
        await asyncio.sleep(self._settings.elevation.settle_delay_s)
        try:
            await sudo.write(f"{password}\n")
            await sudo.send_done_marker()
        except (OSError, RuntimeError, ShellPoolError) as exc:
            sudo.fail(ProcessFailureError(f"Failed to answer sudo prompt: {exc}"))

    # Submission

    def _command(
        self,
        text: str,
        *,
        payload: Any = None,
        callback: Optional[DoneCallback] = None,
        auto_done: bool = True,
    ) -> Command:
        return Command(
            text,
            marker=self._markers.next_marker(),
            payload=payload,
            callback=callback,
            auto_done=auto_done,
            log=self._log,
        )

    def create_command(
        self,
        text: str,
        payload: Any = None,
        callback: Optional[DoneCallback] = None,
        send_to_every_shell: bool = False,
    ) -> Union[Command, "asyncio.Future[list[Any]]"]:
        """
        Submit a command; await the returned Command for its result.

        With send_to_every_shell the command runs once on every shell and the
        returned future resolves to the list of results, in shell order.
        """
        if callback is None:
            callback = self._done_callback
        if send_to_every_shell:
            self._ensure_open()
            return asyncio.ensure_future(self.broadcast(text, payload, callback))
        return self._submit(text, payload, callback, auto_done=True)

    def interact(
        self,
        text: str,
        payload: Any = None,
        callback: Optional[DoneCallback] = None,
    ) -> Command:
        """
        Submit an interactive command. It only completes once the caller
        invokes send_done_marker() on it.
        """
        if callback is None:
            callback = self._done_callback
        return self._submit(text, payload, callback, auto_done=False)

    async def broadcast(
        self,
        text: str,
        payload: Any = None,
        callback: Optional[DoneCallback] = None,
    ) -> list[Any]:
        shells = await self.shells()
        commands: list[Command] = []
        for queue in shells:
            command = self._command(text, payload=payload, callback=callback)
            queue.enqueue(command)
            commands.append(command)
        return list(await asyncio.gather(*(c.future for c in commands)))

    def _ensure_open(self) -> None:
        if self._closed:
            raise ProcessFailureError("Shell pool is closed")

    def _submit(
        self,
        text: str,
        payload: Any,
        callback: Optional[DoneCallback],
        *,
        auto_done: bool,
    ) -> Command:
        self._ensure_open()
        command = self._command(
            text, payload=payload, callback=callback, auto_done=auto_done
        )
        self._pending.append(command)
        if self._shells is not None:
            self._dispatch()
        elif self._waiter is None or self._waiter.done():
            self._waiter = asyncio.create_task(self._dispatch_after_startup())
        return command

    async def _dispatch_after_startup(self) -> None:
        try:
            await self.shells()
        except Exception as exc:
            self._fail_pending(exc)
            return
        self._dispatch()

    def _dispatch(self, _: Optional[ShellQueue] = None) -> None:
        shells = self._shells
        if shells is None or self._closed:
            return
        while self._pending:
            live = [q for q in shells if q.online]
            if not live:
                self._fail_pending(
                    ProcessFailureError("No live shell processes left in the pool")
                )
                return
            queue = next((q for q in live if q.has_capacity), None)
            if queue is None:
                return
            command = self._pending.popleft()
            if command.is_terminal():
                continue
            queue.enqueue(command)

    def _fail_pending(self, error: BaseException) -> None:
        while self._pending:
            self._pending.popleft().fail(error)

    # Shutdown

    async def close(self) -> None:
        """Cancel every queued command and shut down every shell."""
        if self._closed:
            return
        self._closed = True

        for task in (self._startup, self._waiter):
            if task is not None and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        queues = list(self._queues)
        self._queues.clear()
        self._shells = None
        await asyncio.gather(*(q.shutdown() for q in queues), return_exceptions=True)

        while self._pending:
            self._pending.popleft().cancel()
        self._log.info("Shell pool closed")
