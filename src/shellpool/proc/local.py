from __future__ import annotations
import asyncio
import codecs
import json
import os
import signal
import socket
import uuid
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Optional
from .base import (
    CHANNEL_FD_ENV,
    EnvPolicy,
    ProcessBackend,
    ProcessHandle,
    SpawnOptions,
)

# Upper bound for a single read from stdout/stderr.
READ_CHUNK_SIZE = 64 * 1024


def _build_env(policy: EnvPolicy, overlay: Optional[Dict[str, str]]) -> Dict[str, str]:
    base: Dict[str, str] = {}
    if policy.inherit_parent:
        base = dict(os.environ)
        if policy.allowlist is not None:
            allow = set(policy.allowlist)
            base = {k: v for k, v in base.items() if k in allow}
        if policy.denylist is not None:
            for k in policy.denylist:
                base.pop(k, None)
    base.update(policy.defaults or {})
    if overlay:
        base.update(overlay)
    return base


async def _iter_chunks(stream: Optional[asyncio.StreamReader]) -> AsyncIterator[str]:
    # Chunks are yielded as they arrive; a multi-byte character split across
    # two reads is held back by the incremental decoder.
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        if not data:
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail
            break
        text = decoder.decode(data)
        if text:
            yield text


class LocalProcessHandle(ProcessHandle):
    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        name: Optional[str],
        *,
        channel_reader: Optional[asyncio.StreamReader] = None,
        channel_writer: Optional[asyncio.StreamWriter] = None,
        use_process_group: bool = True,
    ) -> None:
        self._proc = proc
        self._channel_reader = channel_reader
        self._channel_writer = channel_writer
        self.id = str(uuid.uuid4())
        self.name = name
        self._use_pg = bool(use_process_group and os.name == "posix")

    @property
    def pid(self) -> Optional[int]:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    @property
    def has_channel(self) -> bool:
        return self._channel_writer is not None

    def alive(self) -> bool:
        return self._proc.returncode is None

    def send(self, data: str | bytes) -> None:
        if self._proc.stdin is None:
            return
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._proc.stdin.write(data)

    async def write(self, data: str | bytes) -> None:
        self.send(data)
        if self._proc.stdin is not None:
            await self._proc.stdin.drain()

    async def close_stdin(self) -> None:
        if self._proc.stdin is not None:
            self._proc.stdin.close()
            try:
                await self._proc.stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass

    def iter_stdout(self) -> AsyncIterator[str]:
        return _iter_chunks(self._proc.stdout)

    def iter_stderr(self) -> AsyncIterator[str]:
        return _iter_chunks(self._proc.stderr)

    async def send_message(self, message: Any) -> None:
        if self._channel_writer is None:
            raise RuntimeError("Process was spawned without a side-channel")
        line = json.dumps(message) + "\n"
        self._channel_writer.write(line.encode("utf-8"))
        await self._channel_writer.drain()

    async def iter_messages(self) -> AsyncIterator[Any]:
        if self._channel_reader is None:
            return
        while True:
            line = await self._channel_reader.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            if not text:
                continue
            try:
                yield json.loads(text)
            except json.JSONDecodeError:
                # Shell scripts may print plain text to the channel.
                yield text

    def _close_channel(self) -> None:
        if self._channel_writer is not None:
            self._channel_writer.close()
            self._channel_writer = None

    def _signal(self, sig: signal.Signals) -> None:
        if self._use_pg and self._proc.pid is not None:
            os.killpg(self._proc.pid, sig)
        elif sig == signal.SIGKILL:
            self._proc.kill()
        else:
            self._proc.terminate()

    async def terminate(self, grace_s: float = 5.0) -> None:
        self._close_channel()
        if self._proc.returncode is not None:
            return

        try:
            self._signal(signal.SIGTERM)
        except ProcessLookupError:
            return

        try:
            # Output pumps are owned by the queue; only wait for the exit here.
            await asyncio.wait_for(self._proc.wait(), timeout=grace_s)
        except asyncio.TimeoutError:
            # The process did not terminate gracefully, so escalate to kill().
            await self.kill()

    async def kill(self) -> None:
        self._close_channel()
        if self._proc.returncode is not None:
            # Reap the process so transports are released.
            await self._proc.wait()
            return

        try:
            self._signal(signal.SIGKILL)
        except ProcessLookupError:
            # Process was already gone before we could kill it.
            pass

        await self._proc.wait()

    async def wait(self) -> int:
        return await self._proc.wait()


class LocalSubprocessBackend(ProcessBackend):
    def __init__(self, env_policy: Optional[EnvPolicy] = None) -> None:
        self.env_policy: EnvPolicy = env_policy or EnvPolicy()

    async def spawn(self, opts: SpawnOptions) -> ProcessHandle:
        cwd: Optional[str | Path] = opts.cwd
        env = _build_env(self.env_policy, opts.env_overlay)

        parent_sock: Optional[socket.socket] = None
        child_sock: Optional[socket.socket] = None
        pass_fds: tuple[int, ...] = ()
        if opts.side_channel:
            parent_sock, child_sock = socket.socketpair()
            pass_fds = (child_sock.fileno(),)
            env[CHANNEL_FD_ENV] = str(child_sock.fileno())

        preexec_fn = None
        if opts.use_process_group and os.name == "posix":
            # Start the shell in a new process group so we can signal the
            # entire tree via killpg in terminate()/kill().
            def _preexec() -> None:  # pragma: no cover - trivial wrapper
                os.setsid()

            preexec_fn = _preexec

        try:
            proc = await asyncio.create_subprocess_exec(
                opts.program,
                *opts.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd is not None else None,
                env=env,
                pass_fds=pass_fds,
                preexec_fn=preexec_fn,  # type: ignore[arg-type]
            )
        except BaseException:
            if parent_sock is not None:
                parent_sock.close()
            raise
        finally:
            # The child owns its end now; the parent copy must not linger or
            # the channel never reports EOF.
            if child_sock is not None:
                child_sock.close()

        channel_reader: Optional[asyncio.StreamReader] = None
        channel_writer: Optional[asyncio.StreamWriter] = None
        if parent_sock is not None:
            channel_reader, channel_writer = await asyncio.open_unix_connection(
                sock=parent_sock
            )

        return LocalProcessHandle(
            proc,
            opts.name,
            channel_reader=channel_reader,
            channel_writer=channel_writer,
            use_process_group=opts.use_process_group,
        )
