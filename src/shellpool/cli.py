from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional, Sequence

import click
from pydantic import SecretStr

from .command import CommandResult
from .errors import ShellPoolError
from .logger import configure_logging
from .pool import ShellPool
from .settings import ShellPoolSettings, load_settings


def _echo_result(result: Any, label: Optional[str] = None) -> bool:
    if not isinstance(result, CommandResult):
        click.echo(str(result))
        return True
    if label is not None:
        click.echo(f"--- {label} (status {result.returncode})")
    click.echo(result.output, nl=False)
    return result.ok


async def _run(
    settings: ShellPoolSettings, commands: Sequence[str], broadcast: bool
) -> int:
    ok = True
    async with ShellPool(settings) as pool:
        try:
            if broadcast:
                for text in commands:
                    results = await pool.create_command(text, send_to_every_shell=True)
                    for index, result in enumerate(results):
                        ok = _echo_result(result, label=f"shell {index}") and ok
            else:
                submitted = [pool.create_command(text) for text in commands]
                for result in await asyncio.gather(*submitted):
                    ok = _echo_result(result) and ok
        except ShellPoolError as exc:
            click.echo(f"error: {exc}", err=True)
            return 2
    return 0 if ok else 1


@click.command()
@click.argument("commands", nargs=-1, required=True)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="YAML or JSON5 settings file.",
)
@click.option("-n", "--processes", type=click.IntRange(min=1), help="Number of shells.")
@click.option(
    "-c", "--concurrency", type=click.IntRange(min=1), help="Commands in flight per shell."
)
@click.option("--shell", "program", help="Shell executable.")
@click.option("--user", help="Switch every shell to this user via sudo su.")
@click.option("--password", envvar="SHELLPOOL_PASSWORD", help="sudo password.")
@click.option("--broadcast", is_flag=True, help="Run each command on every shell.")
@click.option(
    "--log-file", type=click.Path(dir_okay=False, path_type=Path), help="Write diagnostics here."
)
def main(
    commands: tuple[str, ...],
    config_path: Optional[Path],
    processes: Optional[int],
    concurrency: Optional[int],
    program: Optional[str],
    user: Optional[str],
    password: Optional[str],
    broadcast: bool,
    log_file: Optional[Path],
) -> None:
    """Run COMMANDS on a pool of persistent shells and print their output."""
    settings = load_settings(config_path) if config_path else ShellPoolSettings()
    if processes is not None:
        settings.number_of_processes = processes
    if concurrency is not None:
        settings.concurrent_cmds = concurrency
    if program is not None:
        settings.shell.program = program
    if user is not None:
        settings.elevation.user = user
    if password is not None:
        settings.elevation.password = SecretStr(password)
    if settings.elevation.user and settings.elevation.password is None:
        settings.elevation.password = SecretStr(
            click.prompt(f"Password to switch to {settings.elevation.user}", hide_input=True)
        )
    if log_file is not None:
        configure_logging(logging.DEBUG, log_file)
    else:
        settings.log = False

    raise SystemExit(asyncio.run(_run(settings, commands, broadcast)))


if __name__ == "__main__":
    main()
