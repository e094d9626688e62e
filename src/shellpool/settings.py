from typing import Any, Dict, List, Optional, Final, Union
import os
import re
from pathlib import Path

from pydantic import BaseModel, Field, SecretStr
import yaml
import json5  # type: ignore

from .proc.base import EnvPolicy, SpawnOptions

# Default sentinel handed to `sudo -p`; the stock prompt is locale dependent.
DEFAULT_SUDO_PROMPT: Final[str] = "PaxsWord"

DEFAULT_DONE_MARKER: Final[str] = "__done__"

# Variable replacement pattern.
# Supports:
#   - ${NAME}
#   - ${env:NAME}
# Ignores '$${NAME}' so it can be used to escape a literal '${NAME}'.
VAR_PATTERN = re.compile(r"(?<!\$)\$\{(?:env:)?([A-Za-z_][A-Za-z0-9_]*)\}")


class ProcessEnvSettings(BaseModel):
    inherit_parent: bool = True
    allowlist: Optional[List[str]] = None
    denylist: Optional[List[str]] = None
    defaults: Dict[str, str] = Field(default_factory=dict)

    def to_policy(self) -> EnvPolicy:
        return EnvPolicy(
            inherit_parent=self.inherit_parent,
            allowlist=self.allowlist,
            denylist=self.denylist,
            defaults=dict(self.defaults),
        )


class ShellSettings(BaseModel):
    # Backend key in the process backend registry.
    backend: str = "local"
    # Program and args to start each long-lived shell process
    program: str = "/bin/sh"
    args: List[str] = Field(default_factory=lambda: ["-s"])
    cwd: Optional[Path] = None
    # Extra socket exposed to the shell as $SHELLPOOL_CHANNEL_FD
    side_channel: bool = True
    use_process_group: bool = True
    env: ProcessEnvSettings = Field(default_factory=ProcessEnvSettings)

    def spawn_options(self, name: Optional[str] = None) -> SpawnOptions:
        return SpawnOptions(
            program=self.program,
            args=list(self.args),
            name=name,
            cwd=self.cwd,
            side_channel=self.side_channel,
            use_process_group=self.use_process_group,
        )


class ElevationSettings(BaseModel):
    # User to switch to via `sudo su` when each shell starts
    user: Optional[str] = None
    # Discarded once pool startup finishes
    password: Optional[SecretStr] = None
    prompt: str = DEFAULT_SUDO_PROMPT
    # Pause before answering the prompt so the child's terminal settles
    settle_delay_s: float = Field(default=0.05, ge=0)


class ShellPoolSettings(BaseModel):
    shell: ShellSettings = Field(default_factory=ShellSettings)
    elevation: ElevationSettings = Field(default_factory=ElevationSettings)
    number_of_processes: int = Field(default=1, ge=1)
    # Maximum commands written to one shell before earlier ones finish
    concurrent_cmds: int = Field(default=100, ge=1)
    done_marker: str = Field(default=DEFAULT_DONE_MARKER, min_length=1)
    init_script: Optional[str] = None
    init_script_file: Optional[Path] = None
    shutdown_grace_s: float = Field(default=1.0, ge=0)
    log: bool = True


def _interpolate(value: Any) -> Any:
    if isinstance(value, str):

        def _sub(m: re.Match[str]) -> str:
            name = m.group(1)
            if name not in os.environ:
                raise ValueError(f"Undefined variable: {name}")
            return os.environ[name]

        return VAR_PATTERN.sub(_sub, value).replace("$${", "${")
    if isinstance(value, dict):
        return {k: _interpolate(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate(v) for v in value]
    return value


def _load_raw_file(path: Path) -> Any:
    ext = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    data: Any = None
    if ext in {".yaml", ".yml"}:
        data = yaml.safe_load(text)
    elif ext in {".json5", ".jsonc", ".json"}:
        data = json5.loads(text)
    else:
        raise ValueError(f"Unsupported config file extension: {ext}")
    if data is None:
        return {}
    return data


def load_settings(path: Union[str, Path]) -> ShellPoolSettings:
    data = _load_raw_file(Path(path))
    if not isinstance(data, dict):
        raise ValueError("Root configuration must be a mapping/object")
    return ShellPoolSettings.model_validate(_interpolate(data))
