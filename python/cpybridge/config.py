"""Runtime configuration for the bridge."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Union

ENV_PYTHON = "CPYBRIDGE_PYTHON"
ENV_DEBUG = "CPYBRIDGE_DEBUG"
ENV_ACCEPT_TIMEOUT = "CPYBRIDGE_ACCEPT_TIMEOUT"
ENV_SCRIPT_DIR = "CPYBRIDGE_SCRIPT_DIR"
ENV_LOG = "CPYBRIDGE_LOG"

# Python's warnings module prints "file:line: SomeWarning: text" followed by
# the indented offending source line.
DEFAULT_BENIGN_WARNING = r"^\S.*:\d+: \w*Warning: "

_TRUTHY = ("1", "true", "yes", "on")


def _env_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in _TRUTHY


@dataclass
class BridgeConfig:
    python_command: Union[str, Sequence[str]] = "python"
    debug: bool = False
    accept_timeout: float = 10.0
    env_check_timeout: float = 60.0
    shutdown_timeout: float = 5.0
    script_dir: Optional[str] = None
    host: str = "127.0.0.1"
    drain_debug_on_shutdown: bool = True
    benign_warning_pattern: str = DEFAULT_BENIGN_WARNING

    def command(self) -> List[str]:
        """Interpreter argv; a string is split the way the platform shell would."""
        if isinstance(self.python_command, str):
            argv = shlex.split(self.python_command, posix=os.name != "nt")
        else:
            argv = [str(part) for part in self.python_command]
        if not argv:
            raise ValueError("python_command is empty")
        return argv

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides) -> "BridgeConfig":
        env = os.environ if environ is None else environ
        config = cls()
        if env.get(ENV_PYTHON):
            config.python_command = env[ENV_PYTHON]
        if ENV_DEBUG in env:
            config.debug = _env_flag(env.get(ENV_DEBUG))
        if env.get(ENV_ACCEPT_TIMEOUT):
            try:
                config.accept_timeout = float(env[ENV_ACCEPT_TIMEOUT])
            except ValueError as exc:
                raise ValueError(f"{ENV_ACCEPT_TIMEOUT} must be a number: {env[ENV_ACCEPT_TIMEOUT]!r}") from exc
        if env.get(ENV_SCRIPT_DIR):
            config.script_dir = env[ENV_SCRIPT_DIR]
        for key, value in overrides.items():
            if value is None:
                continue
            if not hasattr(config, key):
                raise TypeError(f"unknown config option: {key}")
            setattr(config, key, value)
        return config
