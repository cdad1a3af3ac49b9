"""Platform detection and on-disk layout for ``run``."""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

BASE_DIR = ".run"
SCRIPT_DIR = "cmd"
INDEX_FILE = "cmd_mappings.json"

DEFAULT_LOG_LEVEL = "WARNING"


class UnsupportedPlatformError(RuntimeError):
    """Raised when ``run`` is started on a platform it has no script directory for."""


def detect_platform(platform: Optional[str] = None) -> str:
    """Return the script directory name for *platform* (``sys.platform`` by default)."""

    value = platform or sys.platform
    if value.startswith("linux") or value == "darwin":
        return "unix"
    if value in ("win32", "cygwin"):
        return "windows"
    raise UnsupportedPlatformError(
        f"run does not support {value!r} as a platform."
    )


def user_home_dir(environ: Optional[Mapping[str, str]] = None) -> Path:
    """Return the home directory of the user who invoked ``run``.

    ``-tidy`` may need ``sudo``; in that case ``HOME`` points at root's home,
    so the invoking user is looked up through ``SUDO_USER`` instead.
    """

    env = os.environ if environ is None else environ
    if os.name == "posix" and hasattr(os, "geteuid") and os.geteuid() == 0:
        sudo_user = env.get("SUDO_USER")
        if sudo_user:
            import pwd

            return Path(pwd.getpwnam(sudo_user).pw_dir)
    key = "USERPROFILE" if os.name == "nt" else "HOME"
    value = env.get(key)
    if value:
        return Path(value)
    return Path.home()


@dataclass
class LauncherConfig:
    home: Path
    platform: str
    log_level: str = DEFAULT_LOG_LEVEL

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "LauncherConfig":
        env = os.environ if environ is None else environ
        override = env.get("RUN_HOME")
        home = Path(override).expanduser() if override else user_home_dir(env)
        level = (env.get("RUN_LOG_LEVEL") or DEFAULT_LOG_LEVEL).upper()
        if not isinstance(logging.getLevelName(level), int):
            level = DEFAULT_LOG_LEVEL
        return cls(home=home, platform=detect_platform(), log_level=level)

    @property
    def run_dir(self) -> Path:
        return self.home / BASE_DIR

    @property
    def script_dir(self) -> Path:
        return self.run_dir / SCRIPT_DIR / self.platform

    @property
    def index_path(self) -> Path:
        return self.script_dir / INDEX_FILE


__all__ = [
    "BASE_DIR",
    "INDEX_FILE",
    "SCRIPT_DIR",
    "LauncherConfig",
    "UnsupportedPlatformError",
    "detect_platform",
    "user_home_dir",
]
