import os
from pathlib import Path
from types import SimpleNamespace

import pytest

from launcher import config
from launcher.config import (
    INDEX_FILE,
    LauncherConfig,
    UnsupportedPlatformError,
    detect_platform,
    user_home_dir,
)

posix_only = pytest.mark.skipif(os.name != "posix", reason="POSIX home directory lookup")


@pytest.mark.parametrize(
    "platform, expected",
    [("linux", "unix"), ("darwin", "unix"), ("win32", "windows")],
)
def test_detect_platform(platform: str, expected: str) -> None:
    assert detect_platform(platform) == expected


def test_detect_platform_rejects_unknown() -> None:
    with pytest.raises(UnsupportedPlatformError):
        detect_platform("sunos5")


@posix_only
def test_user_home_dir_prefers_home_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config.os, "geteuid", lambda: 1000)
    assert user_home_dir({"HOME": "/home/alice", "SUDO_USER": "bob"}) == Path("/home/alice")


@posix_only
def test_user_home_dir_resolves_sudo_user(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config.os, "geteuid", lambda: 0)
    monkeypatch.setattr("pwd.getpwnam", lambda name: SimpleNamespace(pw_dir=f"/home/{name}"))

    assert user_home_dir({"HOME": "/root", "SUDO_USER": "alice"}) == Path("/home/alice")


def test_config_from_env_uses_run_home(tmp_path: Path) -> None:
    cfg = LauncherConfig.from_env({"RUN_HOME": str(tmp_path), "RUN_LOG_LEVEL": "debug"})

    assert cfg.home == tmp_path
    assert cfg.log_level == "DEBUG"
    assert cfg.script_dir == tmp_path / ".run" / "cmd" / cfg.platform
    assert cfg.index_path == cfg.script_dir / INDEX_FILE


def test_config_from_env_ignores_unknown_log_level(tmp_path: Path) -> None:
    cfg = LauncherConfig.from_env({"RUN_HOME": str(tmp_path), "RUN_LOG_LEVEL": "loud"})
    assert cfg.log_level == "WARNING"
