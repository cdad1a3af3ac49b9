import json
import os
from pathlib import Path

import pytest

from launcher.command_shell import LauncherSession, execute, main
from launcher.config import LauncherConfig

posix_only = pytest.mark.skipif(os.name != "posix", reason="requires /bin/sh")


@pytest.fixture
def session(tmp_path: Path) -> LauncherSession:
    shell = LauncherSession(LauncherConfig(home=tmp_path, platform="unix"))
    result = execute(shell, ["-init"])
    assert result.status == 0
    return shell


def _executable(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(body, encoding="utf-8")
    path.chmod(0o755)
    return path


def test_internal_commands_are_registered(session: LauncherSession) -> None:
    assert session.registry.names() == ["-init", "-new", "-mod", "-del", "-tidy", "-list"]


def test_no_arguments_prints_usage(session: LauncherSession) -> None:
    result = execute(session, [])
    assert result.status == 0
    assert "run <script_name> [args]" in result.stdout
    assert "\trun -del <cmd> [<cmd2> ...]\n\t\tDelete one or more commands\n" in result.stdout
    assert result.stdout.count("\t\t") == len(session.registry.names())


def test_init_is_idempotent(session: LauncherSession) -> None:
    result = execute(session, ["-init"])
    assert result.status == 0
    assert "Already initialised" in result.stdout


def test_new_list_mod_del_cycle(session: LauncherSession, tmp_path: Path) -> None:
    script = _executable(tmp_path / "scripts" / "build.sh", "#!/bin/sh\n")

    created = execute(session, ["-new", "build", str(script)])
    assert created.status == 0
    assert created.stdout == f"Added command build -> {script}\n"

    listing = execute(session, ["-list"])
    assert "-tidy      internal" in listing.stdout
    assert f"build      {script}" in listing.stdout

    modified = execute(session, ["-mod", "build", "compile"])
    assert modified.status == 0
    assert "compile" in modified.stdout

    deleted = execute(session, ["-del", "compile", "ghost"])
    assert deleted.status == 0
    assert "Deleted command compile" in deleted.stdout
    assert 'Cannot delete non-existent command "ghost".' in deleted.stdout
    assert json.loads(session.index_path.read_text(encoding="utf-8")) == []


def test_new_reports_usage_on_missing_arguments(session: LauncherSession) -> None:
    result = execute(session, ["-new", "build"])
    assert result.status == 1
    assert "Usage:" in result.stderr


def test_mod_unknown_command_fails(session: LauncherSession) -> None:
    result = execute(session, ["-mod", "ghost", "spirit"])
    assert result.status == 1
    assert "Command not found" in result.stderr


def test_list_without_index_asks_for_init(tmp_path: Path) -> None:
    shell = LauncherSession(LauncherConfig(home=tmp_path, platform="unix"))
    result = execute(shell, ["-list"])
    assert result.status == 1
    assert "run -init" in result.stderr


def test_tidy_reports_collision_rename(session: LauncherSession, tmp_path: Path) -> None:
    first = _executable(tmp_path / "a" / "run.sh", "#!/bin/sh\n")
    second = _executable(tmp_path / "b" / "run.sh", "#!/bin/sh\n")
    execute(session, ["-new", "first", str(first)])
    execute(session, ["-new", "second", str(second)])

    result = execute(session, ["-tidy"])

    assert result.status == 0
    assert "Renaming run.sh to run1.sh" in result.stdout
    assert "2 moved" in result.stdout
    assert (session.script_dir / "run1.sh").exists()


def test_corrupt_index_is_reported(session: LauncherSession) -> None:
    session.index_path.write_text("{}", encoding="utf-8")
    result = execute(session, ["-list"])
    assert result.status == 1
    assert "Invalid index file" in result.stderr


@posix_only
def test_registered_command_runs_script_with_arguments(session: LauncherSession, tmp_path: Path) -> None:
    out = tmp_path / "out.txt"
    script = _executable(tmp_path / "scripts" / "echo.sh", f'#!/bin/sh\necho "$@" > "{out}"\n')
    execute(session, ["-new", "say", str(script)])

    result = execute(session, ["say", "hello", "world"])

    assert result.status == 0
    assert out.read_text(encoding="utf-8") == "hello world\n"


@posix_only
def test_exit_status_is_propagated(session: LauncherSession, tmp_path: Path) -> None:
    script = _executable(tmp_path / "scripts" / "fail.sh", "#!/bin/sh\nexit 3\n")
    execute(session, ["-new", "fail", str(script)])

    assert execute(session, ["fail"]).status == 3


def test_argument_bounds_are_enforced(session: LauncherSession, tmp_path: Path) -> None:
    script = _executable(tmp_path / "scripts" / "one.sh", "#!/bin/sh\n")
    execute(session, ["-new", "one", str(script), "1", "1"])

    result = execute(session, ["one"])
    assert result.status == 1
    assert '"one" expects at least 1 argument.' in result.stderr

    result = execute(session, ["one", "a", "b"])
    assert result.status == 1
    assert '"one" expects at most 1 argument.' in result.stderr


@posix_only
def test_unregistered_script_in_script_dir_is_used(session: LauncherSession, tmp_path: Path) -> None:
    out = tmp_path / "out.txt"
    _executable(session.script_dir / "deploy.sh", f'#!/bin/sh\necho deployed > "{out}"\n')

    result = execute(session, ["deploy"])

    assert result.status == 0
    assert out.read_text(encoding="utf-8") == "deployed\n"
    assert "Have you forgot to add your new script" in result.stderr


def test_unknown_command_is_reported(session: LauncherSession) -> None:
    (session.script_dir / "nested").mkdir()
    result = execute(session, ["ghost"])
    assert result.status == 1
    assert "Command not found: 'ghost'." in result.stderr
    assert "You should not have folders" in result.stderr


@posix_only
def test_script_without_shebang_reports_hint(session: LauncherSession, tmp_path: Path) -> None:
    script = _executable(tmp_path / "scripts" / "plain.sh", "echo missing shebang\n")
    execute(session, ["-new", "plain", str(script)])

    result = execute(session, ["plain"])

    assert result.status == 1
    assert "shebang" in result.stderr


def test_main_uses_run_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture) -> None:
    monkeypatch.setenv("RUN_HOME", str(tmp_path))

    assert main(["-init"]) == 0
    captured = capsys.readouterr()
    assert "cmd_mappings.json" in captured.out
    assert main(["-list"]) == 0
    assert "run commands:" in capsys.readouterr().out
