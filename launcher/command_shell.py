#!/usr/bin/env python3
"""Entry point for ``run``: internal index commands and script dispatch."""

from __future__ import annotations

import errno
import logging
import subprocess
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from launcher.command_record import CommandValidationError, invalid_args_message
from launcher.config import LauncherConfig, UnsupportedPlatformError
from launcher.index_operations import (
    CommandExistsError,
    ScriptNotFoundError,
    create_command,
    delete_commands,
    list_commands,
    modify_command,
    set_up,
    tidy_commands,
)
from launcher.index_store import CommandNotFoundError, IndexStoreError, find_command

USAGE_MSG = "\nUsage:\n\trun <script_name> [args]\n"

MISSING_SHEBANG_MSG = """You need to add a shebang to your script.
A shebang is the first line of your script, for example:
  #!/bin/sh
or
  #!/bin/bash"""

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"


# ---------------------------------------------------------------------------
# Command invocation/result types
# ---------------------------------------------------------------------------


@dataclass
class CommandInvocation:
    name: str
    args: List[str]


@dataclass
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    status: int = 0


Handler = Callable[["LauncherSession", CommandInvocation], CommandResult]


@dataclass
class Command:
    name: str
    summary: str
    usage: str
    handler: Handler


class CommandRegistry:
    def __init__(self) -> None:
        self._commands: Dict[str, Command] = {}

    def register(self, command: Command) -> None:
        self._commands[command.name] = command

    def get(self, name: str) -> Optional[Command]:
        return self._commands.get(name)

    def names(self) -> List[str]:
        return list(self._commands.keys())

    def values(self) -> Iterable[Command]:
        return self._commands.values()


def command(name: str, summary: str, usage: str) -> Callable[[Handler], Handler]:
    def decorator(func: Handler) -> Handler:
        func.__command_definition__ = Command(  # type: ignore[attr-defined]
            name=name,
            summary=summary,
            usage=usage,
            handler=func,
        )
        return func

    return decorator


class LauncherSession:
    """Paths and registered internal commands for one ``run`` invocation."""

    def __init__(self, config: LauncherConfig) -> None:
        self.config = config
        self.script_dir = config.script_dir
        self.index_path = config.index_path
        self.logger = logging.getLogger("run.shell")
        self.registry = CommandRegistry()
        self._register_commands()

    def _register_commands(self) -> None:
        for obj in list(globals().values()):
            if callable(obj) and hasattr(obj, "__command_definition__"):
                self.registry.register(obj.__command_definition__)


# ---------------------------------------------------------------------------
# Internal commands
# ---------------------------------------------------------------------------


def _usage_error(message: str) -> CommandResult:
    return CommandResult(status=1, stderr=message.rstrip("\n") + "\n")


def _missing_index(session: LauncherSession) -> Optional[CommandResult]:
    if session.index_path.exists():
        return None
    return _usage_error(f"No index file at {session.index_path}. Run `run -init` first.")


@command(
    name="-init",
    summary="Create the script directory and an empty index",
    usage="run -init",
)
def init_command(session: LauncherSession, invocation: CommandInvocation) -> CommandResult:
    created = set_up(session.script_dir, session.index_path)
    if not created:
        return CommandResult(stdout=f"Already initialised in {session.script_dir}\n")
    lines = [f"Created {path}" for path in created]
    return CommandResult(stdout="\n".join(lines) + "\n")


@command(
    name="-new",
    summary="Register a script under a command name",
    usage="run -new <name> <scriptPath> [<minArgsCount> <maxArgsCount>]",
)
def new_command(session: LauncherSession, invocation: CommandInvocation) -> CommandResult:
    try:
        record = create_command(session.index_path, invocation.args)
    except CommandValidationError as exc:
        return _usage_error(str(exc))
    except (ScriptNotFoundError, CommandExistsError) as exc:
        return CommandResult(status=1, stderr=f"{exc}\n")
    return CommandResult(stdout=f"Added command {record.name} -> {record.script_path}\n")


@command(
    name="-mod",
    summary="Modify the name, script or argument bounds of a command",
    usage="run -mod <cmd> <newName> [<newScriptPath> [<minArgsCount> <maxArgsCount>]]",
)
def mod_command(session: LauncherSession, invocation: CommandInvocation) -> CommandResult:
    missing = _missing_index(session)
    if missing is not None:
        return missing
    try:
        record = modify_command(session.index_path, invocation.args)
    except CommandValidationError as exc:
        return _usage_error(str(exc))
    except (CommandNotFoundError, CommandExistsError) as exc:
        return CommandResult(status=1, stderr=f"{exc}\n")
    return CommandResult(stdout=f"Modified command {invocation.args[0]}: {record.name} -> {record.script_path}\n")


@command(
    name="-del",
    summary="Delete one or more commands",
    usage="run -del <cmd> [<cmd2> ...]",
)
def del_command(session: LauncherSession, invocation: CommandInvocation) -> CommandResult:
    missing = _missing_index(session)
    if missing is not None:
        return missing
    try:
        report = delete_commands(session.index_path, invocation.args)
    except CommandValidationError as exc:
        return _usage_error(str(exc))
    lines = [f"Deleted command {name}" for name in report.deleted]
    for name in report.missing:
        lines.append(f"Cannot delete non-existent command \"{name}\".")
    if report.missing:
        lines.append("See all commands:\n\trun -list")
    return CommandResult(stdout="\n".join(lines) + "\n")


@command(
    name="-tidy",
    summary="Move all registered scripts into the script directory",
    usage="run -tidy",
)
def tidy_command(session: LauncherSession, invocation: CommandInvocation) -> CommandResult:
    missing = _missing_index(session)
    if missing is not None:
        return missing
    report = tidy_commands(session.script_dir, session.index_path)
    lines: List[str] = []
    for move in report.moved:
        if move.renamed:
            lines.append(
                f"Renaming {move.source.name} to {move.target.name} because of script name collision in registry."
            )
        lines.append(f"Moved {move.command}: {move.source} -> {move.target}")
    errors = [
        f"Failed to move \"{failure.source.name}\" to \"{failure.target}\": {failure.error}"
        for failure in report.failed
    ]
    lines.append(f"{len(report.moved)} moved, {report.unchanged} already in place, {len(report.failed)} failed.")
    return CommandResult(
        stdout="\n".join(lines) + "\n",
        stderr="\n".join(errors) + "\n" if errors else "",
    )


@command(
    name="-list",
    summary="List internal and registered commands",
    usage="run -list",
)
def list_command(session: LauncherSession, invocation: CommandInvocation) -> CommandResult:
    missing = _missing_index(session)
    if missing is not None:
        return missing
    lines = ["run commands:", f"{'Name':<10} Location"]
    lines.extend(f"{name:<10} internal" for name in session.registry.names())
    for record in list_commands(session.index_path):
        lines.append(f"{record.name:<10} {record.script_path}")
    return CommandResult(stdout="\n".join(lines) + "\n")


# ---------------------------------------------------------------------------
# Script dispatch
# ---------------------------------------------------------------------------


class ScriptResolutionError(RuntimeError):
    """Raised when a name resolves to neither a registered command nor a script."""


@dataclass
class Resolution:
    argv: List[str]
    notices: List[str] = field(default_factory=list)


def resolve_script(session: LauncherSession, args: Sequence[str]) -> Resolution:
    """Map ``[name, *script_args]`` to the argv of the script to execute.

    Registered commands win. Otherwise a file in the script directory whose
    name without extension equals *name* is used.
    """

    name, script_args = args[0], list(args[1:])
    if session.index_path.exists():
        try:
            record = find_command(session.index_path, name)
        except CommandNotFoundError:
            pass
        else:
            if not record.accepts(len(script_args)):
                raise ScriptResolutionError(invalid_args_message(record, len(script_args)))
            return Resolution(argv=[record.script_path, *script_args])

    notices = [f"Have you forgot to add your new script to \"{session.script_dir}\"?"]
    if not session.script_dir.is_dir():
        raise ScriptResolutionError("\n".join([f"Command not found: {name!r}.", *notices]))
    contains_dir = False
    for entry in sorted(session.script_dir.iterdir()):
        if entry.is_dir():
            contains_dir = True
            continue
        if entry.stem == name and entry.name != session.index_path.name:
            return Resolution(argv=[str(entry), *script_args], notices=notices)
    if contains_dir:
        notices.append(f"You should not have folders in \"{session.script_dir}\". It is only meant for script files.")
    raise ScriptResolutionError("\n".join([f"Command not found: {name!r}.", *notices]))


def run_script(session: LauncherSession, resolution: Resolution) -> CommandResult:
    session.logger.debug("Executing %s", resolution.argv)
    notice = "\n".join(resolution.notices) + "\n" if resolution.notices else ""
    try:
        completed = subprocess.run(resolution.argv, check=False)
    except OSError as exc:
        if exc.errno == errno.ENOEXEC:
            return CommandResult(status=1, stderr=notice + MISSING_SHEBANG_MSG + "\n")
        return CommandResult(status=1, stderr=f"{notice}{exc}\n")
    return CommandResult(stderr=notice, status=completed.returncode)


def usage_text(registry: CommandRegistry) -> str:
    lines = [USAGE_MSG.rstrip("\n"), "", "Internal commands:"]
    for definition in registry.values():
        lines.append(f"\t{definition.usage}")
        lines.append(f"\t\t{definition.summary}")
    return "\n".join(lines) + "\n"


def execute(session: LauncherSession, args: Sequence[str]) -> CommandResult:
    """Dispatch one ``run`` invocation (``args`` excludes the program name)."""

    if not args:
        return CommandResult(stdout=usage_text(session.registry))
    definition = session.registry.get(args[0])
    try:
        if definition is not None:
            return definition.handler(session, CommandInvocation(name=args[0], args=list(args[1:])))
        resolution = resolve_script(session, args)
    except ScriptResolutionError as exc:
        return CommandResult(status=1, stderr=f"{exc}\n{USAGE_MSG}")
    except (IndexStoreError, OSError) as exc:
        session.logger.debug("Command %s failed", args[0], exc_info=True)
        return CommandResult(status=1, stderr=f"{exc}\n")
    return run_script(session, resolution)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: Optional[Sequence[str]] = None) -> int:
    args_list = list(sys.argv[1:] if argv is None else argv)
    try:
        config = LauncherConfig.from_env()
    except UnsupportedPlatformError as exc:
        print(exc, file=sys.stderr)
        return 1
    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    session = LauncherSession(config)

    result = execute(session, args_list)
    if result.stdout:
        print(result.stdout, end="")
    if result.stderr:
        print(result.stderr, end="", file=sys.stderr)
    return result.status


if __name__ == "__main__":
    sys.exit(main())
