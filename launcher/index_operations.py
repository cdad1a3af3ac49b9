"""Index maintenance behind the ``-init/-new/-mod/-del/-tidy/-list`` commands."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Sequence, Set

from launcher.command_record import CommandRecord, CommandValidationError, parse_command_args
from launcher.index_store import (
    CommandNotFoundError,
    IndexStoreError,
    PathLike,
    RewriteAction,
    append_record,
    find_operation,
    rewrite_operation,
)

LOGGER = logging.getLogger("run.index")

KEEP_VALUE = "_"
NOTICE_FILE = "What_is_this.txt"

USAGE_NEW = "Usage:\n\trun -new <name> <scriptPath> [<minArgsCount> <maxArgsCount>]"
USAGE_MOD = (
    "Usage:\n\trun -mod <cmd> <newName> [<newScriptPath> [<minArgsCount> <maxArgsCount>]]\n\n"
    f"An underscore ({KEEP_VALUE}) denotes the original value."
)
USAGE_DEL = "Usage:\n\trun -del <cmd> [<cmd2> ...]"

WHAT_IS_THIS = """\
This directory belongs to `run`, a small command launcher.

cmd/<platform>/ holds the scripts `run` dispatches to, and
cmd/<platform>/cmd_mappings.json maps command names to script paths.

  run <name> [args]        run a registered command or a script in cmd/<platform>/
  run -new <name> <path>   register a script under <name>
  run -list                show all commands

Edit cmd_mappings.json only while no `run` command is executing.
"""


class ScriptNotFoundError(IndexStoreError):
    """Raised when a command is registered for a script that does not exist."""

    def __init__(self, script_path: str) -> None:
        self.script_path = script_path
        super().__init__(f"There is no such script: {script_path}")


class CommandExistsError(IndexStoreError):
    """Raised when a command name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Command {name!r} already exists. See all commands:\n\trun -list")


def _is_registered(index_path: Path, name: str) -> bool:
    if not index_path.exists() or index_path.stat().st_size == 0:
        return False
    return find_operation(index_path, lambda record: record.name == name) is not None


# ----------------------------------------------------------------------
# -init
# ----------------------------------------------------------------------


def set_up(script_dir: PathLike, index_path: PathLike) -> List[Path]:
    """Create the script directory, an empty index and the notice file.

    Existing files are left alone. Returns the paths that were created.
    """

    scripts = Path(script_dir)
    index = Path(index_path)
    created: List[Path] = []
    if not scripts.exists():
        scripts.mkdir(mode=0o750, parents=True)
        created.append(scripts)
    if not index.exists():
        index.write_text("[]", encoding="utf-8")
        created.append(index)
    notice = scripts.parent.parent / NOTICE_FILE
    if not notice.exists():
        notice.write_text(WHAT_IS_THIS, encoding="utf-8")
        created.append(notice)
    return created


# ----------------------------------------------------------------------
# -new / -mod
# ----------------------------------------------------------------------


def create_command(index_path: PathLike, args: Sequence[str]) -> CommandRecord:
    """Register ``[name, scriptPath, [min, [max]]]`` by appending it to the index."""

    index = Path(index_path)
    record = CommandRecord()
    try:
        parse_command_args(args, record)
    except CommandValidationError as exc:
        raise CommandValidationError(f"{exc}\n{USAGE_NEW}") from exc
    if not Path(record.script_path).is_file():
        raise ScriptNotFoundError(record.script_path)
    if _is_registered(index, record.name):
        raise CommandExistsError(record.name)
    append_record(index, record.to_json_bytes())
    LOGGER.info("Registered %s -> %s", record.name, record.script_path)
    return record


def modify_command(index_path: PathLike, args: Sequence[str]) -> CommandRecord:
    """Apply ``[cmd, newName, [newScriptPath, [min, [max]]]]`` to a registered command.

    ``_`` in any position keeps the current value. Raises
    :class:`CommandNotFoundError` if *cmd* is not registered.
    """

    if len(args) < 2:
        raise CommandValidationError(f"Wrong argument count passed.\n{USAGE_MOD}")
    index = Path(index_path)
    name = args[0]
    overrides = list(args[1:5])
    new_name = overrides[0]
    if new_name not in (KEEP_VALUE, name) and _is_registered(index, new_name):
        raise CommandExistsError(new_name)

    modified: List[CommandRecord] = []

    def apply(record: CommandRecord) -> RewriteAction:
        if record.name != name:
            return RewriteAction.KEEP
        merged = [record.name, record.script_path, str(record.min_args), str(record.max_args)]
        for position, value in enumerate(overrides):
            if value != KEEP_VALUE:
                merged[position] = value
        try:
            parse_command_args(merged, record)
        except CommandValidationError as exc:
            raise CommandValidationError(f"{exc}\n{USAGE_MOD}") from exc
        modified.append(record)
        return RewriteAction.UPDATE

    report = rewrite_operation(index, apply)
    if not report.updated:
        raise CommandNotFoundError(name)
    return modified[0]


# ----------------------------------------------------------------------
# -del
# ----------------------------------------------------------------------


@dataclass
class DeleteReport:
    deleted: List[str] = field(default_factory=list)
    missing: List[str] = field(default_factory=list)


def delete_commands(index_path: PathLike, names: Sequence[str]) -> DeleteReport:
    """Remove every record whose name is in *names*.

    Names that are not registered do not fail the operation; they are
    returned in :attr:`DeleteReport.missing`.
    """

    if not names:
        raise CommandValidationError(USAGE_DEL)
    requested = list(dict.fromkeys(names))
    targets = set(requested)

    def exclude(record: CommandRecord) -> RewriteAction:
        return RewriteAction.DROP if record.name in targets else RewriteAction.KEEP

    # Nothing to drop: leave the index file as it is.
    if find_operation(index_path, lambda record: record.name in targets) is None:
        matched: Set[str] = set()
    else:
        matched = set(rewrite_operation(index_path, exclude).dropped_names)
    report = DeleteReport(
        deleted=[name for name in requested if name in matched],
        missing=[name for name in requested if name not in matched],
    )
    for name in report.missing:
        LOGGER.warning("Cannot delete non-existent command %r", name)
    return report


# ----------------------------------------------------------------------
# -tidy
# ----------------------------------------------------------------------


@dataclass
class ScriptMove:
    command: str
    source: Path
    target: Path

    @property
    def renamed(self) -> bool:
        return self.source.name != self.target.name


@dataclass
class MoveFailure:
    command: str
    source: Path
    target: Path
    error: str


@dataclass
class TidyReport:
    moved: List[ScriptMove] = field(default_factory=list)
    failed: List[MoveFailure] = field(default_factory=list)
    unchanged: int = 0


def _is_within(path: Path, directory: Path) -> bool:
    try:
        path.parent.resolve().relative_to(directory)
    except ValueError:
        return False
    return True


def free_script_name(file_name: str, taken: Set[str]) -> str:
    """Return *file_name*, or ``<stem>N<ext>`` with the lowest free ``N >= 1``."""

    if file_name not in taken:
        return file_name
    stem, ext = os.path.splitext(file_name)
    counter = 1
    while f"{stem}{counter}{ext}" in taken:
        counter += 1
    return f"{stem}{counter}{ext}"


def _restore(moves: Iterable[ScriptMove]) -> None:
    for move in moves:
        try:
            shutil.move(str(move.target), str(move.source))
        except OSError as exc:
            LOGGER.error("Failed to move %s back to %s: %s", move.target, move.source, exc)


def tidy_commands(script_dir: PathLike, index_path: PathLike) -> TidyReport:
    """Move every registered script into *script_dir* and update the index.

    Name collisions inside *script_dir* are resolved by numbering the new
    file (``run.sh`` -> ``run1.sh``). A script that cannot be moved keeps its
    old path and is reported in :attr:`TidyReport.failed`.
    """

    scripts = Path(script_dir)
    managed = scripts.resolve()
    taken = {entry.name for entry in scripts.iterdir()}
    report = TidyReport()

    def relocate(record: CommandRecord) -> RewriteAction:
        source = Path(record.script_path)
        if _is_within(source, managed):
            report.unchanged += 1
            return RewriteAction.KEEP
        target = scripts / free_script_name(source.name, taken)
        try:
            shutil.move(str(source), str(target))
        except OSError as exc:
            LOGGER.warning("Failed to move %s to %s: %s", source, target, exc)
            report.failed.append(MoveFailure(record.name, source, target, str(exc)))
            return RewriteAction.KEEP
        taken.add(target.name)
        move = ScriptMove(record.name, source, target)
        if move.renamed:
            LOGGER.info("Renamed %s to %s because of a name collision", source.name, target.name)
        report.moved.append(move)
        record.script_path = str(target)
        return RewriteAction.UPDATE

    try:
        rewrite_operation(index_path, relocate)
    except Exception:
        _restore(reversed(report.moved))
        raise
    return report


# ----------------------------------------------------------------------
# -list
# ----------------------------------------------------------------------


def list_commands(index_path: PathLike) -> List[CommandRecord]:
    records: List[CommandRecord] = []

    def collect(record: CommandRecord) -> bool:
        records.append(record)
        return False

    find_operation(index_path, collect)
    return records


__all__ = [
    "KEEP_VALUE",
    "USAGE_DEL",
    "USAGE_MOD",
    "USAGE_NEW",
    "CommandExistsError",
    "DeleteReport",
    "MoveFailure",
    "ScriptMove",
    "ScriptNotFoundError",
    "TidyReport",
    "create_command",
    "delete_commands",
    "free_script_name",
    "list_commands",
    "modify_command",
    "set_up",
    "tidy_commands",
]
