"""Command records stored in the ``run`` index file."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Sequence

UNBOUNDED = -1


class CommandValidationError(ValueError):
    """Raised when a command record cannot be built from user input."""


@dataclass
class CommandRecord:
    """A registered name and the script it dispatches to."""

    name: str = ""
    script_path: str = ""
    min_args: int = 0
    max_args: int = field(default=UNBOUNDED)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "CommandRecord":
        options = payload.get("options") or {}
        if not isinstance(options, dict):
            raise TypeError(f"options must be an object, found {type(options).__name__}")
        return cls(
            name=payload.get("commandName", ""),
            script_path=payload.get("scriptName", ""),
            min_args=int(options.get("minNumArgs", 0)),
            max_args=int(options.get("maxNumArgs", UNBOUNDED)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "commandName": self.name,
            "scriptName": self.script_path,
            "options": {
                "minNumArgs": self.min_args,
                "maxNumArgs": self.max_args,
            },
        }

    def to_json(self) -> str:
        """Compact encoding written into the index array."""

        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))

    def to_json_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")

    def validate(self) -> None:
        if not self.name:
            raise CommandValidationError("Command name must not be empty.")
        if self.name.startswith("-"):
            raise CommandValidationError(
                f"Command name {self.name!r} must not start with '-', those are internal commands."
            )
        if self.min_args < 0:
            raise CommandValidationError(f"minArgsCount must be >= 0, got {self.min_args}.")
        if self.max_args != UNBOUNDED and self.max_args < self.min_args:
            raise CommandValidationError(
                f"maxArgsCount must be -1 (unbounded) or >= minArgsCount ({self.min_args}), got {self.max_args}."
            )

    def accepts(self, arg_count: int) -> bool:
        if arg_count < self.min_args:
            return False
        return self.max_args == UNBOUNDED or arg_count <= self.max_args


def _parse_count(raw: str, label: str) -> int:
    try:
        return int(raw)
    except ValueError as exc:
        raise CommandValidationError(f"{label} must be an integer, got {raw!r}.") from exc


def parse_command_args(args: Sequence[str], record: CommandRecord) -> CommandRecord:
    """Fill *record* from ``[name, scriptPath, [minArgs, [maxArgs]]]``.

    The script path is made absolute against the current working directory.
    Fields not present in *args* keep the value already on *record*.
    """

    if len(args) < 2:
        raise CommandValidationError("Wrong argument count.")
    record.name = args[0]
    record.script_path = str(Path(args[1]).expanduser().absolute())
    if len(args) >= 3:
        record.min_args = _parse_count(args[2], "minArgsCount")
    if len(args) >= 4:
        record.max_args = _parse_count(args[3], "maxArgsCount")
    record.validate()
    return record


def invalid_args_message(record: CommandRecord, arg_count: int) -> str:
    qualifier = "at least"
    count = record.min_args
    if record.max_args != UNBOUNDED and arg_count > record.max_args:
        qualifier = "at most"
        count = record.max_args
    plural = "" if count == 1 else "s"
    return f"\"{record.name}\" expects {qualifier} {count} argument{plural}."


__all__ = [
    "UNBOUNDED",
    "CommandRecord",
    "CommandValidationError",
    "invalid_args_message",
    "parse_command_args",
]
