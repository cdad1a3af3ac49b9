"""Streaming read/append/rewrite primitives for the ``run`` index file.

The index is a single JSON array of command records. Records are decoded
one element at a time so memory stays bounded by the largest record, and
every rewrite goes through a temporary file that is renamed over the index
only once the whole array has been written.
"""

from __future__ import annotations

import enum
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional, TextIO, Union

from launcher.command_record import CommandRecord

LOGGER = logging.getLogger("run.index")

PathLike = Union[str, Path]

# Bytes read from the end of the index when patching in a new record.
TAIL_WINDOW = 10
CHUNK_SIZE = 65536
# Largest element the decoder buffers before giving up on it.
MAX_RECORD_SIZE = 1 << 20
_WHITESPACE = " \t\r\n"


class IndexStoreError(RuntimeError):
    """Base class for index file failures."""


class IndexFormatError(IndexStoreError):
    """Raised when the index file is not a JSON array of command records."""

    def __init__(self, index_path: PathLike, detail: str) -> None:
        self.index_path = Path(index_path)
        self.detail = detail
        super().__init__(f"Invalid index file {self.index_path}: {detail}")


class CommandNotFoundError(IndexStoreError):
    """Raised when no record matches the requested command name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Command not found: {name!r}.")


# ----------------------------------------------------------------------
# Incremental decoding
# ----------------------------------------------------------------------


class _RecordStream:
    """Decode the elements of a JSON array one at a time from *handle*."""

    def __init__(self, handle: TextIO, index_path: Path, *, chunk_size: Optional[int] = None) -> None:
        self._handle = handle
        self._path = index_path
        self._chunk_size = chunk_size or CHUNK_SIZE
        self._decoder = json.JSONDecoder()
        self._buffer = ""
        self._pos = 0
        self._eof = False

    def _fill(self) -> bool:
        if self._eof:
            return False
        chunk = self._handle.read(self._chunk_size)
        if not chunk:
            self._eof = True
            return False
        self._buffer = self._buffer[self._pos:] + chunk
        self._pos = 0
        return True

    def _peek(self) -> str:
        """Return the next non-whitespace character, or ``""`` at end of file."""

        while True:
            while self._pos < len(self._buffer) and self._buffer[self._pos] in _WHITESPACE:
                self._pos += 1
            if self._pos < len(self._buffer):
                return self._buffer[self._pos]
            if not self._fill():
                return ""

    def _decode_element(self) -> CommandRecord:
        if not self._peek():
            raise IndexFormatError(self._path, "expected an element, found end of file")
        while True:
            try:
                value, end = self._decoder.raw_decode(self._buffer, self._pos)
            except json.JSONDecodeError as exc:
                # The element may continue in the next chunk.
                if len(self._buffer) - self._pos < MAX_RECORD_SIZE and self._fill():
                    continue
                raise IndexFormatError(self._path, f"malformed element ({exc.msg})") from exc
            break
        self._pos = end
        if not isinstance(value, dict):
            raise IndexFormatError(self._path, f"expected an object, found {type(value).__name__}")
        try:
            return CommandRecord.from_dict(value)
        except (TypeError, ValueError) as exc:
            raise IndexFormatError(self._path, f"malformed record ({exc})") from exc

    def records(self) -> Iterator[CommandRecord]:
        token = self._peek()
        if token != "[":
            raise IndexFormatError(self._path, f"expected '[' at start of index, found {token or 'end of file'!r}")
        self._pos += 1
        if self._peek() == "]":
            self._pos += 1
            self._expect_end()
            return
        while True:
            yield self._decode_element()
            token = self._peek()
            if token == ",":
                self._pos += 1
                if self._peek() == "]":
                    raise IndexFormatError(self._path, "trailing ',' before closing ']'")
                continue
            if token == "]":
                self._pos += 1
                self._expect_end()
                return
            raise IndexFormatError(self._path, f"expected ',' or ']', found {token or 'end of file'!r}")

    def _expect_end(self) -> None:
        trailing = self._peek()
        if trailing:
            raise IndexFormatError(self._path, f"unexpected {trailing!r} after closing ']'")


# ----------------------------------------------------------------------
# Append
# ----------------------------------------------------------------------


def append_record(index_path: PathLike, raw_record: bytes) -> None:
    """Insert the serialized *raw_record* as the last element of the index.

    Only the tail of the file is rewritten: the closing ``]`` is located in
    the last :data:`TAIL_WINDOW` bytes and replaced by ``,`` + record + ``]``.
    The file is created when it does not exist yet.
    """

    path = Path(index_path)
    fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
    with os.fdopen(fd, "r+b") as handle:
        size = os.fstat(handle.fileno()).st_size
        if size <= 3 and handle.read().strip() in (b"", b"[]"):
            handle.seek(0)
            handle.write(b"[" + raw_record + b"]")
            handle.truncate()
            LOGGER.debug("Wrote first record into %s", path)
            return

        offset = max(0, size - TAIL_WINDOW)
        handle.seek(offset)
        tail = handle.read()
        end = tail.rfind(b"]")
        if end == -1 or tail[end + 1:].strip():
            raise IndexFormatError(path, f"no closing ']' within the last {TAIL_WINDOW} bytes")
        before = tail[:end].rstrip()
        if not before:
            raise IndexFormatError(path, f"no element before the closing ']' within the last {TAIL_WINDOW} bytes")
        separator = b"" if before.endswith(b"[") else b","

        handle.seek(offset + end)
        handle.write(separator + raw_record + b"]")
        handle.truncate()
        LOGGER.debug("Appended %d bytes to %s at offset %d", len(raw_record), path, offset + end)


# ----------------------------------------------------------------------
# Find
# ----------------------------------------------------------------------

FindCallback = Callable[[CommandRecord], bool]


def find_operation(index_path: PathLike, callback: FindCallback) -> Optional[CommandRecord]:
    """Stream records through *callback* until it returns ``True``.

    Returns the record the callback stopped on, or ``None`` when the end of
    the array was reached. Exceptions raised by *callback* propagate.
    """

    path = Path(index_path)
    with path.open("r", encoding="utf-8") as handle:
        for record in _RecordStream(handle, path).records():
            if callback(record):
                return record
    return None


def find_command(index_path: PathLike, name: str) -> CommandRecord:
    record = find_operation(index_path, lambda candidate: candidate.name == name)
    if record is None:
        raise CommandNotFoundError(name)
    return record


# ----------------------------------------------------------------------
# Rewrite
# ----------------------------------------------------------------------


class RewriteAction(enum.Enum):
    """Per-record decision returned by a rewrite callback.

    Errors are signalled by raising; they abort the rewrite like ``STOP``
    and propagate to the caller.
    """

    KEEP = "keep"
    UPDATE = "update"
    DROP = "drop"
    STOP = "stop"


RewriteCallback = Callable[[CommandRecord], RewriteAction]


@dataclass
class RewriteReport:
    scanned: int = 0
    kept: int = 0
    updated: int = 0
    dropped_names: List[str] = field(default_factory=list)
    committed: bool = False

    @property
    def dropped(self) -> int:
        return len(self.dropped_names)

    @property
    def affected(self) -> int:
        return self.updated + self.dropped


def _copy_records(
    records: Iterator[CommandRecord],
    sink: TextIO,
    callback: RewriteCallback,
    report: RewriteReport,
) -> bool:
    sink.write("[")
    for record in records:
        report.scanned += 1
        action = callback(record)
        if action is RewriteAction.STOP:
            return False
        if action is RewriteAction.DROP:
            report.dropped_names.append(record.name)
            continue
        if action is RewriteAction.UPDATE:
            report.updated += 1
        elif action is not RewriteAction.KEEP:
            raise TypeError(f"Rewrite callback returned {action!r}, expected a RewriteAction")
        if report.kept:
            sink.write(",")
        sink.write(record.to_json())
        report.kept += 1
    sink.write("]")
    return True


def rewrite_operation(index_path: PathLike, callback: RewriteCallback) -> RewriteReport:
    """Rewrite the index by passing every record through *callback*.

    The new array is written to ``<index>.tmp`` next to the index and renamed
    over it once the source has been fully consumed. If the callback raises
    or returns :attr:`RewriteAction.STOP`, the temporary file is removed and
    the index is left untouched.
    """

    path = Path(index_path)
    temp_path = path.with_name(path.name + ".tmp")
    report = RewriteReport()
    try:
        with path.open("r", encoding="utf-8") as source, temp_path.open("w", encoding="utf-8") as sink:
            records = _RecordStream(source, path).records()
            if not _copy_records(records, sink, callback, report):
                LOGGER.debug("Rewrite of %s stopped after %d records", path, report.scanned)
                return report
            sink.flush()
            os.fsync(sink.fileno())
        temp_path.replace(path)
        report.committed = True
        LOGGER.debug(
            "Rewrote %s: %d scanned, %d kept, %d updated, %d dropped",
            path,
            report.scanned,
            report.kept,
            report.updated,
            report.dropped,
        )
    finally:
        if not report.committed:
            temp_path.unlink(missing_ok=True)
    return report


__all__ = [
    "CHUNK_SIZE",
    "MAX_RECORD_SIZE",
    "TAIL_WINDOW",
    "CommandNotFoundError",
    "IndexFormatError",
    "IndexStoreError",
    "RewriteAction",
    "RewriteReport",
    "append_record",
    "find_command",
    "find_operation",
    "rewrite_operation",
]
