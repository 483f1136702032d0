"""Parsers for device directory listings.

Two encodings are understood:

* ``long`` - the output of ``ls -l -p <dir> | sort``;
* ``stat`` - one ``|``-delimited record per entry produced by
  ``stat -c '%F|%A|%h|%U|%G|%s|%Y|%n|%N'``.

Both parsers drop lines they cannot make sense of instead of raising, so a
single odd row never loses the rest of a listing.
"""

from __future__ import annotations

import re
import shlex
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from .adb import shell_command

LINK_ARROW = " -> "
STAT_FORMAT = "%F|%A|%h|%U|%G|%s|%Y|%n|%N"
STAT_MIN_FIELDS = 8

# Devices do not say whether a link points at a directory, so it is guessed
# from well-known top-level directory names anywhere in the target.
DIRECTORY_HINTS = (
    "bin",
    "etc",
    "lib",
    "usr",
    "var",
    "opt",
    "home",
    "mnt",
    "media",
    "data",
    "system",
    "storage",
)

_SIZE_UNITS = (("GB", 1024**3), ("MB", 1024**2), ("KB", 1024))
_QUOTE_CHARS = "'\"`‘’“”"
# Only d, l and - entries are listed; a trailing . + or @ marks SELinux or ACL data.
_PERMISSIONS_PATTERN = re.compile(r"^[dl-][rwxsStT?-]{9}[.+@]?$")


class ListingFormat(str, Enum):
    LONG = "long"
    STAT = "stat"


class SortType(str, Enum):
    NAME_ASC = "name_asc"
    TYPE_ASC = "type_asc"
    TYPE_DESC = "type_desc"
    DATE_ASC = "date_asc"
    DATE_DESC = "date_desc"
    SIZE_ASC = "size_asc"
    SIZE_DESC = "size_desc"


@dataclass(slots=True, frozen=True)
class FileEntry:
    is_directory: bool
    name: str
    size: str
    modified_at: str
    symlink_target: str | None
    permissions: str
    size_bytes: int = 0

    @property
    def extension(self) -> str | None:
        index = self.name.rfind(".")
        if index == -1:
            return None
        return self.name[index + 1 :]


def format_size(size_bytes: int) -> str:
    """Render a byte count with binary units and at most two decimals."""

    for unit, factor in _SIZE_UNITS:
        value = size_bytes / factor
        if value >= 1:
            return f"{_trim_decimals(value)} {unit}"
    return f"{size_bytes} B"


def _trim_decimals(value: float) -> str:
    text = f"{value:.2f}".rstrip("0").rstrip(".")
    return text or "0"


def looks_like_directory(target: str) -> bool:
    if target.endswith("/"):
        return True
    return any(hint in target for hint in DIRECTORY_HINTS)


def sort_entries(entries: Iterable[FileEntry]) -> list[FileEntry]:
    """Directories first, then by extension (or whole name when there is none)."""

    return sorted(
        entries,
        key=lambda entry: (not entry.is_directory, entry.extension or entry.name),
    )


def sort_by(entries: Iterable[FileEntry], sort_type: SortType | None) -> list[FileEntry]:
    """Order entries for display; ``None`` keeps the default listing order."""

    if sort_type is None:
        return sort_entries(entries)
    if sort_type is SortType.NAME_ASC:
        return sorted(entries, key=lambda entry: entry.name.lower())
    if sort_type is SortType.TYPE_ASC:
        return sorted(entries, key=lambda entry: (not entry.is_directory, entry.name.lower()))
    if sort_type is SortType.TYPE_DESC:
        # Files first, names descending within each group.
        by_name = sorted(entries, key=lambda entry: entry.name.lower(), reverse=True)
        return sorted(by_name, key=lambda entry: entry.is_directory)
    if sort_type in (SortType.DATE_ASC, SortType.DATE_DESC):
        return sorted(
            entries,
            key=lambda entry: entry.modified_at,
            reverse=sort_type is SortType.DATE_DESC,
        )
    return sorted(
        entries,
        key=lambda entry: entry.size_bytes,
        reverse=sort_type is SortType.SIZE_DESC,
    )


def is_entry_line(line: str) -> bool:
    """True when ``line`` starts with a ``d``, ``l`` or ``-`` permission string."""

    tokens = line.split(maxsplit=1)
    return bool(tokens) and _PERMISSIONS_PATTERN.match(tokens[0]) is not None


def parse_ls_output(lines: Iterable[str]) -> list[FileEntry]:
    entries: list[FileEntry] = []
    for line in lines:
        line = line.rstrip()
        if not is_entry_line(line):
            continue
        try:
            entry = _parse_ls_line(line)
        except (IndexError, ValueError):
            continue
        if entry.name:
            entries.append(entry)
    return sort_entries(entries)


def _parse_ls_line(line: str) -> FileEntry:
    tokens = line.split()
    permissions = tokens[0]
    is_link = permissions.startswith("l")

    if "?" in permissions:
        # stat() failed (usually a dangling link); only the name is reliable.
        target: str | None = None
        if "->" in tokens:
            arrow = tokens.index("->")
            name = tokens[arrow - 1]
            if is_link and arrow < len(tokens) - 1:
                target = tokens[-1]
        else:
            name = tokens[-1]
        return FileEntry(
            is_directory=_is_directory(permissions, target),
            name=_strip_separator(name),
            size="",
            modified_at="",
            symlink_target=target,
            permissions=permissions,
        )

    size_bytes = _to_int(tokens[4])
    date, time = tokens[5], tokens[6]
    name = tokens[7]

    target = None
    if is_link and LINK_ARROW in line:
        # Link targets may contain spaces, so token positions cannot be trusted.
        head, target = line.split(LINK_ARROW, 1)
        name = head[head.rfind(" ") + 1 :]

    is_directory = _is_directory(permissions, target)
    return FileEntry(
        is_directory=is_directory,
        name=_strip_separator(name),
        size="" if is_directory else format_size(size_bytes),
        modified_at=f"{date.replace('-', '/')} {time}",
        symlink_target=target,
        permissions=permissions,
        size_bytes=0 if is_directory else size_bytes,
    )


def parse_stat_output(lines: Iterable[str]) -> list[FileEntry]:
    entries: list[FileEntry] = []
    for line in lines:
        entry = _parse_stat_line(line.rstrip("\r\n"))
        if entry is not None:
            entries.append(entry)
    return sort_entries(entries)


def _parse_stat_line(line: str) -> FileEntry | None:
    fields = line.split("|", STAT_MIN_FIELDS)
    if len(fields) < STAT_MIN_FIELDS:
        return None

    kind, permissions, _links, _owner, _group, raw_size, raw_mtime, raw_name = (
        field.strip() for field in fields[:STAT_MIN_FIELDS]
    )
    kind = kind.lower()
    name = _basename(raw_name)
    if not name:
        return None

    target: str | None = None
    if "symbolic link" in kind and len(fields) > STAT_MIN_FIELDS:
        link_info = fields[STAT_MIN_FIELDS]
        if LINK_ARROW in link_info:
            target = link_info.split(LINK_ARROW, 1)[1].strip().strip(_QUOTE_CHARS)

    is_directory = "directory" in kind or (target is not None and looks_like_directory(target))
    size_bytes = 0 if is_directory else _to_int(raw_size)
    return FileEntry(
        is_directory=is_directory,
        name=name,
        size="" if is_directory else format_size(size_bytes),
        modified_at=_format_epoch(raw_mtime),
        symlink_target=target,
        permissions=permissions,
        size_bytes=size_bytes,
    )


def parse_listing(lines: Iterable[str], listing_format: ListingFormat) -> list[FileEntry]:
    if listing_format is ListingFormat.STAT:
        return parse_stat_output(lines)
    return parse_ls_output(lines)


def ls_command(path: str) -> str:
    return shell_command(f"ls -l -p {shlex.quote(path)} | sort")


def stat_command(path: str) -> str:
    # The glob stays outside the quotes so that the device shell expands it.
    directory = shlex.quote(_stat_directory(path))
    return shell_command(f"stat -c {shlex.quote(STAT_FORMAT)} {directory}/*")


def listing_command(path: str, listing_format: ListingFormat) -> str:
    if listing_format is ListingFormat.STAT:
        return stat_command(path)
    return ls_command(path)


def is_listing_line(line: str, listing_format: ListingFormat) -> bool:
    if listing_format is ListingFormat.STAT:
        return line.count("|") >= STAT_MIN_FIELDS - 1
    return is_entry_line(line)


def is_unexpanded_glob(line: str, path: str) -> bool:
    """True for the error ``stat`` prints when an empty directory leaves its glob literal."""

    return f"{_stat_directory(path)}/*" in line and "No such file" in line


def _stat_directory(path: str) -> str:
    return path.rstrip("/")


def _is_directory(permissions: str, target: str | None) -> bool:
    if permissions.startswith("d"):
        return True
    return target is not None and looks_like_directory(target)


def _strip_separator(name: str) -> str:
    return name.rstrip("/") or name


def _basename(path: str) -> str:
    stripped = path.rstrip("/")
    if not stripped:
        return path
    return stripped.rsplit("/", 1)[-1]


def _to_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        return 0


def _format_epoch(raw: str) -> str:
    try:
        return datetime.fromtimestamp(int(raw)).strftime("%Y/%m/%d %H:%M:%S")
    except (ValueError, OverflowError, OSError):
        return raw
