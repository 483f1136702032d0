"""Classification of failures that adb only reports as output text."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from enum import Enum

from .adb import ADBError

NO_DEVICE_MESSAGE = "No device connected"


class OutputError(Enum):
    PERMISSION_DENIED = "permission_denied"
    NO_SUCH_FILE = "no_such_file"
    READ_ONLY = "read_only"
    NOT_EMPTY = "not_empty"
    NO_SPACE = "no_space"
    ALREADY_EXISTS = "already_exists"
    NOT_A_DIRECTORY = "not_a_directory"
    NO_DEVICE = "no_device"
    FAILED = "failed"


# Checked in order; the first phrase found on any line wins.
_PHRASES: tuple[tuple[str, OutputError], ...] = (
    (NO_DEVICE_MESSAGE, OutputError.NO_DEVICE),
    ("Permission denied", OutputError.PERMISSION_DENIED),
    ("No such file", OutputError.NO_SUCH_FILE),
    ("Read-only file system", OutputError.READ_ONLY),
    ("Directory not empty", OutputError.NOT_EMPTY),
    ("No space left", OutputError.NO_SPACE),
    ("File exists", OutputError.ALREADY_EXISTS),
    ("Not a directory", OutputError.NOT_A_DIRECTORY),
    ("error: device", OutputError.NO_DEVICE),
    ("device offline", OutputError.NO_DEVICE),
)
_FAILURE_PREFIXES = ("Error:", "error:", "adb: error:")


def classify_output(lines: Iterable[str]) -> OutputError | None:
    rows = [line.strip() for line in lines]
    for phrase, kind in _PHRASES:
        if any(phrase in line for line in rows):
            return kind
    if any(line.startswith(_FAILURE_PREFIXES) for line in rows):
        return OutputError.FAILED
    return None


class CommandOutputError(ADBError):
    """Raised when a device command's output classifies as a failure."""

    def __init__(self, action: str, kind: OutputError, lines: Sequence[str]) -> None:
        self.action = action
        self.kind = kind
        self.lines = list(lines)
        detail = next((line for line in self.lines if line.strip()), kind.value)
        super().__init__(f"{action} failed ({kind.value}): {detail}")
