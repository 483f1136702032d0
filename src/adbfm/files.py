"""Remote file operations routed through the selected device."""

from __future__ import annotations

import shlex
from typing import Protocol

from .adb import shell_command
from .errors import CommandOutputError, OutputError, classify_output
from .listing import (
    FileEntry,
    ListingFormat,
    SortType,
    is_listing_line,
    is_unexpanded_glob,
    listing_command,
    parse_listing,
    parse_ls_output,
    sort_by,
)

ACCESS_OK = "SUCCESS"
ACCESS_FAILED = "FAILURE"
_TRANSFER_FAILURES = ("error", "failed")


class CommandDispatcher(Protocol):
    async def exec(self, command: str) -> list[str]:
        ...


def remote_path(path: str) -> str:
    """Normalise a device path to ``/a/b`` form."""

    parts = [part for part in path.replace("\\", "/").split("/") if part]
    return "/" + "/".join(parts)


def join_remote(directory: str, name: str) -> str:
    return remote_path(f"{directory}/{name}")


class FileBrowser:
    """Lists and edits files on the current device.

    Paths and queries are quoted for the device shell and then, as a whole,
    for the host shell. Every failure reported by the device surfaces as
    :class:`~adbfm.errors.CommandOutputError`.
    """

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        *,
        listing_format: ListingFormat = ListingFormat.LONG,
    ) -> None:
        self._dispatcher = dispatcher
        self._listing_format = listing_format

    async def list(
        self,
        path: str,
        *,
        listing_format: ListingFormat | None = None,
        sort: SortType | None = None,
    ) -> list[FileEntry]:
        fmt = listing_format or self._listing_format
        target = remote_path(path)
        lines = await self._dispatcher.exec(listing_command(target, fmt))
        # Entry lines are never scanned: a file may be named "Permission denied".
        noise = [line for line in lines if not is_listing_line(line, fmt)]
        if fmt is ListingFormat.STAT:
            noise = [line for line in noise if not is_unexpanded_glob(line, target)]
        kind = classify_output(noise)
        if kind is not None:
            raise CommandOutputError("list", kind, noise)
        return sort_by(parse_listing(lines, fmt), sort)

    async def search(self, path: str, query: str) -> list[FileEntry]:
        if not query.strip():
            return []
        lines = await self._dispatcher.exec(
            shell_command(
                f"ls -l -p {shlex.quote(remote_path(path))} "
                f"| grep -i -e {shlex.quote(query)} | sort"
            )
        )
        noise = [line for line in lines if not is_listing_line(line, ListingFormat.LONG)]
        kind = classify_output(noise)
        if kind is not None:
            raise CommandOutputError("search", kind, noise)
        return parse_ls_output(lines)

    async def check_access(self, path: str) -> bool:
        target = shlex.quote(remote_path(path))
        lines = await self._dispatcher.exec(
            shell_command(f"cd {target} && echo {ACCESS_OK} || echo {ACCESS_FAILED}")
        )
        if classify_output(lines) is not None:
            return False
        return any(line.strip() == ACCESS_OK for line in lines)

    async def mkdir(self, path: str) -> list[str]:
        return await self._run("mkdir", shell_command(f"mkdir {shlex.quote(remote_path(path))}"))

    async def delete(self, path: str) -> list[str]:
        target = remote_path(path)
        if target == "/":
            raise ValueError("Refusing to delete the device root")
        return await self._run("delete", shell_command(f"rm -rf {shlex.quote(target)}"))

    async def write_text(self, path: str, content: str) -> list[str]:
        target = shlex.quote(remote_path(path))
        return await self._run("write", shell_command(f"echo {shlex.quote(content)} > {target}"))

    async def push(self, local_path: str, remote_dir: str) -> list[str]:
        # push and pull arguments never reach the device shell; one quoting is enough.
        destination = shlex.quote(remote_path(remote_dir).rstrip("/") + "/")
        lines = await self._run("push", f"push {shlex.quote(local_path)} {destination}")
        self._check_transfer("push", lines)
        return lines

    async def pull(self, remote: str, local_path: str) -> list[str]:
        source = shlex.quote(remote_path(remote))
        lines = await self._run("pull", f"pull {source} {shlex.quote(local_path)}")
        self._check_transfer("pull", lines)
        return lines

    async def _run(self, action: str, command: str) -> list[str]:
        lines = await self._dispatcher.exec(command)
        kind = classify_output(lines)
        if kind is not None:
            raise CommandOutputError(action, kind, lines)
        return lines

    @staticmethod
    def _check_transfer(action: str, lines: list[str]) -> None:
        failed = [line for line in lines if any(word in line for word in _TRANSFER_FAILURES)]
        if failed:
            raise CommandOutputError(action, OutputError.FAILED, failed)
