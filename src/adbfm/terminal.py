"""One child process per command, with merged output capture."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
from collections.abc import AsyncGenerator
from contextlib import suppress
from dataclasses import dataclass

from .log import log_event

# Longest single output line a stream accepts; asyncio defaults to 64 KiB.
STREAM_LIMIT = 1024 * 1024


def split_command(command: str) -> list[str]:
    """Turn a command string into the argv handed to the OS.

    POSIX hosts go through ``sh -c`` so pipes and redirections in the command
    keep working. Windows has no such shell contract and gets a plain split;
    arguments are quoted with :func:`shlex.quote` on both.
    """

    if os.name != "nt":
        return ["sh", "-c", command]
    return shlex.split(command)


@dataclass(slots=True)
class Terminal:
    """Runs bridge-tool command lines as child processes."""

    command_timeout: float | None = None

    async def run(self, command: str) -> list[str]:
        """Run ``command`` to completion and return its output lines.

        The exit status is ignored: adb reports most failures on stdout, so
        callers classify the text instead.
        """

        if not command.strip():
            return []
        process = await self._spawn(command)
        if process is None:
            return []

        try:
            if self.command_timeout is None:
                stdout_bytes, _ = await process.communicate()
            else:
                stdout_bytes, _ = await asyncio.wait_for(
                    process.communicate(),
                    timeout=self.command_timeout,
                )
        except asyncio.TimeoutError:
            await _kill(process)
            log_event(
                "terminal.timeout",
                level=logging.WARNING,
                command=command,
                timeout=self.command_timeout,
            )
            return []
        except asyncio.CancelledError:
            await _kill(process)
            raise

        return stdout_bytes.decode("utf-8", errors="replace").splitlines()

    async def stream(self, command: str) -> AsyncGenerator[str, None]:
        """Yield output lines while the process runs.

        Closing the iterator early (``break``, ``aclose`` or task cancellation)
        kills the child.
        """

        if not command.strip():
            return
        process = await self._spawn(command)
        if process is None:
            return

        try:
            if process.stdout is None:
                return
            while True:
                try:
                    raw = await process.stdout.readline()
                except ValueError:
                    log_event(
                        "terminal.line_too_long",
                        level=logging.WARNING,
                        command=command,
                        limit=STREAM_LIMIT,
                    )
                    return
                if not raw:
                    break
                yield raw.decode("utf-8", errors="replace").rstrip("\r\n")
            await process.wait()
        finally:
            await _kill(process)

    async def _spawn(self, command: str) -> asyncio.subprocess.Process | None:
        try:
            return await asyncio.create_subprocess_exec(
                *split_command(command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=STREAM_LIMIT,
            )
        except OSError as exc:
            log_event(
                "terminal.spawn_failed",
                level=logging.ERROR,
                command=command,
                reason=str(exc),
            )
            return None


async def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    with suppress(ProcessLookupError):
        process.kill()
    await process.wait()
