from __future__ import annotations

import os
import shlex
from pathlib import Path

import pytest

from adbfm.adb import ADBClient
from adbfm.devices import Device
from adbfm.errors import CommandOutputError, OutputError
from adbfm.files import FileBrowser, join_remote, remote_path
from adbfm.listing import ListingFormat, SortType
from adbfm.poller import DevicePoller
from adbfm.session import DeviceSession


class FakeDispatcher:
    def __init__(self, replies: list[list[str]] | None = None) -> None:
        self.replies = list(replies or [])
        self.commands: list[str] = []

    async def exec(self, command: str) -> list[str]:
        self.commands.append(command)
        return self.replies.pop(0) if self.replies else []


def _device_args(command: str) -> list[str]:
    host_args = shlex.split(command)
    assert host_args[0] == "shell"
    assert len(host_args) == 2
    return shlex.split(host_args[1])


def test_remote_path_normalisation() -> None:
    assert remote_path("sdcard//DCIM/") == "/sdcard/DCIM"
    assert remote_path("\\sdcard\\Music") == "/sdcard/Music"
    assert remote_path("") == "/"
    assert join_remote("/sdcard/", "notes.txt") == "/sdcard/notes.txt"


@pytest.mark.asyncio
async def test_list_parses_entries() -> None:
    dispatcher = FakeDispatcher(
        [
            [
                "total 8",
                "-rw-rw---- 1 root sdcard_rw 10 2024-03-01 09:00 notes.txt",
                "drwxrwx--x 2 root sdcard_rw 4096 2024-03-01 09:00 DCIM/",
            ]
        ]
    )
    browser = FileBrowser(dispatcher)

    entries = await browser.list("/sdcard/")

    assert dispatcher.commands == ["shell 'ls -l -p /sdcard | sort'"]
    assert [entry.name for entry in entries] == ["DCIM", "notes.txt"]


@pytest.mark.asyncio
async def test_list_uses_configured_format() -> None:
    dispatcher = FakeDispatcher([["regular file|-rw-r--r--|1|root|root|10|0|/sdcard/a.log|'a'"]])
    browser = FileBrowser(dispatcher, listing_format=ListingFormat.STAT)

    entries = await browser.list("/sdcard")

    assert _device_args(dispatcher.commands[0])[:2] == ["stat", "-c"]
    assert [entry.name for entry in entries] == ["a.log"]


@pytest.mark.asyncio
async def test_list_raises_on_permission_error() -> None:
    browser = FileBrowser(FakeDispatcher([["ls: /data: Permission denied"]]))

    with pytest.raises(CommandOutputError) as excinfo:
        await browser.list("/data")

    assert excinfo.value.kind is OutputError.PERMISSION_DENIED
    assert excinfo.value.action == "list"


@pytest.mark.asyncio
async def test_list_without_device_raises_no_device() -> None:
    browser = FileBrowser(FakeDispatcher([["No device connected"]]))

    with pytest.raises(CommandOutputError) as excinfo:
        await browser.list("/sdcard")

    assert excinfo.value.kind is OutputError.NO_DEVICE


@pytest.mark.asyncio
async def test_entry_names_are_not_classified() -> None:
    browser = FileBrowser(
        FakeDispatcher([["-rw-r--r-- 1 root root 10 2024-01-01 00:00 Permission denied.txt"]])
    )

    entries = await browser.list("/sdcard")

    assert [entry.name for entry in entries] == ["Permission"]


@pytest.mark.asyncio
async def test_search_filters_with_grep() -> None:
    dispatcher = FakeDispatcher([["-rw-r--r-- 1 root root 10 2024-01-01 00:00 photo.jpg"]])
    browser = FileBrowser(dispatcher)

    entries = await browser.search("/sdcard/DCIM", 'ph"o')

    assert _device_args(dispatcher.commands[0]) == [
        "ls",
        "-l",
        "-p",
        "/sdcard/DCIM",
        "|",
        "grep",
        "-i",
        "-e",
        'ph"o',
        "|",
        "sort",
    ]
    assert [entry.name for entry in entries] == ["photo.jpg"]
    assert await browser.search("/sdcard", "  ") == []
    assert len(dispatcher.commands) == 1


@pytest.mark.asyncio
async def test_check_access() -> None:
    dispatcher = FakeDispatcher(
        [["SUCCESS"], ["/system/bin/sh: cd: /data: Permission denied", "FAILURE"]]
    )
    browser = FileBrowser(dispatcher)

    assert await browser.check_access("/sdcard") is True
    assert await browser.check_access("/data") is False
    assert dispatcher.commands[0] == "shell 'cd /sdcard && echo SUCCESS || echo FAILURE'"


@pytest.mark.asyncio
async def test_mkdir_surfaces_existing_directory() -> None:
    browser = FileBrowser(FakeDispatcher([["mkdir: '/sdcard/x': File exists"]]))

    with pytest.raises(CommandOutputError) as excinfo:
        await browser.mkdir("/sdcard/x")

    assert excinfo.value.kind is OutputError.ALREADY_EXISTS
    assert "File exists" in str(excinfo.value)


@pytest.mark.asyncio
async def test_delete_refuses_root() -> None:
    dispatcher = FakeDispatcher()
    browser = FileBrowser(dispatcher)

    with pytest.raises(ValueError):
        await browser.delete("//")
    assert dispatcher.commands == []

    assert await browser.delete("/sdcard/old") == []
    assert dispatcher.commands == ["shell 'rm -rf /sdcard/old'"]


@pytest.mark.asyncio
async def test_write_text_escapes_quotes() -> None:
    dispatcher = FakeDispatcher()
    browser = FileBrowser(dispatcher)

    await browser.write_text("/sdcard/a.txt", 'say "hi"')

    assert _device_args(dispatcher.commands[0]) == ["echo", 'say "hi"', ">", "/sdcard/a.txt"]


@pytest.mark.asyncio
async def test_push_and_pull_commands() -> None:
    dispatcher = FakeDispatcher(
        [
            ["/tmp/a.bin: 1 file pushed, 0 skipped. 12.3 MB/s (1024 bytes in 0.001s)"],
            ["/sdcard/a.bin: 1 file pulled, 0 skipped."],
        ]
    )
    browser = FileBrowser(dispatcher)

    await browser.push("/tmp/a.bin", "/sdcard")
    await browser.pull("/sdcard/a.bin", "/tmp/out")

    assert dispatcher.commands == [
        "push /tmp/a.bin /sdcard/",
        "pull /sdcard/a.bin /tmp/out",
    ]


@pytest.mark.asyncio
async def test_failed_transfer_raises() -> None:
    browser = FileBrowser(FakeDispatcher([["adb: failed to stat /tmp/missing"]]))

    with pytest.raises(CommandOutputError) as excinfo:
        await browser.push("/tmp/missing", "/sdcard")

    assert excinfo.value.kind is OutputError.FAILED
    assert excinfo.value.action == "push"


@pytest.mark.asyncio
async def test_list_raises_on_missing_directory() -> None:
    browser = FileBrowser(
        FakeDispatcher([["ls: cannot access '/sdcard/nope': No such file or directory"]])
    )

    with pytest.raises(CommandOutputError) as excinfo:
        await browser.list("/sdcard/nope")

    assert excinfo.value.kind is OutputError.NO_SUCH_FILE


@pytest.mark.asyncio
async def test_stat_listing_of_empty_directory_is_empty() -> None:
    dispatcher = FakeDispatcher([["stat: '/sdcard/empty/*': No such file or directory"]])
    browser = FileBrowser(dispatcher, listing_format=ListingFormat.STAT)

    assert await browser.list("/sdcard/empty/") == []


@pytest.mark.asyncio
async def test_stat_listing_still_reports_other_errors() -> None:
    browser = FileBrowser(
        FakeDispatcher([["stat: '/data/app': Permission denied"]]),
        listing_format=ListingFormat.STAT,
    )

    with pytest.raises(CommandOutputError) as excinfo:
        await browser.list("/data")

    assert excinfo.value.kind is OutputError.PERMISSION_DENIED


@pytest.mark.asyncio
async def test_list_applies_sort_mode() -> None:
    dispatcher = FakeDispatcher(
        [
            [
                "-rw-r--r-- 1 root root 900 2024-01-01 00:00 big.bin",
                "-rw-r--r-- 1 root root 5 2024-01-01 00:00 small.txt",
                "drwxr-xr-x 2 root root 4096 2024-01-01 00:00 dir/",
            ]
        ]
    )
    browser = FileBrowser(dispatcher)

    entries = await browser.list("/sdcard", sort=SortType.SIZE_DESC)

    assert [entry.name for entry in entries] == ["big.bin", "small.txt", "dir"]


@pytest.mark.asyncio
async def test_paths_with_spaces_and_metacharacters_reach_the_device_intact() -> None:
    dispatcher = FakeDispatcher()
    browser = FileBrowser(dispatcher)
    hostile = "/sdcard/My Files/$(reboot); rm -rf x"

    await browser.list(hostile)
    await browser.mkdir(hostile)
    await browser.delete(hostile)
    await browser.pull(hostile, "/tmp/my copy")

    assert _device_args(dispatcher.commands[0])[3] == hostile
    assert _device_args(dispatcher.commands[1]) == ["mkdir", hostile]
    assert _device_args(dispatcher.commands[2]) == ["rm", "-rf", hostile]
    assert shlex.split(dispatcher.commands[3]) == ["pull", hostile, "/tmp/my copy"]


@pytest.mark.asyncio
@pytest.mark.skipif(os.name == "nt", reason="uses POSIX shell commands")
async def test_hostile_path_does_not_run_on_host(tmp_path: Path) -> None:
    marker = tmp_path / "created"
    session = DeviceSession()
    session.select(Device("ZX1"))
    poller = DevicePoller(ADBClient(executable="true"), session)
    browser = FileBrowser(poller)

    await browser.list(f"/sdcard; touch {marker}")
    # The poll after each command finds no devices through `true`, so reselect.
    session.select(Device("ZX1"))
    await browser.mkdir(f"/sdcard/$(touch {marker})")

    assert not marker.exists()
