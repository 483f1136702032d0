"""Thin async wrappers around adb commands."""

from __future__ import annotations

import logging
import shlex
import shutil
from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from pathlib import Path

from .devices import (
    WIFI_UNAVAILABLE,
    WIRELESS_PAIRING_MARKER,
    VirtualDevice,
    WifiState,
    parse_avd_names,
    parse_device_list,
    parse_wlan_address,
    wifi_state_from_device_id,
)
from .log import log_event
from .terminal import Terminal

DEFAULT_WIRELESS_PORT = "5555"


class ADBError(RuntimeError):
    """Raised when an adb command reports a failure."""


def shell_command(device_command: str) -> str:
    """Quote ``device_command`` once for the host shell.

    adb joins what it receives and hands it to the device shell, so any
    arguments inside ``device_command`` must already be quoted for that shell.
    """

    return f"shell {shlex.quote(device_command)}"


@dataclass(slots=True)
class ADBClient:
    """Asynchronous helper for invoking adb commands."""

    executable: str = "adb"
    android_home: str | None = None
    terminal: Terminal = field(default_factory=Terminal)

    async def devices(self) -> list[str]:
        lines = await self.terminal.run(f"{self._adb} devices")
        return parse_device_list(lines)

    async def wifi_state(self, device_id: str) -> WifiState:
        known = wifi_state_from_device_id(device_id)
        if known is not None:
            return known

        lines = await self.terminal.run(f"{self._adb} -s {shlex.quote(device_id)} shell ip route")
        ip_address = parse_wlan_address(lines)
        if ip_address is None:
            return WIFI_UNAVAILABLE
        return WifiState(
            connected=WIRELESS_PAIRING_MARKER in device_id,
            ip_address=ip_address,
            port=None,
        )

    async def connect(self, ip_address: str, port: str = DEFAULT_WIRELESS_PORT) -> WifiState:
        # Optimistic: the next poll cycle reports whether the device showed up.
        address = shlex.quote(f"{ip_address}:{port}")
        await self.terminal.run(f"{self._adb} connect {address}")
        return WifiState(connected=False, ip_address=ip_address, port=port)

    async def pair(self, ip_address: str, port: str, code: str) -> list[str]:
        address = shlex.quote(f"{ip_address}:{port}")
        return await self.terminal.run(f"{self._adb} pair {address} {shlex.quote(code)}")

    async def list_avds(self) -> list[VirtualDevice]:
        if not self.android_home:
            return []
        emulator = shutil.which(str(Path(self.android_home) / "emulator" / "emulator"))
        if emulator is None:
            log_event("avd.failed", level=logging.WARNING, reason="emulator not found")
            return []
        lines = await self.terminal.run(f"{shlex.quote(emulator)} -list-avds")
        return parse_avd_names(lines)

    async def exec(self, device_id: str, command: str) -> list[str]:
        return await self.terminal.run(self._targeted(device_id, command))

    def stream(self, device_id: str, command: str) -> AsyncGenerator[str, None]:
        return self.terminal.stream(self._targeted(device_id, command))

    def _targeted(self, device_id: str, command: str) -> str:
        return f"{self._adb} -s {shlex.quote(device_id)} {command}"

    @property
    def _adb(self) -> str:
        return shlex.quote(self.executable)
