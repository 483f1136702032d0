"""Device abstractions and parsers for the bridge tool's device output."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass

DEVICE_LIST_HEADER = "List of devices attached"
WIRELESS_PAIRING_MARKER = "adb-tls-connect"
EMULATOR_PREFIX = "emulator-"

_DEVICE_LINE_PATTERN = re.compile(r"^(\S+)\s+device(?:\s|$)")
_NETWORK_ID_PATTERN = re.compile(r"(\d{1,3}(?:\.\d{1,3}){3}):(\d+)")
_TRAILING_IPV4_PATTERN = re.compile(r"\b(\d{1,3}(?:\.\d{1,3}){3})\b\s*$")


@dataclass(slots=True, frozen=True)
class WifiState:
    connected: bool
    ip_address: str | None = None
    port: str | None = None


WIFI_UNAVAILABLE = WifiState(connected=False)


@dataclass(slots=True, frozen=True)
class Device:
    device_id: str
    wifi_state: WifiState = WIFI_UNAVAILABLE

    def is_emulator(self) -> bool:
        return self.device_id.startswith(EMULATOR_PREFIX)


@dataclass(slots=True, frozen=True)
class VirtualDevice:
    name: str


def parse_device_list(lines: Iterable[str]) -> list[str]:
    """Return the ids of devices in the ``device`` state.

    Anything that does not start with the ``adb devices`` header is treated as
    an invalid response and yields no devices.
    """

    rows = list(lines)
    if not rows or rows[0].strip() != DEVICE_LIST_HEADER:
        return []

    device_ids: list[str] = []
    for line in rows[1:]:
        match = _DEVICE_LINE_PATTERN.match(line.strip())
        if match:
            device_ids.append(match.group(1))
    return device_ids


def wifi_state_from_device_id(device_id: str) -> WifiState | None:
    """Devices attached as ``<ipv4>:<port>`` are already on the network."""

    match = _NETWORK_ID_PATTERN.search(device_id)
    if match is None:
        return None
    ip_address, port = match.groups()
    return WifiState(connected=True, ip_address=ip_address, port=port)


def parse_wlan_address(route_lines: Iterable[str]) -> str | None:
    for line in route_lines:
        if "wlan0" not in line:
            continue
        match = _TRAILING_IPV4_PATTERN.search(line)
        if match:
            return match.group(1)
    return None


def parse_avd_names(lines: Iterable[str]) -> list[VirtualDevice]:
    # The emulator prints log noise ("INFO    | ...") next to the names.
    devices: list[VirtualDevice] = []
    for line in lines:
        name = line.strip()
        if name and len(name.split()) == 1:
            devices.append(VirtualDevice(name=name))
    return devices
