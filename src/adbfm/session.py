"""Current-device selection."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol

from .devices import Device
from .log import log_event


class SessionProtocol(Protocol):
    def current(self) -> Device | None:
        ...

    def select(self, device: Device) -> None:
        ...

    def clear(self) -> None:
        ...

    def reconcile(self, devices: Sequence[Device]) -> Device | None:
        ...


class DeviceSession:
    """Holds the single device that ad-hoc commands are routed to.

    Writes replace the whole ``Device`` value, so a concurrent reader sees
    either the old device or the new one. Last write wins.
    """

    def __init__(self, *, auto_select: bool = False) -> None:
        self._device: Device | None = None
        self._auto_select = auto_select

    def current(self) -> Device | None:
        return self._device

    def select(self, device: Device) -> None:
        self._device = device
        log_event("device.selected", device_id=device.device_id)

    def clear(self) -> None:
        if self._device is not None:
            log_event("device.cleared", device_id=self._device.device_id)
        self._device = None

    def reconcile(self, devices: Sequence[Device]) -> Device | None:
        """Apply a fresh poll result to the selection."""

        current = self._device
        if current is not None:
            for device in devices:
                if device.device_id == current.device_id:
                    self._device = device
                    return device
            self.clear()

        if self._auto_select and devices:
            self.select(devices[0])
        return self._device
