"""Adaptive device polling and command dispatch for the selected device."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator, Sequence
from enum import Enum, auto

from .adb import DEFAULT_WIRELESS_PORT, ADBClient
from .devices import Device, VirtualDevice, WifiState
from .errors import NO_DEVICE_MESSAGE
from .log import log_event
from .session import SessionProtocol

MAX_DELAY_MS = 5000.0
FAST_DELAY_MS = 500.0
BACKOFF_FACTOR = 1.5
PAIRING_SUCCESS_PREFIX = "Successfully"


class PollerPhase(Enum):
    STOPPED = auto()
    POLLING = auto()
    SLEEPING = auto()


class DeviceSubscription:
    """Async iterator over published device lists.

    Only the most recent list is kept; a slow consumer skips stale ones.
    """

    def __init__(self, poller: DevicePoller) -> None:
        self._poller = poller
        # None marks the end of the stream.
        self._queue: asyncio.Queue[list[Device] | None] = asyncio.Queue(maxsize=1)
        self.closed = False

    def _push(self, devices: list[Device] | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(devices)

    def __aiter__(self) -> DeviceSubscription:
        return self

    async def __anext__(self) -> list[Device]:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        devices = await self._queue.get()
        if devices is None:
            raise StopAsyncIteration
        return devices

    async def aclose(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._push(None)
        await self._poller._unsubscribe(self)

    async def __aenter__(self) -> DeviceSubscription:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class DevicePoller:
    """Keeps the device list fresh without hammering adb.

    The loop idles at ``max_delay_ms`` between cycles. Any command sent to a
    device calls :meth:`invalidate`, which polls right away and drops the
    delay to ``fast_delay_ms``; from there it grows by ``backoff`` per cycle
    until it is back at the cap.
    """

    def __init__(
        self,
        adb: ADBClient,
        session: SessionProtocol,
        *,
        max_delay_ms: float = MAX_DELAY_MS,
        fast_delay_ms: float = FAST_DELAY_MS,
        backoff: float = BACKOFF_FACTOR,
    ) -> None:
        self._adb = adb
        self._session = session
        self._max_delay = max_delay_ms
        self._fast_delay = fast_delay_ms
        self._backoff = backoff
        self._delay = max_delay_ms
        self._devices: list[Device] = []
        self._subscribers: list[DeviceSubscription] = []
        self._task: asyncio.Task[None] | None = None
        self._wakeup = asyncio.Event()
        self.phase = PollerPhase.STOPPED

    @property
    def session(self) -> SessionProtocol:
        return self._session

    @property
    def delay(self) -> float:
        """Delay in milliseconds the loop will sleep after its next cycle."""
        return self._delay

    @property
    def devices(self) -> list[Device]:
        return list(self._devices)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._wakeup.clear()
        self._task = asyncio.get_running_loop().create_task(self._run(), name="device-poller")
        log_event("poll.started", delay_ms=self._delay)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self.phase = PollerPhase.STOPPED
        log_event("poll.stopped")

    async def subscribe(self) -> DeviceSubscription:
        subscription = DeviceSubscription(self)
        self._subscribers.append(subscription)
        if self._devices:
            subscription._push(list(self._devices))
        self.start()
        return subscription

    async def _unsubscribe(self, subscription: DeviceSubscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
        if not self._subscribers:
            await self.stop()

    async def poll_once(self) -> list[Device]:
        """Run one enumeration cycle and publish the result."""

        device_ids = await self._adb.devices()
        states = await asyncio.gather(
            *(self._adb.wifi_state(device_id) for device_id in device_ids)
        )
        devices = [
            Device(device_id=device_id, wifi_state=state)
            for device_id, state in zip(device_ids, states)
        ]
        self._devices = devices
        self._session.reconcile(devices)
        for subscription in list(self._subscribers):
            subscription._push(list(devices))
        return devices

    async def invalidate(self) -> None:
        self._delay = self._fast_delay
        if self.running:
            self._wakeup.set()
            return
        await self._safe_poll()

    def select(self, device: Device) -> None:
        self._session.select(device)

    def disconnect(self) -> None:
        self._session.clear()

    def find(self, device_id: str) -> Device | None:
        return next((device for device in self._devices if device.device_id == device_id), None)

    async def connect(self, ip_address: str, port: str = DEFAULT_WIRELESS_PORT) -> WifiState:
        state = await self._adb.connect(ip_address, port)
        await self.invalidate()
        return state

    async def pair(self, ip_address: str, port: str, code: str) -> list[str]:
        return await self._adb.pair(ip_address, port, code)

    async def pair_and_connect(
        self,
        ip_address: str,
        port: str = DEFAULT_WIRELESS_PORT,
        *,
        pairing_port: str | None = None,
        pairing_code: str | None = None,
    ) -> WifiState | None:
        """Pair first when pairing details are given, then connect.

        Returns ``None`` when pairing did not report success.
        """

        if pairing_port and pairing_code:
            lines = await self.pair(ip_address, pairing_port, pairing_code)
            if not lines or not lines[0].startswith(PAIRING_SUCCESS_PREFIX):
                log_event("pair.failed", ip=ip_address, output=lines[:1])
                return None
        return await self.connect(ip_address, port or DEFAULT_WIRELESS_PORT)

    async def list_avds(self) -> list[VirtualDevice]:
        try:
            return await self._adb.list_avds()
        except Exception as exc:  # noqa: BLE001
            log_event("avd.failed", level=logging.WARNING, reason=str(exc))
            return []

    async def exec(self, command: str) -> list[str]:
        device = self._session.current()
        if device is None:
            log_event("exec.no_device", command=command)
            return [NO_DEVICE_MESSAGE]

        log_event("exec.run", level=logging.DEBUG, device_id=device.device_id, command=command)
        lines = await self._adb.exec(device.device_id, command)
        await self.invalidate()
        return lines

    async def stream(self, command: str) -> AsyncGenerator[str, None]:
        device = self._session.current()
        if device is None:
            log_event("exec.no_device", command=command)
            yield NO_DEVICE_MESSAGE
            return

        async with contextlib.aclosing(self._adb.stream(device.device_id, command)) as lines:
            async for line in lines:
                yield line
        await self.invalidate()

    async def _run(self) -> None:
        while True:
            self.phase = PollerPhase.POLLING
            await self._safe_poll()
            delay = self._delay
            self._delay = min(delay * self._backoff, self._max_delay)
            self.phase = PollerPhase.SLEEPING
            await self._wait(delay)

    async def _safe_poll(self) -> Sequence[Device]:
        try:
            return await self.poll_once()
        except Exception as exc:  # noqa: BLE001
            log_event("poll.failed", level=logging.WARNING, reason=str(exc))
            return self._devices

    async def _wait(self, delay_ms: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=delay_ms / 1000)
        except asyncio.TimeoutError:
            pass
        self._wakeup.clear()
