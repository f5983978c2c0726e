"""Adapter supervision: probing, restart with backoff, event coordination."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Sequence

from vibehub.adapters.base import Adapter
from vibehub.core.config import BackoffSettings
from vibehub.core.errors import (
    AdapterDisabled,
    AdapterUnavailable,
    CapabilityUnavailable,
    RoutingError,
    VibehubError,
)
from vibehub.core.model import (
    Ack,
    AdapterEvent,
    CommandReceived,
    DeviceDiscovered,
    DeviceLost,
    DeviceUpdated,
    StateChanged,
)
from vibehub.core.registry import DeviceRegistry
from vibehub.core.router import CommandRouter

LOGGER = logging.getLogger(__name__)


class SessionSupervisor:
    """Owns the lifecycle of every adapter and the only path from adapter events into the registry."""

    def __init__(
        self,
        adapters: Sequence[Adapter],
        registry: DeviceRegistry,
        router: CommandRouter,
        *,
        backoff: BackoffSettings | None = None,
        heartbeat_timeout_s: float = 60.0,
        sweep_interval_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.adapters = {adapter.name: adapter for adapter in adapters}
        self.registry = registry
        self.router = router
        self.backoff = backoff or BackoffSettings()
        self.heartbeat_timeout_s = heartbeat_timeout_s
        self.sweep_interval_s = sweep_interval_s
        self.disabled: dict[str, str] = {}
        self._clock = clock
        self._events: asyncio.Queue[AdapterEvent] | None = None
        self._supervisors: dict[str, asyncio.Task[None]] = {}
        self._coordinator: asyncio.Task[None] | None = None
        self._sweeper: asyncio.Task[None] | None = None
        self._stopping = False
        router.add_delivery_listener(self._mirror_delivery)

    @property
    def active(self) -> list[Adapter]:
        return [a for name, a in self.adapters.items() if name not in self.disabled]

    def probe(self) -> dict[str, str]:
        """Probe every adapter; returns the disabled ones with their reason."""
        self.disabled = {}
        for name, adapter in self.adapters.items():
            try:
                adapter.probe()
            except (CapabilityUnavailable, AdapterDisabled) as exc:
                LOGGER.info("Adapter '%s' disabled: %s", name, exc)
                self.disabled[name] = str(exc)
        return dict(self.disabled)

    async def start(self) -> None:
        self._stopping = False
        self._events = events = asyncio.Queue()
        self.probe()
        self._coordinator = asyncio.ensure_future(self._coordinate(events))
        self._sweeper = asyncio.ensure_future(self._sweep())
        for adapter in self.active:
            adapter.bind(self._enqueue)
            self._supervisors[adapter.name] = asyncio.ensure_future(self._supervise(adapter))

    async def stop(self) -> None:
        """Stop every adapter, then the router; returns once everything has settled."""
        self._stopping = True
        active = self.active
        results = await asyncio.gather(*(adapter.stop() for adapter in active), return_exceptions=True)
        for adapter, result in zip(active, results):
            if isinstance(result, BaseException):
                LOGGER.warning("Adapter '%s' did not stop cleanly: %s", adapter.name, result)

        tasks = list(self._supervisors.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)
        self._supervisors.clear()

        self._drain()
        await self.router.close()
        for task in (self._coordinator, self._sweeper):
            if task is not None:
                task.cancel()
        await asyncio.wait([t for t in (self._coordinator, self._sweeper) if t is not None])
        self._coordinator = None
        self._sweeper = None

    async def __aenter__(self) -> SessionSupervisor:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    async def _supervise(self, adapter: Adapter) -> None:
        attempt = 0
        while not self._stopping:
            try:
                await adapter.start()
            except AdapterUnavailable:
                return
            except VibehubError as exc:
                LOGGER.warning("Adapter '%s' failed to start: %s", adapter.name, exc)
                adapter.session.fail(str(exc))
            else:
                attempt = 0
                LOGGER.info("Adapter '%s' connected", adapter.name)
                await adapter.session.wait_until_down()
                if self._stopping:
                    return
                LOGGER.warning("Adapter '%s' went down: %s", adapter.name, adapter.session.last_error)

            await adapter.session.cool_down()
            try:
                await adapter.stop()
            except VibehubError as exc:
                LOGGER.warning("Adapter '%s' release failed: %s", adapter.name, exc)
            if self._stopping:
                return
            attempt += 1
            delay = self.backoff.delay(attempt)
            LOGGER.info("Restarting adapter '%s' in %.1fs (attempt %d)", adapter.name, delay, attempt)
            await asyncio.sleep(delay)

    def _enqueue(self, event: AdapterEvent) -> None:
        if self._events is None:
            return
        self._events.put_nowait(event)

    async def _coordinate(self, events: asyncio.Queue[AdapterEvent]) -> None:
        while True:
            event = await events.get()
            try:
                self._apply(event)
            except VibehubError as exc:
                LOGGER.warning("Ignoring %s from '%s': %s", type(event).__name__, event.adapter, exc)
            finally:
                events.task_done()

    def _drain(self) -> None:
        if self._events is None:
            return
        while not self._events.empty():
            event = self._events.get_nowait()
            self._events.task_done()
            if isinstance(event, CommandReceived):
                continue
            try:
                self._apply(event)
            except VibehubError as exc:
                LOGGER.debug("Ignoring %s during shutdown: %s", type(event).__name__, exc)

    def _owned(self, adapter: str, device_id: str) -> bool:
        device = self.registry.lookup(device_id)
        return device is not None and device.owner == adapter

    def _apply(self, event: AdapterEvent) -> None:
        if isinstance(event, DeviceDiscovered):
            self.registry.register(event.device)
        elif isinstance(event, DeviceLost):
            if self._owned(event.adapter, event.device_id):
                LOGGER.info("Device %s lost: %s", event.device_id, event.reason or "no reason given")
                self.registry.remove(event.device_id)
        elif isinstance(event, DeviceUpdated):
            if not self._owned(event.adapter, event.device_id):
                return
            changes: dict[str, object] = {}
            if event.heartbeat:
                changes["last_seen"] = self._clock()
            if event.reachable is not None:
                changes["reachable"] = event.reachable
            if changes:
                self.registry.update_state(event.device_id, **changes)
        elif isinstance(event, CommandReceived):
            self._route(event)
        elif isinstance(event, StateChanged):
            LOGGER.debug("Adapter '%s': %s -> %s", event.adapter, event.previous.value, event.current.value)

    def _route(self, event: CommandReceived) -> None:
        command = event.command
        try:
            future = self.router.submit(command)
        except RoutingError as exc:
            LOGGER.warning("Rejected command from '%s' for %s: %s", event.adapter, command.device_id, exc)
            return
        future.add_done_callback(lambda f: self._log_outcome(event.adapter, f))

    @staticmethod
    def _log_outcome(adapter: str, future: asyncio.Future[Ack]) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            LOGGER.warning("Command from '%s' was not delivered: %s", adapter, error)
            return
        ack = future.result()
        LOGGER.debug("Command from '%s' for %s: %s", adapter, ack.command.device_id, ack.status.value)

    def _mirror_delivery(self, device_id: str, channel: int, intensity: float) -> None:
        for adapter in self.active:
            if adapter.session.connected:
                adapter.publish_state(device_id, channel, intensity)

    def sweep_expired(self) -> list[str]:
        removed: list[str] = []
        for device in self.registry.expired(self._clock(), self.heartbeat_timeout_s):
            LOGGER.warning("Device %s missed heartbeats for %.0fs, removing", device.id, self.heartbeat_timeout_s)
            self.registry.remove(device.id)
            adapter = self.adapters.get(device.owner)
            if adapter is not None:
                adapter.forget(device.id)
            removed.append(device.id)
        return removed

    async def _sweep(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            self.sweep_expired()
