"""Command router: validation, normalization, coalescing and dispatch."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from vibehub.adapters.base import Adapter
from vibehub.core.actuation import clamp_intensity, denormalize
from vibehub.core.errors import (
    AdapterUnavailable,
    ChannelOutOfRange,
    DeviceUnavailable,
    RoutingError,
    UnknownDevice,
    VibehubError,
)
from vibehub.core.model import Ack, AckStatus, ChannelRange, Command, Device
from vibehub.core.registry import DeviceRegistry

LOGGER = logging.getLogger(__name__)

DeliveryListener = Callable[[str, int, float], None]
Key = tuple[str, int]


@dataclass
class _Pending:
    command: Command
    adapter: Adapter
    protocol_value: float
    future: asyncio.Future[Ack]


def _settle(future: asyncio.Future[Ack], *, result: Ack | None = None, error: BaseException | None = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(result)


def _consume(future: asyncio.Future[Ack]) -> None:
    if not future.cancelled():
        future.exception()


class CommandRouter:
    """Route normalized commands to the adapter that owns the target device.

    Commands for the same (device, channel) arriving within the coalescing
    window collapse into the last one; earlier ones resolve as superseded.
    Dispatch to one device is serialized, so delivery order follows
    submission order.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        adapters: Mapping[str, Adapter],
        *,
        coalesce_window_s: float = 0.05,
        min_command_interval_s: float = 0.0,
        max_intensity: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.adapters = adapters
        self.coalesce_window_s = coalesce_window_s
        self.min_command_interval_s = min_command_interval_s
        self.max_intensity = clamp_intensity(max_intensity)
        self._clock = clock
        self._pending: dict[Key, _Pending] = {}
        self._timers: dict[Key, asyncio.Task[None]] = {}
        self._inflight: dict[asyncio.Task[None], _Pending] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._last_dispatch: dict[str, float] = {}
        self._auto_off: dict[Key, asyncio.TimerHandle] = {}
        self._listeners: list[DeliveryListener] = []
        self._closed = False
        registry.subscribe_removed(self._on_device_removed)

    def add_delivery_listener(self, listener: DeliveryListener) -> None:
        self._listeners.append(listener)

    def _resolve(self, command: Command) -> tuple[Device, Adapter, ChannelRange]:
        if self._closed:
            raise AdapterUnavailable("Router is closed")
        device = self.registry.lookup(command.device_id)
        if device is None:
            raise UnknownDevice(f"Device '{command.device_id}' is not registered")
        channel = device.channel(command.channel)
        if channel is None:
            indexes = ", ".join(str(c.index) for c in device.channels) or "none"
            raise ChannelOutOfRange(
                f"Device '{device.id}' has no channel {command.channel} (available: {indexes})"
            )
        adapter = self.adapters.get(device.owner)
        if adapter is None or not adapter.session.connected:
            raise AdapterUnavailable(f"Adapter '{device.owner}' for '{device.id}' is not connected")
        return device, adapter, channel.range

    def submit(self, command: Command) -> asyncio.Future[Ack]:
        """Accept a command for delivery; rejections raise immediately.

        Must be called from the event loop thread. The returned future
        resolves with the command's Ack once it is delivered, superseded or
        failed.
        """
        device, adapter, channel_range = self._resolve(command)
        intensity = clamp_intensity(command.intensity) * self.max_intensity
        command = dataclasses.replace(command, intensity=intensity)
        loop = asyncio.get_running_loop()
        entry = _Pending(
            command=command,
            adapter=adapter,
            protocol_value=denormalize(intensity, channel_range),
            future=loop.create_future(),
        )

        key = (device.id, command.channel)
        auto_off = self._auto_off.pop(key, None)
        if auto_off is not None:
            auto_off.cancel()

        superseded = self._pending.get(key)
        self._pending[key] = entry
        if superseded is not None:
            LOGGER.debug("Coalesced command for %s channel %d", *key)
            _settle(superseded.future, result=Ack(command=superseded.command, status=AckStatus.SUPERSEDED))
        if key not in self._timers:
            self._timers[key] = asyncio.ensure_future(self._deliver_after(key, self._delay_for(device.id)))
        return entry.future

    async def route(self, command: Command) -> Ack:
        return await self.submit(command)

    def _delay_for(self, device_id: str) -> float:
        last = self._last_dispatch.get(device_id)
        if last is None:
            return self.coalesce_window_s
        return max(self.coalesce_window_s, last + self.min_command_interval_s - self._clock())

    async def _deliver_after(self, key: Key, delay: float) -> None:
        """Wait out the window, then take whatever is latest for `key` once the device is free.

        The entry stays in `_pending` while this task waits on the device
        lock, so commands arriving during a slow write keep superseding it.
        """
        task = asyncio.current_task()
        lock = self._locks.setdefault(key[0], asyncio.Lock())
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            async with lock:
                await self._wait_for_interval(key[0])
                if self._timers.get(key) is task:
                    del self._timers[key]
                entry = self._pending.pop(key, None)
                if entry is None:
                    return
                self._inflight[task] = entry
                try:
                    await self._dispatch(entry)
                except asyncio.CancelledError:
                    _settle(entry.future, error=AdapterUnavailable(f"Delivery to {key[0]} was cancelled"))
                    raise
                finally:
                    self._inflight.pop(task, None)
        finally:
            if self._timers.get(key) is task:
                del self._timers[key]

    async def _wait_for_interval(self, device_id: str) -> None:
        last = self._last_dispatch.get(device_id)
        if last is None:
            return
        wait = last + self.min_command_interval_s - self._clock()
        if wait > 0:
            await asyncio.sleep(wait)

    async def _dispatch(self, entry: _Pending) -> None:
        """Deliver one entry; the caller holds the device lock."""
        command = entry.command
        if entry.future.done():
            return
        if self.registry.lookup(command.device_id) is None:
            _settle(entry.future, error=DeviceUnavailable(f"Device '{command.device_id}' was removed"))
            return

        self._last_dispatch[command.device_id] = self._clock()
        try:
            ack = await entry.adapter.submit(command.device_id, command.channel, entry.protocol_value, command)
        except RoutingError as exc:
            _settle(entry.future, error=exc)
            return
        except VibehubError as exc:
            LOGGER.warning("Delivery to %s channel %d failed: %s", command.device_id, command.channel, exc)
            _settle(entry.future, result=Ack(command=command, status=AckStatus.FAILED, detail=str(exc)))
            return
        except Exception as exc:
            LOGGER.exception("Adapter '%s' crashed delivering to %s", entry.adapter.name, command.device_id)
            _settle(entry.future, result=Ack(command=command, status=AckStatus.FAILED, detail=repr(exc)))
            return

        self._record_delivery(command)
        _settle(entry.future, result=ack)
        if command.duration_ms is not None and command.intensity > 0:
            self._schedule_auto_off(command)

    def _record_delivery(self, command: Command) -> None:
        try:
            self.registry.update_state(
                command.device_id,
                levels={command.channel: command.intensity},
                last_seen=self._clock(),
                reachable=True,
            )
        except UnknownDevice:
            return
        for listener in self._listeners:
            try:
                listener(command.device_id, command.channel, command.intensity)
            except Exception:
                LOGGER.exception("Delivery listener failed for %s", command.device_id)

    def _schedule_auto_off(self, command: Command) -> None:
        key = (command.device_id, command.channel)
        loop = asyncio.get_running_loop()
        self._auto_off[key] = loop.call_later(command.duration_ms / 1000.0, self._auto_off_fire, key)

    def _auto_off_fire(self, key: Key) -> None:
        self._auto_off.pop(key, None)
        if key in self._pending:
            return
        try:
            future = self.submit(Command(device_id=key[0], channel=key[1], intensity=0.0, source="duration"))
        except VibehubError as exc:
            LOGGER.info("Auto-off for %s channel %d skipped: %s", key[0], key[1], exc)
            return
        future.add_done_callback(_consume)

    def _on_device_removed(self, device: Device) -> None:
        error = DeviceUnavailable(f"Device '{device.id}' was removed")
        for key in [k for k in self._pending if k[0] == device.id]:
            entry = self._pending.pop(key)
            _settle(entry.future, error=error)
        for key in [k for k in self._timers if k[0] == device.id]:
            self._timers.pop(key).cancel()
        for key in [k for k in self._auto_off if k[0] == device.id]:
            self._auto_off.pop(key).cancel()
        for task, entry in list(self._inflight.items()):
            if entry.command.device_id == device.id:
                _settle(entry.future, error=error)
                task.cancel()
        self._last_dispatch.pop(device.id, None)
        self._locks.pop(device.id, None)

    async def close(self) -> None:
        """Stop accepting commands and fail everything still pending."""
        self._closed = True
        error = AdapterUnavailable("Router is shutting down")
        for entry in self._pending.values():
            _settle(entry.future, error=error)
        self._pending.clear()
        for handle in self._auto_off.values():
            handle.cancel()
        self._auto_off.clear()
        tasks = [*self._timers.values(), *self._inflight]
        for task in tasks:
            task.cancel()
        for entry in self._inflight.values():
            _settle(entry.future, error=error)
        if tasks:
            await asyncio.wait(tasks)
        self._timers.clear()
