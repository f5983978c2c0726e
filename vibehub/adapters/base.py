"""Adapter interface and the session plumbing every protocol variant shares."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import ClassVar, Protocol as TypingProtocol, TypeVar

from vibehub.core.errors import (
    AdapterUnavailable,
    DeviceUnavailable,
    ProtocolError,
    TransportError,
    TransportTimeoutError,
)
from vibehub.core.model import (
    Ack,
    AckStatus,
    AdapterEvent,
    Command,
    ConnectionState,
    Device,
    DeviceDiscovered,
    DeviceLost,
    DeviceUpdated,
    Protocol,
    StateChanged,
)
from vibehub.core.session import Session

LOGGER = logging.getLogger(__name__)

EventSink = Callable[[AdapterEvent], None]
T = TypeVar("T")


class Adapter(TypingProtocol):
    name: str
    protocol: Protocol
    session: Session

    def bind(self, sink: EventSink) -> None:
        """Attach the sink that receives this adapter's inbound events."""

    def probe(self) -> None:
        """Raise CapabilityUnavailable or AdapterDisabled when the adapter cannot run."""

    async def start(self) -> None:
        """Acquire the transport and bring the session up to Connected."""

    async def stop(self) -> None:
        """Cancel in-flight work and release the transport."""

    async def submit(self, device_id: str, channel: int, protocol_value: float, command: Command) -> Ack:
        """Deliver one already-denormalized value to a device this adapter owns."""

    def publish_state(self, device_id: str, channel: int, intensity: float) -> None:
        """Mirror a delivered level outward, where the protocol supports it."""

    def forget(self, device_id: str) -> None:
        """Drop ownership of a device the hub has timed out."""


class AdapterBase:
    """Shared session state machine, event emission and in-flight tracking.

    Variants implement `_discover`, `_connect`, `_write` and `_release`; the
    base class sequences them through the session states and guarantees that
    `stop()` never leaves a submission hanging.
    """

    protocol: ClassVar[Protocol]

    def __init__(
        self,
        name: str,
        *,
        cooldown_s: float = 2.0,
        write_timeout_s: float = 2.0,
        heartbeat_interval_s: float = 10.0,
    ) -> None:
        self.name = name
        self.session = Session(name, cooldown_s=cooldown_s)
        self.write_timeout_s = write_timeout_s
        self.heartbeat_interval_s = heartbeat_interval_s
        self._sink: EventSink | None = None
        self._bring_up: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()
        self._stopping = False
        self.session.subscribe(self._on_state_change)

    def bind(self, sink: EventSink) -> None:
        self._sink = sink

    def emit(self, event: AdapterEvent) -> None:
        if self._sink is None:
            LOGGER.debug("[%s] no sink bound, dropping %s", self.name, type(event).__name__)
            return
        self._sink(event)

    def _on_state_change(self, previous: ConnectionState, current: ConnectionState) -> None:
        self.emit(StateChanged(adapter=self.name, previous=previous, current=current))

    def _claim(self, device: Device) -> None:
        self.session.device_ids.add(device.id)
        self.emit(DeviceDiscovered(adapter=self.name, device=device))

    def _lose(self, device_id: str, reason: str) -> None:
        if device_id not in self.session.device_ids:
            return
        self.session.device_ids.discard(device_id)
        self.emit(DeviceLost(adapter=self.name, device_id=device_id, reason=reason))

    def forget(self, device_id: str) -> None:
        self.session.device_ids.discard(device_id)

    def publish_state(self, device_id: str, channel: int, intensity: float) -> None:
        return None

    def probe(self) -> None:
        return None

    async def start(self) -> None:
        if self.session.connected:
            return
        self._stopping = False
        self._bring_up = asyncio.ensure_future(self._run_bring_up())
        try:
            await self._bring_up
        except asyncio.CancelledError:
            if self._stopping:
                raise AdapterUnavailable(f"Adapter '{self.name}' stopped during startup") from None
            raise
        except (TransportError, ProtocolError) as exc:
            await self._release_quietly()
            self.session.fail(str(exc))
            raise
        finally:
            self._bring_up = None
        self._heartbeat = asyncio.ensure_future(self._heartbeat_loop())

    async def _run_bring_up(self) -> None:
        self.session.transition(ConnectionState.DISCOVERING)
        await self._discover()
        self.session.transition(ConnectionState.CONNECTING)
        await self._connect()
        self.session.transition(ConnectionState.CONNECTED)

    async def stop(self) -> None:
        self._stopping = True
        pending: list[asyncio.Task[None]] = []
        if self._bring_up is not None and not self._bring_up.done():
            self._bring_up.cancel()
            pending.append(self._bring_up)
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            pending.append(self._heartbeat)
            self._heartbeat = None
        for task in self._inflight:
            task.cancel()
            pending.append(task)
        if pending:
            await asyncio.wait(pending)
        try:
            await self._release()
        finally:
            for device_id in sorted(self.session.device_ids):
                self._lose(device_id, "adapter stopped")
            self.session.reset()

    async def _release_quietly(self) -> None:
        try:
            await self._release()
        except (TransportError, ProtocolError) as exc:
            LOGGER.warning("[%s] release after failure also failed: %s", self.name, exc)

    def _fail(self, reason: str) -> None:
        """Report a fault detected while Connected; the supervisor restarts us."""
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            self._heartbeat = None
        self.session.fail(reason)

    async def _heartbeat_loop(self) -> None:
        while self.session.connected:
            await asyncio.sleep(self.heartbeat_interval_s)
            for device_id in sorted(self.session.device_ids):
                if await self._alive(device_id):
                    self.emit(DeviceUpdated(adapter=self.name, device_id=device_id))
                else:
                    self._lose(device_id, "heartbeat check failed")
            if self.session.connected:
                await self._after_heartbeat()

    @property
    def submit_deadline_s(self) -> float:
        return self.write_timeout_s

    async def submit(self, device_id: str, channel: int, protocol_value: float, command: Command) -> Ack:
        if self._stopping or not self.session.connected:
            raise AdapterUnavailable(f"Adapter '{self.name}' is {self.session.state.value}")
        if device_id not in self.session.device_ids:
            raise DeviceUnavailable(f"Adapter '{self.name}' no longer owns '{device_id}'")

        task = asyncio.ensure_future(self._write(device_id, channel, protocol_value, command))
        self._inflight.add(task)
        try:
            done, _ = await asyncio.wait({task}, timeout=self.submit_deadline_s)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._inflight.discard(task)

        if not done:
            task.cancel()
            await asyncio.wait({task})
            raise TransportTimeoutError(
                f"Write to {device_id} exceeded {self.submit_deadline_s:.2f}s deadline"
            )
        if task.cancelled():
            raise AdapterUnavailable(f"Adapter '{self.name}' stopped while writing to {device_id}")
        task.result()
        return Ack(command=command, status=AckStatus.DELIVERED, protocol_value=protocol_value)

    async def _with_deadline(self, awaitable: Awaitable[T], timeout_s: float, what: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransportTimeoutError(f"{what} timed out after {timeout_s:.2f}s") from exc

    async def _discover(self) -> None:
        return None

    async def _connect(self) -> None:
        return None

    async def _write(self, device_id: str, channel: int, protocol_value: float, command: Command) -> None:
        raise NotImplementedError

    async def _release(self) -> None:
        return None

    async def _alive(self, device_id: str) -> bool:
        return True

    async def _after_heartbeat(self) -> None:
        return None
