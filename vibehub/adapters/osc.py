"""OSC adapter: UDP command listener, parameter bindings and OSC target devices."""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import time
from collections.abc import Callable
from typing import Any

from pythonosc.osc_message import OscMessage
from pythonosc.osc_packet import OscPacket, ParseError
from pythonosc.udp_client import SimpleUDPClient

from vibehub.adapters.base import AdapterBase
from vibehub.core import wire
from vibehub.core.actuation import SpeedFilter, remap, speed_to_intensity
from vibehub.core.config import OscBinding, OscSettings
from vibehub.core.errors import AdapterDisabled, DeviceUnavailable, ProtocolError, TransportConnectError, TransportSendError
from vibehub.core.model import Command, CommandReceived, Device, Protocol

LOGGER = logging.getLogger(__name__)


class _DatagramListener(asyncio.DatagramProtocol):
    def __init__(self, on_packet: Callable[[bytes, tuple[str, int]], None]) -> None:
        self._on_packet = on_packet

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._on_packet(data, addr)

    def error_received(self, exc: Exception) -> None:
        LOGGER.warning("OSC socket error: %s", exc)


class _BindingState:
    def __init__(self, binding: OscBinding) -> None:
        self.binding = binding
        self.filter = SpeedFilter(binding.smoothing)
        self.last_update: float | None = None

    def intensity(self, raw: float, now: float) -> float | None:
        position = remap(raw, self.binding.range_start, self.binding.range_end)
        if self.binding.mode == "position":
            return position * self.binding.scale
        previous, self.last_update = self.last_update, now
        if previous is None:
            self.filter.previous_position = position
            return None
        speed = self.filter.update(position, now - previous)
        return speed_to_intensity(speed) * self.binding.scale


class OscAdapter(AdapterBase):
    protocol = Protocol.OSC

    def __init__(
        self,
        settings: OscSettings,
        *,
        name: str = "osc",
        cooldown_s: float = 2.0,
        heartbeat_interval_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(name, cooldown_s=cooldown_s, heartbeat_interval_s=heartbeat_interval_s)
        self.settings = settings
        self._clock = clock
        self._transport: asyncio.DatagramTransport | None = None
        self._bindings = [_BindingState(b) for b in settings.bindings]
        self._targets = {t.device_id: t for t in settings.targets}
        self._clients: dict[str, SimpleUDPClient] = {}
        self._feedback: SimpleUDPClient | None = None

    @property
    def local_address(self) -> tuple[str, int] | None:
        if self._transport is None:
            return None
        return self._transport.get_extra_info("sockname")[:2]

    def probe(self) -> None:
        if not self.settings.enabled:
            raise AdapterDisabled("OSC adapter disabled in settings")

    async def _connect(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _DatagramListener(self.handle_datagram),
                local_addr=(self.settings.host, self.settings.port),
            )
        except OSError as exc:
            raise TransportConnectError(
                f"Could not bind OSC listener on {self.settings.host}:{self.settings.port}: {exc}"
            ) from exc
        self._transport = transport
        LOGGER.info("OSC listening on %s:%s", *self.local_address)

        if self.settings.feedback_host and self.settings.feedback_port:
            self._feedback = SimpleUDPClient(self.settings.feedback_host, self.settings.feedback_port)
        for device_id, target in self._targets.items():
            self._clients[device_id] = SimpleUDPClient(target.host, target.port)
            self._claim(
                Device(
                    id=device_id,
                    protocol=Protocol.OSC,
                    name=target.name,
                    channels=target.channels,
                    owner=self.name,
                )
            )

    def handle_datagram(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            packet = OscPacket(data)
        except ParseError as exc:
            LOGGER.warning("Dropping malformed OSC packet from %s:%s: %s", addr[0], addr[1], exc)
            return
        for timed in packet.messages:
            try:
                self._handle_message(timed.message)
            except ProtocolError as exc:
                LOGGER.warning("Dropping OSC message %s from %s:%s: %s", timed.message.address, addr[0], addr[1], exc)

    def _handle_message(self, message: OscMessage) -> None:
        if message.address == self.settings.command_address:
            command = wire.decode_envelope(message.params, source=self.name)
            self.emit(CommandReceived(adapter=self.name, command=command))
            return

        for state in self._bindings:
            if not fnmatch.fnmatchcase(message.address, state.binding.pattern):
                continue
            intensity = state.intensity(self._binding_value(message.params), self._clock())
            if intensity is None:
                continue
            self.emit(
                CommandReceived(
                    adapter=self.name,
                    command=Command(
                        device_id=state.binding.device_id,
                        channel=state.binding.channel,
                        intensity=intensity,
                        source=self.name,
                    ),
                )
            )

    @staticmethod
    def _binding_value(params: list[Any]) -> float:
        if not params:
            raise ProtocolError("Bound parameter carries no value")
        value = params[0]
        if isinstance(value, bool):
            return 1.0 if value else 0.0
        if not isinstance(value, (int, float)):
            raise ProtocolError(f"Bound parameter must be numeric, got {type(value).__name__}")
        return float(value)

    async def _write(self, device_id: str, channel: int, protocol_value: float, command: Command) -> None:
        client = self._clients.get(device_id)
        target = self._targets.get(device_id)
        if client is None or target is None:
            raise DeviceUnavailable(f"No OSC target for '{device_id}'")
        address = target.address if len(target.channels) == 1 else f"{target.address}/{channel}"
        try:
            client.send_message(address, float(protocol_value))
        except OSError as exc:
            raise TransportSendError(f"OSC send to {target.host}:{target.port} failed: {exc}") from exc

    def publish_state(self, device_id: str, channel: int, intensity: float) -> None:
        if self._feedback is None:
            return
        try:
            self._feedback.send_message(wire.STATUS_ADDRESS, [device_id, channel, float(intensity)])
        except OSError as exc:
            LOGGER.warning("OSC feedback send failed: %s", exc)

    async def _release(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None
        self._clients.clear()
        self._feedback = None
