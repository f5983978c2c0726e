"""BLE GATT adapter: profile-matched peripherals driven through bleak."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol as TypingProtocol

from vibehub.adapters.base import AdapterBase
from vibehub.core.device_match import best_profile_for_device
from vibehub.core.config import GattSettings
from vibehub.core.errors import (
    CapabilityUnavailable,
    AdapterDisabled,
    DeviceUnavailable,
    ProtocolError,
    TransportConnectError,
    TransportError,
    TransportSendError,
)
from vibehub.core.model import (
    ChannelRange,
    Command,
    DetectedDevice,
    Device,
    DeviceUpdated,
    GattProfile,
    Protocol,
)

LOGGER = logging.getLogger(__name__)
_DEADLINE_MARGIN_S = 0.5


class BLECentral(TypingProtocol):
    def probe(self) -> None: ...

    async def scan(self, timeout_s: float) -> list[DetectedDevice]: ...

    async def connect(self, address: str, timeout_s: float, on_disconnect: Callable[[str], None]) -> None: ...

    async def services(self, address: str) -> dict[str, set[str]]: ...

    async def write(self, address: str, char_uuid: str, payload: bytes, *, response: bool) -> None: ...

    async def notify(self, address: str, char_uuid: str, callback: Callable[[bytes], None]) -> None: ...

    def is_connected(self, address: str) -> bool: ...

    async def disconnect(self, address: str) -> None: ...


class BleakCentral:
    """`BLECentral` backed by bleak's scanner and clients."""

    def __init__(self) -> None:
        self._clients: dict[str, Any] = {}

    def probe(self) -> None:
        try:
            import bleak  # type: ignore  # noqa: F401
        except Exception as exc:  # pragma: no cover - import failure path
            raise CapabilityUnavailable("BLE GATT requires 'bleak'. Install dependency and retry.") from exc

    async def scan(self, timeout_s: float) -> list[DetectedDevice]:
        from bleak import BleakScanner  # type: ignore

        try:
            found = await BleakScanner.discover(timeout=timeout_s, return_adv=True)
        except Exception as exc:
            raise TransportConnectError(f"BLE scan failed: {exc}") from exc

        devices: list[DetectedDevice] = []
        for ble_device, advertisement in found.values():
            devices.append(
                DetectedDevice(
                    address=ble_device.address.upper(),
                    name=advertisement.local_name or ble_device.name or "<unknown-device>",
                    service_uuids=tuple(u.lower() for u in advertisement.service_uuids),
                )
            )
        return devices

    async def connect(self, address: str, timeout_s: float, on_disconnect: Callable[[str], None]) -> None:
        from bleak import BleakClient  # type: ignore

        client = BleakClient(
            address,
            timeout=timeout_s,
            disconnected_callback=lambda _client: on_disconnect(address),
        )
        try:
            await client.connect()
        except Exception as exc:
            raise TransportConnectError(f"BLE connect failed for {address}: {exc}") from exc
        if not client.is_connected:
            raise TransportConnectError(f"BLE connect failed for {address}")
        self._clients[address] = client

    def _client(self, address: str) -> Any:
        client = self._clients.get(address)
        if client is None:
            raise TransportConnectError(f"No BLE connection to {address}")
        return client

    async def services(self, address: str) -> dict[str, set[str]]:
        client = self._client(address)
        return {
            service.uuid.lower(): {characteristic.uuid.lower() for characteristic in service.characteristics}
            for service in client.services
        }

    async def write(self, address: str, char_uuid: str, payload: bytes, *, response: bool) -> None:
        client = self._client(address)
        try:
            await client.write_gatt_char(char_uuid, payload, response=response)
        except Exception as exc:
            raise TransportSendError(f"BLE GATT write failed: {exc}") from exc

    async def notify(self, address: str, char_uuid: str, callback: Callable[[bytes], None]) -> None:
        client = self._client(address)
        try:
            await client.start_notify(char_uuid, lambda _char, data: callback(bytes(data)))
        except Exception as exc:
            raise TransportConnectError(f"BLE notify subscription failed: {exc}") from exc

    def is_connected(self, address: str) -> bool:
        client = self._clients.get(address)
        return client is not None and client.is_connected

    async def disconnect(self, address: str) -> None:
        client = self._clients.pop(address, None)
        if client is None:
            return
        try:
            await client.disconnect()
        except Exception as exc:
            raise TransportConnectError(f"BLE disconnect failed for {address}: {exc}") from exc


@dataclass(frozen=True)
class ResolvedTarget:
    device: DetectedDevice
    profile: GattProfile

    @property
    def device_id(self) -> str:
        return f"gatt:{self.device.address}"


def format_value(protocol_value: float, channel_range: ChannelRange) -> str:
    if channel_range.resolution >= 1 and float(channel_range.resolution).is_integer():
        return str(int(round(protocol_value)))
    return f"{protocol_value:g}"


class GattAdapter(AdapterBase):
    protocol = Protocol.GATT

    def __init__(
        self,
        settings: GattSettings,
        profiles: dict[str, GattProfile],
        *,
        central: BLECentral | None = None,
        name: str = "gatt",
        cooldown_s: float = 2.0,
        heartbeat_interval_s: float = 10.0,
    ) -> None:
        super().__init__(
            name,
            cooldown_s=cooldown_s,
            write_timeout_s=settings.write_timeout_s,
            heartbeat_interval_s=heartbeat_interval_s,
        )
        self.settings = settings
        self.profiles = profiles
        self.central = central or BleakCentral()
        self._candidates: list[ResolvedTarget] = []
        self._targets: dict[str, ResolvedTarget] = {}
        self._last_written: dict[tuple[str, int], bytes] = {}

    def probe(self) -> None:
        if not self.settings.enabled:
            raise AdapterDisabled("GATT adapter disabled in settings")
        if not self.profiles:
            raise AdapterDisabled("No GATT profiles loaded")
        self.central.probe()

    @property
    def submit_deadline_s(self) -> float:
        return self.write_timeout_s * (self.settings.write_retries + 1) + _DEADLINE_MARGIN_S

    async def _discover(self) -> None:
        detected = await self.central.scan(self.settings.scan_timeout_s)
        candidates: list[ResolvedTarget] = []
        for device in detected:
            if self.settings.addresses and device.address.upper() not in self.settings.addresses:
                continue
            profile = best_profile_for_device(device, self.profiles)
            if profile is None:
                continue
            candidates.append(ResolvedTarget(device=device, profile=profile))
        if not candidates:
            raise TransportConnectError(
                f"No BLE devices matched any GATT profile ({len(detected)} seen during scan)"
            )
        LOGGER.info("GATT scan matched %d device(s)", len(candidates))
        self._candidates = candidates

    async def _connect(self) -> None:
        for target in self._candidates:
            try:
                await self._connect_target(target)
            except (TransportError, ProtocolError) as exc:
                LOGGER.warning("Skipping %s (%s): %s", target.device.address, target.profile.id, exc)
        if not self._targets:
            raise TransportConnectError("Could not connect to any matched GATT device")

    async def _connect_target(self, target: ResolvedTarget) -> None:
        address = target.device.address
        profile = target.profile
        await self._with_deadline(
            self.central.connect(address, self.settings.connect_timeout_s, self._on_peripheral_lost),
            self.settings.connect_timeout_s,
            f"BLE connect to {address}",
        )
        device_id = target.device_id
        try:
            services = await self.central.services(address)
            characteristics = services.get(profile.service_uuid)
            if characteristics is None or profile.write_char_uuid not in characteristics:
                raise ProtocolError(
                    f"{address} does not expose {profile.service_uuid}/{profile.write_char_uuid}"
                )
            if profile.notify_char_uuid and profile.notify_char_uuid in characteristics:
                await self.central.notify(
                    address, profile.notify_char_uuid, lambda data: self._on_notify(device_id, data)
                )
        except (TransportError, ProtocolError, asyncio.CancelledError):
            await self.central.disconnect(address)
            raise

        self._targets[device_id] = target
        LOGGER.info("Connected to %s via profile %s", address, profile.id)
        self._claim(
            Device(
                id=device_id,
                protocol=Protocol.GATT,
                name=target.device.name,
                channels=profile.device_channels(),
                owner=self.name,
            )
        )

    def _on_notify(self, device_id: str, data: bytes) -> None:
        LOGGER.debug("Notification from %s: %s", device_id, data.hex())
        self.emit(DeviceUpdated(adapter=self.name, device_id=device_id))

    def _on_peripheral_lost(self, address: str) -> None:
        device_id = f"gatt:{address}"
        if self._stopping or self._targets.pop(device_id, None) is None:
            return
        LOGGER.warning("GATT peripheral %s disconnected", address)
        self._lose(device_id, "peripheral disconnected")
        if self.session.connected and not self._targets:
            self._fail("All GATT peripherals disconnected")

    async def _write(self, device_id: str, channel: int, protocol_value: float, command: Command) -> None:
        target = self._targets.get(device_id)
        if target is None:
            raise DeviceUnavailable(f"No GATT connection for '{device_id}'")
        profile_channel = next((c for c in target.profile.channels if c.index == channel), None)
        if profile_channel is None:
            raise ProtocolError(f"Profile {target.profile.id} has no channel {channel}")

        payload = profile_channel.template.format(value=format_value(protocol_value, profile_channel.range)).encode("ascii")
        key = (device_id, channel)
        if self._last_written.get(key) == payload:
            return

        attempts = self.settings.write_retries + 1
        last_error: TransportError | None = None
        for attempt in range(1, attempts + 1):
            try:
                await self._with_deadline(
                    self.central.write(
                        target.device.address,
                        target.profile.write_char_uuid,
                        payload,
                        response=target.profile.write_with_response,
                    ),
                    self.write_timeout_s,
                    f"GATT write to {device_id}",
                )
            except TransportError as exc:
                last_error = exc
                LOGGER.warning("Write %d/%d to %s failed: %s", attempt, attempts, device_id, exc)
                continue
            self._last_written[key] = payload
            return

        self._last_written.pop(key, None)
        self.emit(DeviceUpdated(adapter=self.name, device_id=device_id, reachable=False, heartbeat=False))
        raise TransportSendError(f"{device_id} unreachable after {attempts} write attempts: {last_error}")

    async def _alive(self, device_id: str) -> bool:
        target = self._targets.get(device_id)
        return target is not None and self.central.is_connected(target.device.address)

    async def _after_heartbeat(self) -> None:
        if not self._targets:
            self._fail("No GATT peripherals remain connected")

    def forget(self, device_id: str) -> None:
        super().forget(device_id)
        self._targets.pop(device_id, None)

    async def _release(self) -> None:
        errors: list[str] = []
        for device_id, target in list(self._targets.items()):
            try:
                await self.central.disconnect(target.device.address)
            except TransportError as exc:
                errors.append(str(exc))
        self._targets.clear()
        self._candidates = []
        self._last_written.clear()
        if errors:
            raise TransportConnectError("; ".join(errors))
