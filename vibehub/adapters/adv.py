"""Connectionless BLE advertisement adapter."""

from __future__ import annotations

import asyncio
import logging
import shutil
import subprocess
import sys
from collections.abc import Sequence
from typing import Protocol as TypingProtocol

from vibehub.adapters import adv_payload
from vibehub.adapters.base import AdapterBase
from vibehub.core.config import AdvSettings
from vibehub.core.errors import AdapterDisabled, CapabilityUnavailable, TransportConnectError, TransportSendError
from vibehub.core.model import (
    ActuationKind,
    Channel,
    ChannelRange,
    Command,
    Device,
    Protocol,
)

LOGGER = logging.getLogger(__name__)

DEVICE_ID = "adv:generic"
ADV_CHANNEL_RANGE = ChannelRange(minimum=0.0, maximum=float(adv_payload.MAX_LEVEL), resolution=1.0)

_MAX_AD_LENGTH = 31
_ADV_TYPE_NONCONN = 0x03
_ALL_CHANNELS = 0x07
_INTERVAL_UNIT_MS = 0.625


class Advertiser(TypingProtocol):
    def probe(self) -> None: ...

    async def open(self) -> None: ...

    async def advertise(self, company_id: int, data: bytes) -> None: ...

    async def close(self) -> None: ...


def advertising_data(company_id: int, data: bytes) -> bytes:
    """AD structure holding one manufacturer-specific data field."""
    body = bytes([0xFF, company_id & 0xFF, (company_id >> 8) & 0xFF]) + data
    structure = bytes([len(body)]) + body
    if len(structure) > _MAX_AD_LENGTH:
        raise TransportSendError(f"Advertising data is {len(structure)} bytes, limit is {_MAX_AD_LENGTH}")
    return structure


def _hex_args(payload: bytes) -> list[str]:
    return [f"{byte:02x}" for byte in payload]


def _run_command(cmd: Sequence[str]) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
        )
    except FileNotFoundError:
        return None


class HciAdvertiser:
    """`Advertiser` driving the controller with raw HCI LE commands via BlueZ `hcitool`."""

    def __init__(self, interface: str = "hci0", interval_ms: int = 20) -> None:
        self.interface = interface
        self.interval_ms = interval_ms

    def probe(self) -> None:
        if not sys.platform.startswith("linux"):
            raise CapabilityUnavailable(f"BLE advertising needs Linux/BlueZ, running on {sys.platform}")
        if shutil.which("hcitool") is None:
            raise CapabilityUnavailable("BLE advertising needs the BlueZ 'hcitool' binary on PATH")

    async def _hci(self, ocf: int, params: bytes) -> None:
        cmd = ["hcitool", "-i", self.interface, "cmd", "0x08", f"0x{ocf:04x}", *_hex_args(params)]
        result = await asyncio.to_thread(_run_command, cmd)
        if result is None:
            raise TransportConnectError("'hcitool' disappeared from PATH")
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise TransportSendError(f"{' '.join(cmd)} -> {stderr or f'exit {result.returncode}'}")

    async def open(self) -> None:
        interval = max(0x20, int(self.interval_ms / _INTERVAL_UNIT_MS))
        params = (
            interval.to_bytes(2, "little")
            + interval.to_bytes(2, "little")
            + bytes([_ADV_TYPE_NONCONN, 0x00, 0x00])
            + bytes(6)
            + bytes([_ALL_CHANNELS, 0x00])
        )
        try:
            await self._hci(0x0006, params)
        except TransportSendError as exc:
            raise TransportConnectError(f"Could not configure advertising on {self.interface}: {exc}") from exc

    async def advertise(self, company_id: int, data: bytes) -> None:
        structure = advertising_data(company_id, data)
        padded = structure + bytes(_MAX_AD_LENGTH - len(structure))
        await self._hci(0x0008, bytes([len(structure)]) + padded)
        await self._hci(0x000A, b"\x01")

    async def close(self) -> None:
        await self._hci(0x000A, b"\x00")


class AdvAdapter(AdapterBase):
    protocol = Protocol.ADV

    def __init__(
        self,
        settings: AdvSettings,
        *,
        advertiser: Advertiser | None = None,
        name: str = "adv",
        cooldown_s: float = 2.0,
        heartbeat_interval_s: float = 10.0,
    ) -> None:
        super().__init__(
            name,
            cooldown_s=cooldown_s,
            write_timeout_s=2.0,
            heartbeat_interval_s=heartbeat_interval_s,
        )
        self.settings = settings
        self.advertiser = advertiser or HciAdvertiser(settings.interface, settings.interval_ms)

    def probe(self) -> None:
        if not self.settings.enabled:
            raise AdapterDisabled("ADV adapter disabled in settings")
        self.advertiser.probe()

    @property
    def submit_deadline_s(self) -> float:
        return self.write_timeout_s + self.settings.repeat * self.settings.repeat_interval_s

    async def _connect(self) -> None:
        await self._with_deadline(self.advertiser.open(), self.write_timeout_s, "advertiser setup")
        self._claim(
            Device(
                id=DEVICE_ID,
                protocol=Protocol.ADV,
                name="Generic advertisement vibrator",
                channels=(Channel(index=0, kind=ActuationKind.VIBRATION, range=ADV_CHANNEL_RANGE),),
                owner=self.name,
            )
        )

    async def _write(self, device_id: str, channel: int, protocol_value: float, command: Command) -> None:
        level = int(protocol_value)
        data = adv_payload.manufacturer_data(level, self.settings.address)
        LOGGER.debug("Advertising level %d for %s: %s", level, device_id, data.hex())
        for attempt in range(self.settings.repeat):
            if attempt:
                await asyncio.sleep(self.settings.repeat_interval_s)
            await self.advertiser.advertise(self.settings.company_id, data)

    async def _release(self) -> None:
        await self.advertiser.close()
