from __future__ import annotations

import asyncio

import pytest

from vibehub.adapters.gatt import GattAdapter, format_value
from vibehub.core.config import GattSettings, load_profiles
from vibehub.core.errors import AdapterDisabled, TransportConnectError, TransportSendError
from vibehub.core.model import (
    ChannelRange,
    Command,
    ConnectionState,
    DetectedDevice,
    DeviceDiscovered,
    DeviceLost,
    DeviceUpdated,
)

SERVICE = "455a0001-0023-4bd4-bbd5-a6920e4c5653"
WRITE = "455a0002-0023-4bd4-bbd5-a6920e4c5653"
NOTIFY = "455a0003-0023-4bd4-bbd5-a6920e4c5653"
ADDRESS = "C4:4F:33:00:11:22"


class FakeCentral:
    def __init__(
        self,
        *,
        characteristics: set[str] | None = None,
        failing_writes: int = 0,
        failing_notify: bool = False,
    ) -> None:
        self.detected = [
            DetectedDevice(address=ADDRESS, name="LVS-Edge", service_uuids=(SERVICE,)),
            DetectedDevice(address="11:22:33:44:55:66", name="Headphones"),
        ]
        self.characteristics = characteristics if characteristics is not None else {WRITE, NOTIFY}
        self.failing_writes = failing_writes
        self.failing_notify = failing_notify
        self.connected: set[str] = set()
        self.writes: list[tuple[str, str, bytes, bool]] = []
        self.notify_callbacks = {}
        self.on_disconnect = None

    def probe(self) -> None:
        return None

    async def scan(self, timeout_s: float) -> list[DetectedDevice]:
        return list(self.detected)

    async def connect(self, address, timeout_s, on_disconnect) -> None:
        self.connected.add(address)
        self.on_disconnect = on_disconnect

    async def services(self, address: str) -> dict[str, set[str]]:
        return {SERVICE: set(self.characteristics)}

    async def write(self, address, char_uuid, payload, *, response) -> None:
        if self.failing_writes:
            self.failing_writes -= 1
            raise TransportSendError("GATT write failed")
        self.writes.append((address, char_uuid, payload, response))

    async def notify(self, address, char_uuid, callback) -> None:
        if self.failing_notify:
            raise TransportConnectError("BLE notify subscription failed")
        self.notify_callbacks[address] = callback

    def is_connected(self, address: str) -> bool:
        return address in self.connected

    async def disconnect(self, address: str) -> None:
        self.connected.discard(address)


def _adapter(central: FakeCentral, **settings) -> tuple[GattAdapter, list]:
    settings.setdefault("write_timeout_s", 0.5)
    adapter = GattAdapter(GattSettings(**settings), load_profiles().profiles, central=central, cooldown_s=0.0)
    events: list = []
    adapter.bind(events.append)
    return adapter, events


def _command(intensity: float = 0.5) -> Command:
    return Command(device_id=f"gatt:{ADDRESS}", channel=0, intensity=intensity)


def test_format_value() -> None:
    assert format_value(10.0, ChannelRange(minimum=0, maximum=20, resolution=1)) == "10"
    assert format_value(0.25, ChannelRange(minimum=0, maximum=1, resolution=0.25)) == "0.25"


def test_start_connects_matched_devices_only() -> None:
    async def scenario() -> None:
        central = FakeCentral()
        adapter, events = _adapter(central)

        await adapter.start()

        assert adapter.session.state is ConnectionState.CONNECTED
        assert central.connected == {ADDRESS}
        discovered = [e.device for e in events if isinstance(e, DeviceDiscovered)]
        assert [d.id for d in discovered] == [f"gatt:{ADDRESS}"]
        assert discovered[0].name == "LVS-Edge"
        assert discovered[0].channels[0].range.maximum == 20
        await adapter.stop()

    asyncio.run(scenario())


def test_writes_use_profile_template_and_skip_repeats() -> None:
    async def scenario() -> None:
        central = FakeCentral()
        adapter, _ = _adapter(central)
        await adapter.start()

        await adapter.submit(f"gatt:{ADDRESS}", 0, 10.0, _command())
        await adapter.submit(f"gatt:{ADDRESS}", 0, 10.0, _command())
        await adapter.submit(f"gatt:{ADDRESS}", 0, 0.0, _command(0.0))

        assert [w[2] for w in central.writes] == [b"Vibrate:10;", b"Vibrate:0;"]
        assert central.writes[0][:2] == (ADDRESS, WRITE)
        assert central.writes[0][3] is False
        await adapter.stop()

    asyncio.run(scenario())


def test_write_is_retried_before_giving_up() -> None:
    async def scenario() -> None:
        central = FakeCentral(failing_writes=2)
        adapter, _ = _adapter(central, write_retries=2)
        await adapter.start()

        ack = await adapter.submit(f"gatt:{ADDRESS}", 0, 5.0, _command(0.25))

        assert ack.delivered
        assert [w[2] for w in central.writes] == [b"Vibrate:5;"]
        await adapter.stop()

    asyncio.run(scenario())


def test_exhausted_retries_mark_device_unreachable_without_closing_session() -> None:
    async def scenario() -> None:
        central = FakeCentral(failing_writes=10)
        adapter, events = _adapter(central, write_retries=1)
        await adapter.start()

        with pytest.raises(TransportSendError):
            await adapter.submit(f"gatt:{ADDRESS}", 0, 5.0, _command(0.25))

        unreachable = [e for e in events if isinstance(e, DeviceUpdated) and e.reachable is False]
        assert [e.device_id for e in unreachable] == [f"gatt:{ADDRESS}"]
        assert central.failing_writes == 8
        assert adapter.session.connected
        await adapter.stop()

    asyncio.run(scenario())


def test_missing_write_characteristic_fails_start() -> None:
    async def scenario() -> None:
        central = FakeCentral(characteristics={NOTIFY})
        adapter, _ = _adapter(central)

        with pytest.raises(TransportConnectError):
            await adapter.start()

        assert adapter.session.state is ConnectionState.ERROR
        assert central.connected == set()

    asyncio.run(scenario())


def test_address_filter_limits_candidates() -> None:
    async def scenario() -> None:
        adapter, _ = _adapter(FakeCentral(), addresses=("AA:AA:AA:AA:AA:AA",))

        with pytest.raises(TransportConnectError, match="No BLE devices matched"):
            await adapter.start()

    asyncio.run(scenario())


def test_notifications_count_as_heartbeats() -> None:
    async def scenario() -> None:
        central = FakeCentral()
        adapter, events = _adapter(central)
        await adapter.start()

        central.notify_callbacks[ADDRESS](b"OK;")

        beats = [e for e in events if isinstance(e, DeviceUpdated) and e.heartbeat]
        assert [e.device_id for e in beats] == [f"gatt:{ADDRESS}"]
        await adapter.stop()

    asyncio.run(scenario())


def test_peripheral_disconnect_loses_device_and_fails_session() -> None:
    async def scenario() -> None:
        central = FakeCentral()
        adapter, events = _adapter(central)
        await adapter.start()

        central.connected.discard(ADDRESS)
        central.on_disconnect(ADDRESS)

        lost = [e for e in events if isinstance(e, DeviceLost)]
        assert [e.device_id for e in lost] == [f"gatt:{ADDRESS}"]
        assert adapter.session.state is ConnectionState.ERROR
        await adapter.stop()

    asyncio.run(scenario())


def test_probe_without_profiles_is_disabled() -> None:
    adapter = GattAdapter(GattSettings(), {}, central=FakeCentral())
    with pytest.raises(AdapterDisabled):
        adapter.probe()


def test_failed_notify_subscription_disconnects_peripheral() -> None:
    async def scenario() -> None:
        central = FakeCentral(failing_notify=True)
        adapter, events = _adapter(central)

        with pytest.raises(TransportConnectError):
            await adapter.start()
        await adapter.stop()

        assert central.connected == set()
        assert not [e for e in events if isinstance(e, DeviceDiscovered)]

    asyncio.run(scenario())
