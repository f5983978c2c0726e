from __future__ import annotations

import asyncio
import base64

import pytest

from fakes import wait_for
from vibehub.adapters.remote import RemoteAdapter, RemoteSender, pairing_code, parse_pairing_code
from vibehub.core import wire
from vibehub.core.config import RemoteSettings
from vibehub.core.errors import AdapterDisabled, ProtocolError
from vibehub.core.model import Command, CommandReceived, ConnectionState


class FakeTunnel:
    """Pretends to publish the local port; the url points straight at it."""

    def __init__(self) -> None:
        self.opened_port: int | None = None
        self.closed = False
        self.open_now = True

    def probe(self) -> None:
        return None

    async def open(self, local_port: int) -> str:
        self.opened_port = local_port
        return f"tcp://127.0.0.1:{local_port}"

    async def alive(self) -> bool:
        return self.open_now

    async def close(self) -> None:
        self.closed = True


def _adapter() -> tuple[RemoteAdapter, FakeTunnel, list]:
    tunnel = FakeTunnel()
    adapter = RemoteAdapter(RemoteSettings(authtoken="token"), tunnel=tunnel)
    events: list = []
    adapter.bind(events.append)
    return adapter, tunnel, events


def _commands(events: list) -> list[Command]:
    return [e.command for e in events if isinstance(e, CommandReceived)]


def test_pairing_code_round_trip() -> None:
    code = pairing_code("tcp://0.tcp.ngrok.io:12345", "8b1c")

    assert base64.b64decode(code) == b"tcp://0.tcp.ngrok.io:12345|8b1c"
    assert parse_pairing_code(code) == ("tcp://0.tcp.ngrok.io:12345", "8b1c")


@pytest.mark.parametrize("code", ["%%%", base64.b64encode(b"no-separator").decode(), base64.b64encode(b"|token").decode()])
def test_invalid_pairing_codes(code: str) -> None:
    with pytest.raises(ProtocolError):
        parse_pairing_code(code)


def test_missing_tunnel_token_disables_adapter() -> None:
    adapter = RemoteAdapter(RemoteSettings(authtoken=None))
    with pytest.raises(AdapterDisabled):
        adapter.probe()


def test_sender_commands_reach_the_hub() -> None:
    async def scenario() -> None:
        adapter, tunnel, events = _adapter()
        await adapter.start()
        try:
            assert adapter.session.state is ConnectionState.CONNECTED
            assert tunnel.opened_port == adapter.local_port
            code = adapter.pairing_code
            assert code is not None

            async with RemoteSender(code) as sender:
                await sender.send(Command(device_id="adv:generic", channel=0, intensity=0.75, duration_ms=500))
                await wait_for(lambda: bool(_commands(events)))

            command = _commands(events)[0]
            assert (command.device_id, command.channel, command.intensity, command.duration_ms) == (
                "adv:generic",
                0,
                0.75,
                500,
            )
            assert command.source == "remote"
        finally:
            await adapter.stop()
        assert tunnel.closed
        assert adapter.pairing_code is None

    asyncio.run(scenario())


def test_wrong_token_closes_connection() -> None:
    async def scenario() -> None:
        adapter, _, events = _adapter()
        await adapter.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", adapter.local_port)
            writer.write(wire.frame(wire.encode_auth("not-the-token")))
            await writer.drain()

            assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""
            assert _commands(events) == []
            writer.close()
        finally:
            await adapter.stop()

    asyncio.run(scenario())


def test_first_frame_must_be_auth() -> None:
    async def scenario() -> None:
        adapter, _, events = _adapter()
        await adapter.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", adapter.local_port)
            writer.write(wire.frame(wire.encode_command(Command(device_id="adv:generic", channel=0, intensity=1.0))))
            await writer.drain()

            assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""
            assert _commands(events) == []
            writer.close()
        finally:
            await adapter.stop()

    asyncio.run(scenario())


def test_delivered_levels_are_mirrored_to_clients() -> None:
    async def scenario() -> None:
        adapter, _, _ = _adapter()
        await adapter.start()
        try:
            reader, writer = await asyncio.open_connection("127.0.0.1", adapter.local_port)
            writer.write(wire.frame(wire.encode_auth(adapter.token)))
            await writer.drain()
            await wait_for(lambda: bool(adapter._clients))

            adapter.publish_state("gatt:AA", 0, 0.5)
            status = wire.parse_message(await asyncio.wait_for(wire.read_frame(reader), timeout=2.0))

            assert status.address == wire.STATUS_ADDRESS
            assert status.params == ["gatt:AA", 0, 0.5]
            writer.close()
        finally:
            await adapter.stop()

    asyncio.run(scenario())


def test_malformed_frames_after_auth_are_dropped() -> None:
    async def scenario() -> None:
        adapter, _, events = _adapter()
        await adapter.start()
        try:
            _, writer = await asyncio.open_connection("127.0.0.1", adapter.local_port)
            writer.write(wire.frame(wire.encode_auth(adapter.token)))
            writer.write(wire.frame(b"garbage!"))
            writer.write(wire.frame(wire.encode_status("gatt:AA", 0, 0.5)))
            writer.write(wire.frame(wire.encode_command(Command(device_id="gatt:AA", channel=0, intensity=0.5))))
            await writer.drain()

            await wait_for(lambda: bool(_commands(events)))
            assert [c.device_id for c in _commands(events)] == ["gatt:AA"]
            writer.close()
        finally:
            await adapter.stop()

    asyncio.run(scenario())


def test_dropped_tunnel_fails_the_session() -> None:
    async def scenario() -> None:
        tunnel = FakeTunnel()
        adapter = RemoteAdapter(RemoteSettings(authtoken="token"), tunnel=tunnel, heartbeat_interval_s=0.01)
        await adapter.start()
        try:
            await asyncio.sleep(0.05)
            assert adapter.session.connected

            tunnel.open_now = False
            await wait_for(lambda: adapter.session.state is ConnectionState.ERROR)
            assert "no longer open" in adapter.session.last_error
        finally:
            await adapter.stop()

    asyncio.run(scenario())
