from __future__ import annotations

import asyncio
import json
import struct

import pytest

from vibehub.core import wire
from vibehub.core.errors import ProtocolError
from vibehub.core.model import Command


def test_positional_envelope() -> None:
    command = wire.decode_envelope(["gatt:AA", 0, 0.5], source="osc")

    assert command.device_id == "gatt:AA"
    assert command.channel == 0
    assert command.intensity == 0.5
    assert command.duration_ms is None
    assert command.source == "osc"


def test_positional_envelope_with_duration() -> None:
    command = wire.decode_envelope(["adv:generic", 0, 1, 250], source="remote")

    assert command.intensity == 1.0
    assert command.duration_ms == 250


def test_json_envelope() -> None:
    doc = json.dumps({"deviceId": "osc:toy", "channel": 1, "intensity": 0.25, "durationMs": 100})

    command = wire.decode_envelope([doc], source="osc")

    assert (command.device_id, command.channel, command.intensity, command.duration_ms) == ("osc:toy", 1, 0.25, 100)


@pytest.mark.parametrize(
    "args",
    [
        [],
        ["gatt:AA", 0],
        ["gatt:AA", 0, 0.5, 10, 20],
        ["gatt:AA", "0", 0.5],
        ["gatt:AA", True, 0.5],
        ["gatt:AA", -1, 0.5],
        ["gatt:AA", 0, float("nan")],
        ["", 0, 0.5],
        ["{not json"],
        ['{"deviceId": "gatt:AA", "channel": 0}'],
        ["[1, 2, 3]"],
    ],
)
def test_malformed_envelopes_raise_protocol_error(args: list) -> None:
    with pytest.raises(ProtocolError):
        wire.decode_envelope(args, source="osc")


def test_encoded_command_decodes_back() -> None:
    original = Command(device_id="gatt:AA", channel=2, intensity=0.5, duration_ms=300)

    message = wire.parse_message(wire.encode_command(original))
    decoded = wire.decode_envelope(message.params, source="remote")

    assert message.address == wire.COMMAND_ADDRESS
    assert (decoded.device_id, decoded.channel, decoded.intensity, decoded.duration_ms) == ("gatt:AA", 2, 0.5, 300)


def test_parse_message_rejects_garbage() -> None:
    with pytest.raises(ProtocolError):
        wire.parse_message(b"not an osc message")


def test_frames_are_read_back_until_eof() -> None:
    async def scenario() -> None:
        reader = asyncio.StreamReader()
        reader.feed_data(wire.frame(wire.encode_auth("token-1")))
        reader.feed_data(wire.frame(wire.encode_status("adv:generic", 0, 0.5)))
        reader.feed_eof()

        auth = wire.parse_message(await wire.read_frame(reader))
        status = wire.parse_message(await wire.read_frame(reader))

        assert auth.address == wire.AUTH_ADDRESS
        assert auth.params == ["token-1"]
        assert status.params == ["adv:generic", 0, 0.5]
        assert await wire.read_frame(reader) is None

    asyncio.run(scenario())


def test_oversized_and_truncated_frames_raise() -> None:
    async def scenario() -> None:
        oversized = asyncio.StreamReader()
        oversized.feed_data(struct.pack(">I", wire.MAX_FRAME_BYTES + 1))
        oversized.feed_eof()
        with pytest.raises(ProtocolError):
            await wire.read_frame(oversized)

        truncated = asyncio.StreamReader()
        truncated.feed_data(struct.pack(">I", 16) + b"abc")
        truncated.feed_eof()
        with pytest.raises(ProtocolError):
            await wire.read_frame(truncated)

    asyncio.run(scenario())
