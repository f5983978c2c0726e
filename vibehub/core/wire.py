"""Command envelope codec shared by the OSC and Remote paths.

An envelope is `{deviceId, channel, intensity, durationMs?}`. Over OSC it is
carried either as positional arguments (`s i f [i]`) or as one JSON object
string. The Remote path wraps the same OSC messages in length-prefixed frames.
"""

from __future__ import annotations

import asyncio
import json
import math
import struct
from collections.abc import Sequence
from typing import Any

from pythonosc.osc_message import OscMessage, ParseError
from pythonosc.osc_message_builder import OscMessageBuilder

from vibehub.core.errors import ProtocolError
from vibehub.core.model import Command

COMMAND_ADDRESS = "/vibehub/command"
STATUS_ADDRESS = "/vibehub/status"
AUTH_ADDRESS = "/vibehub/auth"

_FRAME_HEADER = struct.Struct(">I")
MAX_FRAME_BYTES = 64 * 1024


def _require_int(value: Any, *, field: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"{field} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ProtocolError(f"{field} must not be negative")
    return value


def _require_number(value: Any, *, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"{field} must be a number, got {type(value).__name__}")
    if not math.isfinite(value):
        raise ProtocolError(f"{field} must be finite")
    return float(value)


def _from_mapping(doc: Any, *, source: str) -> Command:
    if not isinstance(doc, dict):
        raise ProtocolError("JSON envelope must be an object")
    missing = [key for key in ("deviceId", "channel", "intensity") if key not in doc]
    if missing:
        raise ProtocolError(f"Envelope is missing {', '.join(missing)}")
    device_id = doc["deviceId"]
    if not isinstance(device_id, str) or not device_id:
        raise ProtocolError("deviceId must be a non-empty string")
    duration = doc.get("durationMs")
    return Command(
        device_id=device_id,
        channel=_require_int(doc["channel"], field="channel"),
        intensity=_require_number(doc["intensity"], field="intensity"),
        duration_ms=None if duration is None else _require_int(duration, field="durationMs"),
        source=source,
    )


def decode_envelope(args: Sequence[Any], *, source: str) -> Command:
    """Decode OSC arguments into a Command, raising ProtocolError on bad input."""
    if len(args) == 1 and isinstance(args[0], str):
        try:
            doc = json.loads(args[0])
        except json.JSONDecodeError as exc:
            raise ProtocolError(f"Invalid JSON envelope: {exc}") from exc
        return _from_mapping(doc, source=source)

    if len(args) not in (3, 4):
        raise ProtocolError(f"Envelope needs 3 or 4 arguments, got {len(args)}")
    doc = {"deviceId": args[0], "channel": args[1], "intensity": args[2]}
    if len(args) == 4:
        doc["durationMs"] = args[3]
    return _from_mapping(doc, source=source)


def _build(address: str, *args: Any) -> bytes:
    builder = OscMessageBuilder(address=address)
    for arg in args:
        builder.add_arg(arg)
    return builder.build().dgram


def encode_command(command: Command) -> bytes:
    args: list[Any] = [command.device_id, command.channel, float(command.intensity)]
    if command.duration_ms is not None:
        args.append(command.duration_ms)
    return _build(COMMAND_ADDRESS, *args)


def encode_status(device_id: str, channel: int, intensity: float) -> bytes:
    return _build(STATUS_ADDRESS, device_id, channel, float(intensity))


def encode_auth(token: str) -> bytes:
    return _build(AUTH_ADDRESS, token)


def parse_message(dgram: bytes) -> OscMessage:
    try:
        return OscMessage(dgram)
    except ParseError as exc:
        raise ProtocolError(f"Malformed OSC message: {exc}") from exc


def frame(dgram: bytes) -> bytes:
    return _FRAME_HEADER.pack(len(dgram)) + dgram


async def read_frame(reader: asyncio.StreamReader) -> bytes | None:
    """Read one length-prefixed frame; None on a clean end of stream."""
    try:
        header = await reader.readexactly(_FRAME_HEADER.size)
    except asyncio.IncompleteReadError as exc:
        if exc.partial:
            raise ProtocolError("Stream ended inside a frame header") from exc
        return None
    (length,) = _FRAME_HEADER.unpack(header)
    if length == 0 or length > MAX_FRAME_BYTES:
        raise ProtocolError(f"Frame length {length} outside 1..{MAX_FRAME_BYTES}")
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise ProtocolError("Stream ended inside a frame") from exc
