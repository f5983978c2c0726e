"""Advertisement payload codec for connectionless "ADV" vibration devices.

These devices listen for manufacturer-specific advertising data carrying a
whitened RF frame: the listener address and a command byte are bit-reversed,
protected with a CRC-16/CCITT and whitened with two LFSR seeds.
"""

from __future__ import annotations

from collections.abc import Sequence

COMPANY_ID = 0xFFF0
DEFAULT_ADDRESS = bytes([0x77, 0x62, 0x4D, 0x53, 0x45])
FLAGS_PREFIX = bytes([0x02, 0x01, 0x06])
MAX_LEVEL = 7

_LEVEL_COMMANDS = {
    1: 0xF4,
    2: 0xF7,
    3: 0xF6,
    4: 0xF1,
    5: 0xF3,
    6: 0xE7,
    7: 0xE6,
}
_STOP_COMMAND = 0xE5

_PAYLOAD_START = 0x0F
_ADDRESS_START = 0x12
_COMMAND_LENGTH = 11


def command_bytes(level: int) -> bytes:
    """Vendor command for a speed level; anything outside 1..7 stops the motor."""
    return bytes([_LEVEL_COMMANDS.get(level, _STOP_COMMAND), 0x00, 0x00])


def invert_8(value: int) -> int:
    result = 0
    for _ in range(8):
        result = (result << 1) | (value & 1)
        value >>= 1
    return result


def invert_16(value: int) -> int:
    result = 0
    for _ in range(16):
        result = (result << 1) | (value & 1)
        value >>= 1
    return result


def _crc_step(crc: int, byte: int) -> int:
    crc ^= byte << 8
    for _ in range(8):
        if crc & 0x8000:
            crc = ((crc << 1) ^ 0x1021) & 0xFFFF
        else:
            crc = (crc << 1) & 0xFFFF
    return crc


def crc16(address: Sequence[int], data: Sequence[int]) -> int:
    crc = 0xFFFF
    for byte in reversed(address):
        crc = _crc_step(crc, byte)
    for byte in data:
        crc = _crc_step(crc, invert_8(byte))
    return ~invert_16(crc) & 0xFFFF


def whitening_init(seed: int) -> list[int]:
    return [1] + [(seed >> shift) & 1 for shift in (5, 4, 3, 2, 1, 0)]


def whiten(buffer: bytearray, length: int, seed: int, offset: int = 0) -> None:
    """XOR `length` bytes of `buffer` from `offset` with the LFSR keystream, in place."""
    ctx = whitening_init(seed)
    for i in range(length):
        c0, c1, c2, c3, c4, c5, c6 = ctx
        var52 = c5 ^ c2
        var41 = c4 ^ c1
        var63 = c6 ^ c3
        var630 = var63 ^ c0
        ctx = [var52 ^ c6, var630, var41, var52, var52 ^ c3, var630 ^ c4, var41 ^ c5]

        keystream = (
            ((var52 ^ c6) << 7)
            | (var630 << 6)
            | (var41 << 5)
            | (var52 << 4)
            | (var63 << 3)
            | (c4 << 2)
            | (c5 << 1)
            | c6
        )
        buffer[offset + i] ^= keystream


def rf_payload(address: bytes, data: bytes) -> bytes:
    length = _ADDRESS_START + len(address) + len(data)
    total = length + 2
    frame = bytearray(total)
    frame[_PAYLOAD_START : _PAYLOAD_START + 3] = b"\x71\x0f\x55"

    for j, byte in enumerate(address):
        frame[_ADDRESS_START + len(address) - j - 1] = byte
    for j, byte in enumerate(data):
        frame[length - j - 1] = byte
    for i in range(_PAYLOAD_START, _PAYLOAD_START + 3 + len(address)):
        frame[i] = invert_8(frame[i])

    crc = crc16(address, data)
    frame[length] = crc & 0xFF
    frame[length + 1] = (crc >> 8) & 0xFF

    keystream_3f = bytearray(total)
    whiten(keystream_3f, 2 + len(address) + len(data), 0x3F, _ADDRESS_START)
    whiten(frame, total, 0x25)
    for i in range(total):
        frame[i] ^= keystream_3f[i]
    return bytes(frame[_PAYLOAD_START : _PAYLOAD_START + _COMMAND_LENGTH])


def ble_command(address: bytes, raw: bytes) -> bytes:
    """Frame for a raw 3-byte command: whitened with a zero data byte, command patched in."""
    if len(raw) != 3:
        raise ValueError("raw command must be exactly 3 bytes")
    payload = bytearray(rf_payload(address, b"\x00"))
    payload[8:11] = raw
    return bytes(payload)


def manufacturer_data(level: int, address: bytes = DEFAULT_ADDRESS) -> bytes:
    """Manufacturer-specific data body for one speed level, flags prefix included."""
    return FLAGS_PREFIX + ble_command(address, command_bytes(level))
