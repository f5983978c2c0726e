"""Core data models shared by adapters, registry, router and supervisor."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum


class Protocol(str, Enum):
    GATT = "gatt"
    ADV = "adv"
    OSC = "osc"
    REMOTE = "remote"


class ActuationKind(str, Enum):
    VIBRATION = "vibration"
    ROTATION = "rotation"
    LINEAR = "linear"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class AckStatus(str, Enum):
    DELIVERED = "delivered"
    SUPERSEDED = "superseded"
    FAILED = "failed"


@dataclass(frozen=True)
class ChannelRange:
    minimum: float
    maximum: float
    resolution: float = 1.0


@dataclass(frozen=True)
class Channel:
    index: int
    kind: ActuationKind
    range: ChannelRange


@dataclass(frozen=True)
class Device:
    id: str
    protocol: Protocol
    name: str
    channels: tuple[Channel, ...]
    owner: str
    state: ConnectionState = ConnectionState.CONNECTED
    reachable: bool = True
    last_seen: float = field(default_factory=time.monotonic)
    levels: dict[int, float] = field(default_factory=dict)

    def channel(self, index: int) -> Channel | None:
        for channel in self.channels:
            if channel.index == index:
                return channel
        return None


@dataclass(frozen=True)
class Command:
    device_id: str
    channel: int
    intensity: float
    duration_ms: int | None = None
    submitted_at: float = field(default_factory=time.monotonic)
    source: str = "api"


@dataclass(frozen=True)
class Ack:
    command: Command
    status: AckStatus
    protocol_value: float | None = None
    detail: str | None = None

    @property
    def delivered(self) -> bool:
        return self.status is AckStatus.DELIVERED


@dataclass(frozen=True)
class DeviceDiscovered:
    adapter: str
    device: Device


@dataclass(frozen=True)
class DeviceLost:
    adapter: str
    device_id: str
    reason: str = ""


@dataclass(frozen=True)
class DeviceUpdated:
    adapter: str
    device_id: str
    reachable: bool | None = None
    heartbeat: bool = True


@dataclass(frozen=True)
class CommandReceived:
    adapter: str
    command: Command


@dataclass(frozen=True)
class StateChanged:
    adapter: str
    previous: ConnectionState
    current: ConnectionState


AdapterEvent = DeviceDiscovered | DeviceLost | DeviceUpdated | CommandReceived | StateChanged


@dataclass(frozen=True)
class MatchRules:
    name_contains: tuple[str, ...]
    address_prefix: tuple[str, ...]
    service_uuids: tuple[str, ...] = ()


@dataclass(frozen=True)
class ProfileChannel:
    index: int
    kind: ActuationKind
    range: ChannelRange
    template: str


@dataclass(frozen=True)
class GattProfile:
    id: str
    name: str
    match: MatchRules
    service_uuid: str
    write_char_uuid: str
    notify_char_uuid: str | None
    write_with_response: bool
    channels: tuple[ProfileChannel, ...]

    def device_channels(self) -> tuple[Channel, ...]:
        return tuple(Channel(index=c.index, kind=c.kind, range=c.range) for c in self.channels)


@dataclass(frozen=True)
class DetectedDevice:
    address: str
    name: str
    service_uuids: tuple[str, ...] = ()
