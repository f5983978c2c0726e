"""Stable public API for embedding vibehub.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from collections.abc import Sequence

from vibehub.adapters.base import Adapter
from vibehub.adapters.factory import create_adapters
from vibehub.adapters.remote import RemoteAdapter, RemoteSender, pairing_code, parse_pairing_code
from vibehub.core.config import HubSettings, LoadedProfiles, load_profiles, load_settings
from vibehub.core.errors import (
    AdapterDisabled,
    AdapterUnavailable,
    CapabilityUnavailable,
    ChannelOutOfRange,
    ConfigError,
    DeviceConflictError,
    DeviceUnavailable,
    ProtocolError,
    RoutingError,
    TransportError,
    UnknownDevice,
    VibehubError,
)
from vibehub.core.model import (
    Ack,
    AckStatus,
    ActuationKind,
    Channel,
    ChannelRange,
    Command,
    ConnectionState,
    Device,
    Protocol,
)
from vibehub.core.registry import DeviceRegistry
from vibehub.core.router import CommandRouter
from vibehub.core.supervisor import SessionSupervisor

__all__ = [
    "VibehubError",
    "ConfigError",
    "ProtocolError",
    "TransportError",
    "RoutingError",
    "UnknownDevice",
    "ChannelOutOfRange",
    "AdapterUnavailable",
    "DeviceUnavailable",
    "DeviceConflictError",
    "CapabilityUnavailable",
    "AdapterDisabled",
    "Ack",
    "AckStatus",
    "ActuationKind",
    "Channel",
    "ChannelRange",
    "Command",
    "ConnectionState",
    "Device",
    "Protocol",
    "Hub",
    "RemoteSender",
    "pairing_code",
    "parse_pairing_code",
    "send_remote",
]


class Hub:
    """Public facade over the registry, router and supervisor.

    A `Hub` wires every configured protocol adapter into one registry and
    command router. Use it as an async context manager, or call `start()` and
    `stop()` yourself.
    """

    def __init__(
        self,
        settings: HubSettings | None = None,
        *,
        profiles: LoadedProfiles | None = None,
        adapters: Sequence[Adapter] | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        if adapters is None:
            self._profiles = profiles or load_profiles()
            adapters = create_adapters(self.settings, self._profiles.profiles)
        else:
            self._profiles = profiles or LoadedProfiles(profiles={}, warnings=())
        self.adapters = list(adapters)
        self.registry = DeviceRegistry()
        self.router = CommandRouter(
            self.registry,
            {adapter.name: adapter for adapter in self.adapters},
            coalesce_window_s=self.settings.coalesce_window_s,
            min_command_interval_s=self.settings.min_command_interval_s,
            max_intensity=self.settings.max_intensity,
        )
        self.supervisor = SessionSupervisor(
            self.adapters,
            self.registry,
            self.router,
            backoff=self.settings.backoff,
            heartbeat_timeout_s=self.settings.heartbeat_timeout_s,
            sweep_interval_s=self.settings.heartbeat_interval_s,
        )

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._profiles.warnings

    @property
    def disabled(self) -> dict[str, str]:
        return dict(self.supervisor.disabled)

    @property
    def pairing_code(self) -> str | None:
        for adapter in self.adapters:
            if isinstance(adapter, RemoteAdapter) and adapter.pairing_code:
                return adapter.pairing_code
        return None

    def probe(self) -> dict[str, str]:
        return self.supervisor.probe()

    async def start(self) -> None:
        await self.supervisor.start()

    async def stop(self) -> None:
        await self.supervisor.stop()

    async def __aenter__(self) -> Hub:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def devices(self) -> list[Device]:
        return self.registry.devices()

    def adapter_states(self) -> dict[str, ConnectionState]:
        return {adapter.name: adapter.session.state for adapter in self.adapters}

    async def submit(
        self,
        device_id: str,
        channel: int,
        intensity: float,
        *,
        duration_ms: int | None = None,
    ) -> Ack:
        command = Command(device_id=device_id, channel=channel, intensity=intensity, duration_ms=duration_ms)
        return await self.router.route(command)


async def send_remote(
    code: str,
    device_id: str,
    channel: int,
    intensity: float,
    *,
    duration_ms: int | None = None,
) -> None:
    """Send one command to a hub through its remote-control tunnel."""
    command = Command(
        device_id=device_id,
        channel=channel,
        intensity=intensity,
        duration_ms=duration_ms,
        source="remote-sender",
    )
    async with RemoteSender(code) as sender:
        await sender.send(command)
