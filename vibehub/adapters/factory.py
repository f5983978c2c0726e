"""Adapter construction from hub settings.

The set of protocol variants is decided here and nowhere else.
"""

from __future__ import annotations

from vibehub.adapters.adv import AdvAdapter
from vibehub.adapters.base import Adapter
from vibehub.adapters.gatt import GattAdapter
from vibehub.adapters.osc import OscAdapter
from vibehub.adapters.remote import RemoteAdapter
from vibehub.core.config import HubSettings
from vibehub.core.model import GattProfile


def create_adapters(settings: HubSettings, profiles: dict[str, GattProfile]) -> list[Adapter]:
    common = {"cooldown_s": settings.cooldown_s, "heartbeat_interval_s": settings.heartbeat_interval_s}
    return [
        GattAdapter(settings.gatt, profiles, **common),
        AdvAdapter(settings.adv, **common),
        OscAdapter(settings.osc, **common),
        RemoteAdapter(settings.remote, **common),
    ]
