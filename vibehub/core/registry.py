"""Device registry: the single source of truth for known devices."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable

from vibehub.core.errors import DeviceConflictError, UnknownDevice
from vibehub.core.model import Device

LOGGER = logging.getLogger(__name__)

RemovalListener = Callable[[Device], None]

_UPDATABLE = frozenset({"state", "reachable", "last_seen", "levels", "name"})


class DeviceRegistry:
    """Tracks registered devices and their current actuation state.

    Writes are serialized under a lock. Records are immutable and replaced on
    every update, so a reader holding a `Device` never observes a partially
    applied change.
    """

    def __init__(self) -> None:
        self._devices: dict[str, Device] = {}
        self._lock = threading.RLock()
        self._removal_listeners: list[RemovalListener] = []

    def subscribe_removed(self, listener: RemovalListener) -> None:
        self._removal_listeners.append(listener)

    def register(self, device: Device) -> Device:
        with self._lock:
            existing = self._devices.get(device.id)
            if existing is not None and existing.owner != device.owner:
                raise DeviceConflictError(
                    f"Device '{device.id}' is already owned by '{existing.owner}', "
                    f"refusing registration from '{device.owner}'"
                )
            if existing is not None:
                device = dataclasses.replace(device, levels={**existing.levels, **device.levels})
            self._devices[device.id] = device
        if existing is None:
            LOGGER.info("Registered %s (%s) owned by %s", device.id, device.name, device.owner)
        return device

    def lookup(self, device_id: str) -> Device | None:
        return self._devices.get(device_id)

    def update_state(self, device_id: str, **changes: object) -> Device:
        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update device fields: {', '.join(sorted(unknown))}")
        with self._lock:
            current = self._devices.get(device_id)
            if current is None:
                raise UnknownDevice(f"Device '{device_id}' is not registered")
            levels = changes.pop("levels", None)
            if levels is not None:
                changes["levels"] = {**current.levels, **levels}
            updated = dataclasses.replace(current, **changes)
            self._devices[device_id] = updated
        return updated

    def touch(self, device_id: str) -> Device | None:
        """Refresh the last-seen time of a device; unknown ids are ignored."""
        try:
            return self.update_state(device_id, last_seen=time.monotonic())
        except UnknownDevice:
            return None

    def remove(self, device_id: str) -> Device | None:
        with self._lock:
            removed = self._devices.pop(device_id, None)
        if removed is None:
            return None
        LOGGER.info("Removed %s", device_id)
        for listener in self._removal_listeners:
            try:
                listener(removed)
            except Exception:
                LOGGER.exception("Removal listener failed for %s", device_id)
        return removed

    def devices(self) -> list[Device]:
        with self._lock:
            return sorted(self._devices.values(), key=lambda d: d.id)

    def owned_by(self, owner: str) -> list[Device]:
        return [d for d in self.devices() if d.owner == owner]

    def expired(self, now: float, window_s: float) -> list[Device]:
        return [d for d in self.devices() if now - d.last_seen > window_s]
