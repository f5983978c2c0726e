"""Matching of advertised BLE devices against GATT profiles."""

from __future__ import annotations

from vibehub.core.model import DetectedDevice, GattProfile


def _address_prefix_match(device_address: str, profile: GattProfile) -> bool:
    upper_address = device_address.upper()
    return any(upper_address.startswith(prefix) for prefix in profile.match.address_prefix)


def _name_contains_match(device_name: str, profile: GattProfile) -> bool:
    lower_name = device_name.lower()
    return any(token.lower() in lower_name for token in profile.match.name_contains)


def _service_match(service_uuids: tuple[str, ...], profile: GattProfile) -> bool:
    advertised = {uuid.lower() for uuid in service_uuids}
    return any(uuid in advertised for uuid in profile.match.service_uuids)


def match_score(device: DetectedDevice, profile: GattProfile) -> int:
    score = 0
    if _service_match(device.service_uuids, profile):
        score += 4
    if _address_prefix_match(device.address, profile):
        score += 2
    if _name_contains_match(device.name, profile):
        score += 1
    return score


def best_profile_for_device(device: DetectedDevice, profiles: dict[str, GattProfile]) -> GattProfile | None:
    best: GattProfile | None = None
    best_score = 0
    for profile in profiles.values():
        score = match_score(device, profile)
        if score > best_score:
            best = profile
            best_score = score
    return best
