"""Settings and GATT profile loading from YAML, validated by JSON Schema."""

from __future__ import annotations

import json
import logging
import os
import re
import string
from dataclasses import dataclass, field
from importlib import resources
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from jsonschema import ValidationError, validators

from vibehub.core.errors import ConfigError, ConfigLoadError, ConfigValidationError, ProfileValidationError
from vibehub.core.model import (
    ActuationKind,
    Channel,
    ChannelRange,
    GattProfile,
    MatchRules,
    ProfileChannel,
)

_HEX_RE = re.compile(r"^[0-9a-f]+$")
_UUID_RE = re.compile(r"^[0-9a-f]{4}$|^[0-9a-f]{8}$|^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$")
_ADV_ADDRESS_BYTES = 5
TUNNEL_TOKEN_ENV = "VIBEHUB_TUNNEL_TOKEN"
LOGGER = logging.getLogger(__name__)


class UniqueKeyLoader(yaml.SafeLoader):
    """YAML loader that rejects duplicate mapping keys."""


def _construct_mapping(loader: UniqueKeyLoader, node: yaml.Node, deep: bool = False) -> dict[str, Any]:
    mapping: dict[str, Any] = {}
    for key_node, value_node in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if key in mapping:
            raise ConfigValidationError(f"Duplicate key '{key}' in YAML document")
        mapping[key] = loader.construct_object(value_node, deep=deep)
    return mapping


UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_mapping,
)


@dataclass(frozen=True)
class BackoffSettings:
    initial_s: float = 1.0
    factor: float = 2.0
    max_s: float = 30.0

    def delay(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return min(self.max_s, self.initial_s * self.factor ** (attempt - 1))


@dataclass(frozen=True)
class GattSettings:
    enabled: bool = True
    scan_timeout_s: float = 5.0
    connect_timeout_s: float = 10.0
    write_timeout_s: float = 2.0
    write_retries: int = 2
    addresses: tuple[str, ...] = ()


@dataclass(frozen=True)
class AdvSettings:
    enabled: bool = True
    interface: str = "hci0"
    company_id: int = 0xFFF0
    address: bytes = bytes([0x77, 0x62, 0x4D, 0x53, 0x45])
    repeat: int = 3
    repeat_interval_s: float = 0.05
    interval_ms: int = 20


@dataclass(frozen=True)
class OscBinding:
    pattern: str
    device_id: str
    channel: int = 0
    range_start: float = 0.0
    range_end: float = 1.0
    mode: str = "position"
    smoothing: float = 0.05
    scale: float = 1.0


@dataclass(frozen=True)
class OscTarget:
    name: str
    host: str
    port: int
    address: str
    channels: tuple[Channel, ...]

    @property
    def device_id(self) -> str:
        return f"osc:{self.name}"


@dataclass(frozen=True)
class OscSettings:
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 9001
    command_address: str = "/vibehub/command"
    bindings: tuple[OscBinding, ...] = ()
    targets: tuple[OscTarget, ...] = ()
    feedback_host: str | None = None
    feedback_port: int | None = None


@dataclass(frozen=True)
class RemoteSettings:
    enabled: bool = True
    authtoken: str | None = None
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(frozen=True)
class HubSettings:
    coalesce_window_s: float = 0.05
    min_command_interval_s: float = 0.0
    max_intensity: float = 1.0
    heartbeat_timeout_s: float = 60.0
    heartbeat_interval_s: float = 10.0
    cooldown_s: float = 2.0
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    gatt: GattSettings = field(default_factory=GattSettings)
    adv: AdvSettings = field(default_factory=AdvSettings)
    osc: OscSettings = field(default_factory=OscSettings)
    remote: RemoteSettings = field(default_factory=RemoteSettings)


@dataclass(frozen=True)
class LoadedProfiles:
    profiles: dict[str, GattProfile]
    warnings: tuple[str, ...]


def _load_schema_validator(schema_name: str) -> Any:
    schema_text = resources.files("vibehub.schemas").joinpath(schema_name).read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _validate(doc: dict[str, Any], schema_name: str, source: object, error_cls: type[ConfigError]) -> None:
    validator = _load_schema_validator(schema_name)
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise error_cls(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _config_home() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


def _profile_dirs() -> tuple[Path, Path]:
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return _config_home() / "vibehub/profiles", xdg_data / "vibehub/profiles"


def default_settings_path() -> Path:
    return _config_home() / "vibehub/settings.yaml"


def _read_yaml(path: Path | Traversable, error_cls: type[ConfigError]) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except ConfigValidationError as exc:
        raise error_cls(f"{path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise error_cls(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise error_cls(f"{path} must contain a mapping at root")
    return loaded


def _normalize_uuid(value: str, *, context: str) -> str:
    normalized = value.strip().lower()
    if not _UUID_RE.match(normalized):
        raise ProfileValidationError(f"{context} must be a 16-bit, 32-bit, or 128-bit UUID string")
    return normalized


def _normalize_hex(value: str, *, context: str, length: int) -> bytes:
    normalized = value.strip().lower().replace(" ", "").replace(":", "")
    if len(normalized) % 2 != 0 or not _HEX_RE.match(normalized):
        raise ConfigValidationError(f"{context} must be an even-length hex string")
    payload = bytes.fromhex(normalized)
    if len(payload) != length:
        raise ConfigValidationError(f"{context} must be exactly {length} bytes")
    return payload


def _channel_range(doc: dict[str, Any], *, context: str, error_cls: type[ConfigError]) -> ChannelRange:
    minimum = float(doc["min"])
    maximum = float(doc["max"])
    resolution = float(doc.get("resolution", 1.0))
    if maximum <= minimum:
        raise error_cls(f"{context}.range max must be greater than min")
    return ChannelRange(minimum=minimum, maximum=maximum, resolution=resolution)


def _check_unique_indexes(indexes: list[int], *, context: str, error_cls: type[ConfigError]) -> None:
    if len(set(indexes)) != len(indexes):
        raise error_cls(f"{context} declares duplicate channel indexes")


def _validate_template(template: str, *, context: str) -> str:
    try:
        parsed = [(name, spec, conversion) for _, name, spec, conversion in string.Formatter().parse(template) if name is not None]
    except ValueError as exc:
        raise ProfileValidationError(f"{context}.template is not a valid format string: {exc}") from exc
    if {name for name, _, _ in parsed} != {"value"}:
        raise ProfileValidationError(f"{context}.template must reference exactly '{{value}}'")
    if any(spec or conversion for _, spec, conversion in parsed):
        raise ProfileValidationError(f"{context}.template must use a bare '{{value}}' without format spec or conversion")
    return template


def _build_profile(doc: dict[str, Any], source: Path | Traversable) -> GattProfile:
    _validate(doc, "profile.schema.json", source, ProfileValidationError)

    profile_id = doc["id"]
    channels: list[ProfileChannel] = []
    for position, channel_doc in enumerate(doc["channels"]):
        context = f"{profile_id}.channels[{position}]"
        channels.append(
            ProfileChannel(
                index=int(channel_doc["index"]),
                kind=ActuationKind(channel_doc.get("kind", "vibration")),
                range=_channel_range(channel_doc["range"], context=context, error_cls=ProfileValidationError),
                template=_validate_template(channel_doc["template"], context=context),
            )
        )
    _check_unique_indexes([c.index for c in channels], context=profile_id, error_cls=ProfileValidationError)

    gatt = doc["gatt"]
    return GattProfile(
        id=profile_id,
        name=doc["name"],
        match=MatchRules(
            name_contains=tuple(doc["match"].get("name_contains", [])),
            address_prefix=tuple(p.strip().upper() for p in doc["match"].get("address_prefix", [])),
            service_uuids=tuple(
                _normalize_uuid(u, context=f"{profile_id}.match.service_uuids")
                for u in doc["match"].get("service_uuids", [])
            ),
        ),
        service_uuid=_normalize_uuid(gatt["service_uuid"], context=f"{profile_id}.gatt.service_uuid"),
        write_char_uuid=_normalize_uuid(gatt["write_char_uuid"], context=f"{profile_id}.gatt.write_char_uuid"),
        notify_char_uuid=_normalize_uuid(gatt["notify_char_uuid"], context=f"{profile_id}.gatt.notify_char_uuid")
        if "notify_char_uuid" in gatt
        else None,
        write_with_response=bool(gatt.get("write_with_response", False)),
        channels=tuple(sorted(channels, key=lambda c: c.index)),
    )


def _iter_packaged_profile_paths() -> list[Traversable]:
    profile_root = resources.files("vibehub.profiles")
    return [item for item in profile_root.iterdir() if item.name.endswith((".yml", ".yaml"))]


def _iter_user_profile_paths() -> list[Path]:
    paths: list[Path] = []
    for directory in _profile_dirs():
        if not directory.exists() or not directory.is_dir():
            continue
        paths.extend(sorted(p for p in directory.iterdir() if p.suffix in {".yml", ".yaml"}))
    return paths


def load_profiles() -> LoadedProfiles:
    profiles: dict[str, GattProfile] = {}
    warnings: list[str] = []

    for path in sorted(_iter_packaged_profile_paths(), key=lambda p: p.name):
        profile = _build_profile(_read_yaml(path, ProfileValidationError), path)
        profiles[profile.id] = profile

    for path in _iter_user_profile_paths():
        profile = _build_profile(_read_yaml(path, ProfileValidationError), path)
        if profile.id in profiles:
            warning = f"User profile '{profile.id}' overrides packaged profile"
            LOGGER.warning(warning)
            warnings.append(warning)
        profiles[profile.id] = profile

    return LoadedProfiles(profiles=profiles, warnings=tuple(warnings))


def _build_osc(doc: dict[str, Any]) -> OscSettings:
    bindings = tuple(
        OscBinding(
            pattern=b["address"],
            device_id=b["device"],
            channel=int(b.get("channel", 0)),
            range_start=float(b.get("range", [0.0, 1.0])[0]),
            range_end=float(b.get("range", [0.0, 1.0])[1]),
            mode=b.get("mode", "position"),
            smoothing=float(b.get("smoothing", 0.05)),
            scale=float(b.get("scale", 1.0)),
        )
        for b in doc.get("bindings", [])
    )
    for binding in bindings:
        if binding.range_end == binding.range_start:
            raise ConfigValidationError(f"osc binding '{binding.pattern}' has an empty range")

    targets: list[OscTarget] = []
    for t in doc.get("targets", []):
        channels = tuple(
            Channel(
                index=int(c["index"]),
                kind=ActuationKind(c.get("kind", "vibration")),
                range=_channel_range(c["range"], context=f"osc.targets.{t['name']}", error_cls=ConfigValidationError),
            )
            for c in t["channels"]
        )
        _check_unique_indexes([c.index for c in channels], context=f"osc.targets.{t['name']}", error_cls=ConfigValidationError)
        targets.append(
            OscTarget(name=t["name"], host=t.get("host", "127.0.0.1"), port=int(t["port"]), address=t["address"], channels=channels)
        )

    feedback = doc.get("feedback") or {}
    defaults = OscSettings()
    return OscSettings(
        enabled=doc.get("enabled", defaults.enabled),
        host=doc.get("host", defaults.host),
        port=int(doc.get("port", defaults.port)),
        command_address=doc.get("command_address", defaults.command_address),
        bindings=bindings,
        targets=tuple(targets),
        feedback_host=feedback.get("host", "127.0.0.1") if feedback else None,
        feedback_port=int(feedback["port"]) if feedback else None,
    )


def _build_settings(doc: dict[str, Any], source: object) -> HubSettings:
    _validate(doc, "settings.schema.json", source, ConfigValidationError)

    defaults = HubSettings()
    router = doc.get("router", {})
    heartbeat = doc.get("heartbeat", {})
    backoff_doc = doc.get("backoff", {})
    gatt_doc = doc.get("gatt", {})
    adv_doc = doc.get("adv", {})
    remote_doc = doc.get("remote", {})

    gatt_defaults = GattSettings()
    adv_defaults = AdvSettings()
    remote_defaults = RemoteSettings()

    authtoken = remote_doc.get("authtoken") or os.environ.get(TUNNEL_TOKEN_ENV) or None

    return HubSettings(
        coalesce_window_s=float(router.get("coalesce_window_s", defaults.coalesce_window_s)),
        min_command_interval_s=float(router.get("min_command_interval_s", defaults.min_command_interval_s)),
        max_intensity=float(router.get("max_intensity", defaults.max_intensity)),
        heartbeat_timeout_s=float(heartbeat.get("timeout_s", defaults.heartbeat_timeout_s)),
        heartbeat_interval_s=float(heartbeat.get("interval_s", defaults.heartbeat_interval_s)),
        cooldown_s=float(doc.get("cooldown_s", defaults.cooldown_s)),
        backoff=BackoffSettings(
            initial_s=float(backoff_doc.get("initial_s", defaults.backoff.initial_s)),
            factor=float(backoff_doc.get("factor", defaults.backoff.factor)),
            max_s=float(backoff_doc.get("max_s", defaults.backoff.max_s)),
        ),
        gatt=GattSettings(
            enabled=gatt_doc.get("enabled", gatt_defaults.enabled),
            scan_timeout_s=float(gatt_doc.get("scan_timeout_s", gatt_defaults.scan_timeout_s)),
            connect_timeout_s=float(gatt_doc.get("connect_timeout_s", gatt_defaults.connect_timeout_s)),
            write_timeout_s=float(gatt_doc.get("write_timeout_s", gatt_defaults.write_timeout_s)),
            write_retries=int(gatt_doc.get("write_retries", gatt_defaults.write_retries)),
            addresses=tuple(a.strip().upper() for a in gatt_doc.get("addresses", [])),
        ),
        adv=AdvSettings(
            enabled=adv_doc.get("enabled", adv_defaults.enabled),
            interface=adv_doc.get("interface", adv_defaults.interface),
            company_id=int(adv_doc.get("company_id", adv_defaults.company_id)),
            address=_normalize_hex(adv_doc["address"], context="adv.address", length=_ADV_ADDRESS_BYTES)
            if "address" in adv_doc
            else adv_defaults.address,
            repeat=int(adv_doc.get("repeat", adv_defaults.repeat)),
            repeat_interval_s=float(adv_doc.get("repeat_interval_s", adv_defaults.repeat_interval_s)),
            interval_ms=int(adv_doc.get("interval_ms", adv_defaults.interval_ms)),
        ),
        osc=_build_osc(doc.get("osc", {})),
        remote=RemoteSettings(
            enabled=remote_doc.get("enabled", remote_defaults.enabled),
            authtoken=authtoken,
            host=remote_doc.get("host", remote_defaults.host),
            port=int(remote_doc.get("port", remote_defaults.port)),
        ),
    )


def load_settings(path: Path | None = None) -> HubSettings:
    """Load hub settings; a missing default file yields the documented defaults.

    `.env` files are honoured so the tunnel token can stay out of the YAML.
    """
    load_dotenv()
    explicit = path is not None
    settings_path = path or default_settings_path()
    if not settings_path.exists():
        if explicit:
            raise ConfigLoadError(f"Settings file {settings_path} does not exist")
        return _build_settings({}, "<defaults>")
    return _build_settings(_read_yaml(settings_path, ConfigValidationError), settings_path)
