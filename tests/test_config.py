from __future__ import annotations

from pathlib import Path

import pytest

from vibehub.core.config import TUNNEL_TOKEN_ENV, HubSettings, load_profiles, load_settings
from vibehub.core.errors import ConfigLoadError, ConfigValidationError, ProfileValidationError


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


@pytest.fixture
def xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.delenv(TUNNEL_TOKEN_ENV, raising=False)
    return tmp_path


def test_load_packaged_profile(xdg: Path) -> None:
    loaded = load_profiles()
    assert "lovense" in loaded.profiles
    profile = loaded.profiles["lovense"]
    assert profile.write_char_uuid == "455a0002-0023-4bd4-bbd5-a6920e4c5653"
    assert profile.channels[0].template == "Vibrate:{value};"
    assert profile.channels[0].range.maximum == 20
    assert loaded.warnings == ()


def test_template_without_value_placeholder_rejected(xdg: Path) -> None:
    _write(
        xdg / "cfg" / "vibehub" / "profiles" / "bad.yaml",
        """
id: bad_template
name: Bad Template
match:
  name_contains: ["Bad"]
gatt:
  service_uuid: "fff0"
  write_char_uuid: "fff2"
channels:
  - index: 0
    range: {min: 0, max: 10}
    template: "Speed:{level};"
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_missing_required_keys_rejected(xdg: Path) -> None:
    _write(
        xdg / "cfg" / "vibehub" / "profiles" / "missing.yaml",
        """
id: missing
name: Missing
match:
  name_contains: ["Missing"]
gatt:
  service_uuid: "fff0"
  write_char_uuid: "fff2"
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_invalid_uuid_rejected(xdg: Path) -> None:
    _write(
        xdg / "data" / "vibehub" / "profiles" / "uuid.yaml",
        """
id: bad_uuid
name: Bad UUID
match:
  name_contains: ["Bad"]
gatt:
  service_uuid: "not-a-uuid"
  write_char_uuid: "fff2"
channels:
  - index: 0
    range: {min: 0, max: 10}
    template: "V:{value};"
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()


def test_user_profile_overrides_packaged(xdg: Path) -> None:
    _write(
        xdg / "cfg" / "vibehub" / "profiles" / "override.yaml",
        """
id: lovense
name: User Override
match:
  name_contains: ["LVS-"]
gatt:
  service_uuid: "455a0001-0023-4bd4-bbd5-a6920e4c5653"
  write_char_uuid: "455a0002-0023-4bd4-bbd5-a6920e4c5653"
channels:
  - index: 0
    kind: rotation
    range: {min: 0, max: 10}
    template: "Rotate:{value};"
""",
    )

    loaded = load_profiles()
    assert loaded.profiles["lovense"].name == "User Override"
    assert loaded.profiles["lovense"].notify_char_uuid is None
    assert any("overrides" in warning for warning in loaded.warnings)


def test_missing_default_settings_file_yields_defaults(xdg: Path) -> None:
    settings = load_settings()

    assert settings == HubSettings()
    assert settings.coalesce_window_s == 0.05
    assert settings.backoff.delay(1) == 1.0
    assert settings.backoff.delay(10) == 30.0
    assert settings.remote.authtoken is None


def test_explicit_missing_settings_file_is_an_error(xdg: Path) -> None:
    with pytest.raises(ConfigLoadError):
        load_settings(xdg / "nope.yaml")


def test_settings_file_is_parsed(xdg: Path) -> None:
    path = xdg / "cfg" / "vibehub" / "settings.yaml"
    _write(
        path,
        """
router:
  coalesce_window_s: 0.1
  max_intensity: 0.8
gatt:
  write_retries: 4
  addresses: ["c4:4f:33:00:11:22"]
adv:
  address: "01 02 03 04 05"
  repeat: 5
osc:
  port: 9100
  bindings:
    - address: "/avatar/parameters/*Stretch"
      device: "adv:generic"
      range: [0.2, 0.9]
      mode: speed
  targets:
    - name: lights
      port: 9200
      address: "/lights/level"
      channels:
        - index: 0
          range: {min: 0, max: 255, resolution: 1}
  feedback:
    port: 9300
remote:
  authtoken: "abc"
""",
    )

    settings = load_settings()

    assert settings.coalesce_window_s == 0.1
    assert settings.max_intensity == 0.8
    assert settings.gatt.write_retries == 4
    assert settings.gatt.addresses == ("C4:4F:33:00:11:22",)
    assert settings.adv.address == bytes([1, 2, 3, 4, 5])
    assert settings.adv.repeat == 5
    binding = settings.osc.bindings[0]
    assert (binding.pattern, binding.device_id, binding.mode) == ("/avatar/parameters/*Stretch", "adv:generic", "speed")
    assert (binding.range_start, binding.range_end) == (0.2, 0.9)
    assert settings.osc.targets[0].device_id == "osc:lights"
    assert settings.osc.targets[0].channels[0].range.maximum == 255
    assert (settings.osc.feedback_host, settings.osc.feedback_port) == ("127.0.0.1", 9300)
    assert settings.remote.authtoken == "abc"


def test_tunnel_token_from_environment(xdg: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(TUNNEL_TOKEN_ENV, "from-env")
    assert load_settings().remote.authtoken == "from-env"


@pytest.mark.parametrize(
    "content",
    [
        "router:\n  coalesce_window_s: 0.1\n  coalesce_window_s: 0.2\n",
        "routr:\n  coalesce_window_s: 0.1\n",
        "adv:\n  address: \"0102\"\n",
        "osc:\n  bindings:\n    - address: \"/x\"\n      device: \"adv:generic\"\n      range: [0.5, 0.5]\n",
        "- just\n- a list\n",
    ],
)
def test_invalid_settings_rejected(xdg: Path, content: str) -> None:
    path = xdg / "settings.yaml"
    _write(path, content)

    with pytest.raises(ConfigValidationError):
        load_settings(path)


@pytest.mark.parametrize("template", ["Vibrate:{value:d};", "Vibrate:{value!r};", "Vibrate:{value;"])
def test_template_format_specs_rejected(xdg: Path, template: str) -> None:
    _write(
        xdg / "cfg" / "vibehub" / "profiles" / "spec.yaml",
        f"""
id: formatted
name: Formatted
match:
  name_contains: ["Fmt"]
gatt:
  service_uuid: "fff0"
  write_char_uuid: "fff2"
channels:
  - index: 0
    range: {{min: 0, max: 10}}
    template: "{template}"
""",
    )

    with pytest.raises(ProfileValidationError):
        load_profiles()
