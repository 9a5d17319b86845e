from __future__ import annotations

from pathlib import Path

import pytest

from virtlocks.core.config import (
    CloudProfile,
    Settings,
    list_profiles,
    load_active_profile,
    load_profile,
    load_settings,
    save_profile,
    save_settings,
    set_active_profile,
    update_profile_endpoint,
)
from virtlocks.core.errors import ConfigLoadError, ConfigValidationError
from virtlocks.core.model import SimulationMode


@pytest.fixture(autouse=True)
def _xdg(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "cfg"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))


def _write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_missing_settings_file_gives_defaults() -> None:
    settings = load_settings()
    assert settings == Settings()
    assert settings.simulation_mode is SimulationMode.MASTER_RACK
    assert settings.heartbeat_interval_s == 60.0


def test_settings_file_is_loaded(tmp_path: Path) -> None:
    _write(
        tmp_path / "cfg" / "virtlocks" / "settings.yaml",
        """
active_profile: staging
simulation_mode: individual_lock
timer_interval_s: 0.5
keepalive_s: 45
log_level: DEBUG
""",
    )

    settings = load_settings()

    assert settings.active_profile == "staging"
    assert settings.simulation_mode is SimulationMode.INDIVIDUAL_LOCK
    assert settings.timer_interval_s == 0.5
    assert settings.keepalive_s == 45
    assert settings.connect_timeout_s == 30.0
    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize(
    "content",
    [
        "simulation_mode: round_robin\n",
        "keepalive_s: 2\n",
        "unknown_key: 1\n",
        "log_level: INFO\nlog_level: DEBUG\n",
        "- just\n- a list\n",
        "simulation_mode: [unclosed\n",
    ],
)
def test_invalid_settings_rejected(tmp_path: Path, content: str) -> None:
    _write(tmp_path / "cfg" / "virtlocks" / "settings.yaml", content)

    with pytest.raises(ConfigValidationError):
        load_settings()


def test_settings_round_trip() -> None:
    settings = Settings(active_profile="default", simulation_mode=SimulationMode.INDIVIDUAL_LOCK, keepalive_s=60)
    save_settings(settings)
    assert load_settings() == settings


def test_profile_round_trip_and_listing() -> None:
    profile = CloudProfile(
        name="default",
        access_key_id="AKIDEXAMPLE",
        secret_access_key="secret",
        region="us-east-1",
        session_token="token",
    )
    save_profile(profile)
    save_profile(CloudProfile(name="another", access_key_id="a", secret_access_key="s"))

    assert list_profiles() == ["another", "default"]
    assert load_profile("default") == profile
    assert load_profile("another").region == "eu-west-1"
    assert not load_profile("another").has_endpoint


def test_profile_missing_credentials_rejected(tmp_path: Path) -> None:
    _write(tmp_path / "cfg" / "virtlocks" / "profiles" / "broken.yaml", "region: eu-west-1\n")

    with pytest.raises(ConfigValidationError, match="required property"):
        load_profile("broken")


def test_profile_with_bad_region_rejected(tmp_path: Path) -> None:
    _write(
        tmp_path / "cfg" / "virtlocks" / "profiles" / "bad.yaml",
        "access_key_id: a\nsecret_access_key: s\nregion: Europe\n",
    )

    with pytest.raises(ConfigValidationError):
        load_profile("bad")


def test_unknown_or_unsafe_profile_names() -> None:
    with pytest.raises(ConfigLoadError):
        load_profile("nope")
    with pytest.raises(ConfigValidationError):
        load_profile("../escape")


def test_set_active_profile_requires_existing_profile() -> None:
    with pytest.raises(ConfigLoadError):
        set_active_profile("ghost")

    save_profile(CloudProfile(name="default", access_key_id="a", secret_access_key="s"))
    settings = set_active_profile("default")

    assert settings.active_profile == "default"
    assert load_settings().active_profile == "default"
    assert load_active_profile().name == "default"


def test_active_profile_that_disappeared_is_none() -> None:
    save_settings(Settings(active_profile="gone"))
    assert load_active_profile() is None


def test_update_profile_endpoint_persists() -> None:
    profile = CloudProfile(name="default", access_key_id="a", secret_access_key="s")
    save_profile(profile)

    updated = update_profile_endpoint(profile, "abc-ats.iot.eu-west-1.amazonaws.com")

    assert updated.endpoint == "abc-ats.iot.eu-west-1.amazonaws.com"
    assert load_profile("default").endpoint == updated.endpoint
