"""Settings and cloud profile loading for YAML-based virtlocks configuration."""

from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import asdict, dataclass, replace
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from jsonschema import ValidationError, validators

from virtlocks.core.errors import ConfigError, ConfigLoadError, ConfigValidationError
from virtlocks.core.model import SimulationMode

_PROFILE_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_SETTINGS_FILE = "settings.yaml"
_PROFILES_DIR = "profiles"
DEFAULT_REGION = "eu-west-1"
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
class Settings:
    active_profile: str | None = None
    simulation_mode: SimulationMode = SimulationMode.MASTER_RACK
    timer_interval_s: float = 1.0
    heartbeat_interval_s: float = 60.0
    connect_timeout_s: float = 30.0
    keepalive_s: int = 30
    log_level: str = "INFO"


@dataclass(frozen=True)
class CloudProfile:
    name: str
    access_key_id: str
    secret_access_key: str
    region: str = DEFAULT_REGION
    session_token: str | None = None
    endpoint: str | None = None
    policy_name: str | None = None

    @property
    def has_endpoint(self) -> bool:
        return bool(self.endpoint)


def config_dir() -> Path:
    xdg_config = Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))
    return xdg_config / "virtlocks"


def data_dir() -> Path:
    xdg_data = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local/share"))
    return xdg_data / "virtlocks"


@lru_cache(maxsize=None)
def _load_schema_validator(schema_name: str) -> Any:
    schema_text = resources.files("virtlocks.schemas").joinpath(schema_name).read_text(encoding="utf-8")
    schema = json.loads(schema_text)
    validator_cls = validators.validator_for(schema)
    validator_cls.check_schema(schema)
    return validator_cls(schema)


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not read config file {path}: {exc}") from exc

    try:
        loaded = yaml.load(content, Loader=UniqueKeyLoader)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Invalid YAML in {path}: {exc}") from exc

    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at root")
    return loaded


def _write_yaml(path: Path, doc: dict[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(yaml.safe_dump(doc, sort_keys=True), encoding="utf-8")
    except OSError as exc:
        raise ConfigLoadError(f"Could not write config file {path}: {exc}") from exc


def _validate(doc: dict[str, Any], schema_name: str, source: Path) -> None:
    validator = _load_schema_validator(schema_name)
    try:
        validator.validate(doc)
    except ValidationError as exc:
        path = ".".join(str(p) for p in exc.path)
        where = f" ({path})" if path else ""
        raise ConfigValidationError(f"Schema validation failed for {source}{where}: {exc.message}") from exc


def _profile_path(name: str) -> Path:
    if not _PROFILE_NAME_RE.match(name):
        raise ConfigValidationError(f"Invalid profile name '{name}'")
    return config_dir() / _PROFILES_DIR / f"{name}.yaml"


def load_settings() -> Settings:
    path = config_dir() / _SETTINGS_FILE
    if not path.exists():
        return Settings()

    doc = _read_yaml(path)
    _validate(doc, "settings.schema.json", path)
    defaults = Settings()
    return Settings(
        active_profile=doc.get("active_profile"),
        simulation_mode=SimulationMode(doc.get("simulation_mode", defaults.simulation_mode.value)),
        timer_interval_s=float(doc.get("timer_interval_s", defaults.timer_interval_s)),
        heartbeat_interval_s=float(doc.get("heartbeat_interval_s", defaults.heartbeat_interval_s)),
        connect_timeout_s=float(doc.get("connect_timeout_s", defaults.connect_timeout_s)),
        keepalive_s=int(doc.get("keepalive_s", defaults.keepalive_s)),
        log_level=doc.get("log_level", defaults.log_level),
    )


def save_settings(settings: Settings) -> None:
    doc = asdict(settings)
    doc["simulation_mode"] = settings.simulation_mode.value
    if doc["active_profile"] is None:
        del doc["active_profile"]
    _write_yaml(config_dir() / _SETTINGS_FILE, doc)


def list_profiles() -> list[str]:
    directory = config_dir() / _PROFILES_DIR
    if not directory.is_dir():
        return []
    return sorted(p.stem for p in directory.iterdir() if p.suffix in {".yml", ".yaml"})


def load_profile(name: str) -> CloudProfile:
    path = _profile_path(name)
    if not path.exists():
        raise ConfigLoadError(f"Profile not found: {name}")

    doc = _read_yaml(path)
    _validate(doc, "profile.schema.json", path)
    return CloudProfile(
        name=name,
        access_key_id=doc["access_key_id"],
        secret_access_key=doc["secret_access_key"],
        region=doc.get("region", DEFAULT_REGION),
        session_token=doc.get("session_token"),
        endpoint=doc.get("endpoint"),
        policy_name=doc.get("policy_name"),
    )


def save_profile(profile: CloudProfile) -> None:
    doc = {key: value for key, value in asdict(profile).items() if key != "name" and value is not None}
    _write_yaml(_profile_path(profile.name), doc)
    LOGGER.info("Saved cloud profile: %s", profile.name)


def set_active_profile(name: str) -> Settings:
    load_profile(name)
    settings = replace(load_settings(), active_profile=name)
    save_settings(settings)
    LOGGER.info("Set active cloud profile: %s", name)
    return settings


def load_active_profile(settings: Settings | None = None) -> CloudProfile | None:
    settings = settings or load_settings()
    if settings.active_profile is None:
        return None
    try:
        return load_profile(settings.active_profile)
    except ConfigLoadError:
        LOGGER.warning("Active profile '%s' is missing", settings.active_profile)
        return None


def update_profile_endpoint(profile: CloudProfile, endpoint: str) -> CloudProfile:
    if not endpoint:
        raise ConfigError("Endpoint must not be empty")
    updated = replace(profile, endpoint=endpoint)
    save_profile(updated)
    return updated
