"""File-backed local device registry: certificates, last-known state, racks."""

from __future__ import annotations

import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any

from virtlocks.core.config import data_dir
from virtlocks.core.errors import RegistryError

LOGGER = logging.getLogger(__name__)

_THINGS_DIR = "things"
_RACKS_DIR = "racks"
_CA_FILE = "ca.pem"
_CERT_FILE = "cert.pem"
_KEY_FILE = "private.key"
_PUBLIC_KEY_FILE = "public.key"
_CONFIG_FILE = "config.json"
_LAST_STATE_KEY = "lastState"
_SAFE_NAME_RE = re.compile(r"^[A-Za-z0-9_:.-]+$")


def _safe_name(name: str) -> str:
    if not _SAFE_NAME_RE.match(name) or name in {".", ".."}:
        raise RegistryError(f"Invalid device or rack name '{name}'")
    return name


class LocalRegistry:
    """Directory layout::

        <root>/ca.pem
        <root>/things/<device-id>/{cert.pem,private.key,public.key,config.json}
        <root>/racks/<env>-<rack>/config.json
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = root or data_dir()

    @property
    def ca_path(self) -> str:
        return str(self.root / _CA_FILE)

    def ca_exists(self) -> bool:
        return (self.root / _CA_FILE).is_file()

    def save_ca(self, certificate_pem: str) -> None:
        self._write_text(self.root / _CA_FILE, certificate_pem)
        LOGGER.info("Saved CA certificate")

    def device_dir(self, device_id: str) -> Path:
        return self.root / _THINGS_DIR / _safe_name(device_id)

    def list_local_devices(self) -> list[str]:
        things_dir = self.root / _THINGS_DIR
        if not things_dir.is_dir():
            return []
        return sorted(p.name for p in things_dir.iterdir() if p.is_dir())

    def cert_path(self, device_id: str) -> str | None:
        path = self.device_dir(device_id) / _CERT_FILE
        return str(path) if path.is_file() else None

    def key_path(self, device_id: str) -> str | None:
        path = self.device_dir(device_id) / _KEY_FILE
        return str(path) if path.is_file() else None

    def has_certificates(self, device_id: str) -> bool:
        return self.cert_path(device_id) is not None and self.key_path(device_id) is not None

    def save_certificates(
        self,
        device_id: str,
        *,
        certificate_pem: str,
        private_key: str,
        public_key: str | None = None,
    ) -> None:
        directory = self.device_dir(device_id)
        self._write_text(directory / _CERT_FILE, certificate_pem)
        self._write_text(directory / _KEY_FILE, private_key)
        if public_key is not None:
            self._write_text(directory / _PUBLIC_KEY_FILE, public_key)
        LOGGER.info("Saved certificates for device: %s", device_id)

    def delete_device(self, device_id: str) -> None:
        directory = self.device_dir(device_id)
        if not directory.exists():
            return
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            raise RegistryError(f"Could not delete {directory}: {exc}") from exc
        LOGGER.info("Deleted local files for device: %s", device_id)

    def load_device_config(self, device_id: str) -> dict[str, Any] | None:
        return self._read_json(self.device_dir(device_id) / _CONFIG_FILE)

    def save_device_config(self, device_id: str, config: dict[str, Any]) -> None:
        self._write_text(self.device_dir(device_id) / _CONFIG_FILE, json.dumps(config, indent=2))

    def load_last_state(self, device_id: str) -> dict[str, Any] | None:
        config = self.load_device_config(device_id)
        if config is None:
            return None
        state = config.get(_LAST_STATE_KEY)
        return state if isinstance(state, dict) else None

    def save_last_state(self, device_id: str, state: dict[str, Any]) -> None:
        config = self.load_device_config(device_id) or {}
        config[_LAST_STATE_KEY] = state
        self.save_device_config(device_id, config)

    def rack_dir(self, env: str, rack_name: str) -> Path:
        return self.root / _RACKS_DIR / _safe_name(f"{env}-{rack_name}")

    def save_rack(self, env: str, rack_name: str, config: dict[str, Any]) -> None:
        self._write_text(self.rack_dir(env, rack_name) / _CONFIG_FILE, json.dumps(config, indent=2))
        LOGGER.info("Saved rack configuration: %s-%s", env, rack_name)

    def load_rack(self, env: str, rack_name: str) -> dict[str, Any] | None:
        return self._read_json(self.rack_dir(env, rack_name) / _CONFIG_FILE)

    def list_racks(self) -> list[str]:
        racks_dir = self.root / _RACKS_DIR
        if not racks_dir.is_dir():
            return []
        return sorted(p.name for p in racks_dir.iterdir() if p.is_dir())

    def delete_rack(self, env: str, rack_name: str) -> None:
        directory = self.rack_dir(env, rack_name)
        if not directory.exists():
            return
        try:
            shutil.rmtree(directory)
        except OSError as exc:
            raise RegistryError(f"Could not delete {directory}: {exc}") from exc
        LOGGER.info("Deleted rack configuration: %s-%s", env, rack_name)

    def _read_json(self, path: Path) -> dict[str, Any] | None:
        if not path.is_file():
            return None
        try:
            loaded = json.loads(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RegistryError(f"Could not read {path}: {exc}") from exc
        except json.JSONDecodeError as exc:
            raise RegistryError(f"Invalid JSON in {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise RegistryError(f"{path} must contain a JSON object")
        return loaded

    def _write_text(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise RegistryError(f"Could not write {path}: {exc}") from exc
