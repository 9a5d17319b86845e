"""Stable public API for building tooling on top of virtlocks.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from virtlocks.cloud.client import ControlPlaneClient
from virtlocks.cloud.provisioning import Provisioner
from virtlocks.core.config import (
    CloudProfile,
    Settings,
    load_active_profile,
    load_settings,
    update_profile_endpoint,
)
from virtlocks.core.connection_manager import ConnectionManager
from virtlocks.core.errors import (
    ConfigError,
    ConfigLoadError,
    ConfigurationError,
    ConfigValidationError,
    ControlPlaneError,
    ControlPlaneRequestError,
    RegistryError,
    ShadowDocumentError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
    VirtLocksError,
)
from virtlocks.core.lock_state import LockState, ShadowDelta
from virtlocks.core.model import (
    BatchResult,
    ConnectionState,
    LockFilter,
    LocksSnapshot,
    RackGroup,
    RemoteDevice,
    SimulationMode,
)
from virtlocks.core.naming import group_by_rack
from virtlocks.core.service import LockService
from virtlocks.core.storage import LocalRegistry
from virtlocks.transports.base import TransportFactory

__all__ = [
    "VirtLocksError",
    "ConfigError",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigurationError",
    "ControlPlaneError",
    "ControlPlaneRequestError",
    "RegistryError",
    "ShadowDocumentError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "BatchResult",
    "CloudProfile",
    "ConnectionState",
    "LockFilter",
    "LockState",
    "LocksSnapshot",
    "RackGroup",
    "RemoteDevice",
    "Settings",
    "ShadowDelta",
    "SimulationMode",
    "Client",
]


class Client:
    """Public client for simulating and provisioning virtual locks.

    A `Client` wires the local registry, the MQTT connection manager, the
    lock orchestration service and, on demand, the control-plane client
    behind one object. Collaborators can be injected for tests or for
    embedding in other tools.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        profile: CloudProfile | None = None,
        registry: LocalRegistry | None = None,
        transport_factory: TransportFactory | None = None,
        iot_client: Any = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.profile = profile if profile is not None else load_active_profile(self.settings)
        self.registry = registry or LocalRegistry()
        self._iot_client = iot_client
        self._control_plane: ControlPlaneClient | None = None
        self._manager = ConnectionManager(
            transport_factory=transport_factory,
            mode=self.settings.simulation_mode,
            keepalive_s=self.settings.keepalive_s,
            connect_timeout_s=self.settings.connect_timeout_s,
        )
        self._service = LockService(
            manager=self._manager,
            registry=self.registry,
            profile=self.profile,
            timer_interval_s=self.settings.timer_interval_s,
            heartbeat_interval_s=self.settings.heartbeat_interval_s,
        )

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def service(self) -> LockService:
        return self._service

    @property
    def manager(self) -> ConnectionManager:
        return self._manager

    # Local registry

    def list_local_devices(self) -> list[str]:
        return self.registry.list_local_devices()

    def list_racks(self) -> list[RackGroup]:
        return list(group_by_rack(self.registry.list_local_devices()).values())

    # Simulation

    def set_mode(self, mode: SimulationMode) -> None:
        self._service.set_mode(mode)

    def load_locks(self) -> LocksSnapshot:
        return self._service.load_locks()

    def connect(self) -> bool:
        return self._service.connect()

    def disconnect(self) -> None:
        self._service.disconnect()

    def start(self) -> None:
        self._service.start()

    def snapshot(self) -> LocksSnapshot:
        return self._service.snapshot()

    def subscribe(self, callback: Callable[[LocksSnapshot], Any]) -> Callable[[], None]:
        return self._service.state_changed.subscribe(callback)

    def toggle_empty(self, device_id: str) -> LockState | None:
        return self._service.toggle_empty(device_id)

    def toggle_clamps(self, device_id: str) -> LockState | None:
        return self._service.toggle_clamps(device_id)

    def set_locked(self, device_id: str, locked: bool) -> LockState | None:
        return self._service.set_locked(device_id, locked)

    # Control plane

    def control_plane(self) -> ControlPlaneClient:
        profile = self._require_profile()
        if self._control_plane is None:
            if self._iot_client is not None:
                self._control_plane = ControlPlaneClient(self._iot_client)
            else:
                self._control_plane = ControlPlaneClient.from_profile(profile)
        return self._control_plane

    def _require_profile(self) -> CloudProfile:
        if self.profile is None:
            raise ConfigurationError("No active cloud profile configured")
        return self.profile

    def provisioner(self) -> Provisioner:
        policy_override = self.profile.policy_name if self.profile is not None else None
        return Provisioner(self.control_plane(), self.registry, policy_override=policy_override)

    def discover_endpoint(self) -> str:
        """Look up the data endpoint and store it in the active profile."""
        profile = self._require_profile()
        endpoint = self.control_plane().describe_endpoint()
        self.profile = update_profile_endpoint(profile, endpoint)
        self._service.profile = self.profile
        return endpoint

    def install_root_ca(self) -> None:
        self.provisioner().install_root_ca()

    def list_remote_devices(self) -> list[RemoteDevice]:
        return self.provisioner().list_remote_devices()

    def create_rack(
        self,
        env: str,
        rack_name: str,
        bike_count: int,
        scooter_count: int = 0,
        lobby: str | None = None,
    ) -> BatchResult:
        return self.provisioner().create_rack(env, rack_name, bike_count, scooter_count, lobby)

    def delete_rack(self, env: str, rack_name: str) -> BatchResult:
        return self.provisioner().delete_rack(env, rack_name)

    def close(self) -> None:
        self._service.close()
        self._manager.close()
        if self._control_plane is not None:
            self._control_plane.close()
            self._control_plane = None
