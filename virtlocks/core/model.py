"""Core data models used across naming, connection manager, service, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Mapping

from virtlocks.core.lock_state import LockState

if TYPE_CHECKING:
    from virtlocks.transports.base import MqttTransport


class SimulationMode(str, Enum):
    """Connection topology policy."""

    MASTER_RACK = "master_rack"
    INDIVIDUAL_LOCK = "individual_lock"


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class LockFilter(str, Enum):
    ALL = "all"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class RackGroup:
    env: str
    rack_name: str
    master_id: str | None = None
    lock_ids: tuple[str, ...] = ()

    @property
    def has_master(self) -> bool:
        return self.master_id is not None

    @property
    def full_name(self) -> str:
        return f"{self.env}-{self.rack_name}"

    @property
    def device_ids(self) -> tuple[str, ...]:
        if self.master_id is None:
            return self.lock_ids
        return (self.master_id, *self.lock_ids)


@dataclass(frozen=True)
class TlsSettings:
    """Everything a transport needs to open one mutual-TLS MQTT session."""

    endpoint: str
    client_id: str
    cert_path: str
    key_path: str
    ca_path: str
    port: int = 8883
    keepalive_s: int = 30
    connect_timeout_s: float = 30.0


@dataclass(frozen=True)
class ConnectionPlan:
    connection_id: str
    connecting_identity: str
    managed_device_ids: frozenset[str]


@dataclass
class Connection:
    """A single MQTT session and the devices whose shadows it serves."""

    connection_id: str
    connecting_identity: str
    managed_device_ids: frozenset[str]
    transport: MqttTransport | None = None
    state: ConnectionState = ConnectionState.DISCONNECTED

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED


@dataclass(frozen=True)
class BatchResult:
    """Outcome of a multi-device control-plane batch."""

    succeeded_ids: tuple[str, ...]
    errors: tuple[str, ...]

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass(frozen=True)
class LocksSnapshot:
    """Read-only view of the orchestration state."""

    locks: Mapping[str, LockState] = field(default_factory=lambda: MappingProxyType({}))
    filter: LockFilter = LockFilter.ALL
    selected: frozenset[str] = frozenset()
    mode: SimulationMode = SimulationMode.MASTER_RACK
    rack_groups: Mapping[str, RackGroup] = field(default_factory=lambda: MappingProxyType({}))
    is_connected: bool = False
    is_connecting: bool = False
    error: str | None = None

    @property
    def filtered_locks(self) -> list[LockState]:
        locks = list(self.locks.values())
        if self.filter is LockFilter.CONNECTED:
            locks = [lock for lock in locks if lock.connected]
        elif self.filter is LockFilter.DISCONNECTED:
            locks = [lock for lock in locks if not lock.connected]
        return sorted(locks, key=lambda lock: lock.device_id)

    @property
    def connected_count(self) -> int:
        return sum(1 for lock in self.locks.values() if lock.connected)

    @property
    def disconnected_count(self) -> int:
        return sum(1 for lock in self.locks.values() if not lock.connected)

    @property
    def selected_locks(self) -> list[LockState]:
        return [self.locks[device_id] for device_id in sorted(self.selected) if device_id in self.locks]


@dataclass(frozen=True)
class CertificateBundle:
    """Key pair and certificate issued by the control plane."""

    certificate_arn: str
    certificate_id: str
    certificate_pem: str
    private_key: str
    public_key: str | None = None


@dataclass(frozen=True)
class CertificateDescription:
    certificate_arn: str
    certificate_id: str
    status: str
    certificate_pem: str | None = None
    creation_date: datetime | None = None


@dataclass(frozen=True)
class RemoteDevice:
    """A device (thing) as listed by the control plane."""

    name: str
    arn: str | None = None
    type_name: str | None = None
    attributes: Mapping[str, str] = field(default_factory=dict)
