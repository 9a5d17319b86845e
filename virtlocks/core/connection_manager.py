"""Ownership of the MQTT connections and shadow message demultiplexing."""

from __future__ import annotations

import json
import logging
import os
import threading
from collections.abc import Callable, Iterable, Mapping
from types import MappingProxyType
from typing import Any

from virtlocks.core.errors import TransportError, VirtLocksError
from virtlocks.core.events import EventStream
from virtlocks.core.model import (
    Connection,
    ConnectionPlan,
    ConnectionState,
    SimulationMode,
    TlsSettings,
)
from virtlocks.core.naming import (
    device_id_from_topic,
    group_by_rack,
    is_lock,
    shadow_delta_topic,
    shadow_get_accepted_topic,
    shadow_get_rejected_topic,
    shadow_get_topic,
    shadow_update_topic,
)
from virtlocks.transports.base import TransportEvent, TransportEventKind, TransportFactory
from virtlocks.transports.mqtt import paho_transport_factory

LOGGER = logging.getLogger(__name__)

MQTT_PORT = 8883
QOS_AT_LEAST_ONCE = 1

PathLookup = Callable[[str], str | None]


class ConnectionManager:
    """Open one MQTT session per rack or per lock and route shadow traffic.

    Subscribers of the event streams are always called without the
    manager's lock held, so they may call back into the manager.
    """

    def __init__(
        self,
        *,
        transport_factory: TransportFactory | None = None,
        mode: SimulationMode = SimulationMode.MASTER_RACK,
        keepalive_s: int = 30,
        connect_timeout_s: float = 30.0,
        path_exists: Callable[[str], bool] = os.path.isfile,
    ) -> None:
        self._transport_factory = transport_factory or paho_transport_factory
        self._mode = mode
        self._keepalive_s = keepalive_s
        self._connect_timeout_s = connect_timeout_s
        self._path_exists = path_exists
        self._connections: dict[str, Connection] = {}
        self._lock = threading.RLock()

        self.connection_state_changed: EventStream[tuple[str, ConnectionState]] = EventStream(
            "connection_state_changed"
        )
        self.shadow_delta_received: EventStream[tuple[str, dict[str, Any]]] = EventStream(
            "shadow_delta_received"
        )
        self.shadow_document_received: EventStream[tuple[str, dict[str, Any]]] = EventStream(
            "shadow_document_received"
        )
        self.global_state_changed: EventStream[ConnectionState] = EventStream("global_state_changed")

    @property
    def mode(self) -> SimulationMode:
        return self._mode

    def set_mode(self, mode: SimulationMode) -> None:
        self._mode = mode
        LOGGER.info("Simulation mode set to: %s", mode.value)

    @property
    def has_active_connections(self) -> bool:
        with self._lock:
            return any(c.is_connected for c in self._connections.values())

    @property
    def connections(self) -> Mapping[str, Connection]:
        with self._lock:
            return MappingProxyType(dict(self._connections))

    @property
    def global_state(self) -> ConnectionState:
        with self._lock:
            return self._global_state_locked()

    def is_device_connected(self, device_id: str) -> bool:
        return self._connection_for(device_id) is not None

    def plan_connections(self, device_ids: Iterable[str]) -> list[ConnectionPlan]:
        device_ids = list(dict.fromkeys(device_ids))
        plans: list[ConnectionPlan] = []

        if self._mode is SimulationMode.MASTER_RACK:
            groups = group_by_rack(device_ids)
            LOGGER.info("Found %d racks with mode: %s", len(groups), self._mode.value)
            for group in groups.values():
                identity = group.master_id or (group.lock_ids[0] if group.lock_ids else None)
                if identity is None:
                    LOGGER.warning("Rack %s has no devices", group.full_name)
                    continue
                plans.append(
                    ConnectionPlan(
                        connection_id=group.full_name,
                        connecting_identity=identity,
                        managed_device_ids=frozenset(group.device_ids),
                    )
                )
            return plans

        for device_id in device_ids:
            if not is_lock(device_id):
                continue
            plans.append(
                ConnectionPlan(
                    connection_id=device_id,
                    connecting_identity=device_id,
                    managed_device_ids=frozenset({device_id}),
                )
            )
        return plans

    def connect_all(
        self,
        device_ids: Iterable[str],
        *,
        endpoint: str,
        cert_path_for: PathLookup,
        key_path_for: PathLookup,
        ca_path: str,
    ) -> bool:
        """Connect every planned connection; True if at least one is connected."""
        any_connected = False
        for plan in self.plan_connections(device_ids):
            identity = plan.connecting_identity
            try:
                cert_path = cert_path_for(identity) or ""
                key_path = key_path_for(identity) or ""
            except VirtLocksError as exc:
                LOGGER.warning("Cannot locate credentials for %s, skipping %s: %s", identity, plan.connection_id, exc)
                continue
            missing = [
                label
                for label, path in (("certificate", cert_path), ("private key", key_path), ("CA certificate", ca_path))
                if not path or not self._path_exists(path)
            ]
            if missing:
                LOGGER.warning(
                    "Missing %s for %s, skipping %s",
                    ", ".join(missing),
                    identity,
                    plan.connection_id,
                )
                continue

            settings = TlsSettings(
                endpoint=endpoint,
                client_id=identity,
                cert_path=cert_path,
                key_path=key_path,
                ca_path=ca_path,
                port=MQTT_PORT,
                keepalive_s=self._keepalive_s,
                connect_timeout_s=self._connect_timeout_s,
            )
            if self._connect_single(plan, settings):
                any_connected = True

        self.global_state_changed.emit(self.global_state)
        return any_connected

    def _connect_single(self, plan: ConnectionPlan, settings: TlsSettings) -> bool:
        with self._lock:
            existing = self._connections.get(plan.connection_id)
            if existing is not None and existing.is_connected:
                LOGGER.info("Connection %s already exists", plan.connection_id)
                return True
            connection = Connection(
                connection_id=plan.connection_id,
                connecting_identity=plan.connecting_identity,
                managed_device_ids=plan.managed_device_ids,
            )
            self._connections[plan.connection_id] = connection

        if existing is not None:
            self._close_transport(existing)

        self._transition(connection, ConnectionState.CONNECTING)
        LOGGER.info(
            "Connecting to %s as %s (conn: %s, managing %d devices)",
            settings.endpoint,
            settings.client_id,
            plan.connection_id,
            len(plan.managed_device_ids),
        )

        transport = self._transport_factory(
            settings,
            lambda event: self._handle_transport_event(connection, event),
        )
        connection.transport = transport
        try:
            transport.connect()
            for device_id in sorted(plan.managed_device_ids):
                transport.subscribe(shadow_delta_topic(device_id), qos=QOS_AT_LEAST_ONCE)
        except TransportError as exc:
            LOGGER.error("Failed to connect %s: %s", plan.connection_id, exc)
            self._close_transport(connection)
            self._transition(connection, ConnectionState.DISCONNECTED)
            return False

        self._transition(connection, ConnectionState.CONNECTED)
        LOGGER.info("Connected %s, managing %d devices", plan.connection_id, len(plan.managed_device_ids))
        return True

    def publish_shadow_update(self, device_id: str, reported: Mapping[str, Any]) -> bool:
        connection = self._connection_for(device_id)
        if connection is None or connection.transport is None:
            LOGGER.warning("No active connection for device %s", device_id)
            return False

        payload = json.dumps({"state": {"reported": dict(reported), "desired": None}})
        try:
            connection.transport.publish(
                shadow_update_topic(device_id),
                payload.encode("utf-8"),
                qos=QOS_AT_LEAST_ONCE,
            )
        except TransportError as exc:
            LOGGER.warning("[%s] Shadow publish for %s failed: %s", connection.connection_id, device_id, exc)
            return False
        LOGGER.debug("[%s] Published shadow for %s", connection.connection_id, device_id)
        return True

    def get_shadow(self, device_id: str) -> bool:
        connection = self._connection_for(device_id)
        if connection is None or connection.transport is None:
            LOGGER.warning("No active connection for device %s", device_id)
            return False

        transport = connection.transport
        try:
            transport.subscribe(shadow_get_accepted_topic(device_id), qos=QOS_AT_LEAST_ONCE)
            transport.subscribe(shadow_get_rejected_topic(device_id), qos=QOS_AT_LEAST_ONCE)
            transport.publish(shadow_get_topic(device_id), b"{}", qos=QOS_AT_LEAST_ONCE)
        except TransportError as exc:
            LOGGER.warning("[%s] Shadow request for %s failed: %s", connection.connection_id, device_id, exc)
            return False
        LOGGER.debug("[%s] Requested shadow for %s", connection.connection_id, device_id)
        return True

    def disconnect_all(self) -> None:
        with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()

        for connection in connections:
            self._transition(connection, ConnectionState.DISCONNECTING)
            self._close_transport(connection)
            self._transition(connection, ConnectionState.DISCONNECTED)
            LOGGER.info("Disconnected %s", connection.connection_id)

        self.global_state_changed.emit(self.global_state)
        LOGGER.info("Disconnected all connections")

    def close(self) -> None:
        self.disconnect_all()
        self.connection_state_changed.close()
        self.shadow_delta_received.close()
        self.shadow_document_received.close()
        self.global_state_changed.close()

    def _connection_for(self, device_id: str) -> Connection | None:
        with self._lock:
            for connection in self._connections.values():
                if device_id in connection.managed_device_ids and connection.is_connected:
                    return connection
        return None

    def _is_tracked(self, connection: Connection) -> bool:
        with self._lock:
            return self._connections.get(connection.connection_id) is connection

    def _close_transport(self, connection: Connection) -> None:
        transport = connection.transport
        connection.transport = None
        if transport is None:
            return
        try:
            transport.disconnect()
        except Exception as exc:
            LOGGER.debug("Error disconnecting %s: %s", connection.connection_id, exc)

    def _transition(self, connection: Connection, state: ConnectionState) -> None:
        with self._lock:
            connection.state = state
            global_state = self._global_state_locked()
        self.connection_state_changed.emit((connection.connection_id, state))
        self.global_state_changed.emit(global_state)

    def _global_state_locked(self) -> ConnectionState:
        states = [c.state for c in self._connections.values()]
        if ConnectionState.CONNECTED in states:
            return ConnectionState.CONNECTED
        if ConnectionState.CONNECTING in states:
            return ConnectionState.CONNECTING
        return ConnectionState.DISCONNECTED

    def _handle_transport_event(self, connection: Connection, event: TransportEvent) -> None:
        if not self._is_tracked(connection):
            return

        if event.kind is TransportEventKind.MESSAGE:
            self._dispatch_message(connection, event.topic or "", event.payload)
        elif event.kind is TransportEventKind.CONNECTION_LOST:
            LOGGER.info("[%s] Connection lost (%s), auto-reconnecting", connection.connection_id, event.reason)
            self._transition(connection, ConnectionState.CONNECTING)
        elif event.kind is TransportEventKind.RECONNECTED:
            LOGGER.info("[%s] Auto-reconnected", connection.connection_id)
            self._transition(connection, ConnectionState.CONNECTED)
            self._resubscribe(connection)
        elif event.kind is TransportEventKind.DISCONNECTED:
            LOGGER.info("[%s] Disconnected", connection.connection_id)
            self._transition(connection, ConnectionState.DISCONNECTED)

    def _resubscribe(self, connection: Connection) -> None:
        # Clean sessions drop subscriptions on reconnect.
        transport = connection.transport
        if transport is None:
            return
        for device_id in sorted(connection.managed_device_ids):
            try:
                transport.subscribe(shadow_delta_topic(device_id), qos=QOS_AT_LEAST_ONCE)
            except TransportError as exc:
                LOGGER.warning("[%s] Re-subscribe for %s failed: %s", connection.connection_id, device_id, exc)

    def _dispatch_message(self, connection: Connection, topic: str, payload: bytes) -> None:
        LOGGER.debug("[%s] Received on %s", connection.connection_id, topic)
        device_id = device_id_from_topic(topic)
        if device_id is None:
            LOGGER.debug("[%s] Ignoring message on %s", connection.connection_id, topic)
            return

        if topic.endswith("/shadow/get/rejected"):
            LOGGER.warning("Shadow get rejected for %s: %s", device_id, payload.decode("utf-8", "replace"))
            return

        is_delta = topic.endswith("/shadow/update/delta")
        if not is_delta and not topic.endswith("/shadow/get/accepted"):
            LOGGER.debug("[%s] Ignoring message on %s", connection.connection_id, topic)
            return

        try:
            document = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            LOGGER.error("Failed to parse shadow message on %s: %s", topic, exc)
            return
        if not isinstance(document, dict):
            LOGGER.error("Shadow message on %s is not a JSON object", topic)
            return

        if is_delta:
            self.shadow_delta_received.emit((device_id, document))
        else:
            self.shadow_document_received.emit((device_id, document))
