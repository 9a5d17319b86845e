"""Service layer used by the CLI and the public API: lock orchestration."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from types import MappingProxyType
from typing import Any

from virtlocks.core.config import CloudProfile
from virtlocks.core.connection_manager import ConnectionManager
from virtlocks.core.errors import ConfigurationError, RegistryError, ShadowDocumentError
from virtlocks.core.events import EventStream
from virtlocks.core.lock_state import LockState, ShadowDelta
from virtlocks.core.model import ConnectionState, LockFilter, LocksSnapshot, RackGroup, SimulationMode
from virtlocks.core.naming import group_by_rack, is_lock
from virtlocks.core.storage import LocalRegistry

LOGGER = logging.getLogger(__name__)

TIMER_INTERVAL_S = 1.0
HEARTBEAT_INTERVAL_S = 60.0


class LockService:
    """Owns the per-device lock states and keeps them in sync with the shadows.

    All mutations of the lock map happen under one re-entrant lock. The
    service may call into the connection manager while holding it; the
    manager never holds its own lock while notifying the service.
    """

    def __init__(
        self,
        *,
        manager: ConnectionManager,
        registry: LocalRegistry,
        profile: CloudProfile | None = None,
        timer_interval_s: float = TIMER_INTERVAL_S,
        heartbeat_interval_s: float = HEARTBEAT_INTERVAL_S,
    ) -> None:
        self.manager = manager
        self.registry = registry
        self.profile = profile
        self.timer_interval_s = timer_interval_s
        self.heartbeat_interval_s = heartbeat_interval_s

        self._lock = threading.RLock()
        self._locks: dict[str, LockState] = {}
        self._rack_groups: dict[str, RackGroup] = {}
        self._filter = LockFilter.ALL
        self._selected: set[str] = set()
        self._is_connected = False
        self._is_connecting = False
        self._error: str | None = None

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

        self.state_changed: EventStream[LocksSnapshot] = EventStream("state_changed")
        self._unsubscribers = [
            manager.global_state_changed.subscribe(self._on_global_state),
            manager.shadow_delta_received.subscribe(self._on_shadow_delta),
            manager.shadow_document_received.subscribe(self._on_shadow_document),
        ]

    @property
    def mode(self) -> SimulationMode:
        return self.manager.mode

    def snapshot(self) -> LocksSnapshot:
        with self._lock:
            return LocksSnapshot(
                locks=MappingProxyType(dict(self._locks)),
                filter=self._filter,
                selected=frozenset(self._selected),
                mode=self.manager.mode,
                rack_groups=MappingProxyType(dict(self._rack_groups)),
                is_connected=self._is_connected,
                is_connecting=self._is_connecting,
                error=self._error,
            )

    def get_lock(self, device_id: str) -> LockState | None:
        with self._lock:
            return self._locks.get(device_id)

    # Lifecycle

    def start(self) -> None:
        """Start the countdown and heartbeat loops on daemon threads."""
        with self._lock:
            if self._threads:
                return
            self._stop.clear()
            self._threads = [
                threading.Thread(
                    target=self._run_periodic,
                    args=("timer", self.timer_interval_s, self.tick),
                    name="virtlocks-timer",
                    daemon=True,
                ),
                threading.Thread(
                    target=self._run_periodic,
                    args=("heartbeat", self.heartbeat_interval_s, self.heartbeat),
                    name="virtlocks-heartbeat",
                    daemon=True,
                ),
            ]
            threads = list(self._threads)
        for thread in threads:
            thread.start()

    def close(self) -> None:
        self._stop.set()
        with self._lock:
            threads = list(self._threads)
            self._threads = []
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout=5)
        if self.manager.has_active_connections:
            self.disconnect()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self.state_changed.close()

    def _run_periodic(self, name: str, interval_s: float, action: Callable[[], Any]) -> None:
        while not self._stop.wait(interval_s):
            try:
                action()
            except Exception:
                LOGGER.exception("%s loop iteration failed", name)

    # Loading and connectivity

    def set_mode(self, mode: SimulationMode) -> None:
        self.manager.set_mode(mode)
        self._notify()

    def load_locks(self) -> LocksSnapshot:
        """Rebuild the lock map and rack index from the local registry."""
        try:
            device_ids = self.registry.list_local_devices()
        except RegistryError as exc:
            LOGGER.error("Failed to load locks: %s", exc)
            with self._lock:
                self._error = str(exc)
            self._notify()
            return self.snapshot()

        locks: dict[str, LockState] = {}
        for device_id in device_ids:
            if not is_lock(device_id):
                continue
            locks[device_id] = self._restore_lock(device_id)
        rack_groups = group_by_rack(device_ids)

        with self._lock:
            self._locks = locks
            self._rack_groups = rack_groups
            self._selected &= set(locks)
            self._error = None
            self._reconcile_connected_locked()
        LOGGER.info("Loaded %d virtual locks in %d racks", len(locks), len(rack_groups))
        self._notify()
        return self.snapshot()

    def _restore_lock(self, device_id: str) -> LockState:
        try:
            saved = self.registry.load_last_state(device_id)
        except RegistryError as exc:
            LOGGER.warning("Ignoring saved state for %s: %s", device_id, exc)
            return LockState(device_id=device_id)
        if saved is None:
            return LockState(device_id=device_id)
        try:
            return LockState.from_shadow_state(device_id, saved, connected=False)
        except ShadowDocumentError as exc:
            LOGGER.warning("Ignoring saved state for %s: %s", device_id, exc)
            return LockState(device_id=device_id)

    def connect(self) -> bool:
        """Connect every local device using the current simulation mode.

        Raises ``ConfigurationError`` before any network activity when the
        profile, endpoint, CA certificate or lock list is missing. Returns
        False when no connection could be established.
        """
        with self._lock:
            if self._is_connected and self.manager.has_active_connections:
                return True
            try:
                endpoint = self._check_preconditions()
            except ConfigurationError as exc:
                self._error = str(exc)
                raise
            self._is_connecting = True
            self._error = None
        self._notify()

        try:
            device_ids = self.registry.list_local_devices()
            self.manager.connect_all(
                device_ids,
                endpoint=endpoint,
                cert_path_for=self.registry.cert_path,
                key_path_for=self.registry.key_path,
                ca_path=self.registry.ca_path,
            )
        except RegistryError as exc:
            LOGGER.error("Failed to read local devices: %s", exc)
            with self._lock:
                self._is_connecting = False
                self._error = str(exc)
            self._notify()
            return False

        with self._lock:
            self._is_connecting = False
            self._is_connected = self.manager.has_active_connections
            self._reconcile_connected_locked()
            if not self._is_connected:
                self._error = "Failed to establish any connections to the IoT endpoint"
                LOGGER.error(self._error)
            connected_ids = sorted(d for d, lock in self._locks.items() if lock.connected)
        self._notify()
        if not connected_ids and not self.manager.has_active_connections:
            return False

        for device_id in connected_ids:
            self.manager.get_shadow(device_id)
        LOGGER.info(
            "Connected with %d connection(s), %d locks connected",
            len(self.manager.connections),
            len(connected_ids),
        )
        return True

    def _check_preconditions(self) -> str:
        if self.profile is None:
            raise ConfigurationError("No active cloud profile configured")
        if not self.profile.endpoint:
            raise ConfigurationError(
                "IoT endpoint not configured. Run 'virtlocks discover-endpoint' first."
            )
        if not self._locks:
            raise ConfigurationError("No locks available to connect")
        if not self.registry.ca_exists():
            raise ConfigurationError(f"CA certificate not found at {self.registry.ca_path}")
        return self.profile.endpoint

    def disconnect(self) -> None:
        self.manager.disconnect_all()
        with self._lock:
            self._locks = {device_id: lock.with_connected(False) for device_id, lock in self._locks.items()}
            self._is_connected = False
            self._is_connecting = False
        LOGGER.info("Disconnected from the IoT endpoint")
        self._notify()

    # Periodic work

    def tick(self) -> list[str]:
        """Advance every active countdown; returns the ids that auto-locked."""
        auto_locked: list[str] = []
        with self._lock:
            if not any(lock.has_active_timer for lock in self._locks.values()):
                return auto_locked
            for device_id, lock in list(self._locks.items()):
                updated, expired = lock.tick_timer()
                if updated is lock:
                    continue
                self._locks[device_id] = updated
                if expired:
                    LOGGER.info("Lock %s auto-locked (timer expired)", device_id)
                    auto_locked.append(device_id)
                    self._publish_reported(updated)
                    self._persist(updated)
        self._notify()
        return auto_locked

    def heartbeat(self) -> int:
        """Re-publish the reported state of every connected lock."""
        published = 0
        with self._lock:
            for device_id, lock in sorted(self._locks.items()):
                if not lock.connected:
                    continue
                LOGGER.debug("Heartbeat: publishing state for %s", device_id)
                if self._publish_reported(lock):
                    published += 1
        return published

    # Shadow traffic

    def handle_delta(self, device_id: str, document: dict[str, Any]) -> LockState | None:
        with self._lock:
            lock = self._locks.get(device_id)
            if lock is None:
                LOGGER.info("Dropping delta for unknown lock: %s", device_id)
                return None
            try:
                delta = ShadowDelta.from_document(document)
            except ShadowDocumentError as exc:
                LOGGER.error("Dropping malformed delta for %s: %s", device_id, exc)
                return None

            LOGGER.info("Received shadow delta for %s: %s", device_id, delta)
            updated = lock.apply_delta(delta)
            self._locks[device_id] = updated
            self._publish_reported(updated)
            self._persist(updated)
        self._notify()
        return updated

    def _on_shadow_delta(self, event: tuple[str, dict[str, Any]]) -> None:
        device_id, document = event
        self.handle_delta(device_id, document)

    def _on_shadow_document(self, event: tuple[str, dict[str, Any]]) -> None:
        device_id, document = event
        state = document.get("state")
        pending = state.get("delta") if isinstance(state, dict) else None
        if not isinstance(pending, dict) or not pending:
            LOGGER.debug("Shadow for %s has no pending delta", device_id)
            return
        self.handle_delta(device_id, pending)

    def _on_global_state(self, state: ConnectionState) -> None:
        with self._lock:
            self._is_connected = state is ConnectionState.CONNECTED
            self._is_connecting = state is ConnectionState.CONNECTING
            self._reconcile_connected_locked()
        self._notify()

    # User mutations

    def toggle_empty(self, device_id: str) -> LockState | None:
        return self._mutate(device_id, LockState.toggle_empty, "empty")

    def toggle_clamps(self, device_id: str) -> LockState | None:
        return self._mutate(device_id, LockState.toggle_clamps, "clamps")

    def set_locked(self, device_id: str, locked: bool) -> LockState | None:
        return self._mutate(device_id, lambda lock: lock.set_locked(locked), "locked")

    def bulk_toggle_empty(self) -> list[LockState]:
        with self._lock:
            selected = sorted(self._selected)
        results = [self.toggle_empty(device_id) for device_id in selected]
        return [lock for lock in results if lock is not None]

    def _mutate(
        self,
        device_id: str,
        transition: Callable[[LockState], LockState],
        field_name: str,
    ) -> LockState | None:
        with self._lock:
            lock = self._locks.get(device_id)
            if lock is None:
                LOGGER.warning("Unknown lock: %s", device_id)
                return None
            updated = transition(lock)
            if updated is lock:
                return lock
            self._locks[device_id] = updated
            LOGGER.info("Updated %s for %s: %s", field_name, device_id, updated.to_reported_state())
            if updated.connected:
                self._publish_reported(updated)
            self._persist(updated)
        self._notify()
        return updated

    def add_lock(self, device_id: str) -> LockState:
        with self._lock:
            lock = self._locks.get(device_id)
            if lock is not None:
                return lock
            lock = LockState(device_id=device_id, connected=self.manager.is_device_connected(device_id))
            self._locks[device_id] = lock
        self._notify()
        return lock

    def remove_lock(self, device_id: str) -> bool:
        with self._lock:
            if self._locks.pop(device_id, None) is None:
                return False
            self._selected.discard(device_id)
        self._notify()
        return True

    # Filtering and selection

    def set_filter(self, lock_filter: LockFilter) -> None:
        with self._lock:
            self._filter = lock_filter
        self._notify()

    def toggle_selection(self, device_id: str) -> None:
        with self._lock:
            if device_id in self._selected:
                self._selected.remove(device_id)
            elif device_id in self._locks:
                self._selected.add(device_id)
        self._notify()

    def select_all(self) -> None:
        visible = {lock.device_id for lock in self.snapshot().filtered_locks}
        with self._lock:
            self._selected = visible
        self._notify()

    def clear_selection(self) -> None:
        with self._lock:
            self._selected = set()
        self._notify()

    def clear_error(self) -> None:
        with self._lock:
            self._error = None
        self._notify()

    # Helpers

    def _reconcile_connected_locked(self) -> None:
        for device_id, lock in list(self._locks.items()):
            self._locks[device_id] = lock.with_connected(self.manager.is_device_connected(device_id))

    def _publish_reported(self, lock: LockState) -> bool:
        if not self.manager.is_device_connected(lock.device_id):
            return False
        return self.manager.publish_shadow_update(lock.device_id, lock.to_reported_state())

    def _persist(self, lock: LockState) -> None:
        try:
            self.registry.save_last_state(lock.device_id, lock.to_reported_state())
        except RegistryError as exc:
            LOGGER.error("Failed to save local state for %s: %s", lock.device_id, exc)

    def _notify(self) -> None:
        self.state_changed.emit(self.snapshot())
