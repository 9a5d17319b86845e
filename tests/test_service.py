from __future__ import annotations

import json
import time
from pathlib import Path

import pytest

from virtlocks.core.config import CloudProfile
from virtlocks.core.connection_manager import ConnectionManager
from virtlocks.core.errors import ConfigurationError, RegistryError
from virtlocks.core.model import LockFilter, LocksSnapshot, SimulationMode, TlsSettings
from virtlocks.core.service import LockService
from virtlocks.core.storage import LocalRegistry
from virtlocks.transports.base import TransportEvent, TransportEventHandler, TransportEventKind

RACK = ["dev-R1-MASTER", "dev-R1-LOCK01", "dev-R1-LOCK02"]
PROFILE = CloudProfile(
    name="default",
    access_key_id="AKIDEXAMPLE",
    secret_access_key="secret",
    endpoint="example-ats.iot.eu-west-1.amazonaws.com",
)


class FakeTransport:
    def __init__(self, settings: TlsSettings, on_event: TransportEventHandler) -> None:
        self.settings = settings
        self.on_event = on_event
        self.subscriptions: list[str] = []
        self.published: list[tuple[str, dict]] = []

    def connect(self) -> None:
        return None

    def subscribe(self, topic: str, *, qos: int = 1) -> None:
        self.subscriptions.append(topic)

    def publish(self, topic: str, payload: bytes, *, qos: int = 1) -> None:
        self.published.append((topic, json.loads(payload)))

    def disconnect(self) -> None:
        return None

    def deliver(self, topic: str, document: dict) -> None:
        payload = json.dumps(document).encode("utf-8")
        self.on_event(TransportEvent(TransportEventKind.MESSAGE, topic=topic, payload=payload))


class FakeFactory:
    def __init__(self) -> None:
        self.transports: list[FakeTransport] = []

    def __call__(self, settings: TlsSettings, on_event: TransportEventHandler) -> FakeTransport:
        transport = FakeTransport(settings, on_event)
        self.transports.append(transport)
        return transport


def _registry(tmp_path: Path, device_ids=RACK, *, with_ca: bool = True) -> LocalRegistry:
    registry = LocalRegistry(tmp_path / "data")
    if with_ca:
        registry.save_ca("-----BEGIN CERTIFICATE-----\nCA\n-----END CERTIFICATE-----\n")
    for device_id in device_ids:
        registry.save_certificates(device_id, certificate_pem="CERT", private_key="KEY")
    return registry


def _service(
    tmp_path: Path,
    *,
    profile: CloudProfile | None = PROFILE,
    mode: SimulationMode = SimulationMode.MASTER_RACK,
    registry: LocalRegistry | None = None,
    **kwargs,
) -> tuple[LockService, FakeFactory]:
    factory = FakeFactory()
    manager = ConnectionManager(transport_factory=factory, mode=mode)
    service = LockService(
        manager=manager,
        registry=registry or _registry(tmp_path),
        profile=profile,
        **kwargs,
    )
    return service, factory


def _reported(transport: FakeTransport, device_id: str) -> list[dict]:
    topic = f"$aws/things/{device_id}/shadow/update"
    return [doc["state"]["reported"] for t, doc in transport.published if t == topic]


def test_load_locks_restores_saved_state_and_skips_masters(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    registry.save_last_state("dev-R1-LOCK02", {"locked": 0, "empty": 1, "lock_clamps": 0, "timer": 4000})
    service, _ = _service(tmp_path, registry=registry)

    snapshot = service.load_locks()

    assert sorted(snapshot.locks) == ["dev-R1-LOCK01", "dev-R1-LOCK02"]
    restored = snapshot.locks["dev-R1-LOCK02"]
    assert (restored.locked, restored.empty, restored.clamps, restored.timer_ms) == (0, 1, 0, 4000)
    assert not restored.connected
    assert snapshot.rack_groups["dev-R1"].master_id == "dev-R1-MASTER"


def test_load_locks_ignores_corrupt_saved_state(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    (registry.device_dir("dev-R1-LOCK01") / "config.json").write_text("{broken", encoding="utf-8")
    service, _ = _service(tmp_path, registry=registry)

    snapshot = service.load_locks()

    assert snapshot.locks["dev-R1-LOCK01"].is_locked
    assert snapshot.error is None


@pytest.mark.parametrize(
    ("profile", "device_ids", "with_ca", "message"),
    [
        (None, RACK, True, "No active cloud profile"),
        (CloudProfile(name="p", access_key_id="a", secret_access_key="s"), RACK, True, "endpoint not configured"),
        (PROFILE, [], True, "No locks available"),
        (PROFILE, RACK, False, "CA certificate not found"),
    ],
)
def test_connect_preconditions_fail_before_any_network(tmp_path, profile, device_ids, with_ca, message) -> None:
    registry = _registry(tmp_path, device_ids, with_ca=with_ca)
    service, factory = _service(tmp_path, profile=profile, registry=registry)
    service.load_locks()

    with pytest.raises(ConfigurationError, match=message):
        service.connect()

    assert factory.transports == []
    assert message in (service.snapshot().error or "")


def test_connect_master_rack_requests_each_lock_shadow(tmp_path: Path) -> None:
    service, factory = _service(tmp_path)
    service.load_locks()

    assert service.connect()

    assert len(factory.transports) == 1
    transport = factory.transports[0]
    assert transport.settings.client_id == "dev-R1-MASTER"
    requested = [topic for topic, _ in transport.published if topic.endswith("/shadow/get")]
    assert requested == [
        "$aws/things/dev-R1-LOCK01/shadow/get",
        "$aws/things/dev-R1-LOCK02/shadow/get",
    ]
    snapshot = service.snapshot()
    assert snapshot.is_connected
    assert snapshot.connected_count == 2


def test_connect_skips_rack_with_unusable_device_directory(tmp_path: Path) -> None:
    registry = _registry(tmp_path, ["dev-R1-LOCK01", "dev-R3-LOCK01"])
    (registry.root / "things" / "dev-R2-LOCK 01").mkdir()
    service, factory = _service(tmp_path, registry=registry)
    service.load_locks()

    assert service.connect()

    assert sorted(t.settings.client_id for t in factory.transports) == ["dev-R1-LOCK01", "dev-R3-LOCK01"]
    assert sorted(service.manager.connections) == ["dev-R1", "dev-R3"]
    snapshot = service.snapshot()
    assert snapshot.error is None
    assert not snapshot.locks["dev-R2-LOCK 01"].connected


def test_delta_is_applied_echoed_and_persisted(tmp_path: Path) -> None:
    service, factory = _service(tmp_path)
    service.load_locks()
    service.connect()
    transport = factory.transports[0]

    transport.deliver(
        "$aws/things/dev-R1-LOCK01/shadow/update/delta",
        {"version": 7, "state": {"locked": 0, "timer": 5000}},
    )

    lock = service.get_lock("dev-R1-LOCK01")
    assert lock is not None
    assert (lock.locked, lock.empty, lock.clamps, lock.timer_ms) == (0, 0, 1, 5000)
    assert _reported(transport, "dev-R1-LOCK01")[-1] == {"locked": 0, "empty": 0, "lock_clamps": 1, "timer": 5000}
    assert service.registry.load_last_state("dev-R1-LOCK01") == {
        "locked": 0,
        "empty": 0,
        "lock_clamps": 1,
        "timer": 5000,
    }


def test_pending_delta_in_fetched_shadow_is_applied(tmp_path: Path) -> None:
    service, factory = _service(tmp_path)
    service.load_locks()
    service.connect()
    transport = factory.transports[0]

    transport.deliver(
        "$aws/things/dev-R1-LOCK02/shadow/get/accepted",
        {"state": {"reported": {"locked": 1}, "delta": {"lock_clamps": 0}}},
    )
    transport.deliver(
        "$aws/things/dev-R1-LOCK01/shadow/get/accepted",
        {"state": {"reported": {"locked": 1}}},
    )

    assert service.get_lock("dev-R1-LOCK02").clamps == 0
    assert _reported(transport, "dev-R1-LOCK02")[-1]["lock_clamps"] == 0
    assert _reported(transport, "dev-R1-LOCK01") == []


def test_malformed_delta_is_dropped(tmp_path: Path) -> None:
    service, factory = _service(tmp_path)
    service.load_locks()
    service.connect()
    transport = factory.transports[0]

    transport.deliver("$aws/things/dev-R1-LOCK01/shadow/update/delta", {"state": {"locked": "maybe"}})

    assert service.get_lock("dev-R1-LOCK01").is_locked
    assert _reported(transport, "dev-R1-LOCK01") == []


def test_toggle_empty_on_locked_lock_is_a_no_op(tmp_path: Path) -> None:
    service, factory = _service(tmp_path)
    service.load_locks()
    service.connect()
    transport = factory.transports[0]
    before = service.get_lock("dev-R1-LOCK01")

    assert service.toggle_empty("dev-R1-LOCK01") is before
    assert _reported(transport, "dev-R1-LOCK01") == []


def test_user_mutations_publish_when_connected(tmp_path: Path) -> None:
    service, factory = _service(tmp_path)
    service.load_locks()
    service.connect()
    transport = factory.transports[0]

    service.set_locked("dev-R1-LOCK01", False)
    service.toggle_empty("dev-R1-LOCK01")
    service.toggle_clamps("dev-R1-LOCK01")

    assert _reported(transport, "dev-R1-LOCK01") == [
        {"locked": 0, "empty": 0, "lock_clamps": 1},
        {"locked": 0, "empty": 1, "lock_clamps": 1},
        {"locked": 0, "empty": 1, "lock_clamps": 0},
    ]
    assert service.set_locked("dev-R1-LOCK99", True) is None


def test_user_mutation_offline_only_persists(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)
    service.load_locks()

    service.set_locked("dev-R1-LOCK01", False)

    assert service.registry.load_last_state("dev-R1-LOCK01") == {"locked": 0, "empty": 0, "lock_clamps": 1}


def test_persistence_failure_does_not_roll_back(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    service, factory = _service(tmp_path)
    service.load_locks()
    service.connect()

    def fail(device_id, state):
        raise RegistryError("disk full")

    monkeypatch.setattr(service.registry, "save_last_state", fail)

    updated = service.set_locked("dev-R1-LOCK01", False)

    assert updated is not None and not updated.is_locked
    assert not service.get_lock("dev-R1-LOCK01").is_locked
    assert _reported(factory.transports[0], "dev-R1-LOCK01")[-1]["locked"] == 0


def test_tick_auto_locks_and_reports(tmp_path: Path) -> None:
    service, factory = _service(tmp_path)
    service.load_locks()
    service.connect()
    transport = factory.transports[0]
    transport.deliver("$aws/things/dev-R1-LOCK01/shadow/update/delta", {"state": {"locked": 0, "timer": 2000}})

    assert service.tick() == []
    assert service.get_lock("dev-R1-LOCK01").timer_ms == 1000
    assert service.tick() == ["dev-R1-LOCK01"]

    lock = service.get_lock("dev-R1-LOCK01")
    assert lock.is_locked and lock.timer_ms == 0
    assert _reported(transport, "dev-R1-LOCK01")[-1] == {"locked": 1, "empty": 0, "lock_clamps": 1, "timer": 0}


def test_tick_while_offline_does_not_publish(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    registry.save_last_state("dev-R1-LOCK01", {"locked": 0, "empty": 0, "lock_clamps": 1, "timer": 1000})
    service, factory = _service(tmp_path, registry=registry)
    service.load_locks()

    assert service.tick() == ["dev-R1-LOCK01"]
    assert service.get_lock("dev-R1-LOCK01").is_locked
    assert factory.transports == []


def test_heartbeat_republishes_connected_locks(tmp_path: Path) -> None:
    service, factory = _service(tmp_path)
    service.load_locks()
    assert service.heartbeat() == 0

    service.connect()
    transport = factory.transports[0]
    transport.published.clear()

    assert service.heartbeat() == 2
    assert [topic for topic, _ in transport.published] == [
        "$aws/things/dev-R1-LOCK01/shadow/update",
        "$aws/things/dev-R1-LOCK02/shadow/update",
    ]


def test_disconnect_marks_every_lock_offline(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)
    service.load_locks()
    service.connect()

    service.disconnect()

    snapshot = service.snapshot()
    assert not snapshot.is_connected
    assert snapshot.connected_count == 0
    assert not service.manager.has_active_connections


def test_selection_filter_and_bulk_toggle(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)
    service.load_locks()

    service.set_filter(LockFilter.CONNECTED)
    service.select_all()
    assert service.snapshot().selected == frozenset()

    service.set_filter(LockFilter.DISCONNECTED)
    service.select_all()
    assert service.snapshot().selected == {"dev-R1-LOCK01", "dev-R1-LOCK02"}

    service.set_locked("dev-R1-LOCK01", False)
    toggled = service.bulk_toggle_empty()
    assert [lock.device_id for lock in toggled] == ["dev-R1-LOCK01", "dev-R1-LOCK02"]
    assert service.get_lock("dev-R1-LOCK01").is_empty
    assert not service.get_lock("dev-R1-LOCK02").is_empty

    service.toggle_selection("dev-R1-LOCK02")
    service.toggle_selection("dev-R1-UNKNOWN")
    assert service.snapshot().selected == {"dev-R1-LOCK01"}
    service.clear_selection()
    assert service.snapshot().selected_locks == []


def test_add_and_remove_lock(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)
    service.load_locks()
    service.toggle_selection("dev-R1-LOCK01")

    added = service.add_lock("dev-R2-LOCK01")
    assert service.add_lock("dev-R2-LOCK01") is added
    assert service.remove_lock("dev-R1-LOCK01")
    assert not service.remove_lock("dev-R1-LOCK01")

    snapshot = service.snapshot()
    assert sorted(snapshot.locks) == ["dev-R1-LOCK02", "dev-R2-LOCK01"]
    assert snapshot.selected == frozenset()


def test_state_changed_notifies_subscribers(tmp_path: Path) -> None:
    service, _ = _service(tmp_path)
    snapshots: list[LocksSnapshot] = []
    service.state_changed.subscribe(snapshots.append)

    service.load_locks()
    service.set_mode(SimulationMode.INDIVIDUAL_LOCK)

    assert snapshots
    assert snapshots[-1].mode is SimulationMode.INDIVIDUAL_LOCK
    assert len(snapshots[-1].locks) == 2


def test_individual_mode_connects_each_lock(tmp_path: Path) -> None:
    service, factory = _service(tmp_path, mode=SimulationMode.INDIVIDUAL_LOCK)
    service.load_locks()

    assert service.connect()

    assert sorted(t.settings.client_id for t in factory.transports) == ["dev-R1-LOCK01", "dev-R1-LOCK02"]


def test_periodic_loops_run_until_closed(tmp_path: Path) -> None:
    service, factory = _service(tmp_path, timer_interval_s=0.01, heartbeat_interval_s=0.01)
    service.load_locks()
    service.connect()
    factory.transports[0].deliver(
        "$aws/things/dev-R1-LOCK01/shadow/update/delta",
        {"state": {"locked": 0, "timer": 2000}},
    )

    service.start()
    try:
        deadline = time.monotonic() + 5
        while not service.get_lock("dev-R1-LOCK01").is_locked and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        service.close()

    assert service.get_lock("dev-R1-LOCK01").is_locked
    assert service.get_lock("dev-R1-LOCK01").timer_ms == 0
