from __future__ import annotations

from virtlocks.core.naming import (
    device_id_from_topic,
    group_by_rack,
    is_lock,
    is_master,
    lock_device_id,
    lock_thing_type,
    master_thing_type,
    parse_device_id,
    policy_name,
    scooter_device_id,
    shadow_delta_topic,
    shadow_get_accepted_topic,
    shadow_update_topic,
)


def test_parse_device_id_keeps_extra_dashes_in_role() -> None:
    assert parse_device_id("dev-RACK01-LOCK01") == ("dev", "RACK01", "LOCK01")
    assert parse_device_id("dev-RACK01-LOCK-A") == ("dev", "RACK01", "LOCK-A")
    assert parse_device_id("LOCK01") is None


def test_classification() -> None:
    assert is_master("dev-RACK01-MASTER")
    assert is_master("dev-RACK01-master")
    assert not is_lock("dev-RACK01-MASTER")

    assert is_lock("dev-RACK01-LOCK01")
    assert is_lock("prod-R2-SCOOTER03")
    assert is_lock("test-R3-EBIKE1")
    assert not is_lock("dev-RACK01-GATEWAY")

    # Unparseable ids fall back to a substring match.
    assert is_lock("standalone_lock")
    assert not is_master("MASTER")


def test_group_by_rack_orders_racks_and_locks_by_first_appearance() -> None:
    groups = group_by_rack(
        [
            "dev-B-LOCK02",
            "dev-A-MASTER",
            "dev-B-LOCK01",
            "dev-A-LOCK01",
            "dev-B-LOCK02",
            "garbage",
        ]
    )

    assert list(groups) == ["dev-B", "dev-A"]
    assert groups["dev-B"].master_id is None
    assert groups["dev-B"].lock_ids == ("dev-B-LOCK02", "dev-B-LOCK01")
    assert groups["dev-A"].master_id == "dev-A-MASTER"
    assert groups["dev-A"].device_ids == ("dev-A-MASTER", "dev-A-LOCK01")


def test_group_by_rack_is_deterministic() -> None:
    ids = ["dev-R1-MASTER", "dev-R1-LOCK01", "test-R1-LOCK01"]
    assert group_by_rack(ids) == group_by_rack(list(ids))
    assert set(group_by_rack(ids)) == {"dev-R1", "test-R1"}


def test_group_by_rack_with_ambiguous_masters_has_no_master() -> None:
    groups = group_by_rack(["dev-R1-MASTER", "dev-R1-Master", "dev-R1-LOCK01"])

    assert groups["dev-R1"].master_id is None
    assert not groups["dev-R1"].has_master
    assert groups["dev-R1"].lock_ids == ("dev-R1-LOCK01",)


def test_shadow_topics_and_reverse_lookup() -> None:
    assert shadow_update_topic("dev-R1-LOCK01") == "$aws/things/dev-R1-LOCK01/shadow/update"
    assert shadow_delta_topic("dev-R1-LOCK01") == "$aws/things/dev-R1-LOCK01/shadow/update/delta"
    assert device_id_from_topic(shadow_get_accepted_topic("dev-R1-LOCK01")) == "dev-R1-LOCK01"
    assert device_id_from_topic("other/topic") is None


def test_provisioning_names() -> None:
    assert lock_device_id("dev", "RACK01", 3) == "dev-RACK01-LOCK03"
    assert scooter_device_id("dev", "RACK01", 12) == "dev-RACK01-SCOOTER12"
    assert policy_name("prod") == "prod-hbr-api-bike-iot-policy"
    assert lock_thing_type("test") == "BikeLock-test"
    assert master_thing_type("staging") == "RackMaster-dev"
