"""Device naming, classification, rack grouping, and shadow topics."""

from __future__ import annotations

import logging
from collections.abc import Iterable

from virtlocks.core.model import RackGroup

LOGGER = logging.getLogger(__name__)

_LOCK_KEYWORDS = ("BIKE", "SCOOTER")
_TOPIC_PREFIX = "$aws/things/"
_KNOWN_ENVIRONMENTS = ("dev", "test", "prod")


def parse_device_id(device_id: str) -> tuple[str, str, str] | None:
    """Split ``{env}-{rack}-{role}``; the role keeps any further dashes."""
    parts = device_id.split("-")
    if len(parts) < 3:
        return None
    return parts[0], parts[1], "-".join(parts[2:])


def is_master(device_id: str) -> bool:
    parsed = parse_device_id(device_id)
    if parsed is None:
        return False
    return parsed[2].upper() == "MASTER"


def is_lock(device_id: str) -> bool:
    parsed = parse_device_id(device_id)
    if parsed is not None:
        role = parsed[2].upper()
        return role.startswith("LOCK") or any(keyword in role for keyword in _LOCK_KEYWORDS)
    upper_id = device_id.upper()
    return "LOCK" in upper_id or any(keyword in upper_id for keyword in _LOCK_KEYWORDS)


def group_by_rack(device_ids: Iterable[str]) -> dict[str, RackGroup]:
    """Group devices by ``(env, rack)`` in first-seen order.

    A rack with more than one distinct master id is ambiguous and gets no
    master; its connection then falls back to the first lock.
    """
    envs: dict[str, tuple[str, str]] = {}
    masters: dict[str, list[str]] = {}
    locks: dict[str, list[str]] = {}

    for device_id in device_ids:
        parsed = parse_device_id(device_id)
        if parsed is None:
            LOGGER.warning("Could not parse device id: %s", device_id)
            continue

        env, rack_name, _ = parsed
        full_name = f"{env}-{rack_name}"
        if full_name not in envs:
            envs[full_name] = (env, rack_name)
            masters[full_name] = []
            locks[full_name] = []

        if is_master(device_id):
            if device_id not in masters[full_name]:
                masters[full_name].append(device_id)
        elif is_lock(device_id) and device_id not in locks[full_name]:
            locks[full_name].append(device_id)

    groups: dict[str, RackGroup] = {}
    for full_name, (env, rack_name) in envs.items():
        rack_masters = masters[full_name]
        if len(rack_masters) > 1:
            LOGGER.warning(
                "Rack %s has more than one master (%s); ignoring them",
                full_name,
                ", ".join(rack_masters),
            )
        groups[full_name] = RackGroup(
            env=env,
            rack_name=rack_name,
            master_id=rack_masters[0] if len(rack_masters) == 1 else None,
            lock_ids=tuple(locks[full_name]),
        )
    return groups


def shadow_update_topic(device_id: str) -> str:
    return f"{_TOPIC_PREFIX}{device_id}/shadow/update"


def shadow_delta_topic(device_id: str) -> str:
    return f"{_TOPIC_PREFIX}{device_id}/shadow/update/delta"


def shadow_get_topic(device_id: str) -> str:
    return f"{_TOPIC_PREFIX}{device_id}/shadow/get"


def shadow_get_accepted_topic(device_id: str) -> str:
    return f"{_TOPIC_PREFIX}{device_id}/shadow/get/accepted"


def shadow_get_rejected_topic(device_id: str) -> str:
    return f"{_TOPIC_PREFIX}{device_id}/shadow/get/rejected"


def device_id_from_topic(topic: str) -> str | None:
    if not topic.startswith(_TOPIC_PREFIX):
        return None
    device_id = topic[len(_TOPIC_PREFIX):].split("/", 1)[0]
    return device_id or None


def master_device_id(env: str, rack_name: str) -> str:
    return f"{env}-{rack_name}-MASTER"


def lock_device_id(env: str, rack_name: str, index: int) -> str:
    return f"{env}-{rack_name}-LOCK{index:02d}"


def scooter_device_id(env: str, rack_name: str, index: int) -> str:
    return f"{env}-{rack_name}-SCOOTER{index:02d}"


def policy_name(env: str) -> str:
    return f"{env}-hbr-api-bike-iot-policy"


def lock_thing_type(env: str) -> str:
    return f"BikeLock-{env if env in _KNOWN_ENVIRONMENTS else 'dev'}"


def master_thing_type(env: str) -> str:
    return f"RackMaster-{env if env in _KNOWN_ENVIRONMENTS else 'dev'}"
