"""Device and rack provisioning on top of the control-plane client."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import requests

from virtlocks.cloud.client import ControlPlaneClient, certificate_id_from_arn
from virtlocks.core.errors import ControlPlaneError, ControlPlaneRequestError, RegistryError, VirtLocksError
from virtlocks.core.model import BatchResult, CertificateBundle, RemoteDevice
from virtlocks.core.naming import (
    is_master,
    lock_device_id,
    lock_thing_type,
    master_device_id,
    master_thing_type,
    policy_name,
    scooter_device_id,
)
from virtlocks.core.storage import LocalRegistry

LOGGER = logging.getLogger(__name__)

AMAZON_ROOT_CA_URL = "https://www.amazontrust.com/repository/AmazonRootCA1.pem"
LIST_PAGE_SIZE = 250


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Provisioner:
    """Creates and removes devices remotely and mirrors them in the local registry."""

    def __init__(
        self,
        client: ControlPlaneClient,
        registry: LocalRegistry,
        *,
        policy_override: str | None = None,
        now: Callable[[], str] = _now_iso,
    ) -> None:
        self.client = client
        self.registry = registry
        self.policy_override = policy_override
        self._now = now

    def policy_for(self, env: str) -> str:
        return self.policy_override or policy_name(env)

    def install_root_ca(self, url: str = AMAZON_ROOT_CA_URL, *, timeout_s: float = 30.0) -> None:
        try:
            response = requests.get(url, timeout=timeout_s)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise ControlPlaneRequestError(f"Could not download CA certificate from {url}: {exc}") from exc
        self.registry.save_ca(response.text)

    def list_remote_devices(self, *, type_name: str | None = None) -> list[RemoteDevice]:
        """Follow pagination until the control plane stops returning a token."""
        devices: list[RemoteDevice] = []
        token: str | None = None
        while True:
            page, token = self.client.list_devices_page(
                type_name=type_name,
                max_results=LIST_PAGE_SIZE,
                next_token=token,
            )
            devices.extend(page)
            if not token:
                return sorted(devices, key=lambda device: device.name)

    def create_device(
        self,
        env: str,
        name: str,
        *,
        attributes: dict[str, str] | None = None,
    ) -> RemoteDevice:
        """Create one device with its own certificate and store the key material locally."""
        type_name = master_thing_type(env) if is_master(name) else lock_thing_type(env)
        device, certificate = self.client.create_device_with_certificate(
            name,
            policy_name=self.policy_for(env),
            type_name=type_name,
            attributes=attributes,
        )
        self._save_local(
            name,
            certificate,
            {
                "thingArn": device.arn,
                "environment": env,
                "attributes": attributes,
            },
        )
        return device

    def delete_device(self, name: str) -> None:
        self.client.delete_device_with_certificates(name)
        self.registry.delete_device(name)

    def create_rack(
        self,
        env: str,
        rack_name: str,
        bike_count: int,
        scooter_count: int = 0,
        lobby: str | None = None,
    ) -> BatchResult:
        """Create master, bike and scooter devices sharing one certificate.

        Only the shared certificate creation is fatal; every other failure is
        collected and the remaining devices are still attempted.
        """
        if bike_count < 0 or scooter_count < 0:
            raise ValueError("Device counts must not be negative")

        certificate = self.client.create_certificate()
        LOGGER.info("Created shared certificate for rack %s-%s", env, rack_name)

        succeeded: list[str] = []
        errors: list[str] = []

        try:
            self.client.attach_policy(self.policy_for(env), certificate.certificate_arn)
        except (ControlPlaneError, ControlPlaneRequestError) as exc:
            errors.append(f"Failed to attach policy {self.policy_for(env)}: {exc}")
            LOGGER.error("Failed to attach policy for rack %s-%s: %s", env, rack_name, exc)

        plan: list[tuple[str, str, str]] = [(master_device_id(env, rack_name), master_thing_type(env), "master")]
        plan += [(lock_device_id(env, rack_name, i), lock_thing_type(env), "bike") for i in range(1, bike_count + 1)]
        plan += [
            (scooter_device_id(env, rack_name, i), lock_thing_type(env), "scooter")
            for i in range(1, scooter_count + 1)
        ]

        for name, type_name, role in plan:
            attributes = {"enabled": "true", "type": role, "environment": env}
            if lobby is not None:
                attributes["lobby"] = lobby
            try:
                self.client.create_device(name, type_name=type_name, attributes=attributes)
                self.client.attach_certificate_to_device(name, certificate.certificate_arn)
                self._save_local(
                    name,
                    certificate,
                    {"environment": env, "rackName": rack_name, "type": role},
                )
            except VirtLocksError as exc:
                errors.append(f"Failed to create {role} {name}: {exc}")
                LOGGER.error("Failed to create %s %s: %s", role, name, exc)
                continue
            succeeded.append(name)

        rack_config: dict[str, Any] = {
            "environment": env,
            "rackName": rack_name,
            "bikeLockCount": bike_count,
            "scooterLockCount": scooter_count,
            "certificateArn": certificate.certificate_arn,
            "certificateId": certificate.certificate_id,
            "things": succeeded,
            "lobby": lobby,
            "createdAt": self._now(),
        }
        try:
            self.registry.save_rack(env, rack_name, rack_config)
        except RegistryError as exc:
            errors.append(f"Failed to save rack configuration: {exc}")
            LOGGER.error("Failed to save rack configuration for %s-%s: %s", env, rack_name, exc)

        LOGGER.info("Created rack %s-%s with %d devices, %d errors", env, rack_name, len(succeeded), len(errors))
        return BatchResult(succeeded_ids=tuple(succeeded), errors=tuple(errors))

    def delete_rack(self, env: str, rack_name: str) -> BatchResult:
        """Delete every remote device named ``{env}-{rack}-*`` and its certificates.

        Racks share a certificate, so certificates are detached from every
        device first and each distinct certificate is deleted once afterwards.
        """
        prefix = f"{env}-{rack_name}-"
        names = [device.name for device in self.list_remote_devices() if device.name.startswith(prefix)]
        if not names:
            LOGGER.warning("No devices found for rack %s-%s", env, rack_name)
            return BatchResult(succeeded_ids=(), errors=(f"No devices found for rack {env}-{rack_name}",))
        LOGGER.info("Deleting rack %s-%s with %d devices", env, rack_name, len(names))

        succeeded: list[str] = []
        errors: list[str] = []
        certificates: dict[str, str] = {}

        for name in names:
            try:
                for principal in self.client.list_device_principals(name):
                    self.client.detach_certificate_from_device(name, principal)
                    certificates.setdefault(certificate_id_from_arn(principal), principal)
                self.client.delete_device(name)
                self.registry.delete_device(name)
            except VirtLocksError as exc:
                errors.append(f"Failed to delete {name}: {exc}")
                LOGGER.error("Failed to delete %s: %s", name, exc)
                continue
            succeeded.append(name)

        for certificate_id in sorted(certificates):
            try:
                self.client.update_certificate_status(certificate_id, "INACTIVE")
                self.client.delete_certificate(certificate_id, force=True)
            except (ControlPlaneError, ControlPlaneRequestError) as exc:
                errors.append(f"Failed to delete certificate {certificate_id}: {exc}")
                LOGGER.error("Failed to delete certificate %s: %s", certificate_id, exc)

        try:
            self.registry.delete_rack(env, rack_name)
        except RegistryError as exc:
            errors.append(f"Failed to delete rack configuration: {exc}")

        LOGGER.info(
            "Deleted rack %s-%s: %d devices deleted, %d errors",
            env,
            rack_name,
            len(succeeded),
            len(errors),
        )
        return BatchResult(succeeded_ids=tuple(succeeded), errors=tuple(errors))

    def _save_local(self, name: str, certificate: CertificateBundle, config: dict[str, Any]) -> None:
        self.registry.save_certificates(
            name,
            certificate_pem=certificate.certificate_pem,
            private_key=certificate.private_key,
            public_key=certificate.public_key,
        )
        self.registry.save_device_config(
            name,
            {
                **config,
                "certificateArn": certificate.certificate_arn,
                "certificateId": certificate.certificate_id,
                "createdAt": self._now(),
            },
        )
