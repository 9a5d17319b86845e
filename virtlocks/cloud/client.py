"""boto3-backed client for the device-registry control plane."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from virtlocks.core.config import CloudProfile
from virtlocks.core.errors import ControlPlaneError, ControlPlaneRequestError
from virtlocks.core.model import CertificateBundle, CertificateDescription, RemoteDevice

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT_S = 30.0
DATA_ENDPOINT_TYPE = "iot:Data-ATS"

_RETRYABLE_ERRORS = (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)


def certificate_id_from_arn(arn: str) -> str:
    # arn:aws:iot:<region>:<account>:cert/<certificate-id>
    return arn.rsplit("/", 1)[-1]


def _client_error(operation: str, exc: ClientError) -> ControlPlaneError:
    response = exc.response
    status = int(response.get("ResponseMetadata", {}).get("HTTPStatusCode") or 0)
    return ControlPlaneError(f"{operation} failed", status=status, body=json.dumps(response.get("Error", {})))


class ControlPlaneClient:
    """Wraps a boto3 ``iot`` client.

    botocore's own retries are disabled; connection errors and timeouts are
    retried here with a 1s, 2s, 4s... backoff, service errors never are.
    """

    def __init__(
        self,
        iot_client: Any,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.iot = iot_client
        self.max_attempts = max_attempts
        self._sleep = sleep

    @classmethod
    def from_profile(
        cls,
        profile: CloudProfile,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        **kwargs: Any,
    ) -> ControlPlaneClient:
        iot_client = boto3.client(
            "iot",
            region_name=profile.region,
            aws_access_key_id=profile.access_key_id,
            aws_secret_access_key=profile.secret_access_key,
            aws_session_token=profile.session_token,
            config=Config(
                connect_timeout=timeout_s,
                read_timeout=timeout_s,
                retries={"total_max_attempts": 1},
            ),
        )
        return cls(iot_client, **kwargs)

    def close(self) -> None:
        self.iot.close()

    def _call(self, operation: str, **params: Any) -> dict[str, Any]:
        method = getattr(self.iot, operation)
        last_error: Exception | None = None
        for attempt in range(self.max_attempts):
            if attempt > 0:
                delay = float(2 ** (attempt - 1))
                LOGGER.debug("Retry attempt %d for %s after %gs", attempt, operation, delay)
                self._sleep(delay)
            try:
                response = method(**params)
            except _RETRYABLE_ERRORS as exc:
                last_error = exc
                LOGGER.warning("%s failed on attempt %d: %s", operation, attempt + 1, exc)
                continue
            except ClientError as exc:
                raise _client_error(operation, exc) from exc
            except BotoCoreError as exc:
                raise ControlPlaneRequestError(f"{operation} failed: {exc}") from exc
            return {key: value for key, value in response.items() if key != "ResponseMetadata"}

        raise ControlPlaneRequestError(
            f"{operation} failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    # Endpoint

    def describe_endpoint(self) -> str:
        data = self._call("describe_endpoint", endpointType=DATA_ENDPOINT_TYPE)
        endpoint = data.get("endpointAddress")
        if not endpoint:
            raise ControlPlaneError("describe_endpoint returned no endpointAddress", status=200, body=json.dumps(data))
        LOGGER.info("Discovered IoT endpoint: %s", endpoint)
        return endpoint

    # Devices

    def create_device(
        self,
        name: str,
        *,
        type_name: str | None = None,
        attributes: Mapping[str, str] | None = None,
    ) -> RemoteDevice:
        params: dict[str, Any] = {"thingName": name}
        if type_name is not None:
            params["thingTypeName"] = type_name
        if attributes:
            params["attributePayload"] = {"attributes": dict(attributes)}
        data = self._call("create_thing", **params)
        LOGGER.info("Created device: %s", name)
        return RemoteDevice(
            name=data.get("thingName", name),
            arn=data.get("thingArn"),
            type_name=type_name,
            attributes=dict(attributes or {}),
        )

    def delete_device(self, name: str) -> None:
        self._call("delete_thing", thingName=name)
        LOGGER.info("Deleted device: %s", name)

    def list_devices(
        self,
        *,
        type_name: str | None = None,
        max_results: int | None = None,
        next_token: str | None = None,
    ) -> list[RemoteDevice]:
        devices, _ = self.list_devices_page(type_name=type_name, max_results=max_results, next_token=next_token)
        return devices

    def list_devices_page(
        self,
        *,
        type_name: str | None = None,
        max_results: int | None = None,
        next_token: str | None = None,
    ) -> tuple[list[RemoteDevice], str | None]:
        """List one page of devices and the token for the next page, if any."""
        params: dict[str, Any] = {}
        if type_name is not None:
            params["thingTypeName"] = type_name
        if max_results is not None:
            params["maxResults"] = max_results
        if next_token is not None:
            params["nextToken"] = next_token
        data = self._call("list_things", **params)
        devices = [
            RemoteDevice(
                name=item["thingName"],
                arn=item.get("thingArn"),
                type_name=item.get("thingTypeName"),
                attributes=dict(item.get("attributes") or {}),
            )
            for item in data.get("things") or []
            if "thingName" in item
        ]
        return devices, data.get("nextToken") or None

    # Certificates

    def create_certificate(self, *, set_as_active: bool = True) -> CertificateBundle:
        data = self._call("create_keys_and_certificate", setAsActive=set_as_active)
        key_pair = data.get("keyPair") or {}
        try:
            bundle = CertificateBundle(
                certificate_arn=data["certificateArn"],
                certificate_id=data["certificateId"],
                certificate_pem=data["certificatePem"],
                private_key=key_pair["PrivateKey"],
                public_key=key_pair.get("PublicKey"),
            )
        except KeyError as exc:
            raise ControlPlaneError(
                f"Certificate response is missing {exc}", status=200, body=json.dumps(sorted(data))
            ) from exc
        LOGGER.info("Created certificate: %s", bundle.certificate_id)
        return bundle

    def describe_certificate(self, certificate_id: str) -> CertificateDescription:
        data = self._call("describe_certificate", certificateId=certificate_id)
        description = data.get("certificateDescription") or {}
        return CertificateDescription(
            certificate_arn=description.get("certificateArn", ""),
            certificate_id=description.get("certificateId", certificate_id),
            status=description.get("status", "UNKNOWN"),
            certificate_pem=description.get("certificatePem"),
            creation_date=description.get("creationDate"),
        )

    def update_certificate_status(self, certificate_id: str, status: str) -> None:
        self._call("update_certificate", certificateId=certificate_id, newStatus=status)
        LOGGER.info("Updated certificate %s status to %s", certificate_id, status)

    def delete_certificate(self, certificate_id: str, *, force: bool = False) -> None:
        self._call("delete_certificate", certificateId=certificate_id, forceDelete=force)
        LOGGER.info("Deleted certificate: %s", certificate_id)

    # Attachments

    def attach_certificate_to_device(self, name: str, certificate_arn: str) -> None:
        self._call("attach_thing_principal", thingName=name, principal=certificate_arn)
        LOGGER.info("Attached certificate to device: %s", name)

    def detach_certificate_from_device(self, name: str, certificate_arn: str) -> None:
        self._call("detach_thing_principal", thingName=name, principal=certificate_arn)
        LOGGER.info("Detached certificate from device: %s", name)

    def list_device_principals(self, name: str) -> list[str]:
        data = self._call("list_thing_principals", thingName=name)
        return [str(principal) for principal in data.get("principals") or []]

    def attach_policy(self, policy_name: str, certificate_arn: str) -> None:
        if not certificate_arn:
            raise ValueError("certificate_arn must not be empty")
        self._call("attach_policy", policyName=policy_name, target=certificate_arn)
        LOGGER.info("Attached policy %s", policy_name)

    def detach_policy(self, policy_name: str, certificate_arn: str) -> None:
        self._call("detach_policy", policyName=policy_name, target=certificate_arn)
        LOGGER.info("Detached policy %s", policy_name)

    # Composite operations; a failure part way leaves earlier steps in place.

    def create_device_with_certificate(
        self,
        name: str,
        *,
        policy_name: str,
        type_name: str | None = None,
        attributes: Mapping[str, str] | None = None,
    ) -> tuple[RemoteDevice, CertificateBundle]:
        certificate = self.create_certificate()
        device = self.create_device(name, type_name=type_name, attributes=attributes)
        self.attach_certificate_to_device(name, certificate.certificate_arn)
        self.attach_policy(policy_name, certificate.certificate_arn)
        LOGGER.info("Created device %s with certificate and policy", name)
        return device, certificate

    def delete_device_with_certificates(self, name: str) -> None:
        for principal in self.list_device_principals(name):
            self.detach_certificate_from_device(name, principal)
            certificate_id = certificate_id_from_arn(principal)
            self.update_certificate_status(certificate_id, "INACTIVE")
            self.delete_certificate(certificate_id)
        self.delete_device(name)
        LOGGER.info("Deleted device %s with all certificates", name)
