"""Mutual-TLS MQTT transport implementation using paho-mqtt."""

from __future__ import annotations

import logging
import ssl
import threading

import paho.mqtt.client as mqtt

from virtlocks.core.errors import (
    TransportConnectError,
    TransportSendError,
    TransportTimeoutError,
)
from virtlocks.core.model import TlsSettings
from virtlocks.transports.base import TransportEvent, TransportEventHandler, TransportEventKind

LOGGER = logging.getLogger(__name__)

_RECONNECT_MIN_DELAY_S = 1
_RECONNECT_MAX_DELAY_S = 60


class PahoMqttTransport:
    """One paho client with its own network thread.

    paho reconnects by itself after the first successful connect; every
    later CONNACK is reported as ``RECONNECTED`` so the owner can restore
    subscriptions lost with the clean session.
    """

    def __init__(self, settings: TlsSettings, on_event: TransportEventHandler) -> None:
        self.settings = settings
        self._on_event = on_event
        self._client: mqtt.Client | None = None
        self._connack = threading.Event()
        self._connack_error: str | None = None
        self._ever_connected = False
        self._closing = False

    def connect(self) -> None:
        settings = self.settings
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=settings.client_id,
            clean_session=True,
            protocol=mqtt.MQTTv311,
        )
        try:
            client.tls_set(
                ca_certs=settings.ca_path,
                certfile=settings.cert_path,
                keyfile=settings.key_path,
                cert_reqs=ssl.CERT_REQUIRED,
                tls_version=ssl.PROTOCOL_TLS_CLIENT,
            )
        except (OSError, ValueError, ssl.SSLError) as exc:
            raise TransportConnectError(
                f"Could not load TLS material for {settings.client_id}: {exc}"
            ) from exc

        client.connect_timeout = settings.connect_timeout_s
        client.reconnect_delay_set(min_delay=_RECONNECT_MIN_DELAY_S, max_delay=_RECONNECT_MAX_DELAY_S)
        client.on_connect = self._handle_connect
        client.on_disconnect = self._handle_disconnect
        client.on_message = self._handle_message
        self._client = client
        self._closing = False
        self._connack.clear()

        try:
            client.connect(settings.endpoint, settings.port, keepalive=settings.keepalive_s)
        except TimeoutError as exc:
            raise TransportTimeoutError(
                f"MQTT connect timed out for {settings.client_id} at {settings.endpoint}:{settings.port}"
            ) from exc
        except (OSError, ssl.SSLError) as exc:
            raise TransportConnectError(
                f"MQTT connect failed for {settings.client_id} at {settings.endpoint}:{settings.port}: {exc}"
            ) from exc

        client.loop_start()
        if not self._connack.wait(settings.connect_timeout_s):
            self._abort()
            raise TransportTimeoutError(
                f"No CONNACK from {settings.endpoint} for {settings.client_id} "
                f"within {settings.connect_timeout_s:g}s"
            )
        if self._connack_error is not None:
            self._abort()
            raise TransportConnectError(
                f"Broker rejected {settings.client_id}: {self._connack_error}"
            )

    def subscribe(self, topic: str, *, qos: int = 1) -> None:
        client = self._require_client()
        result, _ = client.subscribe(topic, qos=qos)
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise TransportSendError(f"Subscribe to {topic} failed: {mqtt.error_string(result)}")

    def publish(self, topic: str, payload: bytes, *, qos: int = 1) -> None:
        client = self._require_client()
        info = client.publish(topic, payload, qos=qos)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise TransportSendError(f"Publish to {topic} failed: {mqtt.error_string(info.rc)}")

    def disconnect(self) -> None:
        client = self._client
        if client is None:
            return
        self._closing = True
        self._client = None
        try:
            client.disconnect()
        finally:
            client.loop_stop()

    def _abort(self) -> None:
        client = self._client
        self._closing = True
        self._client = None
        if client is None:
            return
        try:
            client.disconnect()
        except Exception:
            LOGGER.debug("Ignoring disconnect error after failed connect of %s", self.settings.client_id)
        client.loop_stop()

    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise TransportSendError(f"Transport for {self.settings.client_id} is not connected")
        return self._client

    def _handle_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            LOGGER.warning("[%s] CONNACK refused: %s", self.settings.client_id, reason_code)
            if not self._ever_connected:
                self._connack_error = str(reason_code)
                self._connack.set()
            return

        if not self._ever_connected:
            self._ever_connected = True
            self._connack_error = None
            self._connack.set()
            return

        self._on_event(TransportEvent(TransportEventKind.RECONNECTED))

    def _handle_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if not self._ever_connected:
            return
        if self._closing:
            self._on_event(TransportEvent(TransportEventKind.DISCONNECTED, reason=str(reason_code)))
            return
        self._on_event(TransportEvent(TransportEventKind.CONNECTION_LOST, reason=str(reason_code)))

    def _handle_message(self, client, userdata, message) -> None:
        self._on_event(
            TransportEvent(
                TransportEventKind.MESSAGE,
                topic=message.topic,
                payload=bytes(message.payload),
            )
        )


def paho_transport_factory(settings: TlsSettings, on_event: TransportEventHandler) -> PahoMqttTransport:
    return PahoMqttTransport(settings, on_event)
