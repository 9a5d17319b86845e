"""Transport interfaces."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from virtlocks.core.model import TlsSettings


class TransportEventKind(str, Enum):
    MESSAGE = "message"
    CONNECTION_LOST = "connection_lost"
    RECONNECTED = "reconnected"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class TransportEvent:
    kind: TransportEventKind
    topic: str | None = None
    payload: bytes = b""
    reason: str | None = None


TransportEventHandler = Callable[[TransportEvent], None]


class MqttTransport(Protocol):
    def connect(self) -> None:
        """Open the session, blocking until the broker accepts it.

        Raises ``TransportConnectError`` or ``TransportTimeoutError``. Later
        connectivity changes are reported through the event handler.
        """

    def subscribe(self, topic: str, *, qos: int = 1) -> None:
        """Subscribe to ``topic``."""

    def publish(self, topic: str, payload: bytes, *, qos: int = 1) -> None:
        """Publish ``payload`` without waiting for the broker acknowledgement."""

    def disconnect(self) -> None:
        """Close the session. Safe to call more than once."""


class TransportFactory(Protocol):
    def __call__(self, settings: TlsSettings, on_event: TransportEventHandler) -> MqttTransport:
        """Build an unconnected transport for one connection."""
