"""Domain-specific errors for virtlocks."""


class VirtLocksError(Exception):
    """Base error for virtlocks."""


class ConfigError(VirtLocksError):
    """Base error for settings and profile handling."""


class ConfigValidationError(ConfigError):
    """Raised when a settings or profile file does not conform to schema."""


class ConfigLoadError(ConfigError):
    """Raised when reading a settings or profile file fails."""


class ConfigurationError(ConfigError):
    """Raised when a connect precondition (profile, endpoint, CA, devices) is missing."""


class RegistryError(VirtLocksError):
    """Raised when the local device registry cannot be read or written."""


class ShadowDocumentError(VirtLocksError):
    """Raised when a shadow document carries values that cannot be interpreted."""


class TransportError(VirtLocksError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on MQTT/TLS connect failures."""


class TransportSendError(TransportError):
    """Raised when publish or subscribe fails."""


class TransportTimeoutError(TransportError):
    """Raised when the broker does not acknowledge a connect in time."""


class ControlPlaneError(VirtLocksError):
    """Raised when the control-plane API answers with a non-2xx status."""

    def __init__(self, message: str, *, status: int, body: str) -> None:
        super().__init__(f"{message} (HTTP {status}): {body}")
        self.status = status
        self.body = body


class ControlPlaneRequestError(VirtLocksError):
    """Raised when a control-plane request keeps failing at the transport level."""
