"""Domain-specific errors for vibehub."""


class VibehubError(Exception):
    """Base error for vibehub."""


class ConfigError(VibehubError):
    """Base error for settings and profile loading."""


class ConfigLoadError(ConfigError):
    """Raised when reading a settings or profile source fails."""


class ConfigValidationError(ConfigError):
    """Raised when a settings file does not conform to schema or semantics."""


class ProfileValidationError(ConfigError):
    """Raised when a GATT profile file does not conform to schema or semantics."""


class SessionStateError(VibehubError):
    """Raised on an illegal adapter session state transition."""


class DeviceConflictError(VibehubError):
    """Raised when a device id is claimed by a second adapter session."""


class ProtocolError(VibehubError):
    """Raised when an inbound message cannot be decoded."""


class CapabilityUnavailable(VibehubError):
    """Raised when the platform lacks a transport an adapter needs."""


class AdapterDisabled(VibehubError):
    """Raised when configuration leaves an adapter without anything to do."""


class TransportError(VibehubError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on radio, socket or tunnel connect failures."""


class TransportSendError(TransportError):
    """Raised when payload sending fails."""


class TransportTimeoutError(TransportError):
    """Raised when a connect or write deadline expires."""


class RoutingError(VibehubError):
    """Base error for commands rejected by the router."""


class UnknownDevice(RoutingError):
    """Raised when a command targets a device id that is not registered."""


class ChannelOutOfRange(RoutingError):
    """Raised when a command targets a channel the device does not declare."""


class AdapterUnavailable(RoutingError):
    """Raised when the owning adapter session is not connected."""


class DeviceUnavailable(RoutingError):
    """Raised when a device is removed while a command for it is pending."""
