class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ConfigError(BridgeError):
    """The configuration file is missing, unreadable or holds invalid values."""


class ConnectError(BridgeError):
    """The initial connection to a broker could not be established."""


class SubscribeError(BridgeError):
    """The broker refused or did not acknowledge a subscription."""


class PublishError(BridgeError):
    """The broker refused or did not acknowledge a publish."""


class TransformError(BridgeError):
    """A payload could not be turned into a forwardable record."""


class DecodeError(TransformError):
    """The payload is not a JSON object with the expected field types."""


class InvalidRecordError(TransformError):
    """The payload decoded but carries no usable GPS fix."""
