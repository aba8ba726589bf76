# device_bridge/common/errors.py


class BridgeError(Exception):
    """Base class for every error raised by the bridge."""


class ValidationError(BridgeError):
    """Malformed caller input. Maps to HTTP 400."""


class ConflictError(BridgeError):
    """
    A registration collided with an existing device.
    `existing` is the record already in the registry.
    """
    def __init__(self, message: str, existing=None):
        super().__init__(message)
        self.existing = existing


class ProtocolError(BridgeError):
    """Malformed wire frame or illegal topic; ends the offending session only."""


class DeliveryFailure(BridgeError):
    """A message could not be written to a subscriber or could not be published."""


class TransportFailure(BridgeError):
    """Upgrade or connection level failure; the connection is closed."""
