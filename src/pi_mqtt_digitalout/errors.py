"""
Error Taxonomy for Digital Output Control.

Two families live here:
- `DigitalOutError` and its subclasses are what callers of the client
  API see (`NotConnectedError`, `ConnectFailedError`, ...).
- `TransportError` and its subclasses are raised by the MQTT remoting
  layer (`client.connection`) and translated by `DigitalOut` into the
  caller-facing kinds.
"""


class DigitalOutError(Exception):
    """Base error for the digital output client."""


class NotConnectedError(DigitalOutError):
    """Raised when there is no board session or no resolved service."""


class ConnectFailedError(DigitalOutError):
    """Raised when connecting to the requested service fails."""


class ServiceUnavailableError(DigitalOutError):
    """Raised when the board does not offer the requested service."""


class ConnectionLostError(DigitalOutError):
    """Raised when a command could not be delivered to a resolved service."""


class InvalidArgumentError(DigitalOutError, ValueError):
    """Raised for out-of-range channels or wrongly sized mask/value arrays."""


class TransportError(Exception):
    """Base remoting error (timeout, refused connection, malformed response)."""


class ObjectNotExistError(TransportError):
    """The remote side reports that the addressed object does not exist."""


class RemoteInvocationError(TransportError):
    """The remote side received the request but failed to carry it out."""
