"""
Error taxonomy for the ambilight sync pipeline.

Transient conditions (capture backend or device temporarily gone) are
handled by the sync loop with retry and backoff. Fatal conditions abort
start-up with a non-zero exit.
"""


class AmbilightError(Exception):
    """Base class for all ambilight errors."""


class ConfigInvalid(AmbilightError):
    """Malformed or out-of-range configuration. Fatal at start-up."""


class CaptureUnavailable(AmbilightError):
    """Screen capture backend not ready or capture region invalid."""


class DeviceUnreachable(AmbilightError):
    """Device disconnected, busy or did not acknowledge in time."""


class ConnectionFailed(DeviceUnreachable):
    """Transport-level failure (serial port or WebSocket)."""


class ProtocolMismatch(AmbilightError):
    """Device answered, but not with the ambilight firmware protocol."""


class SyncAborted(AmbilightError):
    """Too many consecutive transient failures."""
