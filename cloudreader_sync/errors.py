"""
Error kinds raised by the sync engine.

Convention used across the package:
- API client methods raise these instead of returning status tuples.
- Sync clients catch them at the item boundary, count the failure and move on.
- Only ConfigError is allowed to escape a manual operation untouched.
"""


class SyncError(Exception):
    """Base class for every failure the engine knows how to report."""


class ConfigError(SyncError):
    """No server configured (or another unusable setting). Not retried."""


class AuthError(SyncError):
    """Login/register rejected. The stored session is left empty."""


class NetworkError(SyncError):
    """No response at all: connection refused, DNS, stall or total timeout."""


class HTTPError(SyncError):
    """Server answered with a non-2xx status."""

    def __init__(self, status: int, message: str = None):
        self.status = status
        self.message = message or f"HTTP {status}"
        super().__init__(self.message)


class DecodeError(SyncError):
    """A 2xx payload did not have the shape a single-item endpoint requires."""


class FilesystemError(SyncError):
    """A directory or file could not be created, read or replaced."""


class UnsafePathError(FilesystemError):
    """A manifest path would resolve outside the library root."""


class CodecError(SyncError):
    """Bundle archive could not be packed or unpacked."""


class SyncBusyError(SyncError):
    """A manual sync was requested while another cycle holds the engine lock."""
