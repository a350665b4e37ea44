"""
Custom exceptions for Supersafe
"""

from typing import Optional

__all__ = [
    "SupersafeError",
    "ConfigurationError",
    "TransportError",
    "FrameSourceError",
    "PlaybackError",
    "ResourceReleasedError",
]


class SupersafeError(Exception):
    """Base exception for all Supersafe errors"""
    pass


class ConfigurationError(SupersafeError):
    """Configuration error"""
    pass


class TransportError(SupersafeError):
    """Remote endpoint could not be reached or answered with a non-success status.

    ``status`` is None for network faults and timeouts.
    """

    def __init__(self, message: str, status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status = status
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status is not None:
            return f"{base} (HTTP {self.status})"
        return base


class FrameSourceError(SupersafeError):
    """Frame could not be captured"""
    pass


class PlaybackError(SupersafeError):
    """Audio playback failed"""
    pass


class ResourceReleasedError(SupersafeError):
    """Audio resource used after release"""
    pass
