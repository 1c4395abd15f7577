"""Exception hierarchy shared by the broker components."""

from __future__ import annotations


class CogsError(Exception):
    """Base class for broker errors."""


class NotFound(CogsError):
    """Unknown device, vanished process, missing container or owner label."""


class ClaimTimeout(CogsError):
    """Admission deadline elapsed before enough devices were free."""


class InsufficientDevices(CogsError):
    """More devices were requested than this host will ever have."""


class PermissionDenied(CogsError):
    """Caller tried to release a device held by someone else."""


class InfrastructureFault(CogsError):
    """Container runtime or vendor tool query failed."""


class ParseFault(CogsError):
    """Malformed telemetry line."""


class ProtocolFault(CogsError):
    """Bad HTTP request or RPC message."""

    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


__all__ = [
    "CogsError",
    "NotFound",
    "ClaimTimeout",
    "InsufficientDevices",
    "PermissionDenied",
    "InfrastructureFault",
    "ParseFault",
    "ProtocolFault",
]
