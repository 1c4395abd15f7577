"""State containers for the COGS broker."""

from .models import Claim, ClaimInfo, ClaimStatus, Device, DeviceStatus, NodeStatus, ProcessInfo
from .store import StateStore

__all__ = [
    "Claim",
    "ClaimInfo",
    "ClaimStatus",
    "Device",
    "DeviceStatus",
    "NodeStatus",
    "ProcessInfo",
    "StateStore",
]
