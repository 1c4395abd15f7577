"""Service layer for the COGS broker daemon."""

from .broker import ClaimBroker, wire_handlers
from .bus import EventBus, Topic
from .identity import IdentityResolver
from .ingest import TelemetryIngest, enumerate_devices
from .task_supervisor import SupervisedTaskSpec, supervise_task

__all__ = [
    "ClaimBroker",
    "EventBus",
    "IdentityResolver",
    "SupervisedTaskSpec",
    "TelemetryIngest",
    "Topic",
    "enumerate_devices",
    "supervise_task",
    "wire_handlers",
]
