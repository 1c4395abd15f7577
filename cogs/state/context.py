"""Runtime counters for the COGS broker daemon."""

from __future__ import annotations

import time
from typing import Any, Final

import msgspec

__all__: Final[tuple[str, ...]] = (
    "BrokerCounters",
    "RuntimeState",
    "SupervisorStats",
    "create_runtime_state",
)


def _supervisor_stats_factory() -> dict[str, SupervisorStats]:
    return {}


class SupervisorStats(msgspec.Struct):
    """Task supervisor statistics."""

    restarts: int = 0
    last_failure_unix: float = 0.0
    last_exception: str | None = None
    backoff_seconds: float = 0.0
    fatal: bool = False

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class BrokerCounters(msgspec.Struct):
    """Admission and telemetry totals since startup."""

    grants: int = 0
    devices_granted: int = 0
    timeouts: int = 0
    rejections: int = 0
    releases: int = 0
    lease_expirations: int = 0
    device_updates: int = 0
    claim_observations: int = 0
    parse_errors: int = 0

    def as_dict(self) -> dict[str, Any]:
        return msgspec.structs.asdict(self)


class RuntimeState(msgspec.Struct):
    """Mutable daemon bookkeeping that sits outside the device state store."""

    config_source: str = "defaults"
    started_unix: float = msgspec.field(default_factory=time.time)
    counters: BrokerCounters = msgspec.field(default_factory=BrokerCounters)
    supervisor_stats: dict[str, SupervisorStats] = msgspec.field(default_factory=_supervisor_stats_factory)
    feeds_running: dict[str, bool] = msgspec.field(default_factory=dict)

    def record_supervisor_failure(
        self,
        name: str,
        *,
        backoff: float,
        exc: BaseException,
        fatal: bool = False,
    ) -> None:
        stats = self.supervisor_stats.get(name)
        if stats is None:
            stats = SupervisorStats()
            self.supervisor_stats[name] = stats
        stats.restarts += 1
        stats.last_failure_unix = time.time()
        stats.last_exception = f"{exc.__class__.__name__}: {exc}"
        stats.backoff_seconds = backoff
        stats.fatal = fatal

    def mark_supervisor_healthy(self, name: str) -> None:
        stats = self.supervisor_stats.get(name)
        if stats is None:
            return
        stats.backoff_seconds = 0.0
        stats.fatal = False

    def build_metrics_snapshot(self) -> dict[str, Any]:
        return {
            "uptime_seconds": time.time() - self.started_unix,
            "broker": self.counters.as_dict(),
            "feeds": {name: running for name, running in self.feeds_running.items()},
            "supervisors": {name: stats.as_dict() for name, stats in self.supervisor_stats.items()},
        }


def create_runtime_state(*, config_source: str = "defaults") -> RuntimeState:
    return RuntimeState(config_source=config_source)
