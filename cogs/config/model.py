"""Data model for COGS broker configuration."""

from __future__ import annotations

from dataclasses import dataclass, field

from .const import (
    DEFAULT_CLAIM_LEASE,
    DEFAULT_DEBUG_LOGGING,
    DEFAULT_DEVICE_GROUP,
    DEFAULT_DOCKER_SOCKET,
    DEFAULT_DOCKER_TIMEOUT,
    DEFAULT_FEED_MAX_RESTARTS,
    DEFAULT_IDENTITY_CACHE_TTL,
    DEFAULT_METRICS_ENABLED,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_OWNER_LABELS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SMI_EXECUTABLE,
    DEFAULT_TCP_SOCKET,
    DEFAULT_UDS_SOCKET,
    DEFAULT_WAIT_TIMEOUT,
)


def _default_owner_labels() -> tuple[str, ...]:
    return DEFAULT_OWNER_LABELS


@dataclass(slots=True)
class RuntimeConfig:
    """Strongly typed configuration for the daemon."""

    uds_socket: str = DEFAULT_UDS_SOCKET
    tcp_socket: str = DEFAULT_TCP_SOCKET
    docker_socket: str = DEFAULT_DOCKER_SOCKET
    docker_timeout: float = DEFAULT_DOCKER_TIMEOUT
    smi_executable: str = DEFAULT_SMI_EXECUTABLE
    device_group: str = DEFAULT_DEVICE_GROUP
    owner_labels: tuple[str, ...] = field(default_factory=_default_owner_labels)
    identity_cache_ttl: float = DEFAULT_IDENTITY_CACHE_TTL
    wait_timeout: float = DEFAULT_WAIT_TIMEOUT
    poll_interval: float = DEFAULT_POLL_INTERVAL
    claim_lease: float = DEFAULT_CLAIM_LEASE
    feed_max_restarts: int = DEFAULT_FEED_MAX_RESTARTS
    debug_logging: bool = DEFAULT_DEBUG_LOGGING
    metrics_enabled: bool = DEFAULT_METRICS_ENABLED
    metrics_host: str = DEFAULT_METRICS_HOST
    metrics_port: int = DEFAULT_METRICS_PORT

    @property
    def tcp_address(self) -> tuple[str | None, int] | None:
        """Split ``tcp_socket`` into (host, port); an empty host binds all."""
        if not self.tcp_socket:
            return None
        host, _, port = self.tcp_socket.rpartition(":")
        host = host.strip("[]")
        return (host or None, int(port))
