"""Raw configuration sources for the COGS broker daemon."""

from __future__ import annotations

import dataclasses
import logging
import os
from collections.abc import Mapping
from typing import Any, Final

logger = logging.getLogger(__name__)

_TRUE_STRINGS: Final[frozenset[str]] = frozenset({"1", "yes", "on", "true", "enable", "enabled"})

# Environment variable -> RuntimeConfig field.
ENVIRONMENT_KEYS: Final[dict[str, str]] = {
    "COGS_UDS_SOCKET": "uds_socket",
    "COGS_TCP_SOCKET": "tcp_socket",
    "DOCKER_SOCKET": "docker_socket",
    "COGS_DOCKER_TIMEOUT": "docker_timeout",
    "COGS_SMI": "smi_executable",
    "COGS_GROUP": "device_group",
    "COGS_OWNER_LABELS": "owner_labels",
    "COGS_IDENTITY_TTL": "identity_cache_ttl",
    "COGS_WAIT_TIMEOUT": "wait_timeout",
    "COGS_POLL_INTERVAL": "poll_interval",
    "COGS_CLAIM_LEASE": "claim_lease",
    "COGS_FEED_RESTARTS": "feed_max_restarts",
    "COGS_DEBUG": "debug_logging",
    "COGS_METRICS": "metrics_enabled",
    "COGS_METRICS_HOST": "metrics_host",
    "COGS_METRICS_PORT": "metrics_port",
}


def parse_bool(value: object) -> bool:
    """Parse a boolean value safely from various types."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if value is None:
        return False
    s = str(value).lower().strip()
    return s in _TRUE_STRINGS


def split_list(value: object) -> list[str]:
    """Split a comma or whitespace separated string, keeping order."""
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    if value is None:
        return []
    return [item for item in str(value).replace(",", " ").split() if item]


def get_environment_config(environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Collect the configuration keys present in the process environment."""
    source = os.environ if environ is None else environ
    values: dict[str, Any] = {}
    for variable, key in ENVIRONMENT_KEYS.items():
        if variable in source:
            values[key] = source[variable]
    if values:
        logger.debug("Configuration overrides from environment: %s", sorted(values))
    return values


def get_default_config() -> dict[str, Any]:
    """Provide default configuration values derived from ``RuntimeConfig``."""
    from .model import RuntimeConfig

    return dataclasses.asdict(RuntimeConfig())


__all__: Final[tuple[str, ...]] = (
    "ENVIRONMENT_KEYS",
    "get_default_config",
    "get_environment_config",
    "parse_bool",
    "split_list",
)
