"""Settings loader for the COGS broker daemon.

Configuration is layered: ``RuntimeConfig`` defaults, then ``COGS_*``
environment variables, then explicit overrides (command-line flags). The
merged mapping is validated by :class:`RuntimeConfigSchema`.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from marshmallow import ValidationError

from .common import get_default_config, get_environment_config
from .model import RuntimeConfig
from .schema import RuntimeConfigSchema

logger = logging.getLogger(__name__)


def load_runtime_config(
    overrides: Mapping[str, Any] | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> RuntimeConfig:
    """Load configuration from defaults, environment and overrides."""

    raw: dict[str, Any] = get_default_config()
    raw.update(get_environment_config(environ))
    if overrides:
        raw.update({key: value for key, value in overrides.items() if value is not None})

    try:
        config: RuntimeConfig = RuntimeConfigSchema().load(raw)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc.messages}") from exc

    if not config.uds_socket and not config.tcp_socket:
        logger.warning("Both listeners are disabled; the API will be unreachable.")
    return config


def get_config_source(environ: Mapping[str, str] | None = None) -> str:
    """Label for where the running configuration came from."""
    return "environment" if get_environment_config(environ) else "defaults"


__all__ = ["RuntimeConfig", "get_config_source", "load_runtime_config"]
