"""Marshmallow schema for RuntimeConfig validation."""

from __future__ import annotations

import re
from typing import Any, Dict

from marshmallow import Schema, ValidationError, fields, post_load, pre_load, validate, validates

from .common import parse_bool, split_list
from .const import (
    DEFAULT_CLAIM_LEASE,
    DEFAULT_DEVICE_GROUP,
    DEFAULT_DOCKER_SOCKET,
    DEFAULT_DOCKER_TIMEOUT,
    DEFAULT_FEED_MAX_RESTARTS,
    DEFAULT_IDENTITY_CACHE_TTL,
    DEFAULT_METRICS_HOST,
    DEFAULT_METRICS_PORT,
    DEFAULT_OWNER_LABELS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SMI_EXECUTABLE,
    DEFAULT_TCP_SOCKET,
    DEFAULT_UDS_SOCKET,
    DEFAULT_WAIT_TIMEOUT,
)
from .model import RuntimeConfig

_TCP_SOCKET_RE = re.compile(r"^(\[[0-9A-Fa-f:.]+\]|[A-Za-z0-9_.-]*):(\d{1,5})$")
_BOOL_FIELDS = ("debug_logging", "metrics_enabled")


class RuntimeConfigSchema(Schema):
    """Declarative validation schema for COGS broker configuration."""

    # Listeners
    uds_socket = fields.Str(load_default=DEFAULT_UDS_SOCKET)
    tcp_socket = fields.Str(load_default=DEFAULT_TCP_SOCKET)

    # Collaborators
    docker_socket = fields.Str(load_default=DEFAULT_DOCKER_SOCKET, validate=validate.Length(min=1))
    docker_timeout = fields.Float(load_default=DEFAULT_DOCKER_TIMEOUT, validate=validate.Range(min=0.1))
    smi_executable = fields.Str(load_default=DEFAULT_SMI_EXECUTABLE, validate=validate.Length(min=1))
    device_group = fields.Str(load_default=DEFAULT_DEVICE_GROUP)

    # Identity
    owner_labels = fields.List(
        fields.Str(validate=validate.Length(min=1)),
        load_default=lambda: list(DEFAULT_OWNER_LABELS),
        validate=validate.Length(min=1),
    )
    identity_cache_ttl = fields.Float(load_default=DEFAULT_IDENTITY_CACHE_TTL, validate=validate.Range(min=0.0))

    # Admission
    wait_timeout = fields.Float(load_default=DEFAULT_WAIT_TIMEOUT)
    poll_interval = fields.Float(load_default=DEFAULT_POLL_INTERVAL, validate=validate.Range(min=0.01))
    claim_lease = fields.Float(load_default=DEFAULT_CLAIM_LEASE, validate=validate.Range(min=0.0))
    feed_max_restarts = fields.Int(load_default=DEFAULT_FEED_MAX_RESTARTS, validate=validate.Range(min=0))

    # System
    debug_logging = fields.Bool(load_default=False)
    metrics_enabled = fields.Bool(load_default=False)
    metrics_host = fields.Str(load_default=DEFAULT_METRICS_HOST)
    metrics_port = fields.Int(load_default=DEFAULT_METRICS_PORT, validate=validate.Range(min=0, max=65535))

    @validates("tcp_socket")
    def validate_tcp_socket(self, value: str, **kwargs: Any) -> None:
        if not value:
            return
        match = _TCP_SOCKET_RE.match(value)
        if match is None or not 0 < int(match.group(2)) <= 65535:
            raise ValidationError(f"tcp_socket '{value}' must look like [host]:port")

    @pre_load
    def normalize_raw_values(self, data: Dict[str, Any], **kwargs: Any) -> Dict[str, Any]:
        data = dict(data)
        if "owner_labels" in data:
            data["owner_labels"] = split_list(data["owner_labels"])
        # Environment strings such as "yes"/"off" are accepted for flags.
        for name in _BOOL_FIELDS:
            if name in data and isinstance(data[name], str):
                data[name] = parse_bool(data[name])
        for name in ("uds_socket", "tcp_socket"):
            if name in data and isinstance(data[name], str):
                data[name] = data[name].strip()
        return data

    @post_load
    def make_config(self, data: Dict[str, Any], **kwargs: Any) -> RuntimeConfig:
        data["owner_labels"] = tuple(data["owner_labels"])
        return RuntimeConfig(**data)
