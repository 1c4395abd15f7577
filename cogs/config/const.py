"""Default values and tunables for the COGS broker daemon."""

from __future__ import annotations

from typing import Final

DEFAULT_UDS_SOCKET: Final[str] = "/var/run/cogs.sock"
DEFAULT_TCP_SOCKET: Final[str] = ":9110"
DEFAULT_DOCKER_SOCKET: Final[str] = "/var/run/docker.sock"
DEFAULT_SMI_EXECUTABLE: Final[str] = "nvidia-smi"

DEFAULT_DEBUG_LOGGING: Final[bool] = False
DEFAULT_DEVICE_GROUP: Final[str] = ""

# Ordered by priority; the first label carrying a valid address wins.
DEFAULT_OWNER_LABELS: Final[tuple[str, ...]] = (
    "ccc-user.email",
    "user.email",
    "email",
    "maintainer",
)
DEFAULT_IDENTITY_CACHE_TTL: Final[float] = 300.0
DEFAULT_DOCKER_TIMEOUT: Final[float] = 5.0

# Negative means wait until a device frees up or the client goes away.
DEFAULT_WAIT_TIMEOUT: Final[float] = -1.0
DEFAULT_POLL_INTERVAL: Final[float] = 1.0
DEFAULT_CLAIM_LEASE: Final[float] = 30.0

DEFAULT_FEED_MAX_RESTARTS: Final[int] = 0

DEFAULT_METRICS_ENABLED: Final[bool] = False
DEFAULT_METRICS_HOST: Final[str] = "127.0.0.1"
DEFAULT_METRICS_PORT: Final[int] = 9111

# nvidia-smi dmon: gpu pwr gtemp mtemp sm mem enc dec mclk pclk
DMON_FIELD_COUNT: Final[int] = 10
DMON_INDEX_DEVICE: Final[int] = 0
DMON_INDEX_TEMPERATURE: Final[int] = 2
DMON_INDEX_UTILIZATION: Final[int] = 4
DMON_INDEX_MEMORY: Final[int] = 5

# nvidia-smi pmon: gpu pid type sm mem enc dec command
PMON_FIELD_COUNT: Final[int] = 8
PMON_INDEX_DEVICE: Final[int] = 0
PMON_INDEX_PID: Final[int] = 1

TELEMETRY_PLACEHOLDER: Final[str] = "-"
TELEMETRY_COMMENT_PREFIX: Final[str] = "#"

HTTP_MAX_HEADER_LINES: Final[int] = 100
HTTP_READ_TIMEOUT: Final[float] = 30.0
RPC_MAX_LINE_BYTES: Final[int] = 1 << 20

SUPERVISOR_DEFAULT_RESTART_INTERVAL: Final[float] = 60.0
SUPERVISOR_DEFAULT_MIN_BACKOFF: Final[float] = 1.0
SUPERVISOR_DEFAULT_MAX_BACKOFF: Final[float] = 30.0
SUPERVISOR_MIN_RESTART_WINDOW: Final[float] = 10.0
