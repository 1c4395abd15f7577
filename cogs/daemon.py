#!/usr/bin/env python3
"""Async orchestrator for the COGS device claim broker.

Startup is strict: device enumeration and listener binding happen before any
task starts, and a failure in either ends the process with exit status 1.
Everything afterwards runs under the task supervisor.

Architecture:
    main() -> BrokerDaemon -> TaskGroup
        ├── api (Unix socket + TCP listeners)
        ├── claim-reaper (ClaimBroker.run)
        ├── metrics-feed (nvidia-smi dmon)
        ├── process-feed (nvidia-smi pmon)
        └── prometheus-exporter (optional)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import Sequence
from typing import Any, NoReturn

import uvloop

from . import __version__
from .api.http import ApiServer
from .config.logging import configure_logging
from .config.settings import RuntimeConfig, get_config_source, load_runtime_config
from .errors import InfrastructureFault
from .metrics import PrometheusExporter
from .services.broker import ClaimBroker, wire_handlers
from .services.bus import EventBus
from .services.identity import ContainerLister, IdentityResolver
from .services.ingest import TelemetryIngest, enumerate_devices
from .services.task_supervisor import SupervisedTaskSpec, supervise_task
from .state.context import create_runtime_state
from .state.store import StateStore
from .transport.docker import DockerClient

logger = logging.getLogger("cogs")

_FEED_TASKS = frozenset({"metrics-feed", "process-feed"})


class BrokerDaemon:
    """Owns every broker component and their lifecycles.

    Attributes:
        config: Validated runtime configuration.
        state: Counters and supervisor statistics.
        store: Authoritative device and claim state.
        bus: Telemetry event relay shared by ingest, store and broker.
        broker: Admission controller.
        api: HTTP and RPC listeners.
        ingest: Telemetry feeds, created once devices are enumerated.
        exporter: Optional Prometheus exporter.
    """

    def __init__(
        self,
        config: RuntimeConfig,
        *,
        runtime: ContainerLister | None = None,
        config_source: str = "defaults",
    ) -> None:
        self.config = config
        self.state = create_runtime_state(config_source=config_source)
        self.docker = DockerClient(config.docker_socket, timeout=config.docker_timeout)
        self.resolver = IdentityResolver(
            runtime or self.docker,
            labels=config.owner_labels,
            ttl=config.identity_cache_ttl,
        )
        self.store = StateStore(self.resolver)
        self.bus = EventBus()
        self.broker = ClaimBroker(
            self.store,
            self.bus,
            state=self.state,
            poll_interval=config.poll_interval,
            lease=config.claim_lease,
        )
        wire_handlers(self.bus, self.store, self.broker)
        self.api = ApiServer(
            self.store,
            self.broker,
            self.resolver,
            default_timeout=config.wait_timeout,
        )
        self.ingest: TelemetryIngest | None = None
        self.exporter: PrometheusExporter | None = None

    async def prepare(self) -> None:
        """Enumerate devices and bind listeners; raises on any failure."""
        devices = await enumerate_devices(self.config.smi_executable, group=self.config.device_group)
        if not devices:
            logger.warning("No devices reported by %s", self.config.smi_executable)
        for device in devices:
            await self.store.apply_device_update(device)
        self.ingest = TelemetryIngest(
            self.bus,
            devices,
            smi_executable=self.config.smi_executable,
            state=self.state,
        )

        if self.config.uds_socket:
            await self.api.start_unix_server(self.config.uds_socket)
        address = self.config.tcp_address
        if address is not None:
            host, port = address
            await self.api.start_tcp_server(host, port)

    def _setup_supervision(self) -> list[SupervisedTaskSpec]:
        assert self.ingest is not None
        specs: list[SupervisedTaskSpec] = [
            SupervisedTaskSpec(
                name="claim-reaper",
                factory=self.broker.run,
            ),
            SupervisedTaskSpec(
                name="metrics-feed",
                factory=self.ingest.run_metrics_feed,
                max_restarts=self.config.feed_max_restarts,
            ),
            SupervisedTaskSpec(
                name="process-feed",
                factory=self.ingest.run_process_feed,
                max_restarts=self.config.feed_max_restarts,
            ),
        ]
        if self.api.servers:
            specs.append(SupervisedTaskSpec(name="api", factory=self.api.serve_forever, max_restarts=0))

        if self.config.metrics_enabled:
            self.exporter = PrometheusExporter(
                self.state,
                self.store,
                self.config.metrics_host,
                self.config.metrics_port,
            )
            specs.append(
                SupervisedTaskSpec(
                    name="prometheus-exporter",
                    factory=self.exporter.run,
                    max_restarts=5,
                )
            )
        return specs

    async def _supervise(self, spec: SupervisedTaskSpec) -> None:
        try:
            await supervise_task(spec, state=self.state)
        except InfrastructureFault as exc:
            # Claims keep working without telemetry, so a dead feed is not fatal.
            if spec.name not in _FEED_TASKS:
                raise
            logger.error("%s stopped: %s; serving claims without its telemetry", spec.name, exc)

    async def run(self) -> None:
        """Main async entry point."""
        loop = asyncio.get_running_loop()
        main_task = asyncio.current_task()
        if main_task is not None:
            loop.add_signal_handler(signal.SIGTERM, main_task.cancel)

        try:
            await self.prepare()
            supervised_tasks = self._setup_supervision()
            try:
                async with asyncio.TaskGroup() as task_group:
                    for spec in supervised_tasks:
                        task_group.create_task(self._supervise(spec))
            except* asyncio.CancelledError:
                logger.info("Main task cancelled; shutting down.")
            except* Exception as exc_group:
                for group_exc in exc_group.exceptions:
                    logger.critical(
                        "Unhandled exception in main task group: %s",
                        group_exc,
                        exc_info=group_exc,
                    )
                raise
        finally:
            loop.remove_signal_handler(signal.SIGTERM)
            await self.api.close()
            await self.docker.close()
            logger.info("COGS daemon stopped.")


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cogsd", description="Node-local GPU claim broker.")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--uds", dest="uds_socket", help="Unix socket path; empty disables it")
    parser.add_argument("--tcp", dest="tcp_socket", help="TCP listen address as [host]:port; empty disables it")
    parser.add_argument("--docker", dest="docker_socket", help="Docker Engine API socket")
    parser.add_argument("--smi", dest="smi_executable", help="nvidia-smi executable")
    parser.add_argument("--group", dest="device_group", help="Logical group recorded on every device")
    parser.add_argument("--timeout", dest="wait_timeout", type=float, help="Default /wait timeout in seconds")
    parser.add_argument("--lease", dest="claim_lease", type=float, help="Seconds a grant may stay unused")
    parser.add_argument("--metrics", dest="metrics_enabled", action="store_true", default=None)
    parser.add_argument("--metrics-port", dest="metrics_port", type=int)
    parser.add_argument("--debug", dest="debug_logging", action="store_true", default=None)
    return parser


def main(argv: Sequence[str] | None = None) -> NoReturn:  # pragma: no cover (entry point wrapper)
    args = build_arg_parser().parse_args(argv)
    overrides: dict[str, Any] = vars(args)
    try:
        config = load_runtime_config(overrides)
    except ValueError as exc:
        print(f"cogsd: {exc}", file=sys.stderr)
        sys.exit(2)
    configure_logging(config)

    logger.info(
        "Starting COGS daemon %s. UDS: %s TCP: %s Docker: %s",
        __version__,
        config.uds_socket or "-",
        config.tcp_socket or "-",
        config.docker_socket,
    )

    try:
        daemon = BrokerDaemon(config, config_source=get_config_source())
        asyncio.run(daemon.run(), loop_factory=uvloop.new_event_loop)
        sys.exit(0)
    except KeyboardInterrupt:
        logger.info("Daemon interrupted by user.")
        sys.exit(0)
    except InfrastructureFault as exc:
        logger.critical("Startup aborted: %s", exc)
        sys.exit(1)
    except ExceptionGroup as exc_group:
        for group_exc in exc_group.exceptions:
            logger.critical("Fatal error in task group: %s", group_exc, exc_info=group_exc)
        sys.exit(1)
    except OSError as exc:
        logger.critical("System/OS error during daemon execution: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
