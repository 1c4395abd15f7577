"""Admission control: reserve N free devices, waiting up to a deadline."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from ..config.const import DEFAULT_CLAIM_LEASE, DEFAULT_POLL_INTERVAL
from ..errors import ClaimTimeout, InsufficientDevices
from ..state.context import RuntimeState
from ..state.models import Claim, Device
from ..state.store import StateStore
from .bus import EventBus, Topic

logger = logging.getLogger("cogs.broker")


class ClaimBroker:
    """Grants exclusive device claims against the state store.

    Selection and assignment happen in one write-locked call on the store, so
    two callers can never be handed the same device. Callers that cannot be
    satisfied park on a private wakeup event which is set by every telemetry
    event and every release, and re-evaluate at least once per poll interval.
    """

    def __init__(
        self,
        store: StateStore,
        bus: EventBus,
        *,
        state: RuntimeState | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        lease: float = DEFAULT_CLAIM_LEASE,
    ) -> None:
        self._store = store
        self._bus = bus
        self._state = state
        self._poll_interval = poll_interval
        self._lease = lease
        self._waiters: set[asyncio.Event] = set()

    @property
    def pending_waiters(self) -> int:
        return len(self._waiters)

    def attach(self) -> None:
        """Subscribe to telemetry; must run after the store's handlers are registered."""
        self._bus.subscribe(Topic.DEVICE_UPDATED, self._on_device_updated)
        self._bus.subscribe(Topic.CLAIM_OBSERVED, self._on_claim_observed)

    def notify(self) -> None:
        for wakeup in self._waiters:
            wakeup.set()

    async def reserve(self, count: int, identity: str, timeout: float) -> list[Device]:
        """Claim ``count`` devices for ``identity``.

        ``timeout`` 0 never blocks and a negative timeout waits until the
        request can be satisfied or the caller is cancelled.
        """
        if count <= 0:
            raise ValueError(f"device count must be positive, got {count}")
        total = self._store.device_count
        if count > total:
            self._count("rejections")
            raise InsufficientDevices(f"requested {count} devices but only {total} exist")

        loop = asyncio.get_running_loop()
        deadline = None if timeout < 0 else loop.time() + timeout
        wakeup = asyncio.Event()
        self._waiters.add(wakeup)
        try:
            while True:
                # Cleared before evaluating so a release racing the check still wakes us.
                wakeup.clear()
                granted = await self._store.reserve(count, identity)
                if granted is not None:
                    self._count("grants")
                    self._count("devices_granted", len(granted))
                    numbers = [device.number for device in granted]
                    logger.info(
                        "Granted %s to %s",
                        ",".join(map(str, numbers)),
                        identity,
                        extra={"devices": numbers, "identity": identity},
                    )
                    return granted

                if deadline is None:
                    wait = self._poll_interval
                else:
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        self._count("timeouts")
                        logger.info(
                            "Claim for %d device(s) by %s timed out", count, identity, extra={"identity": identity}
                        )
                        raise ClaimTimeout(f"{count} device(s) not available within {timeout}s")
                    wait = min(self._poll_interval, remaining)

                try:
                    async with asyncio.timeout(wait):
                        await wakeup.wait()
                except TimeoutError:
                    pass
        finally:
            self._waiters.discard(wakeup)

    async def release(self, numbers: Iterable[int], identity: str) -> list[int]:
        """Release devices held by ``identity``; PermissionDenied for other holders."""
        released = await self._store.release(numbers, identity)
        if released:
            self._count("releases", len(released))
            logger.info(
                "Released %s by %s",
                ",".join(map(str, released)),
                identity,
                extra={"devices": released, "identity": identity},
            )
            self.notify()
        return released

    async def expire_leases(self) -> list[int]:
        expired = await self._store.expire_unused(self._lease)
        if expired:
            self._count("lease_expirations", len(expired))
            logger.warning(
                "Released %s: no process appeared within %.0fs of the grant",
                ",".join(map(str, expired)),
                self._lease,
                extra={"devices": expired},
            )
            self.notify()
        return expired

    async def run(self) -> None:
        """Periodic lease reaper; also nudges waiters between telemetry events."""
        while True:
            await asyncio.sleep(self._poll_interval)
            if self._lease > 0:
                await self.expire_leases()
            self.notify()

    async def _on_device_updated(self, device: Device) -> None:
        self.notify()

    async def _on_claim_observed(self, claim: Claim) -> None:
        released_from = await self._store.reconcile_claim(claim)
        if released_from:
            self._count("releases")
            logger.info(
                "Released %d from %s: claimant processes exited",
                claim.device_number,
                released_from,
                extra={"device": claim.device_number, "identity": released_from},
            )
        self.notify()

    def _count(self, name: str, amount: int = 1) -> None:
        if self._state is None:
            return
        counters = self._state.counters
        setattr(counters, name, getattr(counters, name) + amount)


def wire_handlers(bus: EventBus, store: StateStore, broker: ClaimBroker) -> None:
    """Register mutation handlers ahead of the broker's so it sees applied state."""
    bus.subscribe(Topic.DEVICE_UPDATED, store.apply_device_update)
    bus.subscribe(Topic.CLAIM_OBSERVED, store.apply_claim_observation)
    broker.attach()
